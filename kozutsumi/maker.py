from contextlib import nullcontext
from fnmatch import fnmatchcase
from keyword import iskeyword
from pathlib import Path
import re
import sys
from typing import NamedTuple, TYPE_CHECKING
import warnings

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence
    from contextlib import AbstractContextManager
    from typing import Callable, Protocol

    class Writable(Protocol):
        def write(self, data: 'bytes | bytearray') -> int:
            ...

from kozutsumi import __version__
from kozutsumi.bundle import BundleConfig, Toolbox


_BANNER = (
    b'# -*- coding: utf-8 -*-\n'
    b'# DO NOT EDIT! This module was automatically generated\n'
    b'# by Kozutsumi. Manual edits may just break it.\n\n')

_HEADER = '''\
"""
Files bundled as "{bundle}" for package "{package}".

Generated by Kozutsumi {version}.
"""

from kozutsumi.bundle import Builder


{constant} = Builder({bundle_literal}){policy}'''

_FOOTER = b'.build()\n'

_BYTES_PER_LINE = 12


class BundledFile(NamedTuple):
    """The local path and the platform-independent key for a bundled file."""
    path: Path
    key: str


class BundleMaker:
    """
    Class to create construction scripts, i.e., Python modules that rebuild a
    bundle of files when imported.
    """

    def __init__(
        self,
        roots: 'Sequence[str | Path]',
        *,
        target: 'None | str | Path' = None,
        package: 'None | str' = None,
        bundle: 'None | str' = None,
        recursive: bool = False,
        excludes: 'Sequence[str]' = (),
        compress: bool = False,
        retain_uncompressed: bool = False,
        decompress_on_finalize: bool = False,
        encode_as_bytes: bool = False,
        trace: 'None | Callable[[str], None]' = None,
    ) -> None:
        self._roots = roots
        self._target = target
        self._recursive = recursive
        self._excludes = tuple(pattern for pattern in excludes if pattern)
        self._encode_as_bytes = encode_as_bytes
        self._trace = trace

        if package is None:
            directory = Path.cwd() if target is None else Path(target).absolute().parent
            package = directory.name or 'bundle'
        self._package = package

        self._config = BundleConfig(
            package if bundle is None else bundle,
            compressed=compress,
            retain_uncompressed=retain_uncompressed,
            decompress_on_finalize=decompress_on_finalize,
        )

    def __repr__(self) -> str:
        roots = ', '.join(str(root) for root in self._roots)
        return f'<kozutsumi-maker {self._config.name}: {roots}>'

    @property
    def config(self) -> BundleConfig:
        return self._config

    @property
    def package(self) -> str:
        return self._package

    # ----------------------------------------------------------------------------------

    def run(self) -> None:
        files = sorted(self.list_files(), key=lambda f: f.key)

        # Render completely before touching the target, so that a failing read
        # doesn't leave a truncated module behind.
        lines = list(self.emit_module(files))

        # The nullcontext prevents closing of stdout's binary stream when done.
        context: 'AbstractContextManager[Writable]'
        if self._target is None:
            context = nullcontext(sys.stdout.buffer)
        else:
            context = open(self._target, mode='wb')

        with context as script:
            BundleMaker.writeall(lines, script)

    # ----------------------------------------------------------------------------------

    def list_files(self) -> 'Iterator[BundledFile]':
        for root in self._roots:
            root_path = Path(root)
            if self.is_excluded(root_path):
                continue
            if root_path.is_dir() and not self._recursive:
                raise ValueError(
                    f'"{root}" is a directory; use -r/--recursive to bundle its files')

            # Symbolic links to directories may form cycles, so traversal
            # doesn't follow them below the root.
            pending = [root_path]
            while pending:
                item = pending.pop()
                if item is not root_path and item.is_symlink() and item.is_dir():
                    warnings.warn(
                        f'skipping "{item}", which is a symbolic link to a directory')
                elif item.is_dir():
                    pending.extend(
                        child for child in item.iterdir() if not self.is_excluded(child))
                elif item.is_file():
                    yield BundledFile(item, BundleMaker.to_key(item))
                elif item is root_path:
                    raise FileNotFoundError(f'"{root}" does not exist')
                else:
                    warnings.warn(f'skipping "{item}", which is not a regular file')

    @staticmethod
    def to_key(path: Path) -> str:
        return path.as_posix().lstrip('/')

    def is_excluded(self, path: Path) -> bool:
        text = path.as_posix()
        return any(
            fnmatchcase(text, pattern) or fnmatchcase(path.name, pattern)
            for pattern in self._excludes
        )

    @staticmethod
    def to_constant(name: str) -> str:
        constant = re.sub(r'\W', '_', name, flags=re.ASCII).upper() + '_BUNDLE'
        if constant[0].isdigit() or iskeyword(constant):
            constant = '_' + constant
        return constant

    # ----------------------------------------------------------------------------------

    def emit_module(self, files: 'list[BundledFile]') -> 'Iterator[bytes]':
        yield from _BANNER.splitlines(keepends=True)
        yield from self.emit_header()
        for file in files:
            if self._trace is not None:
                self._trace(file.key)
            yield from self.emit_file(file.key, file.path.read_bytes())
        yield _FOOTER

    def emit_header(self) -> 'Iterator[bytes]':
        config = self._config

        policy = ''
        if config.compressed:
            policy = '.compressed()'
            if config.retain_uncompressed:
                policy += '.retain_uncompressed()'
            if config.decompress_on_finalize:
                policy += '.decompress_on_finalize()'

        header = _HEADER.format(
            bundle=BundleMaker.escape(config.name),
            bundle_literal=BundleMaker.quote(config.name),
            package=BundleMaker.escape(self._package),
            version=__version__,
            constant=BundleMaker.to_constant(config.name),
            policy=policy,
        )
        yield from header.encode('utf8').splitlines(keepends=True)

    def emit_file(self, key: str, data: bytes) -> 'Iterator[bytes]':
        if self._config.compressed:
            data = Toolbox.deflate(data)

        yield b'.add(\n'
        yield b'    ' + BundleMaker.quote(key).encode('ascii') + b',\n'
        if self._encode_as_bytes:
            yield from BundleMaker.encode_as_bytes(data)
        else:
            yield from BundleMaker.encode_as_literal(data)
        yield b')'

    @staticmethod
    def escape(text: str) -> str:
        # Safe inside both string literals and docstrings
        return text.encode('unicode_escape').replace(b'"', b'\\x22').decode('ascii')

    @staticmethod
    def quote(text: str) -> str:
        return '"' + BundleMaker.escape(text) + '"'

    @staticmethod
    def encode_as_literal(data: bytes) -> 'Iterator[bytes]':
        if not data:
            yield b'    b"",\n'
            return

        # Adjacent literals are concatenated by the compiler, one per line.
        yield b'    (\n'
        for line in data.splitlines(keepends=True):
            escaped = (
                line                      # Take each line,
                .decode('iso8859-1')      # convert each byte 1:1 to code point,
                .encode('unicode_escape') # convert to bytes, escaping non-ASCII values
                .replace(b'"', b'\\x22')  # and escape double quotes.
            )
            yield b'        b"' + escaped + b'"\n'
        yield b'    ),\n'

    @staticmethod
    def encode_as_bytes(data: bytes) -> 'Iterator[bytes]':
        yield b'    bytes((\n'
        for index in range(0, len(data), _BYTES_PER_LINE):
            chunk = data[index : index + _BYTES_PER_LINE]
            values = ' '.join(f'0x{value:02x},' for value in chunk)
            yield f'        {values}\n'.encode('ascii')
        yield b'    )),\n'

    # ----------------------------------------------------------------------------------

    @staticmethod
    def writeall(
        lines: 'Iterable[bytes]',
        writable: 'None | Writable' = None,
    ) -> None:
        if writable is None:
            for line in lines:
                print(line.decode('utf8'), end='')
        else:
            for line in lines:
                writable.write(line)
