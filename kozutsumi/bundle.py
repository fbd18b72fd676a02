from contextlib import contextmanager
import io
from typing import cast, NamedTuple, TYPE_CHECKING
import zlib

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from typing import BinaryIO


class BundleError(Exception):
    """The base class for errors raised by bundles, builders, and registries."""


class NotFound(BundleError, LookupError):
    """A path is not part of a bundle or a name is not part of a registry."""


class DecodeError(BundleError, ValueError):
    """Stored bytes are not a valid zlib stream."""


class BuilderConsumed(BundleError, RuntimeError):
    """A builder was used again after handing over its state."""


class Toolbox:
    COMPRESSION_LEVEL = 9
    CHUNK_SIZE = 16 * 1024

    @staticmethod
    def deflate(data: bytes) -> bytes:
        return zlib.compress(data, Toolbox.COMPRESSION_LEVEL)

    @staticmethod
    def inflate(data: bytes) -> bytes:
        try:
            return zlib.decompress(data)
        except zlib.error as x:
            raise DecodeError(f'unable to inflate data ({x})') from x

    @staticmethod
    def check_header(data: bytes) -> None:
        # RFC 1950: CM must be deflate, CINFO at most a 32K window, and the
        # two header bytes must be a multiple of 31.
        if (
            len(data) < 2
            or data[0] & 0x0F != 8
            or data[0] >> 4 > 7
            or (data[0] << 8 | data[1]) % 31 != 0
        ):
            raise DecodeError('unable to inflate data (invalid zlib header)')


class _InflatingReader(io.RawIOBase):
    """A raw stream that inflates its source only as far as it is consumed."""

    def __init__(self, data: bytes) -> None:
        self._source = io.BytesIO(data)
        self._inflater = zlib.decompressobj()
        self._pending = b''

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: 'bytearray | memoryview') -> int:
        view = memoryview(buffer).cast('B')
        size = len(view)
        if size == 0:
            return 0

        while not self._pending and not self._inflater.eof:
            data = self._inflater.unconsumed_tail
            if not data:
                data = self._source.read(Toolbox.CHUNK_SIZE)
                if not data:
                    raise DecodeError('unable to inflate data (truncated stream)')
            try:
                self._pending = self._inflater.decompress(data, size)
            except zlib.error as x:
                raise DecodeError(f'unable to inflate data ({x})') from x

        count = min(size, len(self._pending))
        view[:count] = self._pending[:count]
        self._pending = self._pending[count:]
        return count


class FileRecord:
    """A bundled file's bytes at rest plus, possibly, its inflated plaintext."""

    __slots__ = ('_stored', 'cache')

    def __init__(self, stored: bytes) -> None:
        self._stored = stored
        self.cache: 'None | bytes' = None

    @property
    def stored(self) -> bytes:
        return self._stored

    def __repr__(self) -> str:
        cached = 'cached' if self.cache is not None else 'uncached'
        return f'<kozutsumi-file {len(self.stored)} bytes, {cached}>'

    def plaintext(self, retain: bool) -> bytes:
        cache = self.cache
        if cache is not None:
            return cache

        data = Toolbox.inflate(self.stored)
        if retain:
            # A single assignment of an immutable object, so concurrent readers
            # never observe a partial cache. The first inflate to get here wins,
            # later ones write the very same bytes.
            self.cache = data
        return data


class Bundle:
    """
    A named collection of embedded files. The set of paths is fixed upon
    construction and always enumerated in sorted order. If the bundle is
    compressed, every file is stored as a zlib stream and inflated when read;
    reads through `read_bytes()` may retain the inflated bytes for reuse, while
    reads through `open()` never do.
    """

    def __init__(
        self,
        name: str,
        files: 'dict[str, FileRecord]',
        *,
        compressed: bool = False,
        retain_uncompressed: bool = False,
    ) -> None:
        self._name = name
        self._files = dict(files)
        self._paths = tuple(sorted(self._files))
        self._compressed = compressed
        self._retain_uncompressed = retain_uncompressed

    @property
    def name(self) -> str:
        return self._name

    @property
    def compressed(self) -> bool:
        return self._compressed

    @property
    def retain_uncompressed(self) -> bool:
        return self._retain_uncompressed

    def __repr__(self) -> str:
        return f'<kozutsumi-bundle {self._name}>'

    def __len__(self) -> int:
        return len(self._paths)

    def __iter__(self) -> 'Iterator[str]':
        return iter(self._paths)

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __getitem__(self, path: str) -> bytes:
        return self.read_bytes(path)

    # ----------------------------------------------------------------------------------

    def list_paths(self) -> 'tuple[str, ...]':
        return self._paths

    def record(self, path: str) -> FileRecord:
        """Get the record for the path. Meant for inspection tools only."""
        record = self._files.get(path)
        if record is None:
            raise NotFound(f'no file "{path}" in bundle "{self._name}"')
        return record

    def read_bytes(self, path: str) -> bytes:
        record = self.record(path)
        if not self._compressed:
            return record.stored
        return record.plaintext(self._retain_uncompressed)

    def open(self, path: str) -> 'BinaryIO':
        record = self.record(path)
        if not self._compressed:
            return io.BytesIO(record.stored)

        cache = record.cache
        if cache is not None:
            return io.BytesIO(cache)

        Toolbox.check_header(record.stored)
        return cast('BinaryIO', io.BufferedReader(_InflatingReader(record.stored)))


# ======================================================================================


class Registry:
    """A name-indexed collection of bundles. Later bundles replace earlier ones."""

    def __init__(self) -> None:
        self._bundles: 'dict[str, Bundle]' = {}

    def __repr__(self) -> str:
        return f'<kozutsumi-registry {", ".join(sorted(self._bundles))}>'

    def __len__(self) -> int:
        return len(self._bundles)

    def __contains__(self, name: object) -> bool:
        return name in self._bundles

    def __getitem__(self, name: str) -> Bundle:
        return self.lookup(name)

    def register(self, bundle: Bundle) -> None:
        self._bundles[bundle.name] = bundle

    def lookup(self, name: str) -> Bundle:
        bundle = self._bundles.get(name)
        if bundle is None:
            raise NotFound(f'no bundle named "{name}"')
        return bundle

    def list_all(self) -> 'list[Bundle]':
        return list(self._bundles.values())


registry = Registry()


@contextmanager
def use_registry(replacement: Registry) -> 'Iterator[Registry]':
    """Make the given registry the process-wide one while the context is active."""
    global registry
    previous = registry
    registry = replacement
    try:
        yield replacement
    finally:
        registry = previous


# ======================================================================================


class BundleConfig(NamedTuple):
    """A bundle's name and policy."""
    name: str
    compressed: bool = False
    retain_uncompressed: bool = False
    decompress_on_finalize: bool = False

    @property
    def inflates_on_add(self) -> bool:
        return self.compressed and self.decompress_on_finalize


# Bytes plus whether they already have been inflated
_Entry = tuple[bytes, bool]


class Builder:
    """
    Builder for bundles. Every method consumes the builder it is invoked on:
    The accumulated files move to the returned builder and the original one
    raises `BuilderConsumed` when used again. That makes chains like

        Builder('assets').compressed().add('a.txt', data).build()

    safe, since no two builders ever share files.
    """

    def __init__(self, name: str, registry: 'None | Registry' = None) -> None:
        self._config = BundleConfig(name)
        self._registry = registry
        self._entries: 'None | dict[str, _Entry]' = {}

    def __repr__(self) -> str:
        state = 'consumed' if self._entries is None else f'{len(self._entries)} files'
        return f'<kozutsumi-builder {self._config.name}, {state}>'

    def _take(self) -> 'dict[str, _Entry]':
        entries = self._entries
        if entries is None:
            raise BuilderConsumed(
                f'builder for bundle "{self._config.name}" has already been used')
        self._entries = None
        return entries

    def _hand_over(
        self, config: BundleConfig, entries: 'dict[str, _Entry]'
    ) -> 'Builder':
        successor = Builder(config.name, self._registry)
        successor._config = config
        successor._entries = entries
        return successor

    # ----------------------------------------------------------------------------------

    def compressed(self) -> 'Builder':
        entries = self._take()
        return self._hand_over(self._config._replace(compressed=True), entries)

    def retain_uncompressed(self) -> 'Builder':
        entries = self._take()
        return self._hand_over(self._config._replace(retain_uncompressed=True), entries)

    def decompress_on_finalize(self) -> 'Builder':
        entries = self._take()
        return self._hand_over(
            self._config._replace(decompress_on_finalize=True), entries)

    def add(self, path: str, data: bytes) -> 'Builder':
        entries = self._take()
        inflated = self._config.inflates_on_add
        if inflated:
            data = Toolbox.inflate(data)
        entries[path] = (bytes(data), inflated)
        return self._hand_over(self._config, entries)

    def build(self) -> Bundle:
        config = self._config
        entries = self._take()

        files = {}
        for path, (data, inflated) in entries.items():
            # Files added before the policy was complete still need inflating.
            if config.inflates_on_add and not inflated:
                data = Toolbox.inflate(data)
            files[path] = FileRecord(data)

        bundle = Bundle(
            config.name,
            files,
            compressed=config.compressed and not config.decompress_on_finalize,
            retain_uncompressed=config.retain_uncompressed,
        )
        (self._registry if self._registry is not None else registry).register(bundle)
        return bundle


def build_bundle(
    config: BundleConfig,
    files: 'Iterable[tuple[str, bytes]]',
    registry: 'None | Registry' = None,
) -> Bundle:
    """Build and register a bundle in one go."""
    builder = Builder(config.name, registry)
    if config.compressed:
        builder = builder.compressed()
    if config.retain_uncompressed:
        builder = builder.retain_uncompressed()
    if config.decompress_on_finalize:
        builder = builder.decompress_on_finalize()
    for path, data in files:
        builder = builder.add(path, data)
    return builder.build()
