from collections.abc import Iterator
from contextlib import contextmanager
import os
from pathlib import Path
import runpy
import tempfile

from .console import Console
from kozutsumi.bundle import Bundle, Registry, use_registry
from kozutsumi.maker import BundleMaker


FIXTURES = Path(__file__).parent / 'fixtures'

_ALL_KEYS = [
    'bundled.json',
    'static/.cache/scratch.tmp',
    'static/css/site.css',
    'static/empty.txt',
    'static/index.html',
    'static/notes.txt',
]

_POLICIES = (
    {},
    {'compress': True},
    {'compress': True, 'retain_uncompressed': True},
    {'compress': True, 'decompress_on_finalize': True},
)


@contextmanager
def in_fixtures() -> 'Iterator[Path]':
    cwd = os.getcwd()
    os.chdir(FIXTURES)
    try:
        yield FIXTURES
    finally:
        os.chdir(cwd)


def generate(maker: BundleMaker) -> bytes:
    files = sorted(maker.list_files(), key=lambda f: f.key)
    return b''.join(maker.emit_module(files))


def load(maker: BundleMaker) -> Bundle:
    registry = Registry()
    with use_registry(registry):
        exec(compile(generate(maker), '<generated>', 'exec'), {})
    return registry.lookup(maker.config.name)


def decode(lines: 'Iterator[bytes]') -> bytes:
    text = b''.join(lines).strip().rstrip(b',')
    return eval(text)


def test_literal_encodings(console: Console) -> None:
    for sample in (
        b'',
        b'"',
        b'\\',
        b"'''\"\"\"",
        b'line one\nline two\r\nline three\rlast',
        b'\n\n\n',
        bytes(range(256)),
        'Kozutsumi 小包'.encode('utf8'),
    ):
        console.assert_eq(decode(BundleMaker.encode_as_literal(sample)), sample)
        console.assert_eq(decode(BundleMaker.encode_as_bytes(sample)), sample)


def test_quote(console: Console) -> None:
    for text in ('plain.txt', 'say "hi".txt', 'back\\slash', 'ünï/cödé.txt', "it's"):
        console.assert_eq(eval(BundleMaker.quote(text)), text)


def test_to_constant(console: Console) -> None:
    for name, constant in (
        ('assets', 'ASSETS_BUNDLE'),
        ('my-assets.v2', 'MY_ASSETS_V2_BUNDLE'),
        ('3d', '_3D_BUNDLE'),
        ('小包', '___BUNDLE'),
    ):
        console.assert_eq(BundleMaker.to_constant(name), constant)


def test_list_files(console: Console) -> None:
    with in_fixtures():
        maker = BundleMaker(['static', 'bundled.json'], bundle='b', recursive=True)
        keys = sorted(file.key for file in maker.list_files())
        console.assert_eq(keys, _ALL_KEYS)

        maker = BundleMaker(['bundled.json'], bundle='b')
        console.assert_eq([file.key for file in maker.list_files()], ['bundled.json'])

        maker = BundleMaker(['static'], bundle='b')
        console.assert_raises(ValueError, lambda: list(maker.list_files()))

        maker = BundleMaker(['no-such-file.txt'], bundle='b')
        console.assert_raises(FileNotFoundError, lambda: list(maker.list_files()))


def test_excludes(console: Console) -> None:
    with in_fixtures():
        maker = BundleMaker(
            ['static', 'bundled.json'],
            bundle='b',
            recursive=True,
            excludes=['.cache', '*.css', ''],
        )
        keys = sorted(file.key for file in maker.list_files())
        console.assert_eq(keys, [
            'bundled.json',
            'static/empty.txt',
            'static/index.html',
            'static/notes.txt',
        ])

        maker = BundleMaker(
            ['static', 'bundled.json'],
            bundle='b',
            recursive=True,
            excludes=['static', 'static/.cache/*'],
        )
        console.assert_eq([file.key for file in maker.list_files()], ['bundled.json'])


def test_absolute_paths(console: Console) -> None:
    maker = BundleMaker([FIXTURES / 'bundled.json'], bundle='b')
    (file,) = maker.list_files()
    console.assert_op(lambda key: not key.startswith('/'), file.key)
    console.assert_op(lambda key: key.endswith('test/fixtures/bundled.json'), file.key)


def test_round_trip(console: Console) -> None:
    with in_fixtures():
        for policy in _POLICIES:
            for encode_as_bytes in (False, True):
                maker = BundleMaker(
                    ['static', 'bundled.json'],
                    package='fixtures',
                    recursive=True,
                    excludes=['.cache'],
                    encode_as_bytes=encode_as_bytes,
                    **policy,
                )
                bundle = load(maker)
                console.assert_eq(bundle.name, 'fixtures')
                console.assert_eq(
                    bundle.compressed,
                    bool(policy) and not policy.get('decompress_on_finalize', False),
                )
                console.assert_eq(
                    list(bundle.list_paths()),
                    [key for key in _ALL_KEYS if '.cache' not in key],
                )
                for path in bundle:
                    console.assert_eq(bundle.read_bytes(path), Path(path).read_bytes())


def test_header(console: Console) -> None:
    with in_fixtures():
        maker = BundleMaker(
            ['bundled.json'],
            package='site',
            bundle='assets',
            compress=True,
            retain_uncompressed=True,
            decompress_on_finalize=True,
        )
        source = generate(maker).decode('utf8')
        console.assert_op('contains', source, '# DO NOT EDIT!')
        console.assert_op('contains', source, 'for package "site"')
        console.assert_op('contains', source,
            'ASSETS_BUNDLE = Builder("assets").compressed().retain_uncompressed()'
            '.decompress_on_finalize().add(\n    "bundled.json",\n')
        console.assert_op(lambda s: s.endswith(').build()\n'), source)

        # Policy calls are only emitted for compressed bundles.
        maker = BundleMaker(['bundled.json'], bundle='plain', retain_uncompressed=True)
        source = generate(maker).decode('utf8')
        console.assert_op('contains', source, 'PLAIN_BUNDLE = Builder("plain").add(')

        maker = BundleMaker([], bundle='nothing')
        source = generate(maker).decode('utf8')
        console.assert_op('contains', source, 'NOTHING_BUNDLE = Builder("nothing").build()')


def test_names_with_escapes(console: Console) -> None:
    for name in ('assets\\N', 'x\\u', 'trailing\\', 'q"""q', 'ünï', 'tab\there'):
        maker = BundleMaker([], package=name, bundle=name)
        registry = Registry()
        namespace: 'dict[str, object]' = {}
        with use_registry(registry):
            exec(compile(generate(maker), '<generated>', 'exec'), namespace)

        console.assert_eq(registry.lookup(name).name, name)
        console.assert_op('contains', namespace['__doc__'], f'bundled as "{name}"')
        console.assert_op('contains', namespace['__doc__'], f'for package "{name}"')


def test_inferred_names(console: Console) -> None:
    maker = BundleMaker([], target=Path('somewhere') / 'embedded' / 'files.py')
    console.assert_eq(maker.package, 'embedded')
    console.assert_eq(maker.config.name, 'embedded')

    maker = BundleMaker([], target='files.py', package='pkg')
    console.assert_eq(maker.config.name, 'pkg')

    maker = BundleMaker([], target='files.py', package='pkg', bundle='named')
    console.assert_eq(maker.package, 'pkg')
    console.assert_eq(maker.config.name, 'named')


def test_run_writes_importable_module(console: Console) -> None:
    traced: 'list[str]' = []
    with tempfile.TemporaryDirectory() as tmpdir, in_fixtures():
        target = Path(tmpdir) / 'greetings' / 'embedded.py'
        target.parent.mkdir()
        BundleMaker(
            ['bundled.json'],
            target=target,
            compress=True,
            retain_uncompressed=True,
            trace=traced.append,
        ).run()

        registry = Registry()
        with use_registry(registry):
            bindings = runpy.run_path(str(target))

        bundle = registry.lookup('greetings')
        console.assert_is(bindings['GREETINGS_BUNDLE'], bundle)
        console.assert_eq(bundle.compressed, True)
        console.assert_eq(bundle.retain_uncompressed, True)
        console.assert_eq(
            bundle.read_bytes('bundled.json'), (FIXTURES / 'bundled.json').read_bytes())
        console.assert_eq(traced, ['bundled.json'])


def test_run_leaves_no_partial_output(console: Console) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        target = Path(tmpdir) / 'broken.py'
        maker = BundleMaker([Path(tmpdir) / 'missing.txt'], target=target)
        console.assert_raises(FileNotFoundError, maker.run)
        console.assert_eq(target.exists(), False)
