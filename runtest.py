#!.venv/bin/python

from dataclasses import dataclass
import doctest
from importlib import import_module
import os
from pathlib import Path
import runpy
import subprocess
import shutil
import sys

from test.console import Console


# ======================================================================================


UNIT_TEST_MODULES = (
    'test.test_bundle',
    'test.test_builder',
    'test.test_registry',
    'test.test_maker',
    'test.test_debug',
)

# Flag combinations for generated modules, with whether the bundle stays compressed
FLAG_COMBINATIONS = (
    ('plain', [], False),
    ('compressed', ['-c'], True),
    ('retained', ['-c', '-u'], True),
    ('eager', ['-c', '-i'], False),
    ('everything', ['-c', '-u', '-i'], False),
)


@dataclass
class Options:
    test_runner: str
    console: Console
    module_name: str = ''
    verbose: bool = False

    def make_verbose(self) -> None:
        self.verbose = True
        self.console.verbose = True

    def test_command(self) -> list[str]:
        command = [sys.executable, self.test_runner]
        if self.verbose:
            command.append('-v')
        return command


def run_module(*args: str, check: bool = True) -> 'subprocess.CompletedProcess[bytes]':
    # Generated modules record paths as given, so run from the fixtures directory.
    cwd = Path.cwd().absolute()
    env = dict(os.environ)
    env['PYTHONPATH'] = os.pathsep.join(
        [str(cwd), *filter(None, [os.environ.get('PYTHONPATH')])])
    return subprocess.run(
        [sys.executable, '-m', *args],
        cwd=cwd / 'test' / 'fixtures',
        env=env,
        check=check,
        capture_output=not check,
    )


def run_tests(options: Options) -> int:
    console = options.console
    console.info("Getting started with Kozutsumi's test suite...")
    console.detail(f'Running "{sys.executable}"')
    console.detail(f' - Python {sys.version}')

    try:
        import kozutsumi
        from kozutsumi.bundle import Registry, use_registry
    except ImportError:
        console.error('Unable to import kozutsumi')
        sys.exit(1)

    console.detail(f'Testing kozutsumi {kozutsumi.__version__}')

    cwd = Path('.').absolute()
    tmpdir = cwd / 'tmp'
    fixtures = cwd / 'test' / 'fixtures'

    shutil.rmtree(tmpdir, ignore_errors=True)
    tmpdir.mkdir()

    # ----------------------------------------------------------------------------------

    console.info('Running unit tests...')

    for module in UNIT_TEST_MODULES:
        console.detail(f'╭──── {module}')
        subprocess.run([*options.test_command(), 'run-test-module', module], check=True)
        console.detail('╰─╼')

    # ----------------------------------------------------------------------------------

    console.info('Running documentation tests...')

    doc_failures, doc_tests = doctest.testfile(
        'README.md', optionflags=doctest.REPORT_NDIFF)

    if doc_failures != 0:
        console.error(f'{doc_failures}/{doc_tests} documentation tests failed!')
        sys.exit(1)

    console.detail(f'All {doc_tests} documentation tests passed')

    # ----------------------------------------------------------------------------------

    console.info('Generating modules for fixtures...')

    for label, flags, _ in FLAG_COMBINATIONS:
        for encoding, extra_flags in (('text', []), ('bytes', ['-b'])):
            target = tmpdir / f'{label}_{encoding}.py'
            run_module(
                'kozutsumi',
                '-r', '-x', '.cache',
                '-p', 'fixtures', '-n', label,
                *flags, *extra_flags,
                '-o', str(target),
                'static', 'bundled.json',
            )
            console.detail(f'Created tmp/{target.name}')

    # ----------------------------------------------------------------------------------

    console.info('Inspecting generated modules...')

    for script in sorted(tmpdir.glob('*.py')):
        completion = run_module('kozutsumi.debug', str(script), check=False)
        if completion.returncode != 0:
            console.error(f'Inspection of tmp/{script.name} failed:')
            console.detail(completion.stdout.decode('utf8'))
            sys.exit(1)
        console.detail(f'Inspected tmp/{script.name}')

    # ----------------------------------------------------------------------------------

    console.info('Comparing bundled files to originals...')

    err_count = 0
    for label, _, compressed in FLAG_COMBINATIONS:
        contents = []
        for encoding in ('text', 'bytes'):
            script = tmpdir / f'{label}_{encoding}.py'
            registry = Registry()
            with use_registry(registry):
                runpy.run_path(str(script))
            bundle = registry.lookup(label)

            if bundle.compressed != compressed:
                console.detail(
                    f'Bundle in "tmp/{script.name}" has compressed={bundle.compressed}')
                err_count += 1

            for path in bundle.list_paths():
                if bundle.read_bytes(path) != (fixtures / path).read_bytes():
                    console.detail(f'"{path}" in "tmp/{script.name}" differs from original')
                    err_count += 1
            contents.append({path: bundle.read_bytes(path) for path in bundle})

        if contents[0] != contents[1]:
            console.detail(f'Text and bytes encodings of "{label}" differ')
            err_count += 1
        else:
            console.detail(f'Both encodings of "{label}" match the originals')

    if err_count > 0:
        console.error('Bundling of fixtures is broken!')
        raise SystemExit(1)

    # ----------------------------------------------------------------------------------

    console.info('Checking error handling of command line tool...')

    completion = run_module('kozutsumi', '-o', str(tmpdir / 'never.py'), 'static', check=False)
    if completion.returncode != 1 or (tmpdir / 'never.py').exists():
        console.error('Bundling a directory without -r/--recursive did not fail!')
        sys.exit(1)
    console.detail(completion.stdout.decode('utf8').strip())

    # ----------------------------------------------------------------------------------

    console.success('W00t! All tests passed!')

    shutil.rmtree(tmpdir)
    return 0

# ======================================================================================

def run_module_test(options: Options) -> int:
    console = options.console
    module = import_module(options.module_name)

    errors = 0
    for key in dir(module):
        if not key.startswith('test_'):
            continue
        value = getattr(module, key)
        if not callable(value):
            continue

        console.detail(f'├─ {value.__name__}')
        with console.new_prefix('│   '):
            try:
                value(options.console)
            except Exception as x:
                console.exception(x)
                errors += 1

    return bool(errors + console.failed_assertions)

# --------------------------------------------------------------------------------------

if __name__ == '__main__':
    options = Options(sys.argv[0], Console(sys.stdout))
    console = options.console

    try:
        fn = run_tests
        for arg in sys.argv[1:]:
            if arg == '-v':
                options.make_verbose()
            elif arg == 'run-test-module':
                fn = run_module_test
            elif fn == run_module_test and options.module_name == '':
                options.module_name = arg
            else:
                raise SystemExit(f'unrecognized command line argument "{arg}"')

        if fn == run_module_test and options.module_name == '':
            raise SystemExit('can\'t "run-test-module" without module name')

        sys.exit(fn(options))

    except SystemExit as x:
        code = x.code
        if isinstance(code, str):
            console.error(code)
            code = 1
        sys.exit(code)

    except subprocess.CalledProcessError as x:
        console.info(
            f'command "{" ".join(map(str, x.cmd))}" failed with exit status {x.returncode}')
        sys.exit(1)

    except Exception as x:
        console.exception(x)
        sys.exit(1)
