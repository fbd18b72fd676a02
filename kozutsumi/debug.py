from pathlib import Path
import runpy
import sys

from kozutsumi.bundle import BundleError, Registry, use_registry


def inspect(script: Path) -> int:
    """Print the decoded size of every file bundled by the script."""
    try:
        with use_registry(Registry()) as isolated:
            runpy.run_path(str(script), run_name='__kozutsumi_debug__')
    except Exception as x:
        print(f'Error: unable to load bundle script ({x})')
        return 1

    malformed = 0
    for bundle in sorted(isolated.list_all(), key=lambda b: b.name):
        policy = 'compressed' if bundle.compressed else 'uncompressed'
        print(f'bundle "{bundle.name}" is {policy} with {len(bundle)} files')

        for path in bundle.list_paths():
            try:
                data = bundle.read_bytes(path)
            except BundleError as x:
                malformed += 1
                stored = bundle.record(path).stored
                print(f'Error: bundled file "{path}" is malformed ({x}):')
                print(f'    {stored[:60]!r}')
                continue

            if not data:
                print(f'bundled file "{path}" is empty')
            else:
                print(f'bundled file "{path}" has {len(data)} bytes')

    return 1 if malformed else 0


if __name__ == '__main__':
    if len(sys.argv) != 2:
        print('Usage: python -m kozutsumi.debug <path-to-generated-module>')
        sys.exit(1)

    script = Path(sys.argv[1])
    if script.suffix != '.py':
        print(f'Error: "{script}" does not appear to be Python source code')
        sys.exit(1)

    sys.exit(inspect(script))
