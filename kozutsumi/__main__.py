from argparse import ArgumentParser, HelpFormatter, RawTextHelpFormatter
from dataclasses import dataclass, field
import os
import sys
from textwrap import dedent
import traceback

from .maker import BundleMaker


def parser() -> ArgumentParser:
    try:
        width = min(os.get_terminal_size()[0], 70)
    except OSError:
        width = 70

    def width_limited_formatter(prog: str) -> HelpFormatter:
        return RawTextHelpFormatter(prog, width=width)

    parser = ArgumentParser('kozutsumi',
        description=dedent("""
            Compile static files into a Python module, so that a program can
            ship them without depending on the file system at runtime.

            To bundle a set of files:

                python -m kozutsumi -p entries -o entries.py \\
                    /etc/passwd /etc/hosts /etc/services

            To bundle a whole directory:

                python -m kozutsumi -r -p etc -o etc.py /etc

            Importing the generated module builds the bundle and registers it
            under its name. The program then reads files either through the
            module's <NAME>_BUNDLE constant or through the registry:

                from kozutsumi.bundle import registry
                data = registry.lookup('etc').read_bytes('etc/hosts')

            For larger bundles it is highly recommended that the files be
            compressed, possibly in conjunction with the other flags that
            modify the bundle's behavior:

                python -m kozutsumi -r -c -i -u -p etc -o etc.py /etc

            With -c/--compress alone, every read inflates the file again. With
            -u/--retain-uncompressed, the first read of a file caches the
            inflated bytes. With -i/--uncompress-on-init, all files are
            inflated once, while the generated module is imported.
        """),
        formatter_class=width_limited_formatter)
    parser.add_argument(
        '-o', '--target',
        metavar='FILENAME',
        help='write generated module to this file')
    parser.add_argument(
        '-p', '--package',
        help="package name (inferred from target's directory\nif not provided)")
    parser.add_argument(
        '-n', '--bundle',
        help='bundle name (inferred from package if not provided)')
    parser.add_argument(
        '-x', '--exclude',
        metavar='GLOBS',
        action='append',
        default=[],
        help='comma-separated globs to exclude; may be repeated')
    parser.add_argument(
        '-r', '--recursive',
        action='store_true',
        help='recursively add files')
    parser.add_argument(
        '-c', '--compress',
        action='store_true',
        help='compress files before encoding')
    parser.add_argument(
        '-u', '--retain-uncompressed',
        action='store_true',
        help='retain the uncompressed copy on initial access')
    parser.add_argument(
        '-i', '--uncompress-on-init',
        action='store_true',
        help='uncompress files while importing the module')
    parser.add_argument(
        '-b', '--encode-as-bytes',
        action='store_true',
        help='encode as explicit byte sequences instead of\nescaped bytes literals')
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='enable verbose output')
    parser.add_argument(
        'paths',
        metavar='PATH', nargs='+',
        help='files to bundle, or directories with -r/--recursive')
    return parser


@dataclass
class ToolOptions:
    target: 'None | str' = None
    package: 'None | str' = None
    bundle: 'None | str' = None
    exclude: 'list[str]' = field(default_factory=list)
    recursive: bool = False
    compress: bool = False
    retain_uncompressed: bool = False
    uncompress_on_init: bool = False
    encode_as_bytes: bool = False
    verbose: bool = False
    paths: 'list[str]' = field(default_factory=list)

    def excludes(self) -> 'list[str]':
        return [glob for globs in self.exclude for glob in globs.split(',') if glob]


def trace_to_stderr(key: str) -> None:
    print(key, file=sys.stderr)


def main() -> None:
    options = parser().parse_args(namespace=ToolOptions())

    try:
        if (
            (options.retain_uncompressed or options.uncompress_on_init)
            and not options.compress
        ):
            raise ValueError(
                '--retain-uncompressed/--uncompress-on-init require --compress')

        BundleMaker(
            options.paths,
            target=options.target,
            package=options.package,
            bundle=options.bundle,
            recursive=options.recursive,
            excludes=options.excludes(),
            compress=options.compress,
            retain_uncompressed=options.retain_uncompressed,
            decompress_on_finalize=options.uncompress_on_init,
            encode_as_bytes=options.encode_as_bytes,
            trace=trace_to_stderr if options.verbose else None,
        ).run()
    except Exception as x:
        if options.verbose:
            traceback.print_exception(type(x), x, x.__traceback__)
        else:
            print(f'Error: {x}')
        sys.exit(1)


if __name__ == '__main__':
    main()
