"""Command line interface for stubpack."""

import argparse
import logging
import pathlib
import sys

from stubpack.cache import AttemptState, list_attempts, purge_poisoned
from stubpack.errors import StubpackError
from stubpack.packager import PackageResult, package
from stubpack.platforms import HostPlatform
from stubpack.runtime import resolve_cache_root, run_artifact
from stubpack.stubs import default_stubs_dir
from stubpack.toolchain import DEFAULT_TARGETS, build_stubs, parse_target


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the stubpack logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("stubpack")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_verbosity(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="stubpack",
        description="Package a directory and a command into one self-extracting executable.",
        epilog=(
            "Example: stubpack build ./app -o dist/app.sh -- "
            "'{{app}}/bin/python3' '{{app}}/main.py' 'some argument'"
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser("build", help="Build an artifact.")
    p_build.add_argument("input", type=pathlib.Path, help="Application directory to package.")
    p_build.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Output path. '.app' builds a macOS bundle, '.sh' a shell script, anything else a binary.",
    )
    p_build.add_argument(
        "argv",
        nargs="+",
        metavar="COMMAND",
        help="Command and arguments to run; '{{app}}' expands to the extracted directory.",
    )
    p_build.add_argument(
        "--identifier",
        type=str,
        default=None,
        help="Extraction cache identifier (default: '<output name>/<random>').",
    )
    p_build.add_argument(
        "--uncompression-message",
        type=str,
        default=None,
        help="Message printed the first time the artifact extracts itself.",
    )
    p_build.add_argument("-f", "--force", action="store_true", help="Replace an existing output.")
    p_build.add_argument(
        "-e",
        "--exclude",
        action="append",
        default=[],
        help="Glob (relative to the input) to leave out. May be repeated.",
    )
    p_build.add_argument(
        "-r",
        "--requirements",
        type=pathlib.Path,
        default=None,
        help="requirements.txt to install into 'deps/' inside the package.",
    )
    p_build.add_argument(
        "--prepare-command",
        type=str,
        default=None,
        help="Shell command run inside the build directory before archiving.",
    )
    p_build.add_argument(
        "--include-runtime",
        type=pathlib.Path,
        default=None,
        help="Binary to copy into 'bin/' inside the package (e.g. an interpreter).",
    )
    p_build.add_argument("--stub", type=pathlib.Path, default=None, help="Explicit compiled stub.")
    p_build.add_argument(
        "--stubs-dir",
        type=pathlib.Path,
        default=None,
        help="Directory holding stub--<os>--<arch> files.",
    )
    p_build.add_argument(
        "--keep-build-directory",
        action="store_true",
        help="Do not delete the build directory (for debugging).",
    )
    p_build.add_argument(
        "--compresslevel",
        type=int,
        default=9,
        help="Gzip compression level (0-9).",
    )
    _add_verbosity(p_build)

    p_run = subparsers.add_parser(
        "run",
        help="Run a compiled-stub artifact through the Python runtime.",
    )
    p_run.add_argument("artifact", type=pathlib.Path, help="Artifact to run.")
    p_run.add_argument(
        "--payload-offset",
        type=int,
        default=None,
        help="Size in bytes of the artifact's stub (default: read from the trailer).",
    )
    p_run.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the command.")
    _add_verbosity(p_run)

    p_stubs = subparsers.add_parser("stubs", help="Build compiled stubs from the shipped Go source.")
    p_stubs.add_argument("action", choices=["build"])
    p_stubs.add_argument(
        "--target",
        action="append",
        default=[],
        help="<os>/<arch> to build for, e.g. linux/x86_64. May be repeated (default: this host).",
    )
    p_stubs.add_argument("--all", action="store_true", help="Build every supported target.")
    p_stubs.add_argument(
        "--output-dir",
        type=pathlib.Path,
        default=None,
        help="Where to write stub--<os>--<arch> files (default: the package's prebuilt/ directory).",
    )
    p_stubs.add_argument("--go", type=str, default=None, help="Path to the go executable.")
    _add_verbosity(p_stubs)

    p_cache = subparsers.add_parser("cache", help="Inspect or clean the extraction cache.")
    p_cache.add_argument("action", choices=["list", "purge"])
    p_cache.add_argument("identifier", type=str, help="Artifact identifier.")
    p_cache.add_argument(
        "--cache-dir",
        type=pathlib.Path,
        default=None,
        help="Cache root (default: $STUBPACK_CACHE_DIR or <tmp>/stubpack).",
    )
    _add_verbosity(p_cache)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the stubpack CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            result: PackageResult = package(
                input_dir=ns.input,
                output=ns.output,
                command=ns.argv,
                identifier=ns.identifier,
                uncompression_message=ns.uncompression_message,
                force=ns.force,
                exclude=tuple(ns.exclude),
                requirements=ns.requirements,
                prepare_command=ns.prepare_command,
                include_runtime=ns.include_runtime,
                stub=ns.stub,
                stubs_dir=ns.stubs_dir,
                keep_build_directory=ns.keep_build_directory,
                compresslevel=ns.compresslevel,
                logger=logger,
            )
            if result.build_directory is not None:
                logger.info(f"stubpack: kept build directory {result.build_directory}")
            return 0

        if ns.command == "run":
            extra: list[str] = list(ns.args)
            if len(extra) > 0 and extra[0] == "--":
                extra = extra[1:]
            run_artifact(ns.artifact, payload_offset=ns.payload_offset, argv=extra)
            return 0

        if ns.command == "stubs":
            targets: list[HostPlatform]
            if ns.all is True:
                targets = list(DEFAULT_TARGETS)
            elif len(ns.target) > 0:
                targets = [parse_target(t) for t in ns.target]
            else:
                targets = [HostPlatform.detect()]
            build_stubs(
                targets=targets,
                output_dir=ns.output_dir if ns.output_dir is not None else default_stubs_dir(),
                go=ns.go,
                logger=logger,
            )
            return 0

        if ns.command == "cache":
            cache_root: pathlib.Path = ns.cache_dir if ns.cache_dir is not None else resolve_cache_root()
            if ns.action == "list":
                states: list[AttemptState] = list_attempts(cache_root, ns.identifier)
                for s in states:
                    status: str = "complete" if s.complete is True else ("locked" if s.locked is True else "empty")
                    print(f"{s.number}\t{status}")
                return 0
            removed: list[int] = purge_poisoned(cache_root, ns.identifier, logger=logger)
            logger.info(f"stubpack: purged {len(removed)} attempt(s)")
            return 0
    except StubpackError as e:
        sys.stderr.write(f"stubpack: error: {e}\n")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
