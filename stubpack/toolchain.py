"""Compiled stub builds.

The compiled stub is a small Go program shipped in ``stub_src/``. It speaks
the same extraction protocol as :mod:`stubpack.runtime` and reads the archive
offset from the trailer. Go cross-compiles static binaries without a C
toolchain, so one machine can produce ``stub--<os>--<arch>`` for every
supported platform.
"""

import logging
import os
import pathlib
import shutil
import time

from stubpack.errors import ExternalCommandError, InputError, PlatformUnsupportedError
from stubpack.platforms import HostPlatform, normalize_arch, normalize_os
from stubpack.staging import run_command


_GOOS: dict[str, str] = {
    "linux": "linux",
    "darwin": "darwin",
    "win32": "windows",
}

_GOARCH: dict[str, dict[str, str]] = {
    "x86_64": {"GOARCH": "amd64"},
    "aarch64": {"GOARCH": "arm64"},
    "armv7l": {"GOARCH": "arm", "GOARM": "7"},
    "i686": {"GOARCH": "386"},
}

DEFAULT_TARGETS: tuple[HostPlatform, ...] = (
    HostPlatform(os="linux", arch="x86_64"),
    HostPlatform(os="linux", arch="aarch64"),
    HostPlatform(os="darwin", arch="x86_64"),
    HostPlatform(os="darwin", arch="aarch64"),
    HostPlatform(os="win32", arch="x86_64"),
    HostPlatform(os="win32", arch="aarch64"),
)


def stub_source_dir() -> pathlib.Path:
    """Return the Go source directory of the compiled stub."""

    return pathlib.Path(__file__).parent / "stub_src"


def parse_target(text: str) -> HostPlatform:
    """Parse an ``<os>/<arch>`` target such as ``linux/arm64``.

    :param text: Target string.
    :returns: Normalized platform.
    :raises InputError: If the string is not of the form ``os/arch``.
    """

    os_part, sep, arch_part = text.partition("/")
    if sep == "" or len(os_part) == 0 or len(arch_part) == 0:
        raise InputError(f"Invalid target {text!r}; expected '<os>/<arch>' (e.g. 'linux/x86_64').")
    return HostPlatform(os=normalize_os(os_part), arch=normalize_arch(arch_part))


def go_environment(target: HostPlatform) -> dict[str, str]:
    """Return the Go cross-compilation variables for a target.

    :param target: Target platform.
    :returns: ``GOOS``/``GOARCH`` (and ``GOARM``) plus ``CGO_ENABLED=0``.
    :raises PlatformUnsupportedError: If Go has no mapping for the target.
    """

    goos: str | None = _GOOS.get(target.os)
    goarch: dict[str, str] | None = _GOARCH.get(target.arch)
    if goos is None or goarch is None:
        raise PlatformUnsupportedError(f"No compiled stub build for os={target.os} arch={target.arch}.")
    return {"GOOS": goos, "CGO_ENABLED": "0", **goarch}


def build_stubs(
    *,
    targets: tuple[HostPlatform, ...] | list[HostPlatform],
    output_dir: pathlib.Path,
    source_dir: pathlib.Path | None = None,
    go: str | None = None,
    logger: logging.Logger | None = None,
) -> list[pathlib.Path]:
    """Cross-compile the stub for each target with ``go build``.

    :param targets: Platforms to build for.
    :param output_dir: Directory receiving ``stub--<os>--<arch>`` files.
    :param source_dir: Go module to build (defaults to the shipped source).
    :param go: ``go`` executable (looked up on ``PATH`` when omitted).
    :param logger: Optional logger for progress output.
    :returns: Paths of the built stubs.
    :raises InputError: If the source directory is missing or no target is given.
    :raises PlatformUnsupportedError: If a target has no Go mapping.
    :raises ExternalCommandError: If ``go`` is missing or a build fails.
    """

    if logger is None:
        logger = logging.getLogger("stubpack")
    if source_dir is None:
        source_dir = stub_source_dir()
    if (source_dir / "go.mod").is_file() is False:
        raise InputError(f"Stub source not found (no go.mod): {source_dir}")
    if len(targets) == 0:
        raise InputError("No stub targets given.")

    envs: list[tuple[HostPlatform, dict[str, str]]] = [(t, go_environment(t)) for t in targets]

    go_bin: str | None = go if go is not None else shutil.which("go")
    if go_bin is None:
        raise ExternalCommandError(
            "The Go toolchain ('go') was not found on PATH; it is needed to build compiled stubs.",
            command=["go"],
            returncode=None,
        )

    output_dir = output_dir.resolve()
    output_dir.mkdir(parents=True, exist_ok=True)

    built: list[pathlib.Path] = []
    for target, go_env in envs:
        out: pathlib.Path = output_dir / target.stub_name
        t0: float = time.perf_counter()
        run_command(
            [go_bin, "build", "-trimpath", "-ldflags=-s -w", "-o", str(out), "."],
            cwd=source_dir,
            shell=False,
            what=f"go build ({target.os}/{target.arch})",
            logger=logger,
            env={**os.environ, **go_env},
        )
        t1: float = time.perf_counter()
        logger.info(f"stubpack: built {out.name} in {t1 - t0:.2f}s")
        built.append(out)
    return built
