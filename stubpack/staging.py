"""Build directory assembly.

Everything that happens before archiving: copying the input tree into a fresh
build directory, installing Python requirements into it, running a
user-supplied prepare command, and optionally embedding a runtime binary.
"""

from dataclasses import dataclass
import fnmatch
import logging
import os
import pathlib
import shutil
import subprocess
import sys
import tempfile

from stubpack.errors import ExternalCommandError, InputError


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying a directory tree.

    :ivar files_copied: Number of files (and symlinks) copied.
    :ivar bytes_copied: Total bytes copied (best-effort).
    """

    files_copied: int
    bytes_copied: int


def create_build_directory() -> pathlib.Path:
    """Create a fresh, uniquely named build directory."""

    return pathlib.Path(tempfile.mkdtemp(prefix="stubpack-build-"))


def _matches(relpath: pathlib.PurePosixPath, patterns: tuple[str, ...]) -> bool:
    """Check a relative path (and its ancestors) against exclude globs.

    :param relpath: Path relative to the input root.
    :param patterns: ``fnmatch`` patterns matched against POSIX relative paths.
    :returns: ``True`` if excluded.
    """

    candidates: list[str] = [relpath.as_posix()]
    for parent in relpath.parents:
        if parent.as_posix() != ".":
            candidates.append(parent.as_posix())
    for c in candidates:
        for pattern in patterns:
            if fnmatch.fnmatchcase(c, pattern) is True:
                return True
    return False


def copy_input(
    *,
    src: pathlib.Path,
    dst: pathlib.Path,
    exclude: tuple[str, ...] = (),
    output: pathlib.Path | None = None,
) -> CopyStats:
    """Copy the input tree into the build directory.

    Files keep their permission bits. Symlinks are copied as symlinks.

    :param src: Input directory.
    :param dst: Build directory.
    :param exclude: Glob patterns (relative to ``src``) to skip.
    :param output: Output artifact path; skipped when it lies inside ``src``.
    :returns: Copy statistics.
    :raises OSError: If the input cannot be read.
    """

    patterns: list[str] = list(exclude)
    if output is not None:
        src_resolved: pathlib.Path = src.resolve()
        out_resolved: pathlib.Path = output.resolve()
        if out_resolved.is_relative_to(src_resolved) is True:
            patterns.append(out_resolved.relative_to(src_resolved).as_posix())
    all_patterns: tuple[str, ...] = tuple(patterns)

    def raise_error(e: OSError) -> None:
        raise e

    files_copied: int = 0
    bytes_copied: int = 0
    dst.mkdir(parents=True, exist_ok=True)

    for root_str, dirs, files in os.walk(src, topdown=True, onerror=raise_error):
        root_path: pathlib.Path = pathlib.Path(root_str)
        rel_root: pathlib.PurePosixPath = pathlib.PurePosixPath(root_path.relative_to(src).as_posix())

        keep_dirs: list[str] = []
        for d in dirs:
            rel_d: pathlib.PurePosixPath = rel_root / d
            if _matches(rel_d, all_patterns) is True:
                continue
            src_d: pathlib.Path = root_path / d
            dest_d: pathlib.Path = dst / rel_d
            if src_d.is_symlink() is True:
                os.symlink(os.readlink(src_d), dest_d)
                files_copied += 1
                continue
            dest_d.mkdir(exist_ok=True)
            shutil.copystat(src_d, dest_d)
            keep_dirs.append(d)
        dirs[:] = keep_dirs

        for name in files:
            rel_f: pathlib.PurePosixPath = rel_root / name
            if _matches(rel_f, all_patterns) is True:
                continue
            src_path: pathlib.Path = root_path / name
            dest_path: pathlib.Path = dst / rel_f
            shutil.copy2(src_path, dest_path, follow_symlinks=False)
            files_copied += 1
            try:
                bytes_copied += src_path.lstat().st_size
            except OSError:
                pass

    shutil.copystat(src, dst)
    return CopyStats(files_copied=files_copied, bytes_copied=bytes_copied)


def run_command(
    cmd: list[str] | str,
    *,
    cwd: pathlib.Path,
    shell: bool,
    what: str,
    logger: logging.Logger,
    env: dict[str, str] | None = None,
) -> None:
    """Run a blocking child process.

    :param cmd: Command (a string when ``shell`` is true).
    :param cwd: Working directory.
    :param shell: Whether to run through the shell.
    :param what: Short description for error messages.
    :param logger: Logger for debug output.
    :param env: Environment for the child (inherited when omitted).
    :raises ExternalCommandError: If the process fails.
    """

    argv: list[str] = [cmd] if isinstance(cmd, str) else list(cmd)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"stubpack: running {what}: {' '.join(argv)}")

    try:
        proc = subprocess.run(cmd, cwd=cwd, shell=shell, env=env, check=False)
    except OSError as e:
        raise ExternalCommandError(
            f"{what} could not be started: {e}",
            command=argv,
            returncode=None,
        ) from e
    if proc.returncode != 0:
        raise ExternalCommandError(
            f"{what} failed (exit={proc.returncode}): {' '.join(argv)}",
            command=argv,
            returncode=proc.returncode,
        )


def install_requirements(
    *,
    build_dir: pathlib.Path,
    requirements: pathlib.Path,
    logger: logging.Logger,
) -> pathlib.Path:
    """Install a requirements file into ``<build_dir>/deps`` with pip.

    :param build_dir: Build directory.
    :param requirements: requirements.txt path.
    :param logger: Logger for progress output.
    :returns: The deps directory.
    :raises InputError: If the requirements file does not exist.
    :raises ExternalCommandError: If pip fails.
    """

    if requirements.is_file() is False:
        raise InputError(f"requirements file does not exist: {requirements}")

    deps_dir: pathlib.Path = build_dir / "deps"
    deps_dir.mkdir(parents=True, exist_ok=True)
    run_command(
        [
            sys.executable,
            "-m",
            "pip",
            "install",
            "--disable-pip-version-check",
            "--no-compile",
            "--target",
            str(deps_dir),
            "--requirement",
            str(requirements.resolve()),
        ],
        cwd=build_dir,
        shell=False,
        what="pip install",
        logger=logger,
    )
    return deps_dir


def run_prepare_command(*, build_dir: pathlib.Path, command: str, logger: logging.Logger) -> None:
    """Run a user-supplied shell command inside the build directory.

    :param build_dir: Build directory (working directory of the command).
    :param command: Shell command line.
    :param logger: Logger for progress output.
    :raises ExternalCommandError: If the command fails.
    """

    run_command(command, cwd=build_dir, shell=True, what="prepare command", logger=logger)


def include_runtime(*, build_dir: pathlib.Path, runtime: pathlib.Path) -> pathlib.Path:
    """Copy a runtime binary into ``<build_dir>/bin``.

    :param build_dir: Build directory.
    :param runtime: Binary to embed (e.g. an interpreter).
    :returns: Path of the copy inside the build directory.
    :raises InputError: If ``runtime`` is not a file.
    """

    if runtime.is_file() is False:
        raise InputError(f"Runtime binary does not exist: {runtime}")
    bin_dir: pathlib.Path = build_dir / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    dest: pathlib.Path = bin_dir / runtime.name
    shutil.copy2(runtime, dest)
    return dest
