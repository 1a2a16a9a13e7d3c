"""Output composer.

Writes the final artifact. Every writer stages its output next to the target
path and publishes it with a rename, so the output path only ever holds a
complete artifact or whatever was there before.
"""

from collections.abc import Iterator
import contextlib
import dataclasses
import os
import pathlib
import shutil
import tempfile
from typing import BinaryIO

from stubpack.archive import ArchiveStats, write_archive
from stubpack.command import CommandTemplate
from stubpack.errors import AlreadyExistsError
from stubpack.stubs import render_bundle_launchers, render_script_stub
from stubpack.trailer import Trailer


_EXECUTABLE_MODE: int = 0o755


def check_overwrite(output: pathlib.Path, *, force: bool) -> None:
    """Enforce the overwrite policy.

    :param output: Output path.
    :param force: Whether replacing an existing output is authorized.
    :raises AlreadyExistsError: If ``output`` exists and ``force`` is false.
    """

    if force is False and (output.exists() is True or output.is_symlink() is True):
        raise AlreadyExistsError(f"Output already exists (use force to replace it): {output}")


def _remove_path(path: pathlib.Path) -> None:
    if path.is_dir() is True and path.is_symlink() is False:
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _publish(staged: pathlib.Path, output: pathlib.Path, *, force: bool) -> None:
    """Move a staged artifact into place.

    :param staged: Completed artifact in the output's directory.
    :param output: Final output path.
    :param force: Whether an existing output may be replaced.
    """

    check_overwrite(output, force=force)
    if staged.is_dir() is True or output.is_dir() is True:
        # Directories cannot be swapped in one rename; drop the old tree first.
        if output.exists() is True or output.is_symlink() is True:
            _remove_path(output)
    os.replace(staged, output)


def _set_executable(path: pathlib.Path) -> None:
    if os.name == "posix":
        os.chmod(path, _EXECUTABLE_MODE)


@contextlib.contextmanager
def _staged_file(output: pathlib.Path, *, force: bool) -> Iterator[BinaryIO]:
    """Yield a temporary file that becomes ``output`` on clean exit.

    :param output: Final output path.
    :param force: Whether an existing output may be replaced.
    """

    fd, tmp_name = tempfile.mkstemp(prefix=f".{output.name}.", suffix=".tmp", dir=output.parent)
    tmp: pathlib.Path = pathlib.Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
        _set_executable(tmp)
        _publish(tmp, output, force=force)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def compose_compiled(
    *,
    output: pathlib.Path,
    stub: pathlib.Path,
    build_dir: pathlib.Path,
    trailer: Trailer,
    force: bool,
    compresslevel: int = 9,
) -> ArchiveStats:
    """Write ``stub + archive + trailer`` to ``output``.

    The trailer is written with ``archive_offset`` set to the stub size.

    :param output: Output artifact path.
    :param stub: Compiled stub file.
    :param build_dir: Finalized build directory.
    :param trailer: Trailer record.
    :param force: Whether an existing output may be replaced.
    :param compresslevel: Gzip compression level.
    :returns: Archive stats.
    """

    check_overwrite(output, force=force)
    output.parent.mkdir(parents=True, exist_ok=True)
    with _staged_file(output, force=force) as f:
        with open(stub, "rb") as src:
            shutil.copyfileobj(src, f)
        archive_offset: int = f.tell()
        stats: ArchiveStats = write_archive(build_dir, f, compresslevel=compresslevel)
        f.write(dataclasses.replace(trailer, archive_offset=archive_offset).encode())
    return stats


def compose_script(
    *,
    output: pathlib.Path,
    build_dir: pathlib.Path,
    identifier: str,
    command: CommandTemplate,
    uncompression_message: str | None,
    force: bool,
    compresslevel: int = 9,
) -> ArchiveStats:
    """Write ``shell stub + archive`` to ``output``.

    :param output: Output artifact path.
    :param build_dir: Finalized build directory.
    :param identifier: Artifact identifier baked into the script.
    :param command: Command template baked into the script.
    :param uncompression_message: Optional notice baked into the script.
    :param force: Whether an existing output may be replaced.
    :param compresslevel: Gzip compression level.
    :returns: Archive stats.
    """

    script: str = render_script_stub(
        identifier=identifier,
        command=command,
        uncompression_message=uncompression_message,
    )
    check_overwrite(output, force=force)
    output.parent.mkdir(parents=True, exist_ok=True)
    with _staged_file(output, force=force) as f:
        f.write(script.encode("utf-8"))
        stats: ArchiveStats = write_archive(build_dir, f, compresslevel=compresslevel)
    return stats


def _write_script(path: pathlib.Path, text: str) -> None:
    path.write_text(text, encoding="utf-8")
    _set_executable(path)


def compose_bundle(
    *,
    output: pathlib.Path,
    build_dir: pathlib.Path,
    command: CommandTemplate,
    force: bool,
) -> None:
    """Write a macOS application bundle to ``output``.

    Layout::

        <name>.app/Contents/MacOS/<name>      opens Resources/start
        <name>.app/Contents/Resources/start   runs the command
        <name>.app/Contents/Resources/app/    verbatim copy of build_dir

    :param output: Output ``.app`` path.
    :param build_dir: Finalized build directory.
    :param command: Command template.
    :param force: Whether an existing output may be replaced.
    """

    check_overwrite(output, force=force)
    output.parent.mkdir(parents=True, exist_ok=True)
    staged: pathlib.Path = pathlib.Path(tempfile.mkdtemp(prefix=f".{output.name}.", dir=output.parent))
    try:
        contents: pathlib.Path = staged / "Contents"
        resources: pathlib.Path = contents / "Resources"
        macos: pathlib.Path = contents / "MacOS"
        macos.mkdir(parents=True)
        resources.mkdir(parents=True)
        shutil.copytree(build_dir, resources / "app", symlinks=True)

        launcher, start = render_bundle_launchers(command=command)
        _write_script(macos / output.stem, launcher)
        _write_script(resources / "start", start)
        os.chmod(staged, 0o755)
        _publish(staged, output, force=force)
    except BaseException:
        shutil.rmtree(staged, ignore_errors=True)
        raise
