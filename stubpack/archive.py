"""Archive builder.

Compresses a finalized build directory into a gzip-compressed tar stream:

- Entries are named relative to the build directory root, with ``/``
  separators and no root segment.
- Permission bits are preserved; ownership is reset so nothing about the
  build host leaks into the artifact.
- The gzip header carries no file name and a zero mtime.
"""

from dataclasses import dataclass
import gzip
import os
import pathlib
import tarfile
from typing import BinaryIO

from stubpack.errors import ArchiveError, InputError


@dataclass(frozen=True, slots=True)
class ArchiveStats:
    """Stats collected while writing an archive.

    :ivar entries: Number of tar entries written.
    :ivar bytes_written: Compressed bytes written to the destination stream.
    """

    entries: int
    bytes_written: int


class _ArchiveSink:
    """Write-only wrapper that turns destination I/O failures into :class:`ArchiveError`.

    Read failures on the source tree happen inside :mod:`tarfile` and stay
    plain :class:`OSError`; only the destination goes through this wrapper.
    """

    _stream: BinaryIO
    bytes_written: int

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        try:
            self._stream.write(data)
        except OSError as e:
            raise ArchiveError(f"Failed to write archive stream: {e}") from e
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        try:
            self._stream.flush()
        except OSError as e:
            raise ArchiveError(f"Failed to flush archive stream: {e}") from e


def _portable_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
    """Strip host-specific ownership from an entry.

    :param info: Entry produced by :meth:`tarfile.TarFile.gettarinfo`.
    :returns: The same entry with ownership reset.
    """

    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def iter_entries(root: pathlib.Path) -> list[tuple[pathlib.Path, str]]:
    """List the archive entries for a directory, sorted by archive name.

    Symlinked directories are stored as links and not descended into.

    :param root: Build directory.
    :returns: ``(source_path, arcname)`` pairs.
    :raises OSError: If the tree cannot be read.
    """

    def raise_error(e: OSError) -> None:
        raise e

    entries: list[tuple[pathlib.Path, str]] = []
    for root_str, dirs, files in os.walk(root, topdown=True, onerror=raise_error):
        root_path: pathlib.Path = pathlib.Path(root_str)
        dirs.sort()
        for name in [*dirs, *files]:
            p: pathlib.Path = root_path / name
            arcname: str = p.relative_to(root).as_posix()
            entries.append((p, arcname))
    entries.sort(key=lambda e: e[1])
    return entries


def write_archive(build_dir: pathlib.Path, stream: BinaryIO, *, compresslevel: int = 9) -> ArchiveStats:
    """Write ``build_dir`` as a ``.tar.gz`` stream.

    :param build_dir: Finalized build directory.
    :param stream: Binary destination, positioned where the archive should start.
    :param compresslevel: Gzip compression level (0-9).
    :returns: Archive stats.
    :raises InputError: If ``build_dir`` is not a directory or the level is invalid.
    :raises OSError: If the source tree cannot be read.
    :raises ArchiveError: If writing to ``stream`` fails.
    """

    if compresslevel < 0 or compresslevel > 9:
        raise InputError(f"Invalid compresslevel={compresslevel}; expected 0-9.")
    if build_dir.is_dir() is False:
        raise InputError(f"Build directory is not a directory: {build_dir}")

    entries: list[tuple[pathlib.Path, str]] = iter_entries(build_dir)
    sink: _ArchiveSink = _ArchiveSink(stream)

    gz: gzip.GzipFile = gzip.GzipFile(
        filename="",
        mode="wb",
        compresslevel=compresslevel,
        fileobj=sink,  # type: ignore[arg-type]
        mtime=0,
    )
    with gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:  # type: ignore[arg-type]
            for path, arcname in entries:
                tar.add(path, arcname=arcname, recursive=False, filter=_portable_tarinfo)
    sink.flush()

    return ArchiveStats(entries=len(entries), bytes_written=sink.bytes_written)
