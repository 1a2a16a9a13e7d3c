import io
import os
import pathlib
import stat
import sys
import tarfile

import pytest

from stubpack.archive import write_archive
from stubpack.errors import ArchiveError, InputError


def _members(data: bytes) -> dict[str, tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return {m.name: m for m in tar.getmembers()}


def test_entries_are_root_relative(app_dir: pathlib.Path) -> None:
    (app_dir / "empty").mkdir()
    buf = io.BytesIO()
    stats = write_archive(app_dir, buf)

    members = _members(buf.getvalue())
    assert sorted(members) == ["bin", "bin/tool", "empty", "entry.js"]
    assert stats.entries == 4
    assert stats.bytes_written == len(buf.getvalue())
    for name in members:
        assert name.startswith("/") is False
        assert str(app_dir) not in name
        assert name.startswith("app/") is False


def test_ownership_is_reset(app_dir: pathlib.Path) -> None:
    buf = io.BytesIO()
    write_archive(app_dir, buf)
    for m in _members(buf.getvalue()).values():
        assert (m.uid, m.gid, m.uname, m.gname) == (0, 0, "", "")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
def test_permission_bits_preserved(app_dir: pathlib.Path) -> None:
    buf = io.BytesIO()
    write_archive(app_dir, buf)
    members = _members(buf.getvalue())
    assert stat.S_IMODE(members["bin/tool"].mode) == 0o755
    assert members["bin/tool"].mode & stat.S_IXUSR


def test_no_host_path_in_stream(app_dir: pathlib.Path) -> None:
    buf = io.BytesIO()
    write_archive(app_dir, buf)
    raw = buf.getvalue()
    # gzip header: magic, method, flags (no FNAME), zero mtime.
    assert raw[0:2] == b"\x1f\x8b"
    assert raw[3] & 0x08 == 0
    assert raw[4:8] == b"\x00\x00\x00\x00"


def test_same_tree_gives_same_bytes(app_dir: pathlib.Path) -> None:
    a = io.BytesIO()
    b = io.BytesIO()
    write_archive(app_dir, a)
    write_archive(app_dir, b)
    assert a.getvalue() == b.getvalue()


class _BrokenStream(io.RawIOBase):
    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        raise OSError(28, "No space left on device")


def test_write_failure_raises_archive_error(app_dir: pathlib.Path) -> None:
    (app_dir / "big.bin").write_bytes(os.urandom(256 * 1024))
    with pytest.raises(ArchiveError):
        write_archive(app_dir, _BrokenStream())  # type: ignore[arg-type]


@pytest.mark.skipif(
    sys.platform == "win32" or (hasattr(os, "geteuid") and os.geteuid() == 0),
    reason="needs POSIX permissions enforced for the current user",
)
def test_unreadable_source_raises_oserror(app_dir: pathlib.Path) -> None:
    secret = app_dir / "secret"
    secret.write_text("x", encoding="utf-8")
    os.chmod(secret, 0)
    try:
        with pytest.raises(OSError):
            write_archive(app_dir, io.BytesIO())
    finally:
        os.chmod(secret, 0o644)


def test_rejects_missing_directory(tmp_path: pathlib.Path) -> None:
    with pytest.raises(InputError):
        write_archive(tmp_path / "missing", io.BytesIO())


def test_rejects_bad_compresslevel(app_dir: pathlib.Path) -> None:
    with pytest.raises(InputError):
        write_archive(app_dir, io.BytesIO(), compresslevel=10)
