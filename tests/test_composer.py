import dataclasses
import io
import os
import pathlib
import stat
import sys
import tarfile

import pytest

from stubpack.command import CommandTemplate
from stubpack.composer import compose_bundle, compose_compiled, compose_script
from stubpack.errors import AlreadyExistsError, ArchiveError
from stubpack.runtime import script_payload_offset
from stubpack.trailer import Trailer, read_trailer


def _names(data: bytes) -> list[str]:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return sorted(tar.getnames())


def test_compiled_layout(tmp_path: pathlib.Path, app_dir: pathlib.Path, stubs_dir: pathlib.Path, stub_bytes: bytes) -> None:
    out = tmp_path / "dist" / "tool"
    trailer = Trailer(identifier="tool/abc", command=("{{app}}/bin/tool",))
    compose_compiled(
        output=out,
        stub=stubs_dir / "stub--linux--x86_64",
        build_dir=app_dir,
        trailer=trailer,
        force=False,
    )

    data = out.read_bytes()
    assert data.startswith(stub_bytes)
    parsed, offset = read_trailer(out)
    assert parsed == dataclasses.replace(trailer, archive_offset=len(stub_bytes))
    assert data[offset:] == parsed.encode()
    assert _names(data[len(stub_bytes) : offset]) == ["bin", "bin/tool", "entry.js"]
    if os.name == "posix":
        assert stat.S_IMODE(out.stat().st_mode) == 0o755


def test_script_layout(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    out = tmp_path / "tool.sh"
    compose_script(
        output=out,
        build_dir=app_dir,
        identifier="tool/abc",
        command=CommandTemplate.parse(["{{app}}/bin/tool"]),
        uncompression_message=None,
        force=False,
    )

    data = out.read_bytes()
    assert data.startswith(b"#!/usr/bin/env sh\n")
    offset = script_payload_offset(out)
    assert data[offset : offset + 2] == b"\x1f\x8b"
    assert _names(data[offset:]) == ["bin", "bin/tool", "entry.js"]


def test_existing_output_is_left_untouched(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    out = tmp_path / "tool.sh"
    out.write_bytes(b"precious")
    with pytest.raises(AlreadyExistsError):
        compose_script(
            output=out,
            build_dir=app_dir,
            identifier="x",
            command=CommandTemplate.parse(["true"]),
            uncompression_message=None,
            force=False,
        )
    assert out.read_bytes() == b"precious"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["app", "tool.sh"]


def test_force_replaces_output(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    out = tmp_path / "tool.sh"
    out.write_bytes(b"old" * 100000)
    compose_script(
        output=out,
        build_dir=app_dir,
        identifier="x",
        command=CommandTemplate.parse(["true"]),
        uncompression_message=None,
        force=True,
    )
    data = out.read_bytes()
    assert data.startswith(b"#!/usr/bin/env sh\n")
    assert b"oldold" not in data


def test_failed_write_publishes_nothing(
    tmp_path: pathlib.Path, app_dir: pathlib.Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken(*args, **kwargs):
        raise ArchiveError("disk full")

    monkeypatch.setattr("stubpack.composer.write_archive", broken)
    out = tmp_path / "tool.sh"
    with pytest.raises(ArchiveError):
        compose_script(
            output=out,
            build_dir=app_dir,
            identifier="x",
            command=CommandTemplate.parse(["true"]),
            uncompression_message=None,
            force=False,
        )
    assert out.exists() is False
    assert sorted(p.name for p in tmp_path.iterdir()) == ["app"]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell launchers")
def test_bundle_layout_and_replacement(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    out = tmp_path / "Tool.app"
    out.mkdir()
    (out / "stale").write_text("old", encoding="utf-8")

    compose_bundle(
        output=out,
        build_dir=app_dir,
        command=CommandTemplate.parse(["{{app}}/bin/tool"]),
        force=True,
    )

    assert (out / "stale").exists() is False
    launcher = out / "Contents" / "MacOS" / "Tool"
    start = out / "Contents" / "Resources" / "start"
    assert launcher.read_text(encoding="utf-8").startswith("#!/usr/bin/env sh\nopen ")
    assert '"$(dirname "$0")/app"/bin/tool' in start.read_text(encoding="utf-8")
    assert os.access(launcher, os.X_OK) is True
    assert (out / "Contents" / "Resources" / "app" / "entry.js").is_file() is True
    assert os.access(out / "Contents" / "Resources" / "app" / "bin" / "tool", os.X_OK) is True
    assert app_dir.is_dir() is True


def test_bundle_without_force(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    out = tmp_path / "Tool.app"
    out.mkdir()
    with pytest.raises(AlreadyExistsError):
        compose_bundle(output=out, build_dir=app_dir, command=CommandTemplate.parse(["x"]), force=False)
    assert list(out.iterdir()) == []
