import pathlib

import pytest

from stubpack import cli
from stubpack.runtime import run_artifact
from stubpack.trailer import read_trailer


def _stub(tmp_path: pathlib.Path, stub_bytes: bytes) -> pathlib.Path:
    path = tmp_path / "stub.bin"
    path.write_bytes(stub_bytes)
    return path


def test_build_then_run(
    tmp_path: pathlib.Path,
    app_dir: pathlib.Path,
    stub_bytes: bytes,
    cache_root: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    out = tmp_path / "tool.exe"
    rc = cli.main(
        [
            "build",
            str(app_dir),
            "-o",
            str(out),
            "--stub",
            str(_stub(tmp_path, stub_bytes)),
            "--identifier",
            "cli-tool",
            "-q",
            "--",
            "{{app}}/bin/tool",
            "hello",
        ]
    )
    assert rc == 0
    trailer, _ = read_trailer(out)
    assert trailer.identifier == "cli-tool"
    assert trailer.command == ("{{app}}/bin/tool", "hello")

    seen: list[list[str]] = []

    def fake_run(artifact, *, payload_offset, argv):
        return run_artifact(artifact, payload_offset=payload_offset, argv=argv, exec_fn=seen.append)

    monkeypatch.setattr("stubpack.cli.run_artifact", fake_run)
    rc = cli.main(["run", "--payload-offset", str(len(stub_bytes)), "-q", str(out), "world"])
    assert rc == 0
    resolved = cache_root / "applications" / "cli-tool" / "0"
    assert seen == [[f"{resolved}/bin/tool", "hello", "world"]]


def test_build_error_returns_one(
    tmp_path: pathlib.Path, app_dir: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    out = tmp_path / "tool.exe"
    out.write_bytes(b"existing")
    rc = cli.main(["build", str(app_dir), "-o", str(out), "-q", "--", "{{app}}/bin/tool"])
    assert rc == 1
    assert "stubpack: error:" in capsys.readouterr().err
    assert out.read_bytes() == b"existing"


def test_cache_list_and_purge(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    root = tmp_path / "cache"
    (root / "applications" / "tool" / "0").mkdir(parents=True)
    (root / "locks" / "tool" / "0").mkdir(parents=True)
    (root / "applications" / "tool" / "1").mkdir(parents=True)

    assert cli.main(["cache", "list", "tool", "--cache-dir", str(root)]) == 0
    assert capsys.readouterr().out.splitlines() == ["0\tlocked", "1\tcomplete"]

    assert cli.main(["cache", "purge", "tool", "--cache-dir", str(root), "-q"]) == 0
    assert (root / "locks" / "tool" / "0").exists() is False

    assert cli.main(["cache", "list", "tool", "--cache-dir", str(root)]) == 0
    assert capsys.readouterr().out.splitlines() == ["1\tcomplete"]


def test_build_requires_command(tmp_path: pathlib.Path, app_dir: pathlib.Path) -> None:
    with pytest.raises(SystemExit):
        cli.main(["build", str(app_dir), "-o", str(tmp_path / "x")])


def test_run_reports_missing_command(
    tmp_path: pathlib.Path,
    app_dir: pathlib.Path,
    stub_bytes: bytes,
    cache_root: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    out = tmp_path / "tool.exe"
    rc = cli.main(
        [
            "build",
            str(app_dir),
            "-o",
            str(out),
            "--stub",
            str(_stub(tmp_path, stub_bytes)),
            "-q",
            "--",
            "{{app}}/bin/not-there",
        ]
    )
    assert rc == 0
    capsys.readouterr()

    assert cli.main(["run", "-q", str(out)]) == 1
    assert "could not be started" in capsys.readouterr().err
