"""Shared pytest fixtures for stubpack tests."""

import os
import pathlib

import pytest

from stubpack.platforms import HostPlatform


TOOL_SCRIPT: str = '#!/bin/sh\nfor a in "$@"; do printf "%s\\n" "$a"; done\n'


@pytest.fixture
def app_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """Application directory with ``bin/tool`` and ``entry.js``."""

    root: pathlib.Path = tmp_path / "app"
    (root / "bin").mkdir(parents=True)
    tool: pathlib.Path = root / "bin" / "tool"
    tool.write_text(TOOL_SCRIPT, encoding="utf-8")
    os.chmod(tool, 0o755)
    (root / "entry.js").write_text("console.log('hi')\n", encoding="utf-8")
    return root


@pytest.fixture
def cache_root(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Isolated extraction cache root, also exported via ``STUBPACK_CACHE_DIR``."""

    root: pathlib.Path = tmp_path / "cache"
    monkeypatch.setenv("STUBPACK_CACHE_DIR", str(root))
    return root


@pytest.fixture
def linux_host() -> HostPlatform:
    return HostPlatform(os="linux", arch="x86_64")


@pytest.fixture
def stub_bytes() -> bytes:
    return b"\x7fFAKESTUB\x00\n" * 8


@pytest.fixture
def stubs_dir(tmp_path: pathlib.Path, linux_host: HostPlatform, stub_bytes: bytes) -> pathlib.Path:
    """Directory with a placeholder compiled stub for ``linux_host``."""

    root: pathlib.Path = tmp_path / "stubs"
    root.mkdir()
    (root / linux_host.stub_name).write_bytes(stub_bytes)
    return root
