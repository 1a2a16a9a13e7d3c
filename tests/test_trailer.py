import json
import pathlib

import pytest

from stubpack.errors import InputError, TrailerError
from stubpack.trailer import Trailer, generate_identifier, read_trailer, validate_identifier


def test_encode_layout() -> None:
    t = Trailer(identifier="tool/abc", command=("{{app}}/bin/tool", "x"))
    data = t.encode()
    assert data.startswith(b"\n")
    assert b"\n" not in data[1:]
    assert json.loads(data[1:]) == {"identifier": "tool/abc", "command": ["{{app}}/bin/tool", "x"]}


def test_message_is_optional_and_camel_cased() -> None:
    t = Trailer(identifier="a", command=("b",), uncompression_message="line1\nline2 ✓")
    data = t.encode()
    assert b"\n" not in data[1:]
    assert json.loads(data[1:])["uncompressionMessage"] == "line1\nline2 ✓"


def test_read_trailer_after_binary_payload(tmp_path: pathlib.Path) -> None:
    artifact = tmp_path / "artifact"
    payload = b"STUB" + bytes(range(256)) * 600
    t = Trailer(identifier="id", command=("{{app}}/x",), uncompression_message="wait")
    artifact.write_bytes(payload + t.encode())

    parsed, offset = read_trailer(artifact)
    assert parsed == t
    assert offset == len(payload)


def test_read_trailer_without_newline(tmp_path: pathlib.Path) -> None:
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"no newline here")
    with pytest.raises(TrailerError):
        read_trailer(artifact)


@pytest.mark.parametrize(
    "record",
    [
        b"not json",
        b"[]",
        b'{"command": ["x"]}',
        b'{"identifier": "a", "command": []}',
        b'{"identifier": "a", "command": ["x", 1]}',
        b'{"identifier": "a", "command": ["x"], "uncompressionMessage": 3}',
    ],
)
def test_malformed_records(tmp_path: pathlib.Path, record: bytes) -> None:
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"payload\n" + record)
    with pytest.raises(TrailerError):
        read_trailer(artifact)


@pytest.mark.parametrize("identifier", ["", "/abs", "a/../b", "a//b", "a/./b", "sp ace", "back\\slash"])
def test_invalid_identifiers(identifier: str) -> None:
    with pytest.raises(InputError):
        validate_identifier(identifier)


def test_generated_identifiers_are_unique_and_valid() -> None:
    out = pathlib.Path("dist/My Tool.exe")
    a = generate_identifier(out)
    b = generate_identifier(out)
    assert a != b
    assert a.startswith("My-Tool/")
    assert validate_identifier(a) == a
    assert len(a.split("/")[1]) == 10


def test_archive_offset_round_trip(tmp_path: pathlib.Path) -> None:
    t = Trailer(identifier="id", command=("x",), archive_offset=96)
    assert json.loads(t.encode()[1:])["archiveOffset"] == 96
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"payload" + t.encode())
    parsed, _ = read_trailer(artifact)
    assert parsed.archive_offset == 96


@pytest.mark.parametrize("value", [b"-1", b"true", b"1.5", b'"12"'])
def test_invalid_archive_offset(tmp_path: pathlib.Path, value: bytes) -> None:
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b'payload\n{"identifier": "a", "command": ["x"], "archiveOffset": ' + value + b"}")
    with pytest.raises(TrailerError):
        read_trailer(artifact)
