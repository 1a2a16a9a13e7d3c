"""Trailer record and artifact identifiers.

A compiled-stub artifact ends with a newline followed by a JSON record::

    {"identifier": "...", "command": ["..."], "uncompressionMessage": "...",
     "archiveOffset": 1234}

The JSON is ASCII-escaped, so the record never contains a raw newline and the
last newline in the file always marks its start. ``archiveOffset`` is the
size of the stub, i.e. where the archive begins.
"""

from dataclasses import dataclass
import json
import os
import pathlib
import re
import secrets
import string

from stubpack.errors import InputError, TrailerError


_IDENTIFIER_SEGMENT_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9._-]+$")
_TOKEN_ALPHABET: str = string.ascii_lowercase + string.digits
_TOKEN_LENGTH: int = 10
_READ_CHUNK: int = 64 * 1024


@dataclass(frozen=True, slots=True)
class Trailer:
    """Metadata appended after the archive.

    :ivar identifier: Extraction-cache namespace of the artifact.
    :ivar command: Raw command template arguments.
    :ivar uncompression_message: Optional notice printed before extraction.
    :ivar archive_offset: Byte offset of the archive (the stub size).
    """

    identifier: str
    command: tuple[str, ...]
    uncompression_message: str | None = None
    archive_offset: int | None = None

    def to_json(self) -> dict[str, object]:
        record: dict[str, object] = {
            "identifier": self.identifier,
            "command": list(self.command),
        }
        if self.uncompression_message is not None:
            record["uncompressionMessage"] = self.uncompression_message
        if self.archive_offset is not None:
            record["archiveOffset"] = self.archive_offset
        return record

    def encode(self) -> bytes:
        """Serialize the record, including its leading newline."""

        return b"\n" + json.dumps(self.to_json(), ensure_ascii=True).encode("ascii")

    @classmethod
    def decode(cls, data: bytes) -> "Trailer":
        """Parse the JSON part of a trailer (without the leading newline).

        :param data: JSON bytes.
        :returns: Parsed trailer.
        :raises TrailerError: If the record is malformed.
        """

        try:
            record = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TrailerError(f"Trailer record is not valid JSON: {e}") from e

        if isinstance(record, dict) is False:
            raise TrailerError("Trailer record is not a JSON object.")

        identifier = record.get("identifier")
        command = record.get("command")
        message = record.get("uncompressionMessage")
        archive_offset = record.get("archiveOffset")
        if isinstance(identifier, str) is False or len(identifier) == 0:
            raise TrailerError("Trailer record has no identifier.")
        if isinstance(command, list) is False or len(command) == 0:
            raise TrailerError("Trailer record has no command.")
        for part in command:
            if isinstance(part, str) is False:
                raise TrailerError(f"Trailer command contains a non-string: {part!r}")
        if message is not None and isinstance(message, str) is False:
            raise TrailerError("Trailer uncompressionMessage must be a string.")
        if archive_offset is not None and (
            isinstance(archive_offset, int) is False or isinstance(archive_offset, bool) is True or archive_offset < 0
        ):
            raise TrailerError("Trailer archiveOffset must be a non-negative integer.")

        return cls(
            identifier=identifier,
            command=tuple(command),
            uncompression_message=message,
            archive_offset=archive_offset,
        )


def read_trailer(path: pathlib.Path) -> tuple[Trailer, int]:
    """Read the trailer record at the end of an artifact.

    :param path: Artifact file.
    :returns: ``(trailer, offset)`` where ``offset`` is the position of the
        newline that starts the record (i.e. the end of the archive bytes).
    :raises TrailerError: If no trailer can be found or parsed.
    :raises OSError: If the file cannot be read.
    """

    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        end: int = f.tell()
        pos: int = end
        tail: bytes = b""
        while pos > 0:
            step: int = min(_READ_CHUNK, pos)
            pos -= step
            f.seek(pos)
            tail = f.read(step) + tail
            idx: int = tail.rfind(b"\n")
            if idx >= 0:
                return (Trailer.decode(tail[idx + 1 :]), pos + idx)

    raise TrailerError(f"No trailer record found in {path}")


def validate_identifier(identifier: str) -> str:
    """Check that an identifier is safe to use as a relative cache path.

    :param identifier: Candidate identifier.
    :returns: The identifier, unchanged.
    :raises InputError: If it is empty, absolute, or contains unsafe segments.
    """

    if len(identifier) == 0:
        raise InputError("Identifier must not be empty.")
    for segment in identifier.split("/"):
        if segment in {"", ".", ".."}:
            raise InputError(f"Invalid identifier {identifier!r}: empty or relative path segment.")
        if _IDENTIFIER_SEGMENT_RE.match(segment) is None:
            raise InputError(
                f"Invalid identifier {identifier!r}: segments may only contain letters, digits, '.', '_' and '-'."
            )
    return identifier


def generate_identifier(output: pathlib.Path) -> str:
    """Generate a fresh identifier for an artifact.

    The identifier is ``<output stem>/<random token>``, which keeps cache
    entries human-browsable while staying unique per build.

    :param output: Output artifact path.
    :returns: Identifier.
    """

    token: str = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(_TOKEN_LENGTH))
    stem: str = re.sub(r"[^A-Za-z0-9._-]+", "-", output.stem).strip(".-")
    if len(stem) == 0:
        return token
    return f"{stem}/{token}"
