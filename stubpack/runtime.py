"""Self-extraction runtime.

This is the logic an artifact runs when it is launched. It extracts the
embedded archive once into a host-local cache and then replaces the current
process with the packaged command.

Cache layout::

    <cache root>/applications/<identifier>/<n>
    <cache root>/locks/<identifier>/<n>

``n`` is the attempt number, probed from 0 on every launch. Creating the lock
directory is the mutual-exclusion primitive: ``mkdir`` fails if the directory
already exists, which works across unrelated processes without shared memory.
An application directory is written once; after its lock is removed it is
never touched again, so "exists and unlocked" means "complete".

A crash during extraction leaves the lock behind. That attempt number is
skipped by every later launch, which moves on to the next number. The runtime
never removes stale locks itself (see :mod:`stubpack.cache`).
"""

from collections.abc import Callable
import contextlib
import logging
import os
import pathlib
import subprocess
import sys
import tarfile
import tempfile
import time
from typing import BinaryIO, NoReturn

from stubpack.command import CommandTemplate
from stubpack.errors import ExternalCommandError, ExtractionError, InputError
from stubpack.stubs import parse_script_header_lines
from stubpack.trailer import Trailer, read_trailer


CACHE_DIR_ENV: str = "STUBPACK_CACHE_DIR"
PRODUCT_NAME: str = "stubpack"

logger: logging.Logger = logging.getLogger("stubpack.runtime")


def resolve_cache_root() -> pathlib.Path:
    """Return the extraction cache root.

    ``STUBPACK_CACHE_DIR`` overrides ``<tmp>/stubpack``.

    :returns: Cache root (may not exist yet).
    """

    override: str | None = os.environ.get(CACHE_DIR_ENV)
    if override is not None and len(override) > 0:
        return pathlib.Path(override)
    return pathlib.Path(tempfile.gettempdir()) / PRODUCT_NAME


class ExtractionCache:
    """Paths of one artifact's attempt ladder."""

    root: pathlib.Path
    identifier: str

    def __init__(self, root: pathlib.Path, identifier: str) -> None:
        self.root = root
        self.identifier = identifier

    def application_directory(self, attempt: int) -> pathlib.Path:
        return self.root / "applications" / self.identifier / str(attempt)

    def lock_directory(self, attempt: int) -> pathlib.Path:
        return self.root / "locks" / self.identifier / str(attempt)

    def __repr__(self) -> str:
        return f"ExtractionCache(root={str(self.root)!r}, identifier={self.identifier!r})"


def _write_notice(notice: str) -> None:
    sys.stderr.write(notice)
    if notice.endswith("\n") is False:
        sys.stderr.write("\n")
    sys.stderr.flush()


def ensure_extracted(
    cache: ExtractionCache,
    extract: Callable[[pathlib.Path], None],
    *,
    notice: str | None = None,
    probe_delay: float = 0.05,
) -> pathlib.Path:
    """Find or create a complete application directory.

    Probes attempts ``0, 1, 2, ...``:

    - application directory and lock both exist: another process is
      extracting (or crashed while extracting); move to the next attempt.
    - application directory exists without a lock: it is complete; use it.
    - application directory missing: try to create the lock. On success this
      process extracts into the attempt. If the lock already exists another
      process won the race; probe the same attempt again.

    :param cache: Attempt ladder of the artifact.
    :param extract: Callback that populates an (existing, empty) directory.
    :param notice: Optional message written to stderr before extracting.
    :param probe_delay: Seconds to wait before re-probing a lost race.
    :returns: Application directory.
    :raises ExtractionError: If creating directories or extracting fails. The
        lock of the failed attempt is left in place.
    """

    attempt: int = 0
    while True:
        app_dir: pathlib.Path = cache.application_directory(attempt)
        lock_dir: pathlib.Path = cache.lock_directory(attempt)

        if app_dir.exists() is True:
            if lock_dir.exists() is True:
                if logger.isEnabledFor(logging.DEBUG) is True:
                    logger.debug(f"stubpack: attempt {attempt} is locked; trying {attempt + 1}")
                attempt += 1
                continue
            logger.debug(f"stubpack: using cached application directory {app_dir}")
            return app_dir

        try:
            lock_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExtractionError(f"Cannot create lock directory parent {lock_dir.parent}: {e}") from e

        try:
            os.mkdir(lock_dir)
        except FileExistsError:
            time.sleep(probe_delay)
            continue
        except OSError as e:
            raise ExtractionError(f"Cannot create lock {lock_dir}: {e}") from e

        if app_dir.exists() is True:
            # The previous holder finished between our probe and our mkdir.
            try:
                os.rmdir(lock_dir)
            except OSError as e:
                raise ExtractionError(f"Cannot release lock {lock_dir}: {e}") from e
            return app_dir

        logger.debug(f"stubpack: won attempt {attempt}; extracting to {app_dir}")
        try:
            app_dir.mkdir(parents=True)
        except OSError as e:
            # Nothing was written yet; give the attempt back.
            with contextlib.suppress(OSError):
                os.rmdir(lock_dir)
            raise ExtractionError(f"Cannot create application directory {app_dir}: {e}") from e

        # Failures past this point leave both directories behind.
        if notice is not None:
            try:
                _write_notice(notice)
            except (OSError, ValueError) as e:
                raise ExtractionError(f"Cannot write the uncompression message: {e}") from e

        try:
            extract(app_dir)
        except (OSError, tarfile.TarError, EOFError) as e:
            raise ExtractionError(f"Failed to extract to {app_dir}: {e}") from e

        try:
            os.rmdir(lock_dir)
        except OSError as e:
            raise ExtractionError(f"Cannot release lock {lock_dir}: {e}") from e
        return app_dir


class PayloadReader:
    """Read-only view of ``[start, end)`` of a file.

    The archive is followed by the trailer record, which must never reach the
    gzip decoder.
    """

    _file: BinaryIO
    _remaining: int

    def __init__(self, f: BinaryIO, start: int, end: int) -> None:
        if end < start:
            raise ExtractionError(f"Invalid payload range [{start}, {end}).")
        f.seek(start)
        self._file = f
        self._remaining = end - start

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size < 0 or size > self._remaining:
            size = self._remaining
        data: bytes = self._file.read(size)
        self._remaining -= len(data)
        return data


def extract_archive(reader: BinaryIO | PayloadReader, app_dir: pathlib.Path) -> None:
    """Stream-extract a ``.tar.gz`` payload into ``app_dir``.

    Members must stay inside ``app_dir``; symlink targets are kept as they
    are, absolute ones included.

    :param reader: Binary reader positioned at the start of the archive.
    :param app_dir: Destination directory.
    """

    with tarfile.open(fileobj=reader, mode="r|gz") as tar:
        tar.extractall(app_dir, filter="tar")


def extract_range(artifact: pathlib.Path, start: int, end: int | None) -> Callable[[pathlib.Path], None]:
    """Build an extraction callback for a slice of an artifact file.

    :param artifact: Artifact path.
    :param start: Offset of the first archive byte.
    :param end: Offset just past the archive, or ``None`` for end of file.
    :returns: Callback for :func:`ensure_extracted`.
    """

    def extract(app_dir: pathlib.Path) -> None:
        with open(artifact, "rb") as f:
            stop: int = end if end is not None else f.seek(0, os.SEEK_END)
            extract_archive(PayloadReader(f, start, stop), app_dir)

    return extract


def build_argv(command: CommandTemplate, app_dir: pathlib.Path, extra_args: list[str]) -> list[str]:
    """Render the command against ``app_dir`` and append the caller's arguments."""

    return [*command.render(app_dir), *extra_args]


def exec_command(argv: list[str]) -> NoReturn:
    """Replace the current process with ``argv``.

    On Windows there is no real ``exec``; the command runs as a child and its
    exit code is forwarded.

    :param argv: Command and arguments.
    :raises ExternalCommandError: If the command cannot be started.
    """

    sys.stdout.flush()
    sys.stderr.flush()
    try:
        if os.name == "nt":
            proc = subprocess.run(argv, check=False)
            raise SystemExit(proc.returncode)
        os.execvp(argv[0], argv)
    except OSError as e:
        raise ExternalCommandError(
            f"The packaged command could not be started: {e}",
            command=argv,
            returncode=None,
        ) from e


def run_artifact(
    artifact: pathlib.Path,
    *,
    payload_offset: int | None = None,
    argv: list[str],
    cache_root: pathlib.Path | None = None,
    exec_fn: Callable[[list[str]], object] = exec_command,
) -> object:
    """Run a compiled-stub artifact: extract if needed, then exec its command.

    :param artifact: Artifact path.
    :param payload_offset: Size of the stub, i.e. where the archive starts.
        Defaults to the ``archiveOffset`` recorded in the trailer.
    :param argv: Extra arguments passed to the artifact.
    :param cache_root: Cache root override.
    :param exec_fn: Process replacement function.
    :returns: Whatever ``exec_fn`` returns (``exec_command`` does not return).
    :raises ExtractionError: If the trailer is unreadable or extraction fails.
    """

    try:
        trailer, trailer_offset = read_trailer(artifact)
    except OSError as e:
        raise ExtractionError(f"Cannot read artifact {artifact}: {e}") from e

    start: int | None = payload_offset if payload_offset is not None else trailer.archive_offset
    if start is None:
        raise ExtractionError(f"{artifact} does not record where its archive starts; pass the stub size.")
    if start > trailer_offset:
        raise ExtractionError(f"Archive offset {start} lies past the trailer of {artifact}.")

    return _launch(
        cache=ExtractionCache(cache_root if cache_root is not None else resolve_cache_root(), trailer.identifier),
        trailer=trailer,
        extract=extract_range(artifact, start, trailer_offset),
        argv=argv,
        exec_fn=exec_fn,
    )


def script_payload_offset(artifact: pathlib.Path) -> int:
    """Compute where the archive starts in a ``.sh`` artifact.

    :param artifact: Script artifact path.
    :returns: Byte offset of the first archive byte.
    :raises ExtractionError: If the header cannot be read.
    """

    try:
        with open(artifact, "rb") as f:
            head: bytes = f.read(64 * 1024)
            header_lines: int = parse_script_header_lines(head)
            f.seek(0)
            for _ in range(header_lines):
                if len(f.readline()) == 0:
                    raise ExtractionError(f"Script header of {artifact} is truncated.")
            return f.tell()
    except InputError as e:
        raise ExtractionError(str(e)) from e
    except OSError as e:
        raise ExtractionError(f"Cannot read artifact {artifact}: {e}") from e


def _launch(
    *,
    cache: ExtractionCache,
    trailer: Trailer,
    extract: Callable[[pathlib.Path], None],
    argv: list[str],
    exec_fn: Callable[[list[str]], object],
) -> object:
    command: CommandTemplate = CommandTemplate.parse(list(trailer.command))
    app_dir: pathlib.Path = ensure_extracted(
        cache,
        extract,
        notice=trailer.uncompression_message,
    )
    final_argv: list[str] = build_argv(command, app_dir, argv)
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"stubpack: exec {final_argv}")
    return exec_fn(final_argv)
