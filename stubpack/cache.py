"""Operator tooling for the extraction cache.

The runtime never deletes anything: a crashed extraction leaves its lock in
place and the attempt number is skipped forever. These helpers let an
operator inspect an artifact's attempt ladder and remove poisoned attempts
on request. Nothing here runs automatically.
"""

from dataclasses import dataclass
import logging
import pathlib
import shutil

from stubpack.runtime import ExtractionCache
from stubpack.trailer import validate_identifier


@dataclass(frozen=True, slots=True)
class AttemptState:
    """State of one rung of the attempt ladder.

    :ivar number: Attempt number.
    :ivar application_exists: Whether the application directory exists.
    :ivar locked: Whether the lock directory exists.
    """

    number: int
    application_exists: bool
    locked: bool

    @property
    def complete(self) -> bool:
        return self.application_exists is True and self.locked is False


def _numbered_children(path: pathlib.Path) -> set[int]:
    if path.is_dir() is False:
        return set()
    numbers: set[int] = set()
    for child in path.iterdir():
        if child.name.isdigit() is True:
            numbers.add(int(child.name))
    return numbers


def list_attempts(cache_root: pathlib.Path, identifier: str) -> list[AttemptState]:
    """List the attempts recorded for an identifier.

    :param cache_root: Extraction cache root.
    :param identifier: Artifact identifier.
    :returns: Attempts sorted by number.
    """

    cache: ExtractionCache = ExtractionCache(cache_root, validate_identifier(identifier))
    numbers: set[int] = _numbered_children(cache.root / "applications" / identifier)
    numbers |= _numbered_children(cache.root / "locks" / identifier)

    states: list[AttemptState] = []
    for n in sorted(numbers):
        states.append(
            AttemptState(
                number=n,
                application_exists=cache.application_directory(n).exists(),
                locked=cache.lock_directory(n).exists(),
            )
        )
    return states


def purge_poisoned(
    cache_root: pathlib.Path,
    identifier: str,
    *,
    logger: logging.Logger | None = None,
) -> list[int]:
    """Remove attempts whose lock was never released.

    Only safe when no launch of the artifact is running: a live extraction
    also holds a lock.

    :param cache_root: Extraction cache root.
    :param identifier: Artifact identifier.
    :param logger: Optional logger for progress output.
    :returns: Attempt numbers removed.
    """

    if logger is None:
        logger = logging.getLogger("stubpack")

    cache: ExtractionCache = ExtractionCache(cache_root, validate_identifier(identifier))
    removed: list[int] = []
    for state in list_attempts(cache_root, identifier):
        if state.locked is False:
            continue
        app_dir: pathlib.Path = cache.application_directory(state.number)
        if app_dir.exists() is True:
            shutil.rmtree(app_dir)
        shutil.rmtree(cache.lock_directory(state.number))
        logger.info(f"stubpack: purged attempt {state.number} of {identifier}")
        removed.append(state.number)
    return removed
