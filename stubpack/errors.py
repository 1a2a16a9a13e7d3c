"""Exception hierarchy shared by the packager and the runtime."""


class StubpackError(RuntimeError):
    """Base class for all stubpack failures."""


class InputError(StubpackError):
    """Raised when caller-supplied inputs are invalid."""


class AlreadyExistsError(InputError):
    """Raised when the output path exists and overwriting was not authorized."""


class ExternalCommandError(StubpackError):
    """Raised when a child process exits non-zero or cannot be started.

    :ivar command: The command that was run.
    :ivar returncode: Exit status, or ``None`` if the process never started.
    """

    command: list[str]
    returncode: int | None

    def __init__(self, message: str, *, command: list[str], returncode: int | None) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode


class ArchiveError(StubpackError):
    """Raised when the archive stream cannot be written."""


class PlatformUnsupportedError(StubpackError):
    """Raised when the requested output cannot be produced on this host."""


class PlatformMismatchError(PlatformUnsupportedError):
    """Raised when an OS-specific output kind is requested on another OS."""


class ExtractionError(StubpackError):
    """Raised when self-extraction fails at runtime."""


class TrailerError(ExtractionError):
    """Raised when an artifact's trailer record is missing or malformed."""
