"""Command templates.

A command template is the argument vector executed by a packaged artifact.
Any argument may contain the ``{{app}}`` placeholder, which is replaced with
the path of the extracted application directory.

Substitution is blind: a literal ``{{app}}`` inside an argument cannot be
escaped and is always treated as the placeholder.
"""

from dataclasses import dataclass
import os
import re
import shlex

from stubpack.errors import InputError


PLACEHOLDER: str = "{{app}}"

_PLACEHOLDER_RE: re.Pattern[str] = re.compile(r"\{\{\s*app\s*\}\}")


@dataclass(frozen=True, slots=True)
class Literal:
    """Literal text inside a command argument.

    :ivar text: The text, copied verbatim.
    """

    text: str


@dataclass(frozen=True, slots=True)
class Placeholder:
    """An occurrence of the application-directory placeholder."""


Segment = Literal | Placeholder


def _split_argument(arg: str) -> tuple[Segment, ...]:
    """Split one raw argument into literal and placeholder segments.

    :param arg: Raw argument string.
    :returns: Ordered segments; empty for an empty argument.
    """

    segments: list[Segment] = []
    pos: int = 0
    for m in _PLACEHOLDER_RE.finditer(arg):
        if m.start() > pos:
            segments.append(Literal(arg[pos : m.start()]))
        segments.append(Placeholder())
        pos = m.end()
    if pos < len(arg):
        segments.append(Literal(arg[pos:]))
    return tuple(segments)


@dataclass(frozen=True, slots=True)
class CommandTemplate:
    """A parsed command template.

    :ivar raw: Original argument strings (the trailer wire form).
    :ivar arguments: Parsed segments for each argument.
    """

    raw: tuple[str, ...]
    arguments: tuple[tuple[Segment, ...], ...]

    @classmethod
    def parse(cls, args: list[str] | tuple[str, ...]) -> "CommandTemplate":
        """Parse raw argument strings.

        :param args: Command and arguments.
        :returns: Parsed template.
        :raises InputError: If the template is empty or not a list of strings.
        """

        if len(args) == 0:
            raise InputError("Command template must contain at least one argument.")
        for a in args:
            if isinstance(a, str) is False:
                raise InputError(f"Command template arguments must be strings, got {a!r}.")
        return cls(
            raw=tuple(args),
            arguments=tuple(_split_argument(a) for a in args),
        )

    @property
    def uses_placeholder(self) -> bool:
        """Whether any argument references the application directory."""

        for arg in self.arguments:
            for seg in arg:
                if isinstance(seg, Placeholder) is True:
                    return True
        return False

    def render(self, app_dir: str | os.PathLike[str]) -> list[str]:
        """Substitute the application directory into every argument.

        :param app_dir: Extracted application directory.
        :returns: Concrete argument vector.
        """

        app: str = os.fspath(app_dir)
        argv: list[str] = []
        for arg in self.arguments:
            parts: list[str] = []
            for seg in arg:
                if isinstance(seg, Placeholder) is True:
                    parts.append(app)
                else:
                    parts.append(seg.text)
            argv.append("".join(parts))
        return argv

    def render_shell(self, expression: str) -> str:
        """Render the template as POSIX shell words.

        Literal text is single-quoted. Placeholders are replaced with
        ``expression``, which the caller must already have quoted
        (e.g. ``"$APP_DIR"``).

        :param expression: Shell expression yielding the application directory.
        :returns: Space-separated shell words.
        """

        words: list[str] = []
        for arg in self.arguments:
            if len(arg) == 0:
                words.append("''")
                continue
            parts: list[str] = []
            for seg in arg:
                if isinstance(seg, Placeholder) is True:
                    parts.append(expression)
                else:
                    parts.append(shlex.quote(seg.text))
            words.append("".join(parts))
        return " ".join(words)
