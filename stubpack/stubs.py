"""Stub selection.

An artifact is a stub followed by a payload. Three output kinds exist:

- ``COMPILED``: a precompiled per-(os, arch) binary, followed by the archive
  and a trailer record.
- ``SCRIPT``: a generated POSIX shell script that carries the whole
  extraction protocol as literal text, followed by the archive.
- ``BUNDLE``: a macOS ``.app`` directory with launcher scripts and a verbatim
  copy of the build directory; nothing is archived.

The kind is chosen from the output path's suffix.
"""

import enum
import os
import pathlib
import re
import shlex
import textwrap

from stubpack.command import CommandTemplate
from stubpack.errors import InputError, PlatformMismatchError, PlatformUnsupportedError
from stubpack.platforms import HostPlatform


STUBS_DIR_ENV: str = "STUBPACK_STUBS_DIR"

_MARKER_RE: re.Pattern[str] = re.compile(r"__STUBPACK_[A-Z_]+__")
_SCRIPT_APP_EXPRESSION: str = '"$STUBPACK_APPLICATION_DIRECTORY"'
_BUNDLE_APP_EXPRESSION: str = '"$(dirname "$0")/app"'


class OutputKind(enum.Enum):
    COMPILED = "compiled"
    SCRIPT = "script"
    BUNDLE = "bundle"

    @classmethod
    def from_output(cls, output: pathlib.Path) -> "OutputKind":
        """Pick the output kind for an output path.

        :param output: Output artifact path.
        :returns: ``BUNDLE`` for ``.app``, ``SCRIPT`` for ``.sh``, else ``COMPILED``.
        """

        suffix: str = output.suffix.lower()
        if suffix == ".app":
            return cls.BUNDLE
        if suffix == ".sh":
            return cls.SCRIPT
        return cls.COMPILED


def check_output_kind(kind: OutputKind, output: pathlib.Path, host: HostPlatform) -> None:
    """Validate that ``kind`` can be produced on ``host``.

    Touches nothing on disk.

    :param kind: Requested output kind.
    :param output: Output artifact path.
    :param host: Build host.
    :raises PlatformMismatchError: If a bundle is requested outside macOS.
    :raises PlatformUnsupportedError: If a shell script is requested on Windows.
    :raises InputError: If a Windows executable lacks the ``.exe`` suffix.
    """

    if kind is OutputKind.BUNDLE:
        if host.is_macos is False:
            raise PlatformMismatchError(
                f"macOS application bundles (.app) can only be built on macOS (host os={host.os})."
            )
        return

    if kind is OutputKind.SCRIPT:
        if host.is_windows is True:
            raise PlatformUnsupportedError("Shell script artifacts (.sh) are not supported on Windows.")
        return

    if host.is_windows is True and output.suffix.lower() != ".exe":
        raise InputError(f"A Windows executable must end in '.exe': {output}")


def default_stubs_dir() -> pathlib.Path:
    """Return the directory searched for compiled stubs.

    ``STUBPACK_STUBS_DIR`` overrides the ``prebuilt/`` directory shipped
    inside this package (filled by ``stubpack stubs build``).

    :returns: Stubs directory (may not exist).
    """

    override: str | None = os.environ.get(STUBS_DIR_ENV)
    if override is not None and len(override) > 0:
        return pathlib.Path(override)
    return pathlib.Path(__file__).parent / "prebuilt"


def select_compiled_stub(
    host: HostPlatform,
    *,
    stub: pathlib.Path | None = None,
    stubs_dir: pathlib.Path | None = None,
) -> pathlib.Path:
    """Find the compiled stub to prefix the artifact with.

    :param host: Build host.
    :param stub: Explicit stub path; bypasses platform lookup.
    :param stubs_dir: Directory holding ``stub--<os>--<arch>`` files.
    :returns: Stub file path.
    :raises InputError: If an explicit stub does not exist.
    :raises PlatformUnsupportedError: If no stub matches the host.
    """

    if stub is not None:
        if stub.is_file() is False:
            raise InputError(f"Stub does not exist: {stub}")
        return stub

    root: pathlib.Path = stubs_dir if stubs_dir is not None else default_stubs_dir()
    candidate: pathlib.Path = root / host.stub_name
    if candidate.is_file() is False:
        raise PlatformUnsupportedError(
            f"No compiled stub for os={host.os} arch={host.arch} (looked for {candidate}). "
            "Build one with 'stubpack stubs build' (needs Go) or use a .sh output."
        )
    return candidate


def _fill_markers(template: str, values: dict[str, str]) -> str:
    """Substitute every marker in one pass, so values are never rescanned."""

    return _MARKER_RE.sub(lambda m: values[m.group(0)], template)


def render_script_stub(
    *,
    identifier: str,
    command: CommandTemplate,
    uncompression_message: str | None,
) -> str:
    """Render the shell stub for a ``.sh`` artifact.

    The archive is appended right after the returned text; the script finds it
    by skipping its own header lines.

    :param identifier: Artifact identifier.
    :param command: Command template.
    :param uncompression_message: Optional notice printed before extraction.
    :returns: Script text, ending with a newline.
    """

    notice: str = ":"
    if uncompression_message is not None:
        notice = f"printf '%s\\n' {shlex.quote(uncompression_message)} >&2"

    values: dict[str, str] = {
        "__STUBPACK_HEADER_LINES__": "0",
        "__STUBPACK_IDENTIFIER__": shlex.quote(identifier),
        "__STUBPACK_NOTICE__": notice,
        "__STUBPACK_COMMAND__": command.render_shell(_SCRIPT_APP_EXPRESSION),
    }
    # Digits never add lines, so a draft gives the final line count.
    values["__STUBPACK_HEADER_LINES__"] = str(_fill_markers(_SCRIPT_TEMPLATE, values).count("\n"))
    return _fill_markers(_SCRIPT_TEMPLATE, values)


def parse_script_header_lines(head: bytes) -> int:
    """Recover the header line count baked into a generated script.

    :param head: Leading bytes of a ``.sh`` artifact (at least its header).
    :returns: Number of text lines before the archive.
    :raises InputError: If the script was not generated by stubpack.
    """

    prefix: bytes = b"STUBPACK_HEADER_LINES="
    for line in head.split(b"\n"):
        if line.startswith(prefix) is True:
            value: bytes = line[len(prefix) :].strip()
            if value.isdigit() is True:
                return int(value)
    raise InputError("Not a stubpack shell artifact (header line count missing).")


def render_bundle_launchers(*, command: CommandTemplate) -> tuple[str, str]:
    """Render the two scripts of a macOS application bundle.

    :param command: Command template.
    :returns: ``(launcher, start)``: ``Contents/MacOS/<name>`` opens
        ``Contents/Resources/start``, which runs the command against
        ``Contents/Resources/app``.
    """

    launcher: str = '#!/usr/bin/env sh\nopen "$(dirname "$0")/../Resources/start"\n'
    start: str = f'#!/usr/bin/env sh\nexec {command.render_shell(_BUNDLE_APP_EXPRESSION)} "$@"\n'
    return (launcher, start)


_SCRIPT_TEMPLATE: str = textwrap.dedent(
    r"""
    #!/usr/bin/env sh
    # This file was generated by stubpack.
    # A gzip-compressed tar archive follows the last line of this script.

    STUBPACK_HEADER_LINES=__STUBPACK_HEADER_LINES__
    STUBPACK_IDENTIFIER=__STUBPACK_IDENTIFIER__

    if [ -n "${STUBPACK_CACHE_DIR:-}" ]; then
      STUBPACK_CACHE="$STUBPACK_CACHE_DIR"
    else
      STUBPACK_CACHE="${TMPDIR:-/tmp}"
      STUBPACK_CACHE="${STUBPACK_CACHE%/}/stubpack"
    fi

    STUBPACK_ATTEMPT=0
    while :
    do
      STUBPACK_LOCK="$STUBPACK_CACHE/locks/$STUBPACK_IDENTIFIER/$STUBPACK_ATTEMPT"
      STUBPACK_APPLICATION_DIRECTORY="$STUBPACK_CACHE/applications/$STUBPACK_IDENTIFIER/$STUBPACK_ATTEMPT"
      if [ -d "$STUBPACK_APPLICATION_DIRECTORY" ]; then
        if [ -d "$STUBPACK_LOCK" ]; then
          STUBPACK_ATTEMPT=$((STUBPACK_ATTEMPT + 1))
          continue
        fi
        break
      fi
      mkdir -p "$STUBPACK_CACHE/locks/$STUBPACK_IDENTIFIER" || exit 1
      if mkdir "$STUBPACK_LOCK" 2>/dev/null; then
        if [ -d "$STUBPACK_APPLICATION_DIRECTORY" ]; then
          rmdir "$STUBPACK_LOCK" || exit 1
          break
        fi
        mkdir -p "$STUBPACK_APPLICATION_DIRECTORY" || {
          rmdir "$STUBPACK_LOCK"
          exit 1
        }
        __STUBPACK_NOTICE__
        tail -n "+$((STUBPACK_HEADER_LINES + 1))" "$0" | tar -xzf - -C "$STUBPACK_APPLICATION_DIRECTORY" || {
          echo "stubpack: failed to extract to $STUBPACK_APPLICATION_DIRECTORY" >&2
          exit 1
        }
        rmdir "$STUBPACK_LOCK" || exit 1
        break
      fi
      [ -d "$STUBPACK_LOCK" ] || [ -d "$STUBPACK_APPLICATION_DIRECTORY" ] || {
        echo "stubpack: cannot create lock $STUBPACK_LOCK" >&2
        exit 1
      }
      sleep 1
    done

    exec __STUBPACK_COMMAND__ "$@"
    """
).lstrip()
