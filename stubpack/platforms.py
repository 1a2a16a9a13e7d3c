"""Host platform detection.

Compiled stubs are selected by the ``(os, arch)`` pair of the build host.
This module normalizes the spellings Python reports into the small set used
in stub file names (``stub--<os>--<arch>``).
"""

from dataclasses import dataclass
import platform
import sys


@dataclass(frozen=True, slots=True)
class HostPlatform:
    """Operating system and CPU architecture of a host.

    :ivar os: ``linux``, ``darwin``, ``win32`` or the raw ``sys.platform`` value.
    :ivar arch: Normalized architecture (e.g. ``x86_64``, ``aarch64``).
    """

    os: str
    arch: str

    @classmethod
    def detect(cls) -> "HostPlatform":
        """Describe the current host.

        :returns: Host platform.
        """

        return cls(os=normalize_os(sys.platform), arch=normalize_arch(platform.machine()))

    @property
    def stub_name(self) -> str:
        """File name of the compiled stub for this platform."""

        return f"stub--{self.os}--{self.arch}"

    @property
    def is_windows(self) -> bool:
        return self.os == "win32"

    @property
    def is_macos(self) -> bool:
        return self.os == "darwin"


def normalize_os(name: str) -> str:
    """Normalize a ``sys.platform`` style OS name.

    :param name: Raw OS name.
    :returns: Normalized OS name.
    """

    n: str = name.lower()
    if n.startswith("linux") is True:
        return "linux"
    if n == "darwin" or n == "macos":
        return "darwin"
    if n in {"win32", "windows", "cygwin"}:
        return "win32"
    return n


def normalize_arch(machine: str) -> str:
    """Normalize a machine string into a small set of expected values.

    :param machine: Raw machine string (e.g. from ``platform.machine()``).
    :returns: Normalized architecture string.
    """

    m: str = machine.lower()
    if m == "amd64" or m == "x86_64" or m == "x64":
        return "x86_64"
    if m == "aarch64" or m == "arm64":
        return "aarch64"
    if m == "armv7l" or m == "armv7":
        return "armv7l"
    if m == "i386" or m == "i686" or m == "x86":
        return "i686"
    return m
