"""stubpack.

A small build utility that packages an application directory and a command
into a single self-extracting executable.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
