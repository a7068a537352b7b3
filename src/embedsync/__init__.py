"""Top-level package for :mod:`embedsync`.

The package keeps a vector search index consistent with mutable text records
and exposes version metadata so downstream tooling can surface the installed
build.

Example:
    >>> from embedsync import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("embedsync")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
