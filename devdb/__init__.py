"""
devdb

Short-lived development databases for projects, cloned from snapshots of the
project's first instance or restored from a backup.
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("devdb")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

from .errors import DevDBError

__all__ = ["DevDBError", "__version__"]
