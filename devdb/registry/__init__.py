"""Project registry and per-project locks."""

from .locks import ProjectLock
from .projects import ProjectRegistry

__all__ = ["ProjectLock", "ProjectRegistry"]
