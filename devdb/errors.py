"""
Error taxonomy for devdb.

Every error raised across a component boundary derives from ``DevDBError``
and carries the HTTP status the API reports for it. Degraded-feature
conditions (snapshots disabled, capture failed) are never raised; the
components that own them log and return ``None`` instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DevDBError(Exception):
    """Base class for all devdb errors."""

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message}


class ValidationError(DevDBError):
    """Malformed input. Never retried."""

    status_code = 400


class NotFoundError(DevDBError):
    """A project, instance or platform resource does not exist."""

    status_code = 404


class ConflictError(DevDBError):
    status_code = 409


class ProjectExistsError(ConflictError):
    """A project with the same derived id is already registered."""


class InstanceExistsError(ConflictError):
    """An instance with the same name already exists in the project."""


class ProjectBusyError(ConflictError):
    """Another creation flow holds the project lock."""


class PlatformConflict(ConflictError):
    """The orchestration platform reported that a resource already exists."""


class PlatformFailure(DevDBError):
    """An orchestration, storage or registry call failed."""

    status_code = 500


class BackupError(DevDBError):
    """The backup capture pipeline could not complete."""

    status_code = 502


class BackupCredentialError(BackupError):
    pass


class BackupConnectivityError(BackupError):
    pass


class BackupDumpError(BackupError):
    def __init__(self, message: str, exit_code: Optional[int] = None, **context: Any):
        super().__init__(message, exit_code=exit_code, **context)
        self.exit_code = exit_code


class BackupUploadError(BackupError):
    pass
