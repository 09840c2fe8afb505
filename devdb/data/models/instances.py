"""
Database instance models.

Instances are never persisted by devdb; they are observed by listing the
pods that carry the owning project's label.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .projects import Credentials


class SeedStrategy(Enum):
    """How a new instance's volume gets its initial data."""

    FRESH_EMPTY = "fresh_empty"
    CLONE_FROM_SNAPSHOT = "clone_from_snapshot"
    RESTORE_FROM_BACKUP = "restore_from_backup"


class InstanceStatus(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    FAILED = "Failed"
    DELETING = "Deleting"

    @classmethod
    def from_pod(cls, phase: Optional[str], deleting: bool = False) -> "InstanceStatus":
        """Map a pod phase onto the instance lifecycle."""
        if deleting:
            return cls.DELETING
        if phase == "Pending":
            return cls.PENDING
        if phase == "Running":
            return cls.RUNNING
        return cls.FAILED


@dataclass
class DatabaseInstance:
    """A running (or starting) database engine for one project."""

    name: str
    project_id: str
    status: InstanceStatus
    host: Optional[str]
    port: int
    credentials: Credentials

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "projectId": self.project_id,
            "status": self.status.value,
            "host": self.host,
            "port": self.port,
            "username": self.credentials.username,
            "database": self.credentials.database_name,
        }
