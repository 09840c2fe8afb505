"""Data models for projects, instances, snapshots and backups."""

from .backups import BackupArtifact, ConnectionDescriptor
from .instances import DatabaseInstance, InstanceStatus, SeedStrategy
from .projects import Credentials, EngineType, Project, derive_project_id
from .snapshots import Snapshot

__all__ = [
    "BackupArtifact",
    "ConnectionDescriptor",
    "Credentials",
    "DatabaseInstance",
    "EngineType",
    "InstanceStatus",
    "Project",
    "SeedStrategy",
    "Snapshot",
    "derive_project_id",
]
