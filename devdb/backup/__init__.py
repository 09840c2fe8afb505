"""Backup capture: credentials, object storage and the dump pipeline."""

from .auth import CredentialResolver
from .pipeline import BackupCapturePipeline, backup_key
from .storage import ObjectStore

__all__ = ["BackupCapturePipeline", "CredentialResolver", "ObjectStore", "backup_key"]
