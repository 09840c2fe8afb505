"""
Snapshot manager.

Snapshots are a soft feature: when disabled, or when the platform misbehaves,
capture and selection return ``None`` and the caller falls back to a fresh
volume. Nothing here may fail a provisioning request.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from ..data.models.snapshots import Snapshot
from ..errors import DevDBError
from ..platform.base import OrchestrationPlatform
from . import manifests

logger = structlog.get_logger()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(snapshot: Snapshot):
    """Newest first by creation timestamp; ties go to the greatest name."""
    return (snapshot.creation_timestamp or _EPOCH, snapshot.name)


class SnapshotManager:
    """Creates, selects and prunes project volume snapshots."""

    def __init__(
        self,
        platform: OrchestrationPlatform,
        enabled: bool = True,
        snapshot_class: Optional[str] = None,
    ):
        self.platform = platform
        self.enabled = enabled
        self.snapshot_class = snapshot_class

    async def capture(
        self, volume_name: str, namespace: str, project_id: str
    ) -> Optional[Snapshot]:
        """Snapshot a volume. Returns None when disabled or on any failure."""
        if not self.enabled:
            logger.info("Snapshot support disabled; skipping capture", volume=volume_name)
            return None

        name = manifests.snapshot_name(volume_name)
        manifest = manifests.snapshot_manifest(
            name, namespace, volume_name, project_id, self.snapshot_class
        )
        try:
            snapshot = await self.platform.create_volume_snapshot(namespace, manifest)
        except Exception as e:
            logger.warning(
                "Snapshot capture failed",
                project_id=project_id,
                volume=volume_name,
                snapshot=name,
                error=str(e),
            )
            return None

        logger.info("Snapshot requested", project_id=project_id, snapshot=snapshot.name)
        return snapshot

    async def select_latest(self, project_id: str, namespace: str) -> Optional[Snapshot]:
        """Most recent ready snapshot of a project, or None."""
        if not self.enabled:
            return None

        try:
            snapshots = await self.platform.list_volume_snapshots(
                namespace, manifests.project_selector(project_id)
            )
        except Exception as e:
            logger.warning("Snapshot lookup failed", project_id=project_id, error=str(e))
            return None

        candidates = [
            s for s in snapshots if s.ready_to_use and s.creation_timestamp is not None
        ]
        if not candidates:
            logger.info(
                "No ready snapshot for project",
                project_id=project_id,
                total=len(snapshots),
            )
            return None

        latest = max(candidates, key=_sort_key)
        logger.info(
            "Selected snapshot",
            project_id=project_id,
            snapshot=latest.name,
            created=latest.creation_timestamp.isoformat(),
        )
        return latest

    async def list(self, project_id: str, namespace: str) -> List[Snapshot]:
        """All snapshots of a project, newest first."""
        if not self.enabled:
            return []
        snapshots = await self.platform.list_volume_snapshots(
            namespace, manifests.project_selector(project_id)
        )
        return sorted(snapshots, key=_sort_key, reverse=True)

    async def prune(self, project_id: str, namespace: str, keep: int) -> List[str]:
        """Delete all but the ``keep`` newest snapshots. Returns deleted names."""
        if not self.enabled or keep <= 0:
            return []

        deleted: List[str] = []
        try:
            snapshots = await self.list(project_id, namespace)
            for snapshot in snapshots[keep:]:
                await self.platform.delete_volume_snapshot(namespace, snapshot.name)
                deleted.append(snapshot.name)
        except DevDBError as e:
            logger.warning("Snapshot pruning stopped", project_id=project_id, error=str(e))

        if deleted:
            logger.info("Pruned snapshots", project_id=project_id, deleted=deleted)
        return deleted
