"""
Volume provisioner.

Creates persistent volume claims, empty or cloned from a snapshot. Binding
is not awaited; the scheduler holds the pod until the claim is bound.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from ..data.models.snapshots import Snapshot
from ..errors import NotFoundError
from ..platform.base import OrchestrationPlatform
from . import manifests

logger = structlog.get_logger()


@dataclass
class VolumeHandle:
    name: str
    namespace: str
    size: str
    storage_class: Optional[str] = None
    source_snapshot: Optional[str] = None


class VolumeProvisioner:
    def __init__(self, platform: OrchestrationPlatform):
        self.platform = platform

    async def create_fresh(
        self,
        name: str,
        namespace: str,
        size: str,
        storage_class: Optional[str],
        labels: Optional[Dict[str, str]] = None,
    ) -> VolumeHandle:
        """Request a new empty volume."""
        manifest = manifests.pvc_manifest(name, namespace, size, storage_class, labels or {})
        await self.platform.create_persistent_volume_claim(namespace, manifest)
        logger.info("Created empty volume", volume=name, size=size)
        return VolumeHandle(name, namespace, size, storage_class)

    async def create_from_snapshot(
        self,
        name: str,
        namespace: str,
        snapshot: Snapshot,
        size: str,
        storage_class: Optional[str],
        labels: Optional[Dict[str, str]] = None,
    ) -> VolumeHandle:
        """Request a copy-on-write volume whose contents equal ``snapshot``."""
        annotations = {manifests.ANNOTATION_SOURCE_SNAPSHOT: snapshot.name}
        if snapshot.creation_timestamp:
            annotations[manifests.ANNOTATION_SOURCE_SNAPSHOT_TIME] = (
                snapshot.creation_timestamp.isoformat()
            )
        manifest = manifests.pvc_manifest(
            name,
            namespace,
            size,
            storage_class,
            labels or {},
            source_snapshot=snapshot.name,
            annotations=annotations,
        )
        await self.platform.create_persistent_volume_claim(namespace, manifest)
        logger.info("Created cloned volume", volume=name, snapshot=snapshot.name)
        return VolumeHandle(name, namespace, size, storage_class, snapshot.name)

    async def release(self, name: str, namespace: str) -> bool:
        """Delete a volume claim. Returns False if it was already gone."""
        try:
            await self.platform.delete_persistent_volume_claim(namespace, name)
        except NotFoundError:
            logger.info("Volume already released", volume=name)
            return False
        logger.info("Released volume", volume=name)
        return True
