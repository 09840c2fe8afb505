"""
Service container.

Builds every long-lived collaborator once from settings so the API lifespan
and the tests share one wiring.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import Engine

from .backup.auth import CredentialResolver
from .backup.pipeline import BackupCapturePipeline
from .backup.storage import ObjectStore
from .config import Settings, get_settings
from .core.backup_importer import BackupImporter
from .core.reconciler import InstanceReconciler
from .core.snapshots import SnapshotManager
from .core.volumes import VolumeProvisioner
from .db.base import create_journal_engine, create_session_factory, init_database
from .db.journal import ProvisioningJournal
from .platform.base import OrchestrationPlatform
from .registry.projects import ProjectRegistry

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    registry: ProjectRegistry
    platform: OrchestrationPlatform
    snapshots: SnapshotManager
    volumes: VolumeProvisioner
    importer: BackupImporter
    journal: ProvisioningJournal
    reconciler: InstanceReconciler
    pipeline: BackupCapturePipeline
    engine: Optional[Engine] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        registry: ProjectRegistry,
        platform: OrchestrationPlatform,
        object_store: ObjectStore,
        engine: Engine,
        credentials: Optional[CredentialResolver] = None,
    ) -> "Services":
        """Wire the components around already constructed adapters."""
        init_database(engine)
        journal = ProvisioningJournal(create_session_factory(engine))
        snapshots = SnapshotManager(
            platform,
            enabled=settings.snapshots_enabled,
            snapshot_class=settings.snapshot_class,
        )
        volumes = VolumeProvisioner(platform)
        staging_dir = Path(settings.staging_dir)
        importer = BackupImporter(
            object_store,
            staging_dir / "imports",
            http_timeout=settings.http_probe_timeout,
            presign_expiry=settings.presign_expiry_seconds,
        )
        reconciler = InstanceReconciler(
            platform, registry, snapshots, volumes, importer, journal, settings
        )
        pipeline = BackupCapturePipeline(
            object_store,
            credentials or CredentialResolver(default_region=settings.aws_region),
            bucket=settings.backup_bucket,
            staging_dir=staging_dir / "dumps",
            connect_timeout=settings.connect_probe_timeout,
        )
        return cls(
            settings=settings,
            registry=registry,
            platform=platform,
            snapshots=snapshots,
            volumes=volumes,
            importer=importer,
            journal=journal,
            reconciler=reconciler,
            pipeline=pipeline,
            engine=engine,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Services":
        """Production wiring: Redis, Kubernetes, S3 and the journal database."""
        from .platform.k8s import KubernetesPlatform

        settings = settings or get_settings()
        return cls.build(
            settings,
            registry=ProjectRegistry.from_settings(settings),
            platform=KubernetesPlatform.from_settings(settings),
            object_store=ObjectStore.from_settings(settings),
            engine=create_journal_engine(settings.database_url),
        )

    async def aclose(self) -> None:
        await self.reconciler.aclose()
        await self.registry.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Services closed")
