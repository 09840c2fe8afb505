"""
Instance reconciler.

Drives one instance-creation flow through

    Requested -> NamespaceEnsured -> SeedStrategyChosen -> VolumeProvisioned
    -> ComputeLaunched -> EndpointBound -> (SnapshotCaptured) -> Ready

and the symmetric teardown. Each step is awaited in order and recorded in
the provisioning journal. A failure before the endpoint is bound aborts the
flow without rolling back resources already created; the journal keeps their
names so the flow can be abandoned later. The snapshot is captured in the
background after the flow is marked Ready, so SnapshotCaptured is recorded
last without changing the flow's status.

The seed decision and resource creation run under the project lock so two
concurrent requests for one project cannot both see "no instances yet".
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

import structlog

from ..config import Settings, get_settings
from ..data.models.instances import DatabaseInstance, InstanceStatus, SeedStrategy
from ..data.models.projects import Credentials, Project
from ..data.models.snapshots import Snapshot
from ..db.journal import ProvisioningJournal
from ..db.models import FlowStatus, FlowStep
from ..errors import (
    DevDBError,
    InstanceExistsError,
    NotFoundError,
    PlatformConflict,
    PlatformFailure,
    ValidationError,
)
from ..platform.base import OrchestrationPlatform, PodInfo
from ..registry.projects import ProjectRegistry
from . import manifests
from .backup_importer import BackupImporter
from .engines import get_profile
from .snapshots import SnapshotManager
from .volumes import VolumeHandle, VolumeProvisioner

logger = structlog.get_logger()


@dataclass
class SeedPlan:
    strategy: SeedStrategy
    snapshot: Optional[Snapshot] = None
    backup_ref: Optional[str] = None
    backup_url: Optional[str] = None


@dataclass
class ProvisionResult:
    """Outcome of a successful creation flow."""

    instance: DatabaseInstance
    plan: SeedPlan
    volume: VolumeHandle
    service_name: str
    record_id: str

    @property
    def restored_from_snapshot(self) -> bool:
        return self.plan.strategy is SeedStrategy.CLONE_FROM_SNAPSHOT

    def to_dict(self) -> Dict[str, Any]:
        creds = self.instance.credentials
        return {
            **self.instance.to_dict(),
            "strategy": self.plan.strategy.value,
            "restoredFromSnapshot": self.restored_from_snapshot,
            "restoredFromBackup": self.plan.strategy is SeedStrategy.RESTORE_FROM_BACKUP,
            "sourceSnapshot": self.plan.snapshot.name if self.plan.snapshot else None,
            "backupLocation": self.plan.backup_ref,
            "credentials": {
                "username": creds.username,
                "password": creds.password,
                "databaseName": creds.database_name,
            },
            "volume": self.volume.name,
            "service": self.service_name,
            "provisioningId": self.record_id,
        }


class InstanceReconciler:
    """Creates and tears down database instances for projects."""

    def __init__(
        self,
        platform: OrchestrationPlatform,
        registry: ProjectRegistry,
        snapshots: SnapshotManager,
        volumes: VolumeProvisioner,
        importer: BackupImporter,
        journal: ProvisioningJournal,
        settings: Optional[Settings] = None,
    ):
        self.platform = platform
        self.registry = registry
        self.snapshots = snapshots
        self.volumes = volumes
        self.importer = importer
        self.journal = journal
        self.settings = settings or get_settings()
        self.namespace = self.settings.namespace
        self.background_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def ensure_namespace(self) -> None:
        """Create the shared namespace; an existing one is fine."""
        try:
            await self.platform.create_namespace(manifests.namespace_manifest(self.namespace))
            logger.info("Created namespace", namespace=self.namespace)
        except PlatformConflict:
            logger.debug("Namespace already exists", namespace=self.namespace)

    async def create_instance(
        self,
        project_id: str,
        name: str,
        credentials: Optional[Credentials] = None,
        backup_location: Optional[str] = None,
    ) -> ProvisionResult:
        """Run a full creation flow and return once the endpoint is bound."""
        name = manifests.validate_instance_name(name)
        project = await self.registry.get(project_id)
        profile = get_profile(project.engine_type)
        profile.validate_version(project.engine_version)
        if backup_location and not self.importer.validate(backup_location):
            raise ValidationError(f"Invalid backup URL format: {backup_location}")

        credentials = credentials or project.default_credentials
        base = manifests.resource_base_name(project.id, name)
        log = logger.bind(project_id=project.id, instance=name)
        record_id = self.journal.begin(project.id, name)
        step = FlowStep.REQUESTED

        try:
            await self.ensure_namespace()
            step = FlowStep.NAMESPACE_ENSURED
            self.journal.advance(record_id, step, namespace=self.namespace)

            async with self.registry.lock(project.id):
                existing = await self.platform.list_pods(
                    self.namespace, manifests.project_selector(project.id)
                )
                if any(pod.name == base for pod in existing):
                    raise InstanceExistsError(
                        f"Database '{name}' already exists in project '{project.id}'",
                        project_id=project.id,
                        instance=name,
                    )

                plan = await self._choose_seed(project, existing, backup_location)
                # A cloned data directory is already initialised; the engine
                # ignores bootstrap credentials and keeps the project's.
                if (
                    plan.strategy is SeedStrategy.CLONE_FROM_SNAPSHOT
                    and credentials != project.default_credentials
                ):
                    raise ValidationError(
                        f"Database '{name}' is cloned from snapshot "
                        f"'{plan.snapshot.name}' and keeps the credentials of project "
                        f"'{project.id}'; custom credentials only apply to databases "
                        "that are not cloned",
                        project_id=project.id,
                        instance=name,
                    )
                step = FlowStep.SEED_STRATEGY_CHOSEN
                self.journal.advance(
                    record_id,
                    step,
                    strategy=plan.strategy.value,
                    source_snapshot=plan.snapshot.name if plan.snapshot else None,
                    backup_url=plan.backup_ref,
                )
                log.info("Seed strategy chosen", strategy=plan.strategy.value)

                labels = manifests.instance_labels(
                    project.id, project.owner, profile.engine.value, base, name
                )
                volume = await self._provision_volume(plan, manifests.volume_name(base), labels)
                step = FlowStep.VOLUME_PROVISIONED
                self.journal.advance(record_id, step, volume=volume.name)

                annotations = {
                    manifests.ANNOTATION_USERNAME: credentials.username,
                    manifests.ANNOTATION_DATABASE: credentials.database_name,
                }
                if plan.backup_ref:
                    annotations[manifests.ANNOTATION_BACKUP_URL] = plan.backup_ref
                pod = await self.platform.create_pod(
                    self.namespace,
                    manifests.pod_manifest(
                        base,
                        self.namespace,
                        labels,
                        profile,
                        project.engine_version,
                        credentials,
                        volume.name,
                        self.settings.init_image,
                        seed_url=plan.backup_url,
                        seed_ref=plan.backup_ref,
                        annotations=annotations,
                    ),
                )
                step = FlowStep.COMPUTE_LAUNCHED
                self.journal.advance(record_id, step, pod=base)

            svc_name = manifests.service_name(base)
            service = await self.platform.create_service(
                self.namespace,
                manifests.service_manifest(
                    svc_name,
                    self.namespace,
                    labels,
                    {manifests.LABEL_INSTANCE: base},
                    profile.port,
                    self.settings.service_type,
                    self.settings.load_balancer_scheme,
                ),
            )
            step = FlowStep.ENDPOINT_BOUND
            self.journal.advance(record_id, step, service=svc_name)
        except DevDBError as e:
            self.journal.fail(record_id, f"{step.value}: {e.message}")
            log.error("Instance creation failed", step=step.value, error=e.message)
            raise
        except Exception as e:
            self.journal.fail(record_id, f"{step.value}: {e}")
            log.error("Instance creation failed", step=step.value, error=str(e))
            raise PlatformFailure(
                f"Error creating database '{name}': {e}", project_id=project.id
            ) from e

        self.journal.complete(record_id)
        log.info("Instance created", strategy=plan.strategy.value, host=service.host)

        if plan.strategy is not SeedStrategy.CLONE_FROM_SNAPSHOT:
            # Snapshots only hold data initialised with the project's credentials
            if credentials == project.default_credentials:
                self._schedule_capture(project.id, base, volume.name, record_id)
            else:
                log.info("Custom credentials; instance will not be snapshotted")

        instance = DatabaseInstance(
            name=name,
            project_id=project.id,
            status=InstanceStatus.from_pod(pod.phase or "Pending", pod.deleting),
            host=service.host,
            port=profile.port,
            credentials=credentials,
        )
        return ProvisionResult(instance, plan, volume, svc_name, record_id)

    async def _choose_seed(
        self,
        project: Project,
        existing: List[PodInfo],
        backup_location: Optional[str],
    ) -> SeedPlan:
        if existing:
            snapshot = await self.snapshots.select_latest(project.id, self.namespace)
            if snapshot is not None:
                return SeedPlan(SeedStrategy.CLONE_FROM_SNAPSHOT, snapshot=snapshot)
            logger.warning(
                "No ready snapshot for existing project; falling back",
                project_id=project.id,
            )

        backup_ref = backup_location or project.backup_location
        if backup_ref:
            backup_url = await self.importer.resolve(backup_ref)
            return SeedPlan(
                SeedStrategy.RESTORE_FROM_BACKUP,
                backup_ref=backup_ref,
                backup_url=backup_url,
            )
        return SeedPlan(SeedStrategy.FRESH_EMPTY)

    async def _provision_volume(
        self, plan: SeedPlan, name: str, labels: Dict[str, str]
    ) -> VolumeHandle:
        if plan.strategy is SeedStrategy.CLONE_FROM_SNAPSHOT:
            return await self.volumes.create_from_snapshot(
                name,
                self.namespace,
                plan.snapshot,
                self.settings.volume_size,
                self.settings.storage_class,
                labels,
            )
        return await self.volumes.create_fresh(
            name,
            self.namespace,
            self.settings.volume_size,
            self.settings.storage_class,
            labels,
        )

    # ------------------------------------------------------------------
    # Post-initialisation snapshot
    # ------------------------------------------------------------------

    def _schedule_capture(
        self, project_id: str, pod_name: str, volume_name: str, record_id: str
    ) -> None:
        task = asyncio.create_task(
            self.capture_when_ready(project_id, pod_name, volume_name, record_id),
            name=f"snapshot-{pod_name}",
        )
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    async def _wait_until_ready(self, pod_name: str) -> bool:
        for _ in range(max(self.settings.snapshot_ready_poll_attempts, 1)):
            try:
                pod = await self.platform.read_pod(self.namespace, pod_name)
            except NotFoundError:
                return False
            except DevDBError as e:
                logger.warning("Readiness poll failed", pod=pod_name, error=e.message)
            else:
                if pod.ready:
                    return True
                if pod.phase in ("Failed", "Succeeded") or pod.deleting:
                    return False
            await asyncio.sleep(self.settings.snapshot_ready_poll_interval)
        return False

    async def capture_when_ready(
        self, project_id: str, pod_name: str, volume_name: str, record_id: str
    ) -> Optional[Snapshot]:
        """Snapshot a freshly initialised volume. Never raises."""
        log = logger.bind(project_id=project_id, pod=pod_name, volume=volume_name)
        try:
            await asyncio.sleep(self.settings.snapshot_settle_seconds)
            if not await self._wait_until_ready(pod_name):
                log.warning("Instance never became ready; snapshot skipped")
                return None

            snapshot = await self.snapshots.capture(volume_name, self.namespace, project_id)
            if snapshot is None:
                return None

            self.journal.snapshot_captured(record_id, snapshot.name)
            await self.snapshots.prune(
                project_id, self.namespace, self.settings.snapshot_retention
            )
            return snapshot
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Post-initialisation snapshot failed", error=str(e))
            return None

    async def drain(self) -> None:
        """Wait for all pending snapshot captures."""
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel pending snapshot captures."""
        tasks = list(self.background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.background_tasks.clear()

    # ------------------------------------------------------------------
    # Observation and teardown
    # ------------------------------------------------------------------

    async def list_instances(self, project_id: str) -> List[DatabaseInstance]:
        project = await self.registry.get(project_id)
        profile = get_profile(project.engine_type)
        pods = await self.platform.list_pods(
            self.namespace, manifests.project_selector(project.id)
        )

        instances = []
        for pod in sorted(pods, key=lambda p: p.name):
            try:
                service = await self.platform.read_service(
                    self.namespace, manifests.service_name(pod.name)
                )
                host: Optional[str] = service.host
            except NotFoundError:
                host = None

            defaults = project.default_credentials
            instances.append(
                DatabaseInstance(
                    name=pod.labels.get(manifests.LABEL_INSTANCE_NAME, pod.name),
                    project_id=project.id,
                    status=InstanceStatus.from_pod(pod.phase, pod.deleting),
                    host=host,
                    port=profile.port,
                    credentials=Credentials(
                        username=pod.annotations.get(
                            manifests.ANNOTATION_USERNAME, defaults.username
                        ),
                        password=defaults.password,
                        database_name=pod.annotations.get(
                            manifests.ANNOTATION_DATABASE, defaults.database_name
                        ),
                    ),
                )
            )
        return instances

    async def delete_instance(self, project_id: str, name: str) -> Dict[str, Any]:
        """Remove an instance: compute, then endpoint, then (optionally) volume.

        A missing compute unit fails the deletion; a missing endpoint or
        volume counts as already deleted, so retries are safe.
        """
        project = await self.registry.get(project_id)
        base = manifests.resource_base_name(project.id, name)
        log = logger.bind(project_id=project.id, instance=name)

        try:
            await self.platform.delete_pod(self.namespace, base)
        except NotFoundError as e:
            raise NotFoundError(
                f"Database '{name}' not found in project '{project.id}'",
                project_id=project.id,
                instance=name,
            ) from e
        log.info("Compute removed", pod=base)

        svc_name = manifests.service_name(base)
        try:
            await self.platform.delete_service(self.namespace, svc_name)
            log.info("Endpoint removed", service=svc_name)
        except NotFoundError:
            log.info("Endpoint already absent", service=svc_name)

        volume_released = False
        if self.settings.release_volumes_on_delete:
            volume_released = await self.volumes.release(
                manifests.volume_name(base), self.namespace
            )

        return {
            "name": name,
            "projectId": project.id,
            "deleted": True,
            "volumeReleased": volume_released,
        }

    # ------------------------------------------------------------------
    # Journal maintenance
    # ------------------------------------------------------------------

    def interrupted_flows(self) -> List[Dict[str, Any]]:
        """Flows left in progress, typically by a process restart."""
        records = self.journal.incomplete()
        for record in records:
            logger.warning(
                "Interrupted provisioning flow",
                record_id=record["id"],
                project_id=record["projectId"],
                instance=record["instanceName"],
                step=record["step"],
            )
        return records

    async def abandon(self, record_id: str) -> Dict[str, Any]:
        """Tear down whatever an unfinished flow created and close its record."""
        record = self.journal.get(record_id)
        if record is None:
            raise NotFoundError(f"Provisioning record '{record_id}' not found")
        if record["status"] not in (FlowStatus.IN_PROGRESS.value, FlowStatus.FAILED.value):
            raise ValidationError(
                f"Provisioning record '{record_id}' is {record['status']}; "
                "only in-progress or failed flows can be abandoned"
            )

        resources = record["resources"]
        namespace = resources.get("namespace") or self.namespace
        removed: List[str] = []

        if resources.get("pod"):
            try:
                await self.platform.delete_pod(namespace, resources["pod"])
                removed.append(f"pod/{resources['pod']}")
            except NotFoundError:
                pass
        if resources.get("service"):
            try:
                await self.platform.delete_service(namespace, resources["service"])
                removed.append(f"service/{resources['service']}")
            except NotFoundError:
                pass
        if resources.get("volume"):
            if await self.volumes.release(resources["volume"], namespace):
                removed.append(f"volume/{resources['volume']}")

        self.journal.mark_abandoned(record_id)
        logger.info("Abandoned provisioning flow", record_id=record_id, removed=removed)
        return {"id": record_id, "removed": removed}
