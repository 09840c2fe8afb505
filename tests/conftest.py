"""Test configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import fakeredis
import httpx
import pytest
import pytest_asyncio
from botocore.exceptions import ClientError

from devdb.backup.storage import ObjectStore
from devdb.config import Settings
from devdb.data.models.projects import Credentials, EngineType, Project
from devdb.data.models.snapshots import Snapshot
from devdb.db.base import create_journal_engine
from devdb.errors import NotFoundError, PlatformConflict
from devdb.platform.base import OrchestrationPlatform, PodInfo, ServiceInfo
from devdb.registry.projects import ProjectRegistry
from devdb.services import Services

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _matches(labels: Dict[str, str], selector: str) -> bool:
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakePlatform(OrchestrationPlatform):
    """In-memory orchestration platform.

    Pods come up Running and Ready, snapshots are ready as soon as they are
    created. ``failures`` maps a method name to an exception raised on call.
    """

    def __init__(self):
        self.namespaces: set = set()
        self.volumes: Dict[str, Dict[str, Any]] = {}
        self.pods: Dict[str, PodInfo] = {}
        self.pod_manifests: Dict[str, Dict[str, Any]] = {}
        self.services: Dict[str, ServiceInfo] = {}
        self.snapshots: Dict[str, Snapshot] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.pods_ready = True
        self.snapshots_ready = True
        self._clock = 0

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def add_snapshot(
        self,
        name: str,
        project_id: str,
        offset_seconds: Optional[int],
        ready: bool = True,
        namespace: str = "devdb-test",
    ) -> Snapshot:
        created = (
            BASE_TIME + timedelta(seconds=offset_seconds)
            if offset_seconds is not None
            else None
        )
        snapshot = Snapshot(
            name=name,
            namespace=namespace,
            source_volume_name="source-data",
            creation_timestamp=created,
            ready_to_use=ready,
            project_id=project_id,
        )
        self.snapshots[name] = snapshot
        return snapshot

    async def create_namespace(self, manifest):
        self._record("create_namespace")
        name = manifest["metadata"]["name"]
        if name in self.namespaces:
            raise PlatformConflict(f"namespaces \"{name}\" already exists")
        self.namespaces.add(name)

    async def create_persistent_volume_claim(self, namespace, manifest):
        self._record("create_persistent_volume_claim")
        name = manifest["metadata"]["name"]
        if name in self.volumes:
            raise PlatformConflict(f"persistentvolumeclaims \"{name}\" already exists")
        self.volumes[name] = manifest
        return manifest

    async def delete_persistent_volume_claim(self, namespace, name):
        self._record("delete_persistent_volume_claim")
        if self.volumes.pop(name, None) is None:
            raise NotFoundError(f"persistentvolumeclaims \"{name}\" not found")

    async def create_pod(self, namespace, manifest):
        self._record("create_pod")
        metadata = manifest["metadata"]
        name = metadata["name"]
        if name in self.pods:
            raise PlatformConflict(f"pods \"{name}\" already exists")
        pod = PodInfo(
            name=name,
            namespace=namespace,
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            phase="Running" if self.pods_ready else "Pending",
            ready=self.pods_ready,
        )
        self.pods[name] = pod
        self.pod_manifests[name] = manifest
        return pod

    async def read_pod(self, namespace, name):
        self._record("read_pod")
        if name not in self.pods:
            raise NotFoundError(f"pods \"{name}\" not found")
        return self.pods[name]

    async def list_pods(self, namespace, label_selector):
        self._record("list_pods")
        return [p for p in self.pods.values() if _matches(p.labels, label_selector)]

    async def delete_pod(self, namespace, name):
        self._record("delete_pod")
        if self.pods.pop(name, None) is None:
            raise NotFoundError(f"pods \"{name}\" not found")

    async def create_service(self, namespace, manifest):
        self._record("create_service")
        name = manifest["metadata"]["name"]
        if name in self.services:
            raise PlatformConflict(f"services \"{name}\" already exists")
        service = ServiceInfo(
            name=name,
            namespace=namespace,
            cluster_ip="10.0.0.10",
            external_host=f"{name}.elb.example.com",
            port=manifest["spec"]["ports"][0]["port"],
        )
        self.services[name] = service
        return service

    async def read_service(self, namespace, name):
        self._record("read_service")
        if name not in self.services:
            raise NotFoundError(f"services \"{name}\" not found")
        return self.services[name]

    async def delete_service(self, namespace, name):
        self._record("delete_service")
        if self.services.pop(name, None) is None:
            raise NotFoundError(f"services \"{name}\" not found")

    async def create_volume_snapshot(self, namespace, manifest):
        self._record("create_volume_snapshot")
        metadata = manifest["metadata"]
        name = metadata["name"]
        if name in self.snapshots:
            raise PlatformConflict(f"volumesnapshots \"{name}\" already exists")
        self._clock += 1
        snapshot = Snapshot(
            name=name,
            namespace=namespace,
            source_volume_name=manifest["spec"]["source"]["persistentVolumeClaimName"],
            creation_timestamp=BASE_TIME + timedelta(hours=1, seconds=self._clock),
            ready_to_use=self.snapshots_ready,
            project_id=metadata["labels"].get("devdb/project-id"),
        )
        self.snapshots[name] = snapshot
        return snapshot

    async def list_volume_snapshots(self, namespace, label_selector):
        self._record("list_volume_snapshots")
        _, _, project_id = label_selector.partition("=")
        return [s for s in self.snapshots.values() if s.project_id == project_id]

    async def delete_volume_snapshot(self, namespace, name):
        self._record("delete_volume_snapshot")
        if self.snapshots.pop(name, None) is None:
            raise NotFoundError(f"volumesnapshots \"{name}\" not found")


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def http_handler(request: httpx.Request) -> httpx.Response:
    """Backups under /missing/ do not exist; everything else does."""
    if "/missing/" in request.url.path:
        return httpx.Response(404)
    return httpx.Response(200, content=b"PGDMP-backup-bytes")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        namespace="devdb-test",
        snapshot_settle_seconds=0,
        snapshot_ready_poll_attempts=3,
        snapshot_ready_poll_interval=0,
        snapshot_retention=5,
        staging_dir=str(tmp_path / "staging"),
        service_type="LoadBalancer",
        backup_bucket="devdb-test-backups",
        lock_wait_seconds=1,
    )


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def s3_client() -> MagicMock:
    """A boto3 S3 client stand-in; every object and bucket exists."""
    client = MagicMock()
    client.head_object.return_value = {"ContentLength": 18}
    client.head_bucket.return_value = {}
    client.generate_presigned_url.return_value = (
        "https://devdb-backups.s3.amazonaws.com/acme/shop.dump?X-Amz-Signature=abc"
    )
    return client


@pytest.fixture
def object_store(s3_client) -> ObjectStore:
    return ObjectStore(s3_client, region="us-east-1")


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def registry(redis, settings) -> ProjectRegistry:
    return ProjectRegistry(redis, prefix="test", lock_ttl=10, lock_wait=1)


@pytest_asyncio.fixture
async def services(settings, registry, platform, object_store) -> Services:
    svc = Services.build(
        settings,
        registry=registry,
        platform=platform,
        object_store=object_store,
        engine=create_journal_engine("sqlite:///:memory:"),
    )
    svc.importer.transport = httpx.MockTransport(http_handler)
    yield svc
    await svc.reconciler.aclose()
    svc.engine.dispose()


@pytest.fixture
def reconciler(services):
    return services.reconciler


def make_project(
    owner: str = "acme",
    name: str = "shop",
    engine: EngineType = EngineType.POSTGRES,
    version: str = "16",
    backup_location: Optional[str] = None,
) -> Project:
    return Project(
        id=f"{owner}-{name}",
        owner=owner,
        name=name,
        engine_type=engine,
        engine_version=version,
        backup_location=backup_location,
        default_credentials=Credentials(
            username="app", password="s3cret-pass", database_name="shop"
        ),
    )


@pytest_asyncio.fixture
async def project(registry) -> Project:
    return await registry.create(make_project())
