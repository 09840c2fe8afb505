"""
Kubernetes implementation of the orchestration platform.

The official client is synchronous; every call is pushed to a worker thread
so request handlers stay cooperative.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from ..config import Settings
from ..data.models.snapshots import Snapshot
from ..errors import NotFoundError, PlatformConflict, PlatformFailure
from .base import OrchestrationPlatform, PodInfo, ServiceInfo

logger = logging.getLogger(__name__)

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"


def _api_message(exc: ApiException) -> str:
    """Pull the human-readable message out of a Kubernetes error body."""
    if exc.body:
        try:
            return json.loads(exc.body).get("message") or exc.reason
        except (ValueError, AttributeError):
            return str(exc.body)
    return exc.reason or str(exc)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as emitted by the API server."""
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning(f"Ignoring unparseable timestamp: {raw}")
        return None


def parse_snapshot(obj: Dict[str, Any]) -> Snapshot:
    """Convert a VolumeSnapshot custom object into a Snapshot."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    labels = metadata.get("labels") or {}
    return Snapshot(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        source_volume_name=(spec.get("source") or {}).get("persistentVolumeClaimName"),
        creation_timestamp=parse_timestamp(metadata.get("creationTimestamp")),
        ready_to_use=bool(status.get("readyToUse")),
        project_id=labels.get("devdb/project-id"),
    )


def parse_pod(pod: Any) -> PodInfo:
    metadata = pod.metadata
    status = pod.status
    conditions = (status.conditions if status else None) or []
    ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
    return PodInfo(
        name=metadata.name,
        namespace=metadata.namespace,
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
        phase=status.phase if status else None,
        ready=ready,
        deleting=metadata.deletion_timestamp is not None,
    )


def parse_service(service: Any) -> ServiceInfo:
    external_host = None
    load_balancer = service.status.load_balancer if service.status else None
    if load_balancer and load_balancer.ingress:
        external_host = ", ".join(
            ing.hostname or ing.ip for ing in load_balancer.ingress if ing.hostname or ing.ip
        ) or None
    ports = service.spec.ports or []
    return ServiceInfo(
        name=service.metadata.name,
        namespace=service.metadata.namespace,
        cluster_ip=service.spec.cluster_ip,
        external_host=external_host,
        port=ports[0].port if ports else None,
    )


class KubernetesPlatform(OrchestrationPlatform):
    """Orchestration platform backed by the Kubernetes API."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    @classmethod
    def from_settings(cls, settings: Settings) -> "KubernetesPlatform":
        """Load cluster credentials the way kubectl would."""
        if settings.in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=settings.kubeconfig)
        return cls()

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            message = f"{operation} failed: {_api_message(e)}"
            if e.status == 409:
                raise PlatformConflict(message, operation=operation) from e
            if e.status == 404:
                raise NotFoundError(message, operation=operation) from e
            logger.error(f"Kubernetes API error during {operation}: {e.status} {e.reason}")
            raise PlatformFailure(message, operation=operation, status=e.status) from e
        except Exception as e:
            logger.error(f"Kubernetes call {operation} failed: {e}")
            raise PlatformFailure(f"{operation} failed: {e}", operation=operation) from e

    async def create_namespace(self, manifest: Dict[str, Any]) -> None:
        await self._call("create namespace", self.core.create_namespace, manifest)

    async def create_persistent_volume_claim(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Dict[str, Any]:
        pvc = await self._call(
            "create volume claim",
            self.core.create_namespaced_persistent_volume_claim,
            namespace,
            manifest,
        )
        return self.api_client.sanitize_for_serialization(pvc)

    async def delete_persistent_volume_claim(self, namespace: str, name: str) -> None:
        await self._call(
            "delete volume claim",
            self.core.delete_namespaced_persistent_volume_claim,
            name,
            namespace,
        )

    async def create_pod(self, namespace: str, manifest: Dict[str, Any]) -> PodInfo:
        pod = await self._call("create pod", self.core.create_namespaced_pod, namespace, manifest)
        return parse_pod(pod)

    async def read_pod(self, namespace: str, name: str) -> PodInfo:
        pod = await self._call("read pod", self.core.read_namespaced_pod, name, namespace)
        return parse_pod(pod)

    async def list_pods(self, namespace: str, label_selector: str) -> List[PodInfo]:
        pods = await self._call(
            "list pods",
            self.core.list_namespaced_pod,
            namespace,
            label_selector=label_selector,
        )
        return [parse_pod(pod) for pod in pods.items]

    async def delete_pod(self, namespace: str, name: str) -> None:
        await self._call("delete pod", self.core.delete_namespaced_pod, name, namespace)

    async def create_service(self, namespace: str, manifest: Dict[str, Any]) -> ServiceInfo:
        service = await self._call(
            "create service", self.core.create_namespaced_service, namespace, manifest
        )
        return parse_service(service)

    async def read_service(self, namespace: str, name: str) -> ServiceInfo:
        service = await self._call(
            "read service", self.core.read_namespaced_service, name, namespace
        )
        return parse_service(service)

    async def delete_service(self, namespace: str, name: str) -> None:
        await self._call("delete service", self.core.delete_namespaced_service, name, namespace)

    async def create_volume_snapshot(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Snapshot:
        obj = await self._call(
            "create volume snapshot",
            self.custom.create_namespaced_custom_object,
            SNAPSHOT_GROUP,
            SNAPSHOT_VERSION,
            namespace,
            SNAPSHOT_PLURAL,
            manifest,
        )
        return parse_snapshot(obj)

    async def list_volume_snapshots(
        self, namespace: str, label_selector: str
    ) -> List[Snapshot]:
        response = await self._call(
            "list volume snapshots",
            self.custom.list_namespaced_custom_object,
            SNAPSHOT_GROUP,
            SNAPSHOT_VERSION,
            namespace,
            SNAPSHOT_PLURAL,
            label_selector=label_selector,
        )
        return [parse_snapshot(item) for item in response.get("items") or []]

    async def delete_volume_snapshot(self, namespace: str, name: str) -> None:
        await self._call(
            "delete volume snapshot",
            self.custom.delete_namespaced_custom_object,
            SNAPSHOT_GROUP,
            SNAPSHOT_VERSION,
            namespace,
            SNAPSHOT_PLURAL,
            name,
        )
