"""
Orchestration platform abstraction.

The reconciler only depends on ``OrchestrationPlatform``. Implementations
translate platform errors into the devdb taxonomy:

- resource already exists -> ``PlatformConflict``
- resource missing -> ``NotFoundError``
- anything else -> ``PlatformFailure``
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..data.models.snapshots import Snapshot


@dataclass
class PodInfo:
    """The parts of a pod the reconciler cares about."""

    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    phase: Optional[str] = None
    ready: bool = False
    deleting: bool = False


@dataclass
class ServiceInfo:
    name: str
    namespace: str
    cluster_ip: Optional[str] = None
    external_host: Optional[str] = None
    port: Optional[int] = None

    @property
    def host(self) -> str:
        """Best reachable address: load balancer, then cluster DNS."""
        if self.external_host:
            return self.external_host
        return f"{self.name}.{self.namespace}.svc.cluster.local"


class OrchestrationPlatform(ABC):
    """Abstract container orchestration platform."""

    @abstractmethod
    async def create_namespace(self, manifest: Dict[str, Any]) -> None:
        """Create a namespace. Raises PlatformConflict if it exists."""
        pass

    @abstractmethod
    async def create_persistent_volume_claim(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_persistent_volume_claim(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    async def create_pod(self, namespace: str, manifest: Dict[str, Any]) -> PodInfo:
        pass

    @abstractmethod
    async def read_pod(self, namespace: str, name: str) -> PodInfo:
        pass

    @abstractmethod
    async def list_pods(self, namespace: str, label_selector: str) -> List[PodInfo]:
        pass

    @abstractmethod
    async def delete_pod(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    async def create_service(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> ServiceInfo:
        pass

    @abstractmethod
    async def read_service(self, namespace: str, name: str) -> ServiceInfo:
        pass

    @abstractmethod
    async def delete_service(self, namespace: str, name: str) -> None:
        pass

    @abstractmethod
    async def create_volume_snapshot(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Snapshot:
        pass

    @abstractmethod
    async def list_volume_snapshots(
        self, namespace: str, label_selector: str
    ) -> List[Snapshot]:
        pass

    @abstractmethod
    async def delete_volume_snapshot(self, namespace: str, name: str) -> None:
        pass
