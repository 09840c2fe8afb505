"""
Kubernetes manifest builders and resource naming.

All builders are pure functions returning plain dicts that the Kubernetes
client accepts as request bodies.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..data.models.projects import Credentials
from ..errors import ValidationError
from .engines import BACKUP_URL_ENV, INITDB_PATH, SEED_MOUNT_PATH, EngineProfile

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_PROJECT = "devdb/project-id"
LABEL_OWNER = "devdb/owner"
LABEL_ENGINE = "devdb/engine"
LABEL_INSTANCE = "devdb/instance"
LABEL_INSTANCE_NAME = "devdb/instance-name"
LABEL_SOURCE_VOLUME = "devdb/source-volume"

ANNOTATION_SOURCE_SNAPSHOT = "devdb.io/source-snapshot"
ANNOTATION_SOURCE_SNAPSHOT_TIME = "devdb.io/source-snapshot-time"
ANNOTATION_CREATION_TIME = "devdb.io/creation-time"
ANNOTATION_BACKUP_URL = "devdb.io/backup-url"
ANNOTATION_ENGINE_VERSION = "devdb.io/engine-version"
ANNOTATION_USERNAME = "devdb.io/username"
ANNOTATION_DATABASE = "devdb.io/database"

MANAGER = "devdb"
SNAPSHOT_API_GROUP = "snapshot.storage.k8s.io"

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?\Z")
_MAX_BASE_NAME = 54  # leaves room for "-data" / "-svc" within 63 characters


def validate_instance_name(name: str) -> str:
    """Instance names must be DNS labels so they can be used as label values."""
    name = (name or "").strip()
    if not name or len(name) > 63 or not _DNS_LABEL_RE.match(name):
        raise ValidationError(
            f"Invalid database name '{name}': use lowercase letters, digits and '-', "
            "starting and ending with an alphanumeric character (max 63)"
        )
    return name


def resource_base_name(project_id: str, instance_name: str) -> str:
    """Deterministic, DNS-1035 safe base name for an instance's resources.

    The full project id (never a truncated owner prefix) is part of the name,
    so instances of different projects cannot collide. Names that would exceed
    the label limit are shortened and disambiguated with a hash suffix.
    """
    base = f"db-{project_id}-{instance_name}"
    if len(base) <= _MAX_BASE_NAME:
        return base
    digest = hashlib.sha1(base.encode("utf-8")).hexdigest()[:8]
    return f"{base[:_MAX_BASE_NAME - 9].rstrip('-')}-{digest}"


def volume_name(base: str) -> str:
    return f"{base}-data"


def service_name(base: str) -> str:
    return f"{base}-svc"


def snapshot_name(source_volume: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"{source_volume}-snap-{when.strftime('%Y%m%d%H%M%S')}"


def project_selector(project_id: str) -> str:
    return f"{LABEL_PROJECT}={project_id}"


def instance_labels(
    project_id: str, owner: str, engine: str, base: str, instance_name: str
) -> Dict[str, str]:
    return {
        LABEL_MANAGED_BY: MANAGER,
        LABEL_PROJECT: project_id,
        LABEL_OWNER: _label_value(owner),
        LABEL_ENGINE: engine,
        LABEL_INSTANCE: base,
        LABEL_INSTANCE_NAME: instance_name,
    }


def _label_value(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "-", value).strip("-_.")
    return cleaned[:63].rstrip("-_.")


def namespace_manifest(name: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name, "labels": {LABEL_MANAGED_BY: MANAGER}},
    }


def pvc_manifest(
    name: str,
    namespace: str,
    size: str,
    storage_class: Optional[str],
    labels: Dict[str, str],
    source_snapshot: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": size}},
    }
    if storage_class:
        spec["storageClassName"] = storage_class
    if source_snapshot:
        spec["dataSource"] = {
            "name": source_snapshot,
            "kind": "VolumeSnapshot",
            "apiGroup": SNAPSHOT_API_GROUP,
        }

    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels),
            "annotations": {
                ANNOTATION_CREATION_TIME: datetime.now(timezone.utc).isoformat(),
                **(annotations or {}),
            },
        },
        "spec": spec,
    }


def pod_manifest(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    profile: EngineProfile,
    engine_version: str,
    credentials: Credentials,
    claim_name: str,
    init_image: str,
    seed_url: Optional[str] = None,
    seed_ref: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Build the engine pod.

    With ``seed_url`` an init container downloads the backup artifact into an
    ``emptyDir`` that the engine mounts as its initdb directory, so the
    artifact is loaded before the server starts accepting connections.
    """
    env = [{"name": k, "value": v} for k, v in profile.environment(credentials).items()]
    volume_mounts = [{"name": "data", "mountPath": profile.data_mount_path}]
    volumes: list = [{"name": "data", "persistentVolumeClaim": {"claimName": claim_name}}]

    container: Dict[str, Any] = {
        "name": profile.engine.value,
        "image": profile.image(engine_version),
        "ports": [{"containerPort": profile.port, "name": "db"}],
        "env": env,
        "volumeMounts": volume_mounts,
        "readinessProbe": {
            "exec": {"command": profile.readiness_command(credentials)},
            "initialDelaySeconds": 5,
            "periodSeconds": 5,
        },
    }
    spec: Dict[str, Any] = {"containers": [container], "volumes": volumes}

    if seed_url:
        volumes.append({"name": "seed", "emptyDir": {}})
        volume_mounts.append({"name": "seed", "mountPath": INITDB_PATH})
        spec["initContainers"] = [
            {
                "name": "stage-backup",
                "image": init_image,
                "command": ["/bin/sh", "-c", profile.seed_script(seed_ref or seed_url)],
                "env": [{"name": BACKUP_URL_ENV, "value": seed_url}],
                "volumeMounts": [{"name": "seed", "mountPath": SEED_MOUNT_PATH}],
            }
        ]

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels),
            "annotations": {ANNOTATION_ENGINE_VERSION: engine_version, **(annotations or {})},
        },
        "spec": spec,
    }


def service_manifest(
    name: str,
    namespace: str,
    labels: Dict[str, str],
    selector: Dict[str, str],
    port: int,
    service_type: str,
    load_balancer_scheme: str,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": dict(labels),
    }
    if service_type == "LoadBalancer":
        metadata["annotations"] = {
            "service.beta.kubernetes.io/aws-load-balancer-scheme": load_balancer_scheme,
            "service.beta.kubernetes.io/aws-load-balancer-type": "external",
            "service.beta.kubernetes.io/aws-load-balancer-nlb-target-type": "ip",
            "service.beta.kubernetes.io/aws-load-balancer-name": name[:32].rstrip("-"),
        }

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": service_type,
            "selector": dict(selector),
            "ports": [{"protocol": "TCP", "port": port, "targetPort": port}],
        },
    }


def snapshot_manifest(
    name: str,
    namespace: str,
    source_volume: str,
    project_id: str,
    snapshot_class: Optional[str],
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"source": {"persistentVolumeClaimName": source_volume}}
    if snapshot_class:
        spec["volumeSnapshotClassName"] = snapshot_class
    return {
        "apiVersion": f"{SNAPSHOT_API_GROUP}/v1",
        "kind": "VolumeSnapshot",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                LABEL_MANAGED_BY: MANAGER,
                LABEL_PROJECT: project_id,
                LABEL_SOURCE_VOLUME: source_volume,
            },
            "annotations": {
                ANNOTATION_CREATION_TIME: datetime.now(timezone.utc).isoformat(),
            },
        },
        "spec": spec,
    }
