"""
Provisioning journal models.

One row per instance-creation flow. The row records how far the flow got and
which platform resources it created, so a flow interrupted by a crash can be
found and its resources torn down.
"""

import uuid
from enum import Enum as PyEnum
from typing import Any, Dict

from sqlalchemy import JSON, Column, DateTime, Enum, Index, String, Text
from sqlalchemy.sql import func

from .base import Base


class FlowStep(PyEnum):
    REQUESTED = "requested"
    NAMESPACE_ENSURED = "namespace_ensured"
    SEED_STRATEGY_CHOSEN = "seed_strategy_chosen"
    VOLUME_PROVISIONED = "volume_provisioned"
    COMPUTE_LAUNCHED = "compute_launched"
    ENDPOINT_BOUND = "endpoint_bound"
    SNAPSHOT_CAPTURED = "snapshot_captured"
    READY = "ready"


class FlowStatus(PyEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class ProvisioningRecordModel(Base):
    """SQLAlchemy model for a creation flow."""

    __tablename__ = "provisioning_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String(63), nullable=False, index=True)
    instance_name = Column(String(63), nullable=False)
    strategy = Column(String(32), nullable=True)

    step = Column(
        Enum(*[s.value for s in FlowStep], name="provisioning_step"),
        nullable=False,
        default=FlowStep.REQUESTED.value,
    )
    status = Column(
        Enum(*[s.value for s in FlowStatus], name="provisioning_status"),
        nullable=False,
        default=FlowStatus.IN_PROGRESS.value,
        index=True,
    )

    # namespace, volume, pod, service, source_snapshot, backup_url, snapshot
    resources = Column(JSON, nullable=False, default=dict)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_provisioning_project_instance", "project_id", "instance_name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "instanceName": self.instance_name,
            "strategy": self.strategy,
            "step": self.step,
            "status": self.status,
            "resources": dict(self.resources or {}),
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
