"""
Provisioning journal service.

Every method opens its own short session so it can be called from request
handlers and background tasks alike.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from .models import FlowStatus, FlowStep, ProvisioningRecordModel


class ProvisioningJournal:
    """Service for recording instance-creation flows."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def begin(self, project_id: str, instance_name: str) -> str:
        """Open a record for a new flow and return its id."""
        with self.session_factory() as db:
            record = ProvisioningRecordModel(
                project_id=project_id,
                instance_name=instance_name,
                step=FlowStep.REQUESTED.value,
                status=FlowStatus.IN_PROGRESS.value,
                resources={},
            )
            db.add(record)
            db.commit()
            return record.id

    def advance(
        self,
        record_id: str,
        step: FlowStep,
        strategy: Optional[str] = None,
        **resources: Any,
    ) -> None:
        """Move a flow to ``step`` and merge newly created resource names."""
        with self.session_factory() as db:
            record = db.get(ProvisioningRecordModel, record_id)
            if record is None:
                return
            record.step = step.value
            if strategy:
                record.strategy = strategy
            created = {k: v for k, v in resources.items() if v is not None}
            if created:
                # Reassign so the JSON column is flagged dirty
                record.resources = {**(record.resources or {}), **created}
            db.commit()

    def complete(self, record_id: str) -> None:
        self._set_status(record_id, FlowStatus.COMPLETED, step=FlowStep.READY)

    def fail(self, record_id: str, error: str) -> None:
        self._set_status(record_id, FlowStatus.FAILED, error=error)

    def mark_abandoned(self, record_id: str, error: Optional[str] = None) -> None:
        self._set_status(record_id, FlowStatus.ABANDONED, error=error)

    def snapshot_captured(self, record_id: str, snapshot: str) -> None:
        """Record the post-initialisation snapshot of a flow.

        Capture runs after the flow reached Ready, so the status is kept.
        """
        with self.session_factory() as db:
            record = db.get(ProvisioningRecordModel, record_id)
            if record is None:
                return
            record.step = FlowStep.SNAPSHOT_CAPTURED.value
            record.resources = {**(record.resources or {}), "snapshot": snapshot}
            db.commit()

    def _set_status(
        self,
        record_id: str,
        status: FlowStatus,
        step: Optional[FlowStep] = None,
        error: Optional[str] = None,
    ) -> None:
        with self.session_factory() as db:
            record = db.get(ProvisioningRecordModel, record_id)
            if record is None:
                return
            record.status = status.value
            if step:
                record.step = step.value
            if error:
                record.error = error
            db.commit()

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            record = db.get(ProvisioningRecordModel, record_id)
            return record.to_dict() if record else None

    def list(
        self,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        with self.session_factory() as db:
            query = db.query(ProvisioningRecordModel)
            if status:
                query = query.filter(ProvisioningRecordModel.status == status)
            if project_id:
                query = query.filter(ProvisioningRecordModel.project_id == project_id)
            records = (
                query.order_by(desc(ProvisioningRecordModel.created_at))
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [record.to_dict() for record in records]

    def incomplete(self) -> List[Dict[str, Any]]:
        """Flows that never reached a terminal status."""
        return self.list(status=FlowStatus.IN_PROGRESS.value, limit=1000)
