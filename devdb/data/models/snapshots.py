"""Volume snapshot model."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time copy of a project's volume, usable as a clone source."""

    name: str
    namespace: str
    source_volume_name: Optional[str]
    creation_timestamp: Optional[datetime]
    ready_to_use: bool
    project_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "sourceVolumeName": self.source_volume_name,
            "creationTimestamp": (
                self.creation_timestamp.isoformat() if self.creation_timestamp else None
            ),
            "readyToUse": self.ready_to_use,
            "projectId": self.project_id,
        }
