"""Dispute data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from jobflow.types import format_datetime, parse_datetime


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class DisputeKind(str, Enum):
    """Why the dispute exists."""

    MANUAL = "MANUAL"  # Raised by the customer or the winning contractor
    FINAL_PRICE_TIMEOUT = "FINAL_PRICE_TIMEOUT"  # Escalated by the sweep


@dataclass
class Dispute:
    """A dispute on a job. Only an admin override moves it onward."""

    id: str
    job_id: str
    opened_by: str
    reason: str
    kind: str = DisputeKind.MANUAL.value
    status: str = DisputeStatus.OPEN.value
    opened_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.kind, DisputeKind):
            self.kind = self.kind.value
        if isinstance(self.status, DisputeStatus):
            self.status = self.status.value
        if self.kind not in {k.value for k in DisputeKind}:
            raise ValueError(f"Invalid dispute kind: {self.kind}")
        if self.status not in {s.value for s in DisputeStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        if not self.reason or not self.reason.strip():
            raise ValueError("Dispute reason cannot be empty")

    @property
    def is_open(self) -> bool:
        return self.status == DisputeStatus.OPEN.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "opened_by": self.opened_by,
            "reason": self.reason,
            "kind": self.kind,
            "status": self.status,
            "opened_at": format_datetime(self.opened_at),
            "resolved_at": format_datetime(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dispute":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            opened_by=data["opened_by"],
            reason=data["reason"],
            kind=data.get("kind", DisputeKind.MANUAL.value),
            status=data.get("status", DisputeStatus.OPEN.value),
            opened_at=parse_datetime(data.get("opened_at")),
            resolved_at=parse_datetime(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            resolution=data.get("resolution"),
        )
