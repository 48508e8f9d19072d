"""Audit records for admin actions that bypass normal consent.

Producing the record is the core's job; shipping it to a durable log
store is the AuditLog implementation's.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from jobflow.types import format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    """An audited admin action with before/after state."""

    id: str
    action: str
    actor_id: str
    subject_type: str
    subject_id: str
    reason: str
    old_state: Optional[str] = None
    new_state: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.reason or not self.reason.strip():
            raise ValueError("Audit reason cannot be empty")
        if not self.actor_id:
            raise ValueError("Audit actor_id cannot be empty")

    @classmethod
    def create(
        cls,
        action: str,
        actor_id: str,
        subject_type: str,
        subject_id: str,
        reason: str,
        old_state: Optional[str] = None,
        new_state: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> "AuditRecord":
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            actor_id=actor_id,
            subject_type=subject_type,
            subject_id=subject_id,
            reason=reason.strip(),
            old_state=old_state,
            new_state=new_state,
            metadata=dict(metadata or {}),
            created_at=created_at or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "actor_id": self.actor_id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "reason": self.reason,
            "old_state": self.old_state,
            "new_state": self.new_state,
            "metadata": self.metadata,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        return cls(
            id=data["id"],
            action=data["action"],
            actor_id=data["actor_id"],
            subject_type=data["subject_type"],
            subject_id=data["subject_id"],
            reason=data["reason"],
            old_state=data.get("old_state"),
            new_state=data.get("new_state"),
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")),
        )


class AuditLog(Protocol):
    """Destination for audit records."""

    def append(self, record: AuditRecord) -> None:
        ...

    def records(
        self,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditRecord]:
        """Stored records, oldest first."""
        ...


class InMemoryAuditLog:
    """Audit log kept in memory; every append is also logged."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)
        logger.info(
            "AUDIT %s by %s on %s/%s: %s -> %s (%s)",
            record.action,
            record.actor_id,
            record.subject_type,
            record.subject_id,
            record.old_state,
            record.new_state,
            record.reason,
        )

    def records(
        self,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[AuditRecord]:
        with self._lock:
            result = list(self._records)
        if subject_id is not None:
            result = [r for r in result if r.subject_id == subject_id]
        if action is not None:
            result = [r for r in result if r.action == action]
        return result
