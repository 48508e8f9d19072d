"""Clock/timer service contract.

Deadlines (final-price confirmation, commission due dates) are stored on
the records themselves; the clock additionally keeps a queue of scheduled
events so the sweep can deliver them. Delivery is at-least-once: an event
stays due until it is acknowledged.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from jobflow.types import format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of scheduled event the sweep knows how to deliver."""

    FINAL_PRICE_TIMEOUT = "final_price_timeout"
    COMMISSION_DUE = "commission_due"


@dataclass
class ScheduledEvent:
    """A payload due for delivery at a wall-clock time."""

    handle: str
    kind: str
    subject_id: str
    due_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.kind, EventKind):
            self.kind = self.kind.value
        if self.kind not in {k.value for k in EventKind}:
            raise ValueError(f"Invalid event kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "kind": self.kind,
            "subject_id": self.subject_id,
            "due_at": format_datetime(self.due_at),
            "payload": self.payload,
            "created_at": format_datetime(self.created_at),
            "acknowledged_at": format_datetime(self.acknowledged_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledEvent":
        return cls(
            handle=data["handle"],
            kind=data["kind"],
            subject_id=data["subject_id"],
            due_at=parse_datetime(data["due_at"]),
            payload=data.get("payload") or {},
            created_at=parse_datetime(data.get("created_at")),
            acknowledged_at=parse_datetime(data.get("acknowledged_at")),
        )


class ClockService(Protocol):
    """Protocol for time and delayed-event scheduling."""

    def now(self) -> datetime:
        """Current aware UTC time."""
        ...

    def schedule_at(
        self,
        due_at: datetime,
        kind: EventKind,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Schedule an event. Returns its handle."""
        ...

    def due_before(self, now: datetime, limit: int = 100) -> List[ScheduledEvent]:
        """Unacknowledged events with due_at <= now, oldest first."""
        ...

    def acknowledge(self, handle: str) -> bool:
        """Mark an event delivered. Returns False if unknown or already acked."""
        ...


class InMemoryClock:
    """In-memory clock for tests and local development.

    Tracks real time unless frozen; `advance()` freezes the clock and
    moves it forward.
    """

    def __init__(self, frozen_at: Optional[datetime] = None):
        self._frozen_at = parse_datetime(frozen_at) if frozen_at else None
        self._events: Dict[str, ScheduledEvent] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._frozen_at or utc_now()

    def set(self, moment: datetime) -> None:
        self._frozen_at = parse_datetime(moment)

    def advance(self, delta: timedelta) -> datetime:
        self._frozen_at = self.now() + delta
        return self._frozen_at

    def schedule_at(
        self,
        due_at: datetime,
        kind: EventKind,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        event = ScheduledEvent(
            handle=str(uuid.uuid4()),
            kind=kind,
            subject_id=subject_id,
            due_at=due_at,
            payload=dict(payload or {}),
            created_at=self.now(),
        )
        with self._lock:
            self._events[event.handle] = event
        logger.debug("Scheduled %s for %s at %s", event.kind, subject_id, due_at.isoformat())
        return event.handle

    def due_before(self, now: datetime, limit: int = 100) -> List[ScheduledEvent]:
        with self._lock:
            due = [
                e
                for e in self._events.values()
                if e.acknowledged_at is None and e.due_at <= now
            ]
        due.sort(key=lambda e: e.due_at)
        return due[:limit]

    def acknowledge(self, handle: str) -> bool:
        with self._lock:
            event = self._events.get(handle)
            if event is None or event.acknowledged_at is not None:
                return False
            event.acknowledged_at = self.now()
            return True

    def pending(self) -> List[ScheduledEvent]:
        """All unacknowledged events regardless of due time."""
        with self._lock:
            return [e for e in self._events.values() if e.acknowledged_at is None]
