"""SQLite-backed ClockService.

Scheduled events are rows, so they survive restarts and any sweeper
process sharing the database sees them. Acknowledgement is a
conditional UPDATE; of several sweepers acking one event, one wins.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from jobflow.commerce.clock import EventKind, ScheduledEvent
from jobflow.storage.schema import sortable_ts
from jobflow.storage.sqlite import SQLiteDatabase, _dumps
from jobflow.types import utc_now

logger = logging.getLogger(__name__)


class SQLiteClock(SQLiteDatabase):
    """Wall-clock time plus a persistent event queue."""

    def now(self) -> datetime:
        return utc_now()

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
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO scheduled_events (handle, kind, subject_id, due_at, acknowledged_at, data)
                   VALUES (?, ?, ?, ?, NULL, ?)""",
                (
                    event.handle,
                    event.kind,
                    event.subject_id,
                    sortable_ts(event.due_at),
                    _dumps(event.to_dict()),
                ),
            )
        logger.debug("Scheduled %s for %s at %s", event.kind, subject_id, due_at.isoformat())
        return event.handle

    def due_before(self, now: datetime, limit: int = 100) -> List[ScheduledEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT data FROM scheduled_events
                   WHERE acknowledged_at IS NULL AND due_at <= ?
                   ORDER BY due_at LIMIT ?""",
                (sortable_ts(now), limit),
            ).fetchall()
        return [ScheduledEvent.from_dict(json.loads(r["data"])) for r in rows]

    def acknowledge(self, handle: str) -> bool:
        acked_at = self.now()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM scheduled_events WHERE handle = ? AND acknowledged_at IS NULL",
                (handle,),
            ).fetchone()
            if row is None:
                return False
            event = ScheduledEvent.from_dict(json.loads(row["data"]))
            event.acknowledged_at = acked_at
            cur = conn.execute(
                """UPDATE scheduled_events SET acknowledged_at = ?, data = ?
                   WHERE handle = ? AND acknowledged_at IS NULL""",
                (sortable_ts(acked_at), _dumps(event.to_dict()), handle),
            )
            return cur.rowcount == 1

    def pending(self) -> List[ScheduledEvent]:
        """All unacknowledged events regardless of due time."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM scheduled_events WHERE acknowledged_at IS NULL ORDER BY due_at"
            ).fetchall()
        return [ScheduledEvent.from_dict(json.loads(r["data"])) for r in rows]
