"""Notification sink contract.

The core emits one event per transition. Delivery (polling, push, email)
belongs to the sink; the core never waits on it and never fails a
transition because a notification could not be sent.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from jobflow.types import format_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    """Something that happened to a job, addressed to one user."""

    type: str
    job_id: str
    status: str
    occurred_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "job_id": self.job_id,
            "status": self.status,
            "occurred_at": format_datetime(self.occurred_at),
            "data": dict(self.data),
        }


class NotificationSink(Protocol):
    """Protocol for fire-and-forget notification delivery."""

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Sink that only logs events. Default when nothing else is wired."""

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        logger.info("notify %s: %s (job=%s status=%s)", user_id, event.type, event.job_id, event.status)


class InMemoryNotificationSink:
    """Sink that records events, for tests and local development."""

    def __init__(self):
        self._sent: List[Tuple[str, NotificationEvent]] = []
        self._lock = threading.Lock()

    def notify(self, user_id: str, event: NotificationEvent) -> None:
        with self._lock:
            self._sent.append((user_id, event))

    @property
    def sent(self) -> List[Tuple[str, NotificationEvent]]:
        with self._lock:
            return list(self._sent)

    def for_user(self, user_id: str, event_type: Optional[str] = None) -> List[NotificationEvent]:
        return [
            e
            for uid, e in self.sent
            if uid == user_id and (event_type is None or e.type == event_type)
        ]


def dispatch(sink: Optional[NotificationSink], user_ids, event: NotificationEvent) -> None:
    """Send an event to each user, logging and swallowing sink failures."""
    if sink is None:
        return
    for user_id in dict.fromkeys(u for u in user_ids if u):
        try:
            sink.notify(user_id, event)
        except Exception as e:
            logger.warning("Notification %s to %s failed: %s", event.type, user_id, e)
