"""Background timer sweep.

Delivers due clock events (final-price timeouts, commission due dates)
and then reconciles against the deadlines stored on the records
themselves, so a lost or never-scheduled event is still acted on.

Every step is idempotent and safe to run on several instances at once:
a timeout for a job that has moved on is a TimeoutAlreadyResolvedError,
which counts as success, and commission overdue marking is a status
compare-and-swap. Events whose handling fails stay unacknowledged and
are redelivered on the next run.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from jobflow.commerce.actors import SYSTEM_ACTOR
from jobflow.commerce.clock import ClockService, EventKind, ScheduledEvent
from jobflow.commerce.credits.models import CommissionStatus
from jobflow.commerce.credits.service import CreditService
from jobflow.commerce.errors import (
    CommissionNotFoundError,
    JobNotFoundError,
    TimeoutAlreadyResolvedError,
)
from jobflow.commerce.jobs.actions import TimeoutExpire
from jobflow.commerce.jobs.service import JobService
from jobflow.types import parse_datetime

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep run did."""

    started_at: datetime
    events_delivered: int = 0
    timeouts_escalated: int = 0
    timeouts_already_resolved: int = 0
    commissions_overdue: int = 0
    accounts_replenished: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "events_delivered": self.events_delivered,
            "timeouts_escalated": self.timeouts_escalated,
            "timeouts_already_resolved": self.timeouts_already_resolved,
            "commissions_overdue": self.commissions_overdue,
            "accounts_replenished": self.accounts_replenished,
            "failures": list(self.failures),
        }


class TimeoutSweeper:
    """Processes expired deadlines for jobs and commissions."""

    def __init__(
        self,
        jobs: JobService,
        credits: CreditService,
        clock: Optional[ClockService] = None,
        batch_size: int = 100,
        replenish_credits: bool = True,
    ):
        self.jobs = jobs
        self.credits = credits
        self.clock = clock or jobs.clock
        self.batch_size = batch_size
        self.replenish_credits = replenish_credits

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep pass.

        Args:
            now: Sweep time (defaults to the clock's current time)

        Returns:
            SweepReport with counts and any per-item failures
        """
        now = now or self.clock.now()
        report = SweepReport(started_at=now)

        for event in self.clock.due_before(now, limit=self.batch_size):
            if self._deliver(event, now, report):
                self.clock.acknowledge(event.handle)
                report.events_delivered += 1

        # Stored deadlines are the source of truth; events are only a hint
        for job in self.jobs.awaiting_final_price(deadline_before=now):
            self._guarded(
                report,
                f"timeout {job.id}",
                self._expire,
                job.id,
                job.final_price_timeout_at,
                report,
            )
        for commission in self.credits.list_commissions(
            status=CommissionStatus.PENDING, due_before=now
        ):
            self._guarded(
                report,
                f"commission {commission.id}",
                self._mark_overdue,
                commission.id,
                now,
                report,
            )

        if self.replenish_credits:
            self._guarded(report, "replenish", self._replenish, now, report)

        log = logger.warning if report.failures else logger.info
        log(
            "Sweep at %s: %d events, %d timeouts escalated, %d already resolved, "
            "%d commissions overdue, %d accounts replenished, %d failures",
            now.isoformat(),
            report.events_delivered,
            report.timeouts_escalated,
            report.timeouts_already_resolved,
            report.commissions_overdue,
            report.accounts_replenished,
            len(report.failures),
        )
        return report

    def run_forever(self, interval_seconds: float, stop: Optional[threading.Event] = None) -> None:
        """Sweep every interval until `stop` is set."""
        stop = stop or threading.Event()
        logger.info("Sweeper started (interval %.1fs)", interval_seconds)
        while not stop.is_set():
            self.run_once()
            stop.wait(interval_seconds)
        logger.info("Sweeper stopped")

    # =========================================================================
    # Steps
    # =========================================================================

    def _deliver(self, event: ScheduledEvent, now: datetime, report: SweepReport) -> bool:
        if event.kind == EventKind.FINAL_PRICE_TIMEOUT.value:
            deadline = parse_datetime(event.payload.get("deadline"))
            return self._guarded(
                report, f"event {event.handle}", self._expire, event.subject_id, deadline, report
            )
        if event.kind == EventKind.COMMISSION_DUE.value:
            return self._guarded(
                report, f"event {event.handle}", self._mark_overdue, event.subject_id, now, report
            )
        logger.warning("Dropping event %s of unknown kind %s", event.handle, event.kind)
        return True

    def _expire(self, job_id: str, deadline: Optional[datetime], report: SweepReport) -> None:
        try:
            self.jobs.transition(job_id, SYSTEM_ACTOR, TimeoutExpire(deadline=deadline))
        except TimeoutAlreadyResolvedError:
            report.timeouts_already_resolved += 1
            logger.debug("Timeout for job %s already resolved", job_id)
            return
        except JobNotFoundError:
            logger.warning("Timeout delivered for unknown job %s", job_id)
            return
        report.timeouts_escalated += 1

    def _mark_overdue(self, commission_id: str, now: datetime, report: SweepReport) -> None:
        try:
            changed = self.credits.mark_overdue(commission_id, now=now)
        except CommissionNotFoundError:
            logger.warning("Due date delivered for unknown commission %s", commission_id)
            return
        if changed:
            report.commissions_overdue += 1

    def _replenish(self, now: datetime, report: SweepReport) -> None:
        report.accounts_replenished += self.credits.replenish_all(now=now)

    def _guarded(self, report: SweepReport, label: str, func, *args) -> bool:
        """Run one step; record and log a failure instead of aborting the sweep."""
        try:
            func(*args)
        except Exception as e:
            logger.exception("Sweep step %s failed", label)
            report.failures.append(f"{label}: {e}")
            return False
        return True
