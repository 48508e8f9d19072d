"""Wiring of stores and collaborators into the jobflow services.

Both the CLI and the HTTP app build their services here so they share
one composition of clock, ledger, job store and collaborators.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from jobflow.commerce.audit import AuditLog, InMemoryAuditLog
from jobflow.commerce.authorization import StaticAuthorization
from jobflow.commerce.clock import ClockService, InMemoryClock
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.service import CreditService
from jobflow.commerce.credits.storage import CreditLedger, InMemoryCreditLedger
from jobflow.commerce.disputes.service import DisputeService
from jobflow.commerce.jobs.service import JobService
from jobflow.commerce.jobs.storage import InMemoryJobStorage, JobStore
from jobflow.commerce.notifications import LoggingNotificationSink, NotificationSink
from jobflow.commerce.payments import InMemoryPaymentGateway, PaymentGateway
from jobflow.commerce.sweeper import TimeoutSweeper
from jobflow.storage import SQLiteAuditLog, SQLiteClock, SQLiteCreditLedger, SQLiteJobStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired-up service graph."""

    jobs: JobService
    credits: CreditService
    disputes: DisputeService
    sweeper: TimeoutSweeper
    clock: ClockService
    audit: AuditLog


def build_services(
    store: JobStore,
    ledger: CreditLedger,
    clock: ClockService,
    config: Optional[CommerceConfig] = None,
    override_actor_ids: Iterable[str] = (),
    payments: Optional[PaymentGateway] = None,
    notifications: Optional[NotificationSink] = None,
    audit: Optional[AuditLog] = None,
) -> Services:
    config = config or CommerceConfig.from_env()
    authorization = StaticAuthorization(override_actor_ids)
    audit = audit or InMemoryAuditLog()
    notifications = notifications or LoggingNotificationSink()
    payments = payments or InMemoryPaymentGateway()

    credits = CreditService(
        ledger,
        config=config,
        clock=clock,
        payments=payments,
        audit=audit,
        authorization=authorization,
    )
    jobs = JobService(
        store,
        credits,
        clock=clock,
        notifications=notifications,
        authorization=authorization,
        config=config,
    )
    return Services(
        jobs=jobs,
        credits=credits,
        disputes=DisputeService(jobs, authorization=authorization),
        sweeper=TimeoutSweeper(jobs, credits, clock=clock),
        clock=clock,
        audit=audit,
    )


def in_memory_services(
    config: Optional[CommerceConfig] = None,
    clock: Optional[ClockService] = None,
    **kwargs,
) -> Services:
    """Services over in-memory stores, for tests and local experiments."""
    ledger = InMemoryCreditLedger()
    audit = kwargs.pop("audit", None) or InMemoryAuditLog()
    return build_services(
        InMemoryJobStorage(ledger=ledger, audit_log=audit),
        ledger,
        clock or InMemoryClock(),
        config=config or CommerceConfig(),
        audit=audit,
        **kwargs,
    )


def sqlite_services(
    db_path: Optional[Union[str, Path]] = None,
    config: Optional[CommerceConfig] = None,
    **kwargs,
) -> Services:
    """Services over one SQLite database file.

    Job saves write commissions and override audit records in the same
    transaction, so the ledger and audit log must live in that file too.
    """
    store = SQLiteJobStorage(db_path)
    logger.debug("Using SQLite database at %s", store.db_path)
    return build_services(
        store,
        SQLiteCreditLedger(store.db_path),
        SQLiteClock(store.db_path),
        config=config,
        audit=kwargs.pop("audit", None) or SQLiteAuditLog(store.db_path),
        **kwargs,
    )
