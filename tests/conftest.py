"""
Pytest fixtures and test configuration for jobflow tests.
"""

from datetime import datetime, timezone

import pytest

from jobflow.commerce.actors import Actor
from jobflow.commerce.audit import InMemoryAuditLog
from jobflow.commerce.clock import InMemoryClock
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.jobs.models import JobSize
from jobflow.commerce.notifications import InMemoryNotificationSink
from jobflow.commerce.payments import InMemoryPaymentGateway
from jobflow.services import in_memory_services

# Monday, so weekly replenishment tests can reason about ISO weeks
T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Frozen clock starting at T0."""
    return InMemoryClock(frozen_at=T0)


@pytest.fixture
def config():
    return CommerceConfig()


@pytest.fixture
def notifications():
    return InMemoryNotificationSink()


@pytest.fixture
def payments():
    return InMemoryPaymentGateway()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def services(clock, config, notifications, payments, audit):
    """In-memory service graph; admin-1 holds the override capability."""
    return in_memory_services(
        config=config,
        clock=clock,
        override_actor_ids=["admin-1"],
        notifications=notifications,
        payments=payments,
        audit=audit,
    )


@pytest.fixture
def customer():
    return Actor.customer("cust-1")


@pytest.fixture
def contractor():
    return Actor.contractor("con-a")


@pytest.fixture
def other_contractor():
    return Actor.contractor("con-b")


@pytest.fixture
def admin():
    return Actor.admin("admin-1")


@pytest.fixture
def make_job(services, customer):
    """Factory for POSTED jobs owned by the customer fixture."""

    def _make(job_size=JobSize.MEDIUM, **kwargs):
        kwargs.setdefault("title", "Replace boiler")
        kwargs.setdefault("location", "M1 1AE")
        kwargs.setdefault("service_category", "heating")
        return services.jobs.create_job(customer_id=customer.id, job_size=job_size, **kwargs)

    return _make


@pytest.fixture
def job(make_job):
    return make_job()


@pytest.fixture
def funded_contractor(services, contractor):
    """Contractor with one regular credit and no trial."""
    services.credits.open_account(contractor.id, grant_trial=False)
    services.credits.adjust_credits(contractor.id, 1, "Starter credit", Actor.admin("ops"))
    return contractor


@pytest.fixture
def in_progress_job(services, job, customer, funded_contractor):
    """Job claimed by the funded contractor and confirmed by the customer."""
    services.jobs.claim_win(job.id, funded_contractor)
    return services.jobs.confirm_winner(job.id, customer)


@pytest.fixture
def awaiting_job(services, in_progress_job, funded_contractor):
    """Job waiting on the customer to confirm a 1,200.00 final price."""
    return services.jobs.propose_final_price(in_progress_job.id, funded_contractor, 120000)
