"""Pytest configuration and fixtures."""

import os
import secrets

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("OVERRIDE_ACTOR_IDS", '["admin-1"]')

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.deps import get_services  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from jobflow.commerce.actors import ActorRole  # noqa: E402
from jobflow.commerce.clock import InMemoryClock  # noqa: E402
from jobflow.commerce.notifications import InMemoryNotificationSink  # noqa: E402
from jobflow.services import in_memory_services  # noqa: E402


@pytest.fixture
def services():
    """In-memory service graph with a controllable clock."""
    return in_memory_services(
        clock=InMemoryClock(),
        override_actor_ids=["admin-1"],
        notifications=InMemoryNotificationSink(),
    )


@pytest.fixture
def client(services):
    """Test client wired to the in-memory services, rate limits off."""
    app.dependency_overrides[get_services] = lambda: services
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True


def _headers(actor_id: str, role: ActorRole) -> dict:
    token = create_access_token(actor_id, role, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    return _headers("cust-1", ActorRole.CUSTOMER)


@pytest.fixture
def contractor_headers():
    return _headers("con-1", ActorRole.CONTRACTOR)


@pytest.fixture
def other_contractor_headers():
    return _headers("con-2", ActorRole.CONTRACTOR)


@pytest.fixture
def admin_headers():
    return _headers("admin-1", ActorRole.ADMIN)


@pytest.fixture
def plain_admin_headers():
    """Admin token for an actor without the override capability."""
    return _headers("admin-2", ActorRole.ADMIN)


@pytest.fixture
def posted_job(client, customer_headers):
    response = client.post(
        "/api/v1/jobs",
        json={
            "title": "Fix leaking tap",
            "location": "SW1A 1AA",
            "service_category": "plumbing",
            "job_size": "SMALL",
        },
        headers=customer_headers,
    )
    assert response.status_code == 201
    return response.json()
