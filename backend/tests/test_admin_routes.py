"""Tests for admin API routes."""

from datetime import timedelta

import pytest


@pytest.fixture
def awaiting_job(client, services, posted_job, customer_headers, contractor_headers):
    """A job waiting on the customer to confirm a 500.00 final price."""
    job_id = posted_job["id"]
    services.credits.open_account("con-1")
    client.post(f"/api/v1/jobs/{job_id}/claim", json={}, headers=contractor_headers)
    client.post(f"/api/v1/jobs/{job_id}/claim/confirm", headers=customer_headers)
    response = client.post(
        f"/api/v1/jobs/{job_id}/final-price", json={"amount": 50000}, headers=contractor_headers
    )
    assert response.status_code == 200
    return response.json()


class TestAdminAccess:
    def test_non_admin_is_403(self, client, contractor_headers):
        response = client.get("/api/v1/admin/disputes", headers=contractor_headers)
        assert response.status_code == 403

    def test_admin_lists_disputes(self, client, admin_headers):
        response = client.get("/api/v1/admin/disputes", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == []


class TestTimeoutAndOverride:
    def test_sweep_escalates_expired_confirmation(
        self, client, services, awaiting_job, admin_headers, customer_headers
    ):
        services.clock.advance(timedelta(hours=48, seconds=1))

        report = client.post("/api/v1/admin/sweep", headers=admin_headers).json()
        assert report["timeouts_escalated"] == 1
        assert report["failures"] == []

        job = client.get(f"/api/v1/jobs/{awaiting_job['id']}", headers=customer_headers).json()
        assert job["status"] == "DISPUTED"
        assert job["final_amount"] is None

        disputes = client.get("/api/v1/admin/disputes?status=OPEN", headers=admin_headers).json()
        assert len(disputes) == 1
        assert disputes[0]["kind"] == "FINAL_PRICE_TIMEOUT"

        again = client.post("/api/v1/admin/sweep", headers=admin_headers).json()
        assert again["timeouts_escalated"] == 0

    def test_override_completes_and_audits(
        self, client, services, awaiting_job, admin_headers, contractor_headers
    ):
        job_id = awaiting_job["id"]
        services.clock.advance(timedelta(hours=49))
        client.post("/api/v1/admin/sweep", headers=admin_headers)

        response = client.post(
            f"/api/v1/admin/jobs/{job_id}/override",
            json={"final_amount": 45000, "reason": "Agreed by phone"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "COMPLETED"
        assert body["final_amount"] == 45000
        assert body["completed_by_override"] is True

        disputes = client.get(f"/api/v1/admin/disputes?job_id={job_id}", headers=admin_headers).json()
        assert disputes[0]["status"] == "RESOLVED"

        audit = client.get(
            f"/api/v1/admin/audit?subject_id={job_id}&action=admin_override", headers=admin_headers
        ).json()
        assert len(audit) == 1
        assert audit[0]["actor_id"] == "admin-1"
        assert audit[0]["old_state"] == "DISPUTED"
        assert audit[0]["new_state"] == "COMPLETED"
        assert audit[0]["reason"] == "Agreed by phone"

        commissions = client.get("/api/v1/commissions/me", headers=contractor_headers).json()
        assert commissions[0]["final_job_amount"] == 45000
        assert commissions[0]["total_amount"] == 2700

    def test_override_without_capability_is_403(
        self, client, awaiting_job, plain_admin_headers
    ):
        response = client.post(
            f"/api/v1/admin/jobs/{awaiting_job['id']}/override",
            json={"final_amount": 45000, "reason": "Because"},
            headers=plain_admin_headers,
        )
        assert response.status_code == 403

    def test_override_requires_reason(self, client, awaiting_job, admin_headers):
        response = client.post(
            f"/api/v1/admin/jobs/{awaiting_job['id']}/override",
            json={"final_amount": 45000, "reason": ""},
            headers=admin_headers,
        )
        assert response.status_code == 422


class TestLeadPrice:
    def test_admin_sets_lead_price(self, client, posted_job, admin_headers):
        job_id = posted_job["id"]
        response = client.post(
            f"/api/v1/admin/jobs/{job_id}/lead-price",
            json={"lead_price": 2500, "reason": "Urgent callout"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["lead_price"] == 2500

        audit = client.get(
            f"/api/v1/admin/audit?subject_id={job_id}&action=set_lead_price", headers=admin_headers
        ).json()
        assert audit[0]["old_state"] == "1500"
        assert audit[0]["new_state"] == "2500"

    def test_plain_admin_is_403(self, client, posted_job, plain_admin_headers):
        response = client.post(
            f"/api/v1/admin/jobs/{posted_job['id']}/lead-price",
            json={"lead_price": 2500, "reason": "Urgent callout"},
            headers=plain_admin_headers,
        )
        assert response.status_code == 403

    def test_customer_is_403(self, client, posted_job, customer_headers):
        response = client.post(
            f"/api/v1/admin/jobs/{posted_job['id']}/lead-price",
            json={"lead_price": 100, "reason": "Cheaper"},
            headers=customer_headers,
        )
        assert response.status_code == 403

    def test_not_posted_is_409(self, client, awaiting_job, admin_headers):
        response = client.post(
            f"/api/v1/admin/jobs/{awaiting_job['id']}/lead-price",
            json={"lead_price": 2500, "reason": "Too late"},
            headers=admin_headers,
        )
        assert response.status_code == 409

    def test_price_must_be_positive(self, client, posted_job, admin_headers):
        response = client.post(
            f"/api/v1/admin/jobs/{posted_job['id']}/lead-price",
            json={"lead_price": 0, "reason": "Free"},
            headers=admin_headers,
        )
        assert response.status_code == 422


class TestCreditAdmin:
    def test_open_account_and_adjust(self, client, admin_headers, contractor_headers):
        response = client.post(
            "/api/v1/admin/credits/accounts",
            json={"contractor_id": "con-1", "is_subscribed": True, "weekly_credits_limit": 5},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["trial_credits"] == 1

        response = client.post(
            "/api/v1/admin/credits/con-1/adjust",
            json={"amount": 3, "reason": "Goodwill"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["type"] == "ADMIN_ADJUSTMENT"

        account = client.get("/api/v1/credits/me", headers=contractor_headers).json()
        assert account["credits_balance"] == 3

    def test_removing_more_than_balance_is_402(self, client, services, admin_headers):
        services.credits.open_account("con-1", grant_trial=False)
        response = client.post(
            "/api/v1/admin/credits/con-1/adjust",
            json={"amount": -1, "reason": "Clawback"},
            headers=admin_headers,
        )
        assert response.status_code == 402

    def test_unknown_account_is_404(self, client, admin_headers):
        response = client.post(
            "/api/v1/admin/credits/nobody/subscription",
            json={"is_subscribed": True},
            headers=admin_headers,
        )
        assert response.status_code == 404
        assert response.json()["code"] == "account_not_found"


class TestCommissionAdmin:
    def test_waive_only_overdue(
        self, client, services, awaiting_job, admin_headers, customer_headers
    ):
        client.post(f"/api/v1/jobs/{awaiting_job['id']}/final-price/confirm", headers=customer_headers)
        commission = services.credits.commission_for_job(awaiting_job["id"])

        early = client.post(
            f"/api/v1/admin/commissions/{commission.id}/waive",
            json={"reason": "Hardship"},
            headers=admin_headers,
        )
        assert early.status_code == 409

        services.clock.advance(timedelta(hours=49))
        client.post("/api/v1/admin/sweep", headers=admin_headers)
        waived = client.post(
            f"/api/v1/admin/commissions/{commission.id}/waive",
            json={"reason": "Hardship"},
            headers=admin_headers,
        )
        assert waived.status_code == 200
        assert waived.json()["status"] == "WAIVED"
        assert waived.json()["waived_by"] == "admin-1"

    def test_confirm_payment_out_of_band(
        self, client, services, awaiting_job, admin_headers, customer_headers
    ):
        client.post(f"/api/v1/jobs/{awaiting_job['id']}/final-price/confirm", headers=customer_headers)
        commission = services.credits.commission_for_job(awaiting_job["id"])
        response = client.post(
            f"/api/v1/admin/commissions/{commission.id}/confirm-payment",
            json={"payment_reference": "BACS-991"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "PAID"

        again = client.post(
            f"/api/v1/admin/commissions/{commission.id}/confirm-payment",
            json={"payment_reference": "BACS-992"},
            headers=admin_headers,
        )
        assert again.status_code == 409
