"""Tests for job data models."""

from datetime import datetime, timedelta, timezone

import pytest

from jobflow.commerce.errors import ValidationError
from jobflow.commerce.jobs.actions import (
    ACTION_TYPES,
    AdminOverride,
    ProposeFinalPrice,
    TimeoutExpire,
    action_from_dict,
)
from jobflow.commerce.jobs.models import (
    VALID_JOB_TRANSITIONS,
    AccessMethod,
    InvariantViolation,
    Job,
    JobAccess,
    JobApplication,
    JobStateTransition,
    JobStatus,
)

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def make_job(**kwargs) -> Job:
    defaults = dict(
        id="job-123",
        customer_id="cust-1",
        title="Fit new kitchen",
        location="LS1 4AP",
        service_category="carpentry",
    )
    defaults.update(kwargs)
    return Job(**defaults)


class TestJob:
    """Tests for Job dataclass."""

    def test_create_basic_job(self):
        job = make_job()

        assert job.status == "POSTED"
        assert job.job_size == "MEDIUM"
        assert job.won_by_contractor_id is None
        assert job.final_amount is None
        assert job.version == 1

    def test_enum_values_are_normalized(self):
        job = make_job(status=JobStatus.CANCELLED, job_size="SMALL")
        assert job.status == "CANCELLED"
        assert job.job_size == "SMALL"

    def test_invalid_status(self):
        with pytest.raises(ValueError, match="Invalid status"):
            make_job(status="open")

    def test_title_too_long(self):
        with pytest.raises(ValueError, match="Title too long"):
            make_job(title="x" * 201)

    def test_amounts_must_be_integer_pence(self):
        with pytest.raises(ValueError, match="integer amount in pence"):
            make_job(budget=12.5)
        with pytest.raises(ValueError, match="must be positive"):
            make_job(lead_price=0)

    def test_pending_claim_only_while_posted(self):
        job = make_job(won_by_contractor_id="con-a", winner_claimed_at=NOW)
        assert job.has_pending_claim
        assert not job.has_confirmed_winner

    def test_can_transition_to(self):
        job = make_job()
        assert job.can_transition_to(JobStatus.IN_PROGRESS)
        assert job.can_transition_to(JobStatus.CANCELLED)
        assert not job.can_transition_to(JobStatus.COMPLETED)

    def test_to_dict_from_dict(self):
        job = make_job(
            status="AWAITING_FINAL_PRICE_CONFIRMATION",
            won_by_contractor_id="con-a",
            winner_confirmed_at=NOW,
            contractor_proposed_amount=120000,
            final_price_timeout_at=NOW + timedelta(hours=48),
            version=4,
        )
        data = job.to_dict()
        assert data["final_price_timeout_at"] == "2025-03-05T09:00:00+00:00"

        restored = Job.from_dict(data)
        assert restored == job


class TestJobInvariants:
    def test_completed_requires_final_amount(self):
        job = make_job(status="COMPLETED", won_by_contractor_id="con-a", winner_confirmed_at=NOW)
        with pytest.raises(InvariantViolation, match="final_amount"):
            job.check_invariants()

    def test_final_amount_only_when_completed(self):
        job = make_job(
            status="IN_PROGRESS",
            won_by_contractor_id="con-a",
            winner_confirmed_at=NOW,
            final_amount=100,
        )
        with pytest.raises(InvariantViolation):
            job.check_invariants()

    def test_in_progress_requires_winner(self):
        job = make_job(status="IN_PROGRESS")
        with pytest.raises(InvariantViolation, match="without a winner"):
            job.check_invariants()

    def test_awaiting_requires_deadline(self):
        job = make_job(
            status="AWAITING_FINAL_PRICE_CONFIRMATION",
            won_by_contractor_id="con-a",
            winner_confirmed_at=NOW,
            contractor_proposed_amount=5000,
        )
        with pytest.raises(InvariantViolation, match="final_price_timeout_at"):
            job.check_invariants()

    def test_deadline_only_while_awaiting(self):
        job = make_job(
            status="DISPUTED",
            won_by_contractor_id="con-a",
            winner_confirmed_at=NOW,
            final_price_timeout_at=NOW,
        )
        with pytest.raises(InvariantViolation):
            job.check_invariants()

    def test_posted_job_is_consistent(self):
        make_job().check_invariants()


class TestJobAccess:
    def test_lead_payment_requires_reference(self):
        with pytest.raises(ValueError, match="payment reference"):
            JobAccess(
                id="acc-1",
                job_id="job-1",
                contractor_id="con-a",
                method=AccessMethod.LEAD_PAYMENT,
                purchased_at=NOW,
                amount_paid=3000,
            )

    def test_credit_access(self):
        access = JobAccess(
            id="acc-1",
            job_id="job-1",
            contractor_id="con-a",
            method="CREDIT",
            purchased_at=NOW,
            used_trial_credit=True,
        )
        assert access.is_credit
        assert JobAccess.from_dict(access.to_dict()) == access


class TestJobApplication:
    def test_defaults_to_pending(self):
        application = JobApplication(id="app-1", job_id="job-1", contractor_id="con-a", proposed_rate=4500)
        assert application.is_pending
        assert not application.is_accepted

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError, match="proposed_rate"):
            JobApplication(id="app-1", job_id="job-1", contractor_id="con-a", proposed_rate=0)


class TestJobStateTransition:
    def test_initial_transition_has_no_from_status(self):
        transition = JobStateTransition(
            id="t-1", job_id="job-1", to_status="POSTED", action="create", actor_id="cust-1"
        )
        assert transition.from_status is None
        assert JobStateTransition.from_dict(transition.to_dict()) == transition


class TestValidJobTransitions:
    def test_posted_transitions(self):
        assert VALID_JOB_TRANSITIONS[JobStatus.POSTED] == {JobStatus.IN_PROGRESS, JobStatus.CANCELLED}

    def test_awaiting_can_return_to_in_progress(self):
        assert JobStatus.IN_PROGRESS in VALID_JOB_TRANSITIONS[JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION]

    def test_disputed_only_completes(self):
        assert VALID_JOB_TRANSITIONS[JobStatus.DISPUTED] == {JobStatus.COMPLETED}

    def test_terminal_states(self):
        assert VALID_JOB_TRANSITIONS[JobStatus.COMPLETED] == set()
        assert VALID_JOB_TRANSITIONS[JobStatus.CANCELLED] == set()


class TestActions:
    def test_every_action_has_a_wire_name(self):
        assert set(ACTION_TYPES) == {
            "claim_win",
            "reject_claim",
            "confirm_winner",
            "propose_final_price",
            "confirm_final_price",
            "reject_final_price",
            "timeout_expire",
            "open_dispute",
            "admin_override",
            "set_lead_price",
            "cancel",
        }

    def test_action_from_dict(self):
        assert action_from_dict("propose_final_price", {"amount": 500}) == ProposeFinalPrice(amount=500)
        assert action_from_dict("admin_override", {"final_amount": 50000, "reason": "r"}) == AdminOverride(
            final_amount=50000, reason="r"
        )

    def test_timeout_deadline_parsed(self):
        action = action_from_dict("timeout_expire", {"deadline": "2025-03-05T09:00:00Z"})
        assert action == TimeoutExpire(deadline=NOW + timedelta(hours=48))

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError, match="Unknown action"):
            action_from_dict("fund_escrow")

    def test_unknown_payload_key_rejected(self):
        with pytest.raises(ValidationError):
            action_from_dict("propose_final_price", {"amount": 500, "amout": 5})
