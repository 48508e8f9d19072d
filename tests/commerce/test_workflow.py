"""Tests for the job workflow engine."""

import threading
from datetime import timedelta

import pytest

from jobflow.commerce.actors import SYSTEM_ACTOR, Actor
from jobflow.commerce.audit import InMemoryAuditLog
from jobflow.commerce.authorization import StaticAuthorization
from jobflow.commerce.clock import EventKind
from jobflow.commerce.credits.models import ClaimMethod, CommissionStatus
from jobflow.commerce.credits.service import CreditService
from jobflow.commerce.credits.storage import InMemoryCreditLedger
from jobflow.commerce.disputes.models import DisputeKind
from jobflow.commerce.errors import (
    AccessRequiredError,
    AlreadyClaimedError,
    AuditError,
    CommissionSettlementError,
    ConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    TimeoutAlreadyResolvedError,
    UnauthorizedError,
    ValidationError,
)
from jobflow.commerce.jobs.actions import (
    AdminOverride,
    ClaimWin,
    ConfirmFinalPrice,
    OpenDispute,
    ProposeFinalPrice,
    TimeoutExpire,
)
from jobflow.commerce.jobs.models import ApplicationStatus, JobSize, JobStatus
from jobflow.commerce.jobs.service import JobService
from jobflow.commerce.jobs.storage import InMemoryJobStorage
from jobflow.commerce.jobs.workflow import TIMEOUT_DISPUTE_REASON
from jobflow.commerce.payments import InMemoryPaymentGateway
from jobflow.services import in_memory_services


class FlakyJobStorage(InMemoryJobStorage):
    """Job storage whose next `conflicts` saves lose a version race."""

    def __init__(self, conflicts=0, fail_completion=False, **kwargs):
        super().__init__(**kwargs)
        self.conflicts = conflicts
        self.fail_completion = fail_completion
        self.save_attempts = 0

    def save(self, job, expected_version, transition=None, dispute=None, commission=None, audit=None):
        self.save_attempts += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError("jobs", job.id, expected_version, expected_version + 1)
        if self.fail_completion and job.status == JobStatus.COMPLETED.value:
            raise RuntimeError("disk full")
        return super().save(
            job, expected_version, transition=transition, dispute=dispute, commission=commission, audit=audit
        )


class BrokenCommissionLedger(InMemoryCreditLedger):
    def save_commission(self, commission, replace_unsettled=False):
        raise RuntimeError("ledger offline")


class FailingAuditLog(InMemoryAuditLog):
    """Audit log that refuses appends once `failing` is set."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def append(self, record):
        if self.failing:
            raise RuntimeError("audit store offline")
        super().append(record)


def build_jobs(clock, config, store=None, ledger=None):
    ledger = ledger or InMemoryCreditLedger()
    store = store or InMemoryJobStorage()
    store.ledger = ledger
    store.audit_log = store.audit_log or InMemoryAuditLog()
    credits = CreditService(ledger, config=config, clock=clock)
    return JobService(store, credits, clock=clock, config=config)


def run_to_awaiting(jobs, customer, contractor, amount=120000):
    jobs.credits.open_account(contractor.id, grant_trial=False)
    jobs.credits.adjust_credits(contractor.id, 1, "Starter credit", Actor.admin("ops"))
    job = jobs.create_job(customer.id, "Repaint hallway", "B1 1AA", "decorating")
    jobs.claim_win(job.id, contractor)
    jobs.confirm_winner(job.id, customer)
    return jobs.propose_final_price(job.id, contractor, amount)


class TestScenarios:
    def test_claim_and_confirm_winner(self, services, job, customer, funded_contractor):
        claimed = services.jobs.claim_win(job.id, funded_contractor)
        assert claimed.status == "POSTED"
        assert claimed.won_by_contractor_id == funded_contractor.id
        assert claimed.winner_confirmed_at is None

        confirmed = services.jobs.confirm_winner(job.id, customer)
        assert confirmed.status == "IN_PROGRESS"
        assert confirmed.won_by_contractor_id == funded_contractor.id
        assert confirmed.winner_confirmed_at is not None

    def test_confirmed_price_completes_and_creates_commission(
        self, services, awaiting_job, customer, clock
    ):
        assert awaiting_job.final_price_timeout_at == clock.now() + timedelta(hours=48)

        done = services.jobs.confirm_final_price(awaiting_job.id, customer)
        assert done.status == "COMPLETED"
        assert done.final_amount == 120000
        assert done.customer_confirmed is True
        assert done.final_price_timeout_at is None

        commission = services.credits.commission_for_job(done.id)
        assert commission.commission_amount == 6000
        assert commission.vat_amount == 1200
        assert commission.total_amount == 7200
        assert commission.status == CommissionStatus.PENDING.value
        assert commission.due_date == clock.now() + timedelta(hours=48)

    def test_lead_payment_access_owes_no_commission(self, services, job, customer, contractor):
        services.jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        services.jobs.confirm_winner(job.id, customer)
        services.jobs.propose_final_price(job.id, contractor, 50000)
        done = services.jobs.confirm_final_price(job.id, customer)

        assert done.status == "COMPLETED"
        assert services.credits.commission_for_job(job.id) is None

    def test_unconfirmed_price_escalates_after_deadline(self, services, awaiting_job, clock):
        clock.advance(timedelta(hours=48))
        job = services.jobs.transition(
            awaiting_job.id,
            SYSTEM_ACTOR,
            TimeoutExpire(deadline=awaiting_job.final_price_timeout_at),
        )
        assert job.status == "DISPUTED"
        assert job.final_amount is None
        assert job.final_price_timeout_at is None

        dispute = services.disputes.open_dispute_for_job(job.id)
        assert dispute.kind == DisputeKind.FINAL_PRICE_TIMEOUT.value
        assert dispute.opened_by == "system"
        assert dispute.reason == TIMEOUT_DISPUTE_REASON

    def test_admin_override_on_disputed_job(self, services, awaiting_job, admin, clock, audit):
        clock.advance(timedelta(hours=49))
        services.sweeper.run_once()

        job = services.jobs.transition(
            awaiting_job.id,
            admin,
            AdminOverride(final_amount=50000, reason="customer unresponsive"),
        )
        assert job.status == "COMPLETED"
        assert job.final_amount == 50000
        assert job.completed_by_override is True

        records = audit.records(subject_id=job.id, action="admin_override")
        assert len(records) == 1
        assert records[0].actor_id == admin.id
        assert records[0].reason == "customer unresponsive"
        assert records[0].old_state == "DISPUTED"
        assert records[0].new_state == "COMPLETED"


class TestClaims:
    def test_claim_requires_access(self, services, job, contractor):
        with pytest.raises(AccessRequiredError):
            services.jobs.transition(job.id, contractor, ClaimWin())

    def test_customer_cannot_claim(self, services, job, customer):
        with pytest.raises(UnauthorizedError):
            services.jobs.transition(job.id, customer, ClaimWin())

    def test_second_claim_rejected(self, services, job, contractor, other_contractor):
        services.jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        services.jobs.purchase_access(job.id, other_contractor.id, ClaimMethod.LEAD_PAYMENT)

        with pytest.raises(AlreadyClaimedError):
            services.jobs.transition(job.id, other_contractor, ClaimWin())
        assert services.jobs.get_job(job.id).won_by_contractor_id == contractor.id

    def test_rejected_claim_frees_the_job(self, services, job, customer, contractor, other_contractor, notifications):
        services.jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        rejected = services.jobs.reject_claim(job.id, customer, reason="Wrong trade")
        assert rejected.won_by_contractor_id is None
        assert notifications.for_user(contractor.id, "reject_claim")

        claimed = services.jobs.claim_win(job.id, other_contractor, method=ClaimMethod.LEAD_PAYMENT)
        assert claimed.won_by_contractor_id == other_contractor.id

    def test_concurrent_claims_have_one_winner(self, services, job, contractor, other_contractor):
        for actor in (contractor, other_contractor):
            services.jobs.purchase_access(job.id, actor.id, ClaimMethod.LEAD_PAYMENT)

        barrier = threading.Barrier(2)
        outcomes = {}

        def claim(actor):
            barrier.wait()
            try:
                services.jobs.transition(job.id, actor, ClaimWin())
                outcomes[actor.id] = "won"
            except AlreadyClaimedError:
                outcomes[actor.id] = "lost"

        threads = [threading.Thread(target=claim, args=(a,)) for a in (contractor, other_contractor)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values()) == ["lost", "won"]
        winner = [cid for cid, outcome in outcomes.items() if outcome == "won"][0]
        assert services.jobs.get_job(job.id).won_by_contractor_id == winner

    def test_confirm_winner_settles_applications(
        self, services, job, customer, contractor, other_contractor
    ):
        for actor in (contractor, other_contractor):
            services.jobs.purchase_access(job.id, actor.id, ClaimMethod.LEAD_PAYMENT)
            services.jobs.apply_to_job(job.id, actor.id, proposed_rate=30000)

        services.jobs.claim_win(job.id, contractor)
        services.jobs.confirm_winner(job.id, customer)

        statuses = {a.contractor_id: a.status for a in services.jobs.list_applications(job.id)}
        assert statuses == {
            contractor.id: ApplicationStatus.ACCEPTED.value,
            other_contractor.id: ApplicationStatus.REJECTED.value,
        }

    def test_cancel_notifies_pending_claimant(self, services, job, customer, contractor, notifications):
        services.jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        cancelled = services.jobs.cancel_job(job.id, customer, reason="Sold the house")

        assert cancelled.status == "CANCELLED"
        assert cancelled.won_by_contractor_id is None
        assert notifications.for_user(contractor.id, "cancel")


class TestFinalPrice:
    def test_only_winner_proposes(self, services, in_progress_job, other_contractor):
        with pytest.raises(UnauthorizedError):
            services.jobs.propose_final_price(in_progress_job.id, other_contractor, 1000)

    def test_cannot_propose_before_confirmation(self, services, job, contractor):
        services.jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        with pytest.raises(InvalidTransitionError):
            services.jobs.propose_final_price(job.id, contractor, 1000)

    @pytest.mark.parametrize("amount", [0, -5, 12.5, True])
    def test_amount_must_be_positive_pence(self, services, in_progress_job, funded_contractor, amount):
        with pytest.raises(ValidationError):
            services.jobs.transition(in_progress_job.id, funded_contractor, ProposeFinalPrice(amount=amount))

    def test_proposal_schedules_timeout(self, services, awaiting_job, clock):
        events = [e for e in clock.pending() if e.kind == EventKind.FINAL_PRICE_TIMEOUT.value]
        assert len(events) == 1
        assert events[0].subject_id == awaiting_job.id
        assert events[0].due_at == awaiting_job.final_price_timeout_at

    def test_reject_returns_to_in_progress(self, services, awaiting_job, customer, funded_contractor):
        job = services.jobs.reject_final_price(awaiting_job.id, customer, "Quote was 900")
        assert job.status == "IN_PROGRESS"
        assert job.final_price_rejection_reason == "Quote was 900"
        assert job.contractor_proposed_amount is None
        assert job.final_price_timeout_at is None

        again = services.jobs.propose_final_price(job.id, funded_contractor, 90000)
        assert again.status == "AWAITING_FINAL_PRICE_CONFIRMATION"

    def test_reject_requires_reason(self, services, awaiting_job, customer):
        with pytest.raises(ValidationError):
            services.jobs.reject_final_price(awaiting_job.id, customer, "   ")

    def test_only_customer_confirms(self, services, awaiting_job, funded_contractor):
        with pytest.raises(UnauthorizedError):
            services.jobs.transition(awaiting_job.id, funded_contractor, ConfirmFinalPrice())

    def test_late_confirmation_honored_before_sweep(self, services, awaiting_job, customer, clock):
        clock.advance(timedelta(hours=50))
        job = services.jobs.confirm_final_price(awaiting_job.id, customer)
        assert job.status == "COMPLETED"
        assert services.jobs.history(job.id)[-1].metadata["after_deadline"] is True


class TestTimeouts:
    def test_early_timeout_rejected(self, services, awaiting_job, clock):
        clock.advance(timedelta(hours=47))
        with pytest.raises(InvalidTransitionError):
            services.jobs.transition(awaiting_job.id, SYSTEM_ACTOR, TimeoutExpire())

    def test_timeout_after_confirmation_is_already_resolved(self, services, awaiting_job, customer, clock):
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        clock.advance(timedelta(hours=49))
        with pytest.raises(TimeoutAlreadyResolvedError):
            services.jobs.transition(awaiting_job.id, SYSTEM_ACTOR, TimeoutExpire())
        assert services.jobs.get_job(awaiting_job.id).status == "COMPLETED"

    def test_timeout_for_superseded_proposal(
        self, services, awaiting_job, customer, funded_contractor, clock
    ):
        stale_deadline = awaiting_job.final_price_timeout_at
        services.jobs.reject_final_price(awaiting_job.id, customer, "Too high")
        clock.advance(timedelta(hours=1))
        services.jobs.propose_final_price(awaiting_job.id, funded_contractor, 100000)

        clock.advance(timedelta(hours=48))
        with pytest.raises(TimeoutAlreadyResolvedError):
            services.jobs.transition(awaiting_job.id, SYSTEM_ACTOR, TimeoutExpire(deadline=stale_deadline))

    def test_duplicate_timeout_is_idempotent(self, services, awaiting_job, clock):
        clock.advance(timedelta(hours=49))
        action = TimeoutExpire(deadline=awaiting_job.final_price_timeout_at)
        first = services.jobs.transition(awaiting_job.id, SYSTEM_ACTOR, action)
        with pytest.raises(TimeoutAlreadyResolvedError):
            services.jobs.transition(awaiting_job.id, SYSTEM_ACTOR, action)

        assert services.jobs.get_job(awaiting_job.id).version == first.version
        assert len(services.disputes.list_disputes(job_id=awaiting_job.id)) == 1

    def test_only_system_delivers_timeouts(self, services, awaiting_job, admin, clock):
        clock.advance(timedelta(hours=49))
        with pytest.raises(UnauthorizedError):
            services.jobs.transition(awaiting_job.id, admin, TimeoutExpire())


class TestDisputes:
    def test_customer_opens_dispute(self, services, in_progress_job, customer):
        job = services.jobs.transition(in_progress_job.id, customer, OpenDispute(reason="Left a mess"))
        assert job.status == "DISPUTED"
        assert services.disputes.open_dispute_for_job(job.id).opened_by == customer.id

    def test_outsider_cannot_dispute(self, services, in_progress_job, other_contractor):
        with pytest.raises(UnauthorizedError):
            services.jobs.transition(in_progress_job.id, other_contractor, OpenDispute(reason="x"))

    def test_cannot_dispute_posted_job(self, services, job, customer):
        with pytest.raises(InvalidTransitionError):
            services.jobs.transition(job.id, customer, OpenDispute(reason="x"))


class TestConcurrencyAndSettlement:
    def test_conflict_retried_once(self, clock, config, customer, contractor):
        store = FlakyJobStorage()
        jobs = build_jobs(clock, config, store=store)
        awaiting = run_to_awaiting(jobs, customer, contractor)

        store.conflicts = 1
        store.save_attempts = 0
        done = jobs.confirm_final_price(awaiting.id, customer)
        assert done.status == "COMPLETED"
        assert store.save_attempts == 2
        # Only the winning attempt wrote a commission
        assert len(jobs.credits.list_commissions()) == 1

    def test_conflict_surfaces_after_retry(self, clock, config, customer, contractor):
        store = FlakyJobStorage()
        jobs = build_jobs(clock, config, store=store)
        awaiting = run_to_awaiting(jobs, customer, contractor)

        store.conflicts = 2
        store.save_attempts = 0
        with pytest.raises(ConflictError):
            jobs.confirm_final_price(awaiting.id, customer)
        assert store.save_attempts == 2
        assert jobs.get_job(awaiting.id).status == "AWAITING_FINAL_PRICE_CONFIRMATION"
        assert jobs.credits.list_commissions() == []

    def test_failed_job_save_writes_no_commission(self, clock, config, customer, contractor):
        store = FlakyJobStorage(fail_completion=True)
        jobs = build_jobs(clock, config, store=store)
        awaiting = run_to_awaiting(jobs, customer, contractor)

        with pytest.raises(RuntimeError):
            jobs.confirm_final_price(awaiting.id, customer)
        assert jobs.credits.commission_for_job(awaiting.id) is None
        assert jobs.get_job(awaiting.id).final_amount is None

    def test_failed_commission_write_keeps_job_open(self, clock, config, customer, contractor):
        jobs = build_jobs(clock, config, ledger=BrokenCommissionLedger())
        awaiting = run_to_awaiting(jobs, customer, contractor)

        with pytest.raises(CommissionSettlementError):
            jobs.confirm_final_price(awaiting.id, customer)
        job = jobs.get_job(awaiting.id)
        assert job.status == "AWAITING_FINAL_PRICE_CONFIRMATION"
        assert job.final_amount is None

    def test_unknown_job(self, services, customer):
        with pytest.raises(JobNotFoundError):
            services.jobs.transition("nope", customer, ConfirmFinalPrice())

    def test_unsupported_action(self, services, job, customer):
        with pytest.raises(ValidationError):
            services.jobs.engine.transition(job.id, customer, object())


class TestSideEffects:
    def test_every_transition_is_recorded(self, services, awaiting_job, customer):
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        actions = [t.action for t in services.jobs.history(awaiting_job.id)]
        assert actions == ["create", "claim_win", "confirm_winner", "propose_final_price", "confirm_final_price"]

    def test_parties_notified(self, services, awaiting_job, customer, funded_contractor, notifications):
        assert notifications.for_user(customer.id, "propose_final_price")
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        events = notifications.for_user(funded_contractor.id, "confirm_final_price")
        assert events[0].status == "COMPLETED"
        assert events[0].data["from_status"] == "AWAITING_FINAL_PRICE_CONFIRMATION"

    def test_notification_failure_does_not_undo_transition(self, clock, config, customer, contractor):
        class ExplodingSink:
            def notify(self, user_id, event):
                raise RuntimeError("smtp down")

        credits = CreditService(
            InMemoryCreditLedger(), config=config, clock=clock, payments=InMemoryPaymentGateway()
        )
        jobs = JobService(
            InMemoryJobStorage(), credits, clock=clock, config=config, notifications=ExplodingSink()
        )
        job = jobs.create_job(customer.id, "Clear gutters", "EH1 1YZ", "roofing", job_size=JobSize.SMALL)
        claimed = jobs.claim_win(job.id, contractor, method=ClaimMethod.LEAD_PAYMENT)
        assert claimed.won_by_contractor_id == contractor.id


def leave_stale_commission(services, job_id, contractor, amount):
    """Record a commission as a completion that never committed would have."""
    job = services.jobs.get_job(job_id)
    job.final_amount = amount
    access = services.jobs.get_access(job_id, contractor.id)
    return services.credits.settle_on_completion(job, access)


class TestLeftoverCommission:
    def test_confirm_replaces_outstanding_leftover(self, services, awaiting_job, customer, funded_contractor):
        stale = leave_stale_commission(services, awaiting_job.id, funded_contractor, 120000)

        done = services.jobs.confirm_final_price(awaiting_job.id, customer)
        assert done.status == "COMPLETED"
        commissions = services.credits.list_commissions()
        assert len(commissions) == 1
        assert commissions[0].id != stale.id
        assert commissions[0].total_amount == 7200

    def test_override_replaces_outstanding_leftover(self, services, awaiting_job, funded_contractor, admin, clock):
        clock.advance(timedelta(hours=49))
        services.sweeper.run_once()
        leave_stale_commission(services, awaiting_job.id, funded_contractor, 120000)

        done = services.disputes.admin_override(awaiting_job.id, admin, 50000, "Agreed by phone")
        assert done.status == "COMPLETED"
        assert services.credits.commission_for_job(done.id).total_amount == 3000

    def test_paid_leftover_blocks_completion(self, services, awaiting_job, customer, funded_contractor):
        stale = leave_stale_commission(services, awaiting_job.id, funded_contractor, 120000)
        services.credits.confirm_commission_payment(stale.id, "BACS-881")

        with pytest.raises(CommissionSettlementError):
            services.jobs.confirm_final_price(awaiting_job.id, customer)
        assert services.jobs.get_job(awaiting_job.id).status == "AWAITING_FINAL_PRICE_CONFIRMATION"
        assert services.credits.commission_for_job(awaiting_job.id).id == stale.id

    def test_store_without_ledger_refuses_completion(self, clock, config, customer, contractor):
        jobs = build_jobs(clock, config)
        awaiting = run_to_awaiting(jobs, customer, contractor)
        jobs.store.ledger = None

        with pytest.raises(CommissionSettlementError):
            jobs.confirm_final_price(awaiting.id, customer)
        assert jobs.get_job(awaiting.id).status == "AWAITING_FINAL_PRICE_CONFIRMATION"


class TestOverrideAudit:
    @pytest.fixture
    def failing_services(self, clock, config):
        return in_memory_services(
            config=config, clock=clock, override_actor_ids=["admin-1"], audit=FailingAuditLog()
        )

    def test_unrecorded_override_is_aborted(self, failing_services, clock, customer, contractor, admin):
        awaiting = run_to_awaiting(failing_services.jobs, customer, contractor)
        clock.advance(timedelta(hours=49))
        failing_services.sweeper.run_once()
        failing_services.audit.failing = True

        with pytest.raises(AuditError):
            failing_services.disputes.admin_override(awaiting.id, admin, 50000, "Customer unresponsive")
        job = failing_services.jobs.get_job(awaiting.id)
        assert job.status == "DISPUTED"
        assert job.final_amount is None
        assert failing_services.credits.commission_for_job(awaiting.id) is None
        assert failing_services.disputes.open_dispute_for_job(awaiting.id) is not None

    def test_store_without_audit_log_refuses_override(self, clock, config, customer, contractor, admin):
        jobs = build_jobs(clock, config)
        jobs.engine.authorization = StaticAuthorization(["admin-1"])
        awaiting = run_to_awaiting(jobs, customer, contractor)
        jobs.store.audit_log = None

        with pytest.raises(AuditError):
            jobs.transition(awaiting.id, admin, AdminOverride(final_amount=90000, reason="Photos checked"))
        assert jobs.get_job(awaiting.id).status == "AWAITING_FINAL_PRICE_CONFIRMATION"
        assert jobs.credits.commission_for_job(awaiting.id) is None

    def test_override_recorded_before_it_is_visible(self, services, awaiting_job, admin, audit, monkeypatch):
        seen = []

        def record(entry):
            seen.append(services.jobs.store._jobs[awaiting_job.id].status)
            InMemoryAuditLog.append(audit, entry)

        monkeypatch.setattr(audit, "append", record)
        services.disputes.admin_override(awaiting_job.id, admin, 90000, "Photos checked")
        assert seen == ["AWAITING_FINAL_PRICE_CONFIRMATION"]
        assert len(audit.records(subject_id=awaiting_job.id, action="admin_override")) == 1
