"""Credit and commission manager.

Decides whether a contractor may access a job (credit balance, trial
credit, subscription, lead payment), and owns the commission lifecycle
for credit-funded jobs: settlement on completion, payment, overdue
marking and admin waivers.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from jobflow.commerce.actors import Actor, ActorRole
from jobflow.commerce.audit import AuditLog, AuditRecord
from jobflow.commerce.authorization import AuthorizationCheck, DenyAllAuthorization
from jobflow.commerce.clock import ClockService, EventKind, InMemoryClock
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.models import (
    ClaimDecision,
    ClaimMethod,
    CommissionPayment,
    CommissionStatus,
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
    DenialReason,
    compute_commission,
)
from jobflow.commerce.credits.storage import CreditLedger
from jobflow.commerce.errors import (
    AccountNotFoundError,
    CommissionNotFoundError,
    CommissionSettlementError,
    ConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    PaymentFailedError,
    TrialRestrictedToSmallJobsError,
    UnauthorizedError,
    ValidationError,
    WorkflowError,
)
from jobflow.commerce.jobs.models import Job, JobAccess, JobSize
from jobflow.commerce.payments import PaymentGateway, PaymentResult
from jobflow.types import iso_week_key

logger = logging.getLogger(__name__)


class CreditService:
    """Service for credit access decisions and commission accounting."""

    def __init__(
        self,
        ledger: CreditLedger,
        config: Optional[CommerceConfig] = None,
        clock: Optional[ClockService] = None,
        payments: Optional[PaymentGateway] = None,
        audit: Optional[AuditLog] = None,
        authorization: Optional[AuthorizationCheck] = None,
    ):
        """Initialize credit service.

        Args:
            ledger: Credit ledger backend
            config: Commerce configuration
            clock: Time source and scheduler for commission due dates
            payments: Gateway for lead payments and commission charges
            audit: Destination for waiver and adjustment audit records
            authorization: Override-capability check for waivers
        """
        self.ledger = ledger
        self.config = config or CommerceConfig()
        self.clock = clock or InMemoryClock()
        self.payments = payments
        self.audit = audit
        self.authorization = authorization or DenyAllAuthorization()

    # =========================================================================
    # Accounts
    # =========================================================================

    def open_account(
        self,
        contractor_id: str,
        is_subscribed: bool = False,
        weekly_credits_limit: Optional[int] = None,
        grant_trial: bool = True,
    ) -> CreditAccount:
        """Create a credit account, granting the free-trial credit.

        Raises:
            ValidationError: If the contractor already has an account
        """
        if weekly_credits_limit is None:
            weekly_credits_limit = self.config.default_weekly_credits if is_subscribed else 0
        account = CreditAccount(
            contractor_id=contractor_id,
            is_subscribed=is_subscribed,
            weekly_credits_limit=weekly_credits_limit,
            created_at=self.clock.now(),
        )
        self.ledger.create_account(account)
        if grant_trial and self.config.trial_credits > 0:
            self.ledger.credit(
                contractor_id,
                self.config.trial_credits,
                "Free trial credit",
                type=CreditTransactionType.TRIAL_GRANT,
                trial=True,
            )
        logger.info(
            "Opened credit account for %s (subscribed=%s, trial=%s)",
            contractor_id,
            is_subscribed,
            grant_trial,
        )
        return self.get_account(contractor_id)

    def get_account(self, contractor_id: str) -> CreditAccount:
        """Get a contractor's credit account.

        Raises:
            AccountNotFoundError: If the contractor has no account
        """
        account = self.ledger.get_account(contractor_id)
        if account is None:
            raise AccountNotFoundError(f"No credit account for contractor {contractor_id}")
        return account

    def list_transactions(self, contractor_id: str, limit: int = 100) -> List[CreditTransaction]:
        return self.ledger.list_transactions(contractor_id, limit=limit)

    def set_subscription(
        self,
        contractor_id: str,
        is_subscribed: bool,
        weekly_credits_limit: Optional[int] = None,
    ) -> CreditAccount:
        """Start or stop a subscription.

        Subscribing without an explicit limit keeps the current one, or
        falls back to the configured default when the account has none.
        """
        account = self.get_account(contractor_id)
        if is_subscribed and weekly_credits_limit is None and account.weekly_credits_limit == 0:
            weekly_credits_limit = self.config.default_weekly_credits
        updated = self.ledger.update_subscription(contractor_id, is_subscribed, weekly_credits_limit)
        logger.info(
            "Subscription for %s set to %s (weekly limit %d)",
            contractor_id,
            is_subscribed,
            updated.weekly_credits_limit,
        )
        return updated

    def replenish_weekly(
        self, contractor_id: str, now: Optional[datetime] = None
    ) -> Optional[CreditTransaction]:
        """Top a subscribed contractor up to their weekly limit.

        Runs at most once per ISO week; a second call in the same week is
        a no-op. Non-subscribed accounts are skipped.
        """
        account = self.get_account(contractor_id)
        if not account.is_subscribed:
            return None
        week = iso_week_key(now or self.clock.now())
        tx = self.ledger.replenish(contractor_id, week, account.weekly_credits_limit)
        if tx is not None:
            logger.info("Replenished %d credits for %s (%s)", tx.amount, contractor_id, week)
        return tx

    def replenish_all(self, now: Optional[datetime] = None) -> int:
        """Replenish every subscribed account. Returns how many were topped up."""
        now = now or self.clock.now()
        topped_up = 0
        for account in self.ledger.list_accounts(is_subscribed=True):
            if self.replenish_weekly(account.contractor_id, now=now) is not None:
                topped_up += 1
        return topped_up

    def adjust_credits(
        self,
        contractor_id: str,
        amount: int,
        reason: str,
        actor: Actor,
    ) -> CreditTransaction:
        """Admin grant (positive) or removal (negative) of credits. Audited.

        Raises:
            UnauthorizedError: If the actor is not an admin
            ValidationError: If amount is zero or reason is empty
            InsufficientCreditsError: If a removal exceeds the balance
        """
        if actor.role != ActorRole.ADMIN:
            raise UnauthorizedError("Only an admin can adjust credits")
        reason = self._require_reason(reason)
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")

        before = self.get_account(contractor_id)
        if amount > 0:
            tx = self.ledger.credit(
                contractor_id,
                amount,
                reason,
                type=CreditTransactionType.ADMIN_ADJUSTMENT,
                admin_user_id=actor.id,
            )
        else:
            tx = self.ledger.debit(
                contractor_id,
                -amount,
                reason,
                type=CreditTransactionType.ADMIN_ADJUSTMENT,
                admin_user_id=actor.id,
            )
        after = self.get_account(contractor_id)
        self._audit(
            AuditRecord.create(
                action="credit_adjustment",
                actor_id=actor.id,
                subject_type="credit_account",
                subject_id=contractor_id,
                reason=reason,
                old_state=str(before.credits_balance),
                new_state=str(after.credits_balance),
                metadata={"amount": amount, "transaction_id": tx.id},
                created_at=self.clock.now(),
            )
        )
        return tx

    # =========================================================================
    # Access decisions
    # =========================================================================

    def lead_price_for(self, job: Job) -> int:
        """Lead price in pence: the job's own price, else the size default."""
        return job.lead_price or self.config.lead_prices[job.job_size]

    def can_claim(
        self,
        contractor_id: str,
        job_size: str,
        method: Optional[ClaimMethod] = None,
        lead_price: Optional[int] = None,
    ) -> ClaimDecision:
        """Decide whether and how a contractor may access a job.

        Regular credits are spent before the trial credit. The trial credit
        only covers SMALL jobs. Lead payment is open to contractors without
        a subscription.

        Args:
            contractor_id: Contractor asking for access
            job_size: Size band of the job
            method: Access method the contractor asked for (None = best available)
            lead_price: Job-specific lead price, if any

        Returns:
            ClaimDecision; `allowed` is False with a reason when denied
        """
        size = JobSize(job_size).value
        requested = ClaimMethod(method) if method else None
        if requested == ClaimMethod.DENIED:
            raise ValidationError("DENIED is not a requestable access method")
        price = lead_price or self.config.lead_prices[size]
        account = self.ledger.get_account(contractor_id)
        subscribed = bool(account and account.is_subscribed)

        if requested != ClaimMethod.LEAD_PAYMENT and account is not None:
            if account.credits_balance > 0:
                return ClaimDecision(allowed=True, method=ClaimMethod.CREDIT)
            if account.has_trial_credit:
                if size == JobSize.SMALL.value:
                    return ClaimDecision(
                        allowed=True, method=ClaimMethod.CREDIT, uses_trial_credit=True
                    )
                if requested == ClaimMethod.CREDIT:
                    return _denied(DenialReason.TRIAL_RESTRICTED_TO_SMALL_JOBS)

        if requested == ClaimMethod.CREDIT:
            return _denied(DenialReason.INSUFFICIENT_CREDITS)
        if subscribed:
            if requested == ClaimMethod.LEAD_PAYMENT:
                return _denied(DenialReason.LEAD_PAYMENT_UNAVAILABLE)
            return _denied(DenialReason.INSUFFICIENT_CREDITS)
        return ClaimDecision(allowed=True, method=ClaimMethod.LEAD_PAYMENT, lead_price=price)

    def consume_credit(self, contractor_id: str, job: Job) -> CreditTransaction:
        """Spend one credit (regular first, then trial) on access to a job.

        Raises:
            InsufficientCreditsError: If no usable credit exists
            TrialRestrictedToSmallJobsError: If only the trial credit is left
                and the job is not SMALL
        """
        decision = self.can_claim(contractor_id, job.job_size, ClaimMethod.CREDIT)
        if not decision.allowed:
            raise_for_denial(decision, contractor_id)
        tx = self.ledger.debit(
            contractor_id,
            1,
            f"Access to job {job.id}",
            type=CreditTransactionType.JOB_ACCESS,
            job_id=job.id,
            use_trial=decision.uses_trial_credit,
        )
        logger.info(
            "Contractor %s spent a %s credit on job %s",
            contractor_id,
            "trial" if decision.uses_trial_credit else "regular",
            job.id,
        )
        return tx

    def charge_lead_price(self, contractor_id: str, job: Job) -> Tuple[int, PaymentResult]:
        """Charge the lead price for a job through the payment gateway.

        Returns:
            (amount charged in pence, gateway result)

        Raises:
            PaymentFailedError: If no gateway is configured or the charge fails
        """
        decision = self.can_claim(
            contractor_id, job.job_size, ClaimMethod.LEAD_PAYMENT, job.lead_price
        )
        if not decision.allowed:
            raise_for_denial(decision, contractor_id)
        if self.payments is None:
            raise PaymentFailedError("No payment gateway configured")

        price = decision.lead_price
        result = self.payments.charge(
            contractor_id,
            price,
            reference=f"lead:{job.id}:{contractor_id}",
            description=f"Lead price for job {job.id}",
        )
        if not result.succeeded:
            logger.info("Lead payment for job %s by %s failed: %s", job.id, contractor_id, result.failure_reason)
            raise PaymentFailedError(result.failure_reason or "Payment failed")
        logger.info("Contractor %s paid lead price %d for job %s", contractor_id, price, job.id)
        return price, result

    def refund_credit(self, tx: CreditTransaction) -> CreditTransaction:
        """Return a consumed credit, e.g. when recording the access failed."""
        if tx.amount >= 0:
            raise ValidationError("Only consumption transactions can be refunded")
        return self.ledger.credit(
            tx.contractor_id,
            -tx.amount,
            f"Refund of {tx.id}",
            type=CreditTransactionType.REFUND,
            job_id=tx.job_id,
            trial=tx.trial,
        )

    # =========================================================================
    # Commission settlement
    # =========================================================================

    def build_commission(
        self,
        job: Job,
        access: Optional[JobAccess],
        now: Optional[datetime] = None,
    ) -> Optional[CommissionPayment]:
        """Compute the commission owed for a completed job, without storing it.

        Only credit-funded access owes commission. Lead payments, and
        winners without a recorded access, return None. The workflow
        engine hands the result to the job store, which records it in the
        same atomic step as the completion.

        Raises:
            CommissionSettlementError: If the job has no final amount
        """
        if access is None or not access.is_credit:
            return None
        if job.final_amount is None:
            raise CommissionSettlementError(f"Job {job.id} has no final amount to settle")

        now = now or self.clock.now()
        commission_amount, vat_amount, total_amount = compute_commission(
            job.final_amount, self.config.commission_rate, self.config.vat_rate
        )
        commission = CommissionPayment(
            id=str(uuid.uuid4()),
            job_id=job.id,
            contractor_id=access.contractor_id,
            final_job_amount=job.final_amount,
            commission_rate=self.config.commission_rate,
            commission_amount=commission_amount,
            vat_amount=vat_amount,
            total_amount=total_amount,
            due_date=now + self.config.commission_due_window,
            created_at=now,
        )
        logger.debug(
            "Computed commission %s for job %s: %d + %d VAT = %d",
            commission.id,
            job.id,
            commission_amount,
            vat_amount,
            total_amount,
        )
        return commission

    def settle_on_completion(
        self,
        job: Job,
        access: Optional[JobAccess],
        now: Optional[datetime] = None,
    ) -> Optional[CommissionPayment]:
        """Create and store the commission owed for a completed job.

        For jobs completed outside the workflow engine (imports, repairs).

        Raises:
            CommissionSettlementError: If the commission could not be recorded
            DuplicateCommissionError: If the job already has a commission
        """
        commission = self.build_commission(job, access, now=now)
        if commission is None:
            return None
        try:
            self.ledger.save_commission(commission)
        except WorkflowError:
            raise
        except Exception as e:
            logger.error("Commission write for job %s failed: %s", job.id, e)
            raise CommissionSettlementError(f"Could not record commission for job {job.id}") from e
        logger.info("Recorded commission %s for job %s (%d)", commission.id, job.id, commission.total_amount)
        return commission

    def schedule_due(self, commission: CommissionPayment) -> str:
        """Ask the clock to deliver the commission's due date to the sweep."""
        return self.clock.schedule_at(
            commission.due_date,
            EventKind.COMMISSION_DUE,
            commission.id,
            {"job_id": commission.job_id},
        )

    # =========================================================================
    # Commission lifecycle
    # =========================================================================

    def get_commission(self, commission_id: str) -> CommissionPayment:
        """Get a commission.

        Raises:
            CommissionNotFoundError: If it does not exist
        """
        commission = self.ledger.get_commission(commission_id)
        if commission is None:
            raise CommissionNotFoundError(f"Commission {commission_id} not found")
        return commission

    def commission_for_job(self, job_id: str) -> Optional[CommissionPayment]:
        return self.ledger.get_commission_for_job(job_id)

    def list_commissions(
        self,
        contractor_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        due_before: Optional[datetime] = None,
    ) -> List[CommissionPayment]:
        return self.ledger.list_commissions(
            contractor_id=contractor_id, status=status, due_before=due_before
        )

    def confirm_commission_payment(
        self,
        commission_id: str,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> CommissionPayment:
        """Record that a commission was paid.

        Raises:
            ValidationError: If the payment reference is empty
            InvalidTransitionError: If the commission is already PAID or WAIVED
            ConflictError: If its status changed concurrently
        """
        if not payment_reference or not payment_reference.strip():
            raise ValidationError("payment_reference is required")
        commission = self.get_commission(commission_id)
        expected = CommissionStatus(commission.status)
        if not commission.can_transition_to(CommissionStatus.PAID):
            raise InvalidTransitionError(
                f"Commission {commission_id} is {commission.status} and cannot be paid"
            )
        commission.status = CommissionStatus.PAID.value
        commission.paid_at = now or self.clock.now()
        commission.payment_reference = payment_reference.strip()
        self._write_commission(commission, expected)
        logger.info("Commission %s paid (ref %s)", commission_id, commission.payment_reference)
        return commission

    def pay_commission(self, commission_id: str, actor: Actor) -> CommissionPayment:
        """Charge the contractor for a commission and mark it PAID.

        Raises:
            UnauthorizedError: If the actor is not the owing contractor
            PaymentFailedError: If the gateway declines the charge
        """
        commission = self.get_commission(commission_id)
        if actor.id != commission.contractor_id:
            raise UnauthorizedError("Only the owing contractor can pay this commission")
        if not commission.is_outstanding:
            raise InvalidTransitionError(
                f"Commission {commission_id} is {commission.status} and cannot be paid"
            )
        if self.payments is None:
            raise PaymentFailedError("No payment gateway configured")
        result = self.payments.charge(
            actor.id,
            commission.total_amount,
            reference=f"commission:{commission.id}",
            description=f"Commission for job {commission.job_id}",
        )
        if not result.succeeded:
            raise PaymentFailedError(result.failure_reason or "Payment failed")
        return self.confirm_commission_payment(commission_id, result.reference or commission.id)

    def mark_overdue(self, commission_id: str, now: Optional[datetime] = None) -> bool:
        """Move a PENDING commission past its due date to OVERDUE.

        Idempotent: returns False when nothing changed (already overdue,
        settled, not yet due, or updated by a concurrent sweep).
        """
        commission = self.get_commission(commission_id)
        now = now or self.clock.now()
        if commission.status != CommissionStatus.PENDING.value or now < commission.due_date:
            return False
        commission.status = CommissionStatus.OVERDUE.value
        commission.overdue_at = now
        if not self.ledger.update_commission(commission, CommissionStatus.PENDING):
            return False
        logger.info("Commission %s for job %s is overdue", commission_id, commission.job_id)
        return True

    def waive_commission(self, commission_id: str, actor: Actor, reason: str) -> CommissionPayment:
        """Waive an OVERDUE commission. Admin-only and audited.

        Raises:
            UnauthorizedError: If the actor lacks the override capability
            ValidationError: If reason is empty
            InvalidTransitionError: If the commission is not OVERDUE
        """
        self._require_override(actor)
        reason = self._require_reason(reason)
        commission = self.get_commission(commission_id)
        if not commission.can_transition_to(CommissionStatus.WAIVED):
            raise InvalidTransitionError(
                f"Only overdue commissions can be waived (commission {commission_id} is {commission.status})"
            )
        old_status = commission.status
        now = self.clock.now()
        commission.status = CommissionStatus.WAIVED.value
        commission.waived_at = now
        commission.waived_by = actor.id
        commission.waiver_reason = reason
        self._write_commission(commission, CommissionStatus(old_status))
        self._audit(
            AuditRecord.create(
                action="commission_waiver",
                actor_id=actor.id,
                subject_type="commission_payment",
                subject_id=commission.id,
                reason=reason,
                old_state=old_status,
                new_state=commission.status,
                metadata={"job_id": commission.job_id, "total_amount": commission.total_amount},
                created_at=now,
            )
        )
        return commission

    # =========================================================================
    # Helpers
    # =========================================================================

    def _write_commission(self, commission: CommissionPayment, expected: CommissionStatus) -> None:
        if self.ledger.update_commission(commission, expected):
            return
        current = self.ledger.get_commission(commission.id)
        if current is None:
            raise CommissionNotFoundError(f"Commission {commission.id} not found")
        raise ConflictError("commission_payments", commission.id, None, None)

    def _require_override(self, actor: Actor) -> None:
        if actor.role != ActorRole.ADMIN or not self.authorization.has_override_capability(actor.id):
            raise UnauthorizedError(f"Actor {actor.id} lacks the override capability")

    def _require_reason(self, reason: Optional[str]) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required")
        if len(reason) > self.config.max_reason_length:
            raise ValidationError(f"Reason too long (max {self.config.max_reason_length} characters)")
        return reason

    def _audit(self, record: AuditRecord) -> None:
        if self.audit is None:
            logger.info("AUDIT %s by %s on %s (no audit log wired)", record.action, record.actor_id, record.subject_id)
            return
        self.audit.append(record)


def _denied(reason: DenialReason) -> ClaimDecision:
    return ClaimDecision(allowed=False, method=ClaimMethod.DENIED, reason=reason)


def raise_for_denial(decision: ClaimDecision, contractor_id: str) -> None:
    """Raise the typed error matching a denied ClaimDecision."""
    if decision.reason == DenialReason.TRIAL_RESTRICTED_TO_SMALL_JOBS:
        raise TrialRestrictedToSmallJobsError(
            f"Contractor {contractor_id} only has the trial credit, which covers SMALL jobs only"
        )
    if decision.reason == DenialReason.LEAD_PAYMENT_UNAVAILABLE:
        raise ValidationError("Subscribed contractors access jobs with credits")
    raise InsufficientCreditsError(f"Contractor {contractor_id} has no usable credits")
