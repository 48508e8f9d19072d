"""Job workflow engine.

Validates and applies lifecycle transitions on a single job:

    load -> copy -> guard and mutate the copy -> invariant check
         -> commission built (entering COMPLETED)
         -> compare-and-swap save with history entry, dispute, commission
            and audit record in one atomic step
         -> post-commit effects (timers, applications, notifications)

Nothing is written until every guard has passed, so a rejected action
never leaves a partial change behind. A concurrent writer surfaces as
ConflictError; retrying is the caller's decision (see JobService).
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from jobflow.commerce.actors import Actor, ActorRole
from jobflow.commerce.audit import AuditRecord
from jobflow.commerce.authorization import AuthorizationCheck, DenyAllAuthorization
from jobflow.commerce.clock import ClockService, EventKind, InMemoryClock
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.models import CommissionPayment
from jobflow.commerce.credits.service import CreditService
from jobflow.commerce.disputes.models import Dispute, DisputeKind, DisputeStatus
from jobflow.commerce.errors import (
    AccessRequiredError,
    AlreadyClaimedError,
    InvalidTransitionError,
    JobNotFoundError,
    TimeoutAlreadyResolvedError,
    UnauthorizedError,
    ValidationError,
)
from jobflow.commerce.jobs.actions import (
    ACTION_TYPES,
    Action,
    AdminOverride,
    Cancel,
    ClaimWin,
    ConfirmFinalPrice,
    ConfirmWinner,
    OpenDispute,
    ProposeFinalPrice,
    RejectClaim,
    RejectFinalPrice,
    SetLeadPrice,
    TimeoutExpire,
)
from jobflow.commerce.jobs.models import (
    ApplicationStatus,
    InvariantViolation,
    Job,
    JobStateTransition,
    JobStatus,
)
from jobflow.commerce.jobs.storage import JobStore
from jobflow.commerce.notifications import NotificationEvent, NotificationSink, dispatch
from jobflow.types import format_datetime

logger = logging.getLogger(__name__)

TIMEOUT_DISPUTE_REASON = "Final price was not confirmed before the deadline"


@dataclass
class _Effects:
    """What a handler wants done beyond mutating the job."""

    now: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    dispute: Optional[Dispute] = None
    audit: Optional[AuditRecord] = None
    recipients: List[str] = field(default_factory=list)
    schedule_timeout: bool = False
    settle_applications: bool = False


class WorkflowEngine:
    """Applies actions to jobs under optimistic concurrency."""

    def __init__(
        self,
        store: JobStore,
        credits: CreditService,
        clock: Optional[ClockService] = None,
        notifications: Optional[NotificationSink] = None,
        authorization: Optional[AuthorizationCheck] = None,
        config: Optional[CommerceConfig] = None,
    ):
        """Initialize the engine.

        Args:
            store: Job persistence backend
            credits: Credit service, used for commission settlement
            clock: Time source and scheduler (defaults to the credit service's)
            notifications: Sink told about every committed transition
            authorization: Override-capability check for admin overrides
            config: Commerce configuration
        """
        self.store = store
        self.credits = credits
        self.clock = clock or credits.clock or InMemoryClock()
        self.notifications = notifications
        self.authorization = authorization or DenyAllAuthorization()
        self.config = config or credits.config

        self._handlers: Dict[type, Callable[[Job, Actor, Any, _Effects], None]] = {
            ClaimWin: self._claim_win,
            RejectClaim: self._reject_claim,
            ConfirmWinner: self._confirm_winner,
            ProposeFinalPrice: self._propose_final_price,
            ConfirmFinalPrice: self._confirm_final_price,
            RejectFinalPrice: self._reject_final_price,
            TimeoutExpire: self._timeout_expire,
            OpenDispute: self._open_dispute,
            AdminOverride: self._admin_override,
            SetLeadPrice: self._set_lead_price,
            Cancel: self._cancel,
        }
        missing = set(ACTION_TYPES.values()) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(c.__name__ for c in missing)}")

    # =========================================================================
    # Public API
    # =========================================================================

    def transition(self, job_id: str, actor: Actor, action: Action) -> Job:
        """Apply one action to one job.

        Args:
            job_id: Job to act on
            actor: Who is acting
            action: The action and its payload

        Returns:
            The saved job

        Raises:
            JobNotFoundError: If the job does not exist
            UnauthorizedError: If the actor may not perform this action
            InvalidTransitionError: If the action is not legal in the current state
            ValidationError: If the payload is malformed
            AlreadyClaimedError: If another claim is pending
            TimeoutAlreadyResolvedError: If a timeout event is stale
            CommissionSettlementError: If the owed commission could not be recorded
            AuditError: If an audited action could not be recorded
            ConflictError: If the job changed since it was loaded
        """
        handler = self._handlers.get(type(action))
        if handler is None:
            raise ValidationError(f"Unsupported action: {type(action).__name__}")

        current = self.store.load(job_id)
        if current is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        job = copy.deepcopy(current)
        fx = _Effects(now=self.clock.now())
        handler(job, actor, action, fx)
        job.updated_at = fx.now
        try:
            job.check_invariants()
        except InvariantViolation as e:
            logger.error("Refusing %s on job %s: %s", action.name, job_id, e)
            raise InvalidTransitionError(str(e)) from e

        commission = None
        if job.status == JobStatus.COMPLETED.value and current.status != JobStatus.COMPLETED.value:
            access = self.store.get_access(job.id, job.won_by_contractor_id)
            commission = self.credits.build_commission(job, access, now=fx.now)
            if commission is not None:
                fx.metadata["commission_id"] = commission.id

        entry = JobStateTransition(
            id=str(uuid.uuid4()),
            job_id=job.id,
            from_status=current.status,
            to_status=job.status,
            action=action.name,
            actor_id=actor.id,
            metadata=fx.metadata,
            created_at=fx.now,
        )
        saved = self.store.save(
            job,
            current.version,
            transition=entry,
            dispute=fx.dispute,
            commission=commission,
            audit=fx.audit,
        )

        logger.info(
            "Job %s: %s -> %s via %s by %s",
            saved.id,
            current.status,
            saved.status,
            action.name,
            actor.id,
        )
        self._after_commit(saved, current, action, fx, commission)
        return saved

    # =========================================================================
    # Handlers
    # =========================================================================

    def _claim_win(self, job: Job, actor: Actor, action: ClaimWin, fx: _Effects) -> None:
        if actor.role != ActorRole.CONTRACTOR:
            raise UnauthorizedError("Only contractors can claim a job")
        self._require_status(job, JobStatus.POSTED, action)
        access = self.store.get_access(job.id, actor.id)
        if access is None:
            raise AccessRequiredError(f"Contractor {actor.id} has no access to job {job.id}")
        if job.won_by_contractor_id:
            raise AlreadyClaimedError(f"Job {job.id} already has a pending claim")

        job.won_by_contractor_id = actor.id
        job.winner_claimed_at = fx.now
        fx.metadata = {"contractor_id": actor.id, "access_method": access.method}

    def _reject_claim(self, job: Job, actor: Actor, action: RejectClaim, fx: _Effects) -> None:
        self._require_customer(job, actor)
        self._require_status(job, JobStatus.POSTED, action)
        if not job.has_pending_claim:
            raise InvalidTransitionError(f"Job {job.id} has no pending claim")

        fx.recipients.append(job.won_by_contractor_id)
        fx.metadata = {"contractor_id": job.won_by_contractor_id, "reason": action.reason}
        job.won_by_contractor_id = None
        job.winner_claimed_at = None

    def _confirm_winner(self, job: Job, actor: Actor, action: ConfirmWinner, fx: _Effects) -> None:
        self._require_customer(job, actor)
        self._require_status(job, JobStatus.POSTED, action)
        if not job.won_by_contractor_id:
            raise InvalidTransitionError(f"Job {job.id} has no claim to confirm")

        job.status = JobStatus.IN_PROGRESS.value
        job.winner_confirmed_at = fx.now
        fx.settle_applications = True
        fx.metadata = {"contractor_id": job.won_by_contractor_id}

    def _propose_final_price(
        self, job: Job, actor: Actor, action: ProposeFinalPrice, fx: _Effects
    ) -> None:
        self._require_winner(job, actor)
        _require_amount(action.amount, "amount")
        self._require_status(job, JobStatus.IN_PROGRESS, action)

        job.status = JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION.value
        job.contractor_proposed_amount = action.amount
        job.final_price_proposed_at = fx.now
        job.final_price_timeout_at = fx.now + self.config.final_price_window
        fx.schedule_timeout = True
        fx.metadata = {
            "amount": action.amount,
            "deadline": format_datetime(job.final_price_timeout_at),
        }

    def _confirm_final_price(
        self, job: Job, actor: Actor, action: ConfirmFinalPrice, fx: _Effects
    ) -> None:
        self._require_customer(job, actor)
        self._require_status(job, JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION, action)
        # Honored past the deadline until the sweep has escalated the job
        if fx.now >= job.final_price_timeout_at:
            fx.metadata["after_deadline"] = True

        job.status = JobStatus.COMPLETED.value
        job.final_amount = job.contractor_proposed_amount
        job.customer_confirmed = True
        job.completed_at = fx.now
        job.final_price_timeout_at = None
        fx.metadata["final_amount"] = job.final_amount

    def _reject_final_price(
        self, job: Job, actor: Actor, action: RejectFinalPrice, fx: _Effects
    ) -> None:
        self._require_customer(job, actor)
        reason = self._require_reason(action.reason)
        self._require_status(job, JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION, action)

        fx.metadata = {"rejected_amount": job.contractor_proposed_amount, "reason": reason}
        job.status = JobStatus.IN_PROGRESS.value
        job.final_price_rejected_at = fx.now
        job.final_price_rejection_reason = reason
        job.contractor_proposed_amount = None
        job.final_price_proposed_at = None
        job.final_price_timeout_at = None

    def _timeout_expire(self, job: Job, actor: Actor, action: TimeoutExpire, fx: _Effects) -> None:
        if actor.role != ActorRole.SYSTEM:
            raise UnauthorizedError("Timeouts are delivered by the system clock only")
        if not job.is_awaiting_final_price:
            raise TimeoutAlreadyResolvedError(f"Job {job.id} is {job.status}; timeout already resolved")
        if action.deadline is not None and action.deadline != job.final_price_timeout_at:
            raise TimeoutAlreadyResolvedError(
                f"Timeout for job {job.id} refers to a superseded proposal"
            )
        if fx.now < job.final_price_timeout_at:
            raise InvalidTransitionError(
                f"Final price deadline for job {job.id} has not passed "
                f"(due {format_datetime(job.final_price_timeout_at)})"
            )

        deadline = job.final_price_timeout_at
        job.status = JobStatus.DISPUTED.value
        job.disputed_at = fx.now
        job.final_price_timeout_at = None
        fx.dispute = Dispute(
            id=str(uuid.uuid4()),
            job_id=job.id,
            opened_by=actor.id,
            reason=TIMEOUT_DISPUTE_REASON,
            kind=DisputeKind.FINAL_PRICE_TIMEOUT,
            opened_at=fx.now,
        )
        fx.metadata = {"deadline": format_datetime(deadline), "dispute_id": fx.dispute.id}

    def _open_dispute(self, job: Job, actor: Actor, action: OpenDispute, fx: _Effects) -> None:
        is_customer = actor.role == ActorRole.CUSTOMER and actor.id == job.customer_id
        is_winner = (
            actor.role == ActorRole.CONTRACTOR
            and job.has_confirmed_winner
            and actor.id == job.won_by_contractor_id
        )
        if not (is_customer or is_winner):
            raise UnauthorizedError("Only the customer or the winning contractor can open a dispute")
        reason = self._require_reason(action.reason)
        if job.status not in (
            JobStatus.IN_PROGRESS.value,
            JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION.value,
        ):
            raise InvalidTransitionError(f"Cannot open a dispute on a {job.status} job")

        job.status = JobStatus.DISPUTED.value
        job.disputed_at = fx.now
        job.final_price_timeout_at = None
        fx.dispute = Dispute(
            id=str(uuid.uuid4()),
            job_id=job.id,
            opened_by=actor.id,
            reason=reason,
            kind=DisputeKind.MANUAL,
            opened_at=fx.now,
        )
        fx.metadata = {"dispute_id": fx.dispute.id, "reason": reason}

    def _admin_override(self, job: Job, actor: Actor, action: AdminOverride, fx: _Effects) -> None:
        self._require_override(actor)
        reason = self._require_reason(action.reason)
        _require_amount(action.final_amount, "final_amount")
        if job.status not in (
            JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION.value,
            JobStatus.DISPUTED.value,
        ):
            raise InvalidTransitionError(f"Cannot override a {job.status} job")

        old_status = job.status
        job.status = JobStatus.COMPLETED.value
        job.final_amount = action.final_amount
        job.completed_at = fx.now
        job.completed_by_override = True
        job.override_reason = reason
        job.final_price_timeout_at = None

        dispute = self.store.get_open_dispute(job.id)
        if dispute is not None:
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolved_at = fx.now
            dispute.resolved_by = actor.id
            dispute.resolution = reason
            fx.dispute = dispute

        fx.metadata = {
            "final_amount": action.final_amount,
            "reason": reason,
            "dispute_id": dispute.id if dispute else None,
        }
        fx.audit = AuditRecord.create(
            action="admin_override",
            actor_id=actor.id,
            subject_type="job",
            subject_id=job.id,
            reason=reason,
            old_state=old_status,
            new_state=job.status,
            metadata={
                "final_amount": action.final_amount,
                "proposed_amount": job.contractor_proposed_amount,
                "dispute_id": dispute.id if dispute else None,
            },
            created_at=fx.now,
        )

    def _set_lead_price(self, job: Job, actor: Actor, action: SetLeadPrice, fx: _Effects) -> None:
        self._require_override(actor)
        reason = self._require_reason(action.reason)
        _require_amount(action.lead_price, "lead_price")
        self._require_status(job, JobStatus.POSTED, action)

        previous = self.credits.lead_price_for(job)
        job.lead_price = action.lead_price
        fx.metadata = {"lead_price": action.lead_price, "previous_lead_price": previous, "reason": reason}
        fx.audit = AuditRecord.create(
            action="set_lead_price",
            actor_id=actor.id,
            subject_type="job",
            subject_id=job.id,
            reason=reason,
            old_state=str(previous),
            new_state=str(action.lead_price),
            metadata={"job_size": job.job_size},
            created_at=fx.now,
        )

    def _cancel(self, job: Job, actor: Actor, action: Cancel, fx: _Effects) -> None:
        self._require_customer(job, actor)
        self._require_status(job, JobStatus.POSTED, action)
        if action.reason and len(action.reason) > self.config.max_reason_length:
            raise ValidationError("Cancellation reason too long")

        if job.won_by_contractor_id:
            fx.recipients.append(job.won_by_contractor_id)
        job.status = JobStatus.CANCELLED.value
        job.won_by_contractor_id = None
        job.winner_claimed_at = None
        job.cancelled_at = fx.now
        job.cancellation_reason = action.reason
        fx.metadata = {"reason": action.reason}

    # =========================================================================
    # Guards
    # =========================================================================

    def _require_status(self, job: Job, status: JobStatus, action: Action) -> None:
        if job.status != status.value:
            raise InvalidTransitionError(
                f"Cannot {action.name} job {job.id}: status is {job.status}, expected {status.value}"
            )

    def _require_customer(self, job: Job, actor: Actor) -> None:
        if actor.role != ActorRole.CUSTOMER or actor.id != job.customer_id:
            raise UnauthorizedError("Only the job's customer can perform this action")

    def _require_winner(self, job: Job, actor: Actor) -> None:
        if actor.role != ActorRole.CONTRACTOR or actor.id != job.won_by_contractor_id:
            raise UnauthorizedError("Only the winning contractor can perform this action")
        if not job.has_confirmed_winner:
            raise InvalidTransitionError(f"Claim on job {job.id} is not confirmed yet")

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

    # =========================================================================
    # Commit steps
    # =========================================================================

    def _after_commit(
        self,
        job: Job,
        before: Job,
        action: Action,
        fx: _Effects,
        commission: Optional[CommissionPayment],
    ) -> None:
        if fx.schedule_timeout:
            try:
                self.clock.schedule_at(
                    job.final_price_timeout_at,
                    EventKind.FINAL_PRICE_TIMEOUT,
                    job.id,
                    {"deadline": format_datetime(job.final_price_timeout_at)},
                )
            except Exception as e:
                # The sweep still finds the job through its stored deadline
                logger.warning("Could not schedule timeout for job %s: %s", job.id, e)

        if commission is not None:
            logger.info(
                "Commission %s owed for job %s: %d due %s",
                commission.id,
                job.id,
                commission.total_amount,
                format_datetime(commission.due_date),
            )
            try:
                self.credits.schedule_due(commission)
            except Exception as e:
                logger.warning("Could not schedule due date for commission %s: %s", commission.id, e)

        if fx.settle_applications:
            self._settle_applications(job)

        event = NotificationEvent(
            type=action.name,
            job_id=job.id,
            status=job.status,
            occurred_at=fx.now,
            data={"from_status": before.status, **fx.metadata},
        )
        recipients = [job.customer_id, job.won_by_contractor_id, *fx.recipients]
        dispatch(self.notifications, recipients, event)

    def _settle_applications(self, job: Job) -> None:
        try:
            for app in self.store.list_applications(job_id=job.id):
                if app.contractor_id == job.won_by_contractor_id:
                    self.store.update_application_status(app.id, ApplicationStatus.ACCEPTED)
                elif app.is_pending:
                    self.store.update_application_status(app.id, ApplicationStatus.REJECTED)
        except Exception as e:
            logger.warning("Could not update applications for job %s: %s", job.id, e)


def _require_amount(amount: Any, name: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"{name} must be a positive integer amount in pence")
