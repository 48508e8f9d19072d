"""
Job service for the jobflow marketplace.

Entry point for callers: creates jobs, sells access, records
applications and drives lifecycle actions through the WorkflowEngine,
retrying once on a version conflict.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from jobflow.commerce.actors import Actor, ActorRole
from jobflow.commerce.authorization import AuthorizationCheck
from jobflow.commerce.clock import ClockService
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.models import ClaimMethod
from jobflow.commerce.credits.service import CreditService, raise_for_denial
from jobflow.commerce.errors import (
    AccessRequiredError,
    AlreadyClaimedError,
    ConflictError,
    DuplicateAccessError,
    InvalidTransitionError,
    JobNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from jobflow.commerce.jobs.actions import (
    Action,
    Cancel,
    ClaimWin,
    ConfirmFinalPrice,
    ConfirmWinner,
    ProposeFinalPrice,
    RejectClaim,
    RejectFinalPrice,
    SetLeadPrice,
)
from jobflow.commerce.jobs.models import (
    AccessMethod,
    Job,
    JobAccess,
    JobApplication,
    JobSize,
    JobStateTransition,
    JobStatus,
)
from jobflow.commerce.jobs.storage import JobStore
from jobflow.commerce.jobs.workflow import WorkflowEngine
from jobflow.commerce.notifications import NotificationEvent, NotificationSink, dispatch

logger = logging.getLogger(__name__)


class JobService:
    """Service for job marketplace operations.

    Lifecycle changes go through `transition()`, which hands the action to
    the WorkflowEngine and transparently retries a ConflictError once
    (configurable via CommerceConfig.conflict_retries) with a fresh load.
    """

    def __init__(
        self,
        store: JobStore,
        credits: CreditService,
        engine: Optional[WorkflowEngine] = None,
        clock: Optional[ClockService] = None,
        notifications: Optional[NotificationSink] = None,
        authorization: Optional[AuthorizationCheck] = None,
        config: Optional[CommerceConfig] = None,
    ):
        self.store = store
        self.credits = credits
        self.config = config or credits.config
        self.clock = clock or credits.clock
        self.notifications = notifications
        self.engine = engine or WorkflowEngine(
            store,
            credits,
            clock=self.clock,
            notifications=notifications,
            authorization=authorization,
            config=self.config,
        )

    # =========================================================================
    # Job Operations
    # =========================================================================

    def create_job(
        self,
        customer_id: str,
        title: str,
        location: str,
        service_category: str,
        job_size: JobSize = JobSize.MEDIUM,
        description: Optional[str] = None,
        budget: Optional[int] = None,
    ) -> Job:
        """Post a new job.

        Args:
            customer_id: Customer posting the job
            title: Short job title
            location: Where the work happens
            service_category: Trade/service category
            job_size: Size band (drives lead price and trial eligibility)
            description: Longer free-text description
            budget: Optional budget hint in pence

        Returns:
            The created job (status POSTED)

        Raises:
            ValidationError: If any field is invalid
        """
        now = self.clock.now()
        try:
            job = Job(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                title=title,
                description=description,
                location=location,
                service_category=service_category,
                job_size=job_size,
                budget=budget,
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        entry = JobStateTransition(
            id=str(uuid.uuid4()),
            job_id=job.id,
            from_status=None,
            to_status=job.status,
            action="create",
            actor_id=customer_id,
            created_at=now,
        )
        created = self.store.create_job(job, transition=entry)
        logger.info("Created job %s for customer %s (%s)", created.id, customer_id, created.job_size)
        return created

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If job doesn't exist
        """
        job = self.store.load(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        customer_id: Optional[str] = None,
        contractor_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        return self.store.list_jobs(
            status=status,
            customer_id=customer_id,
            contractor_id=contractor_id,
            limit=limit,
            offset=offset,
        )

    def get_jobs_for_customer(self, customer_id: str) -> List[Job]:
        return self.store.list_jobs(customer_id=customer_id)

    def get_jobs_for_contractor(self, contractor_id: str) -> List[Job]:
        """Jobs the contractor has claimed or won."""
        return self.store.list_jobs(contractor_id=contractor_id)

    def awaiting_final_price(self, deadline_before: Optional[datetime] = None) -> List[Job]:
        """Jobs waiting on the customer, optionally only those past a deadline."""
        return self.store.list_jobs(
            status=JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION,
            timeout_before=deadline_before,
            limit=1000,
        )

    def history(self, job_id: str) -> List[JobStateTransition]:
        """Transition history for a job, oldest first."""
        self.get_job(job_id)
        return self.store.get_transitions(job_id)

    # =========================================================================
    # Access
    # =========================================================================

    def purchase_access(
        self,
        job_id: str,
        contractor_id: str,
        method: Optional[ClaimMethod] = None,
    ) -> JobAccess:
        """Buy a contractor access to a job, by credit or lead payment.

        Args:
            job_id: Job to access
            contractor_id: Contractor buying access
            method: CREDIT or LEAD_PAYMENT; None picks the best available

        Raises:
            InvalidTransitionError: If the job no longer takes contractors
            DuplicateAccessError: If the contractor already has access
            InsufficientCreditsError: If no usable credit exists
            TrialRestrictedToSmallJobsError: If only the trial credit is left
            PaymentFailedError: If the lead payment is declined
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.POSTED.value:
            raise InvalidTransitionError(f"Job {job_id} is {job.status} and no longer open")
        if self.store.get_access(job_id, contractor_id) is not None:
            raise DuplicateAccessError(f"Contractor {contractor_id} already has access to job {job_id}")

        decision = self.credits.can_claim(contractor_id, job.job_size, method, job.lead_price)
        if not decision.allowed:
            raise_for_denial(decision, contractor_id)

        now = self.clock.now()
        if decision.method == ClaimMethod.CREDIT:
            tx = self.credits.consume_credit(contractor_id, job)
            access = JobAccess(
                id=str(uuid.uuid4()),
                job_id=job_id,
                contractor_id=contractor_id,
                method=AccessMethod.CREDIT,
                purchased_at=now,
                credit_transaction_id=tx.id,
                used_trial_credit=tx.trial,
            )
            try:
                self.store.save_access(access)
            except DuplicateAccessError:
                self.credits.refund_credit(tx)
                raise
        else:
            price, result = self.credits.charge_lead_price(contractor_id, job)
            access = JobAccess(
                id=str(uuid.uuid4()),
                job_id=job_id,
                contractor_id=contractor_id,
                method=AccessMethod.LEAD_PAYMENT,
                purchased_at=now,
                amount_paid=price,
                payment_reference=result.reference,
            )
            try:
                self.store.save_access(access)
            except DuplicateAccessError:
                logger.error(
                    "Lead payment %s for job %s by %s duplicated an existing access",
                    result.reference,
                    job_id,
                    contractor_id,
                )
                raise

        logger.info("Contractor %s bought access to job %s via %s", contractor_id, job_id, access.method)
        return access

    def get_access(self, job_id: str, contractor_id: str) -> Optional[JobAccess]:
        return self.store.get_access(job_id, contractor_id)

    # =========================================================================
    # Applications
    # =========================================================================

    def apply_to_job(
        self,
        job_id: str,
        contractor_id: str,
        proposed_rate: int,
        message: Optional[str] = None,
    ) -> JobApplication:
        """Record a contractor's bid on a job.

        Raises:
            InvalidTransitionError: If the job is not taking applications
            AccessRequiredError: If the contractor has not bought access
            DuplicateApplicationError: If the contractor already applied
            ValidationError: If proposed_rate is invalid
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.POSTED.value:
            raise InvalidTransitionError(f"Job {job_id} is {job.status} and not accepting applications")
        if self.store.get_access(job_id, contractor_id) is None:
            raise AccessRequiredError(f"Contractor {contractor_id} has no access to job {job_id}")

        try:
            application = JobApplication(
                id=str(uuid.uuid4()),
                job_id=job_id,
                contractor_id=contractor_id,
                proposed_rate=proposed_rate,
                message=message,
                applied_at=self.clock.now(),
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        self.store.save_application(application)
        logger.info("Contractor %s applied to job %s", contractor_id, job_id)
        dispatch(
            self.notifications,
            [job.customer_id],
            NotificationEvent(
                type="application_received",
                job_id=job_id,
                status=job.status,
                occurred_at=application.applied_at,
                data={"contractor_id": contractor_id, "proposed_rate": proposed_rate},
            ),
        )
        return application

    def list_applications(self, job_id: str) -> List[JobApplication]:
        return self.store.list_applications(job_id=job_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def transition(self, job_id: str, actor: Actor, action: Action) -> Job:
        """Apply an action, retrying on version conflict.

        Only ConflictError is retried; every other error is raised as-is.
        """
        retries = 0
        while True:
            try:
                return self.engine.transition(job_id, actor, action)
            except ConflictError as e:
                if retries >= self.config.conflict_retries:
                    logger.warning("Giving up on %s for job %s: %s", action.name, job_id, e)
                    raise
                retries += 1
                logger.info("Version conflict on job %s during %s, retrying", job_id, action.name)

    def claim_win(self, job_id: str, actor: Actor, method: Optional[ClaimMethod] = None) -> Job:
        """Claim a job, buying access first if the contractor has none.

        Raises:
            AlreadyClaimedError: If another claim is pending
            InsufficientCreditsError: If access is needed and cannot be bought
        """
        if actor.role != ActorRole.CONTRACTOR:
            raise UnauthorizedError("Only contractors can claim a job")
        if self.store.get_access(job_id, actor.id) is None:
            job = self.get_job(job_id)
            if job.status != JobStatus.POSTED.value:
                raise InvalidTransitionError(f"Job {job_id} is {job.status} and cannot be claimed")
            if job.has_pending_claim:
                raise AlreadyClaimedError(f"Job {job_id} already has a pending claim")
            self.purchase_access(job_id, actor.id, method)
        return self.transition(job_id, actor, ClaimWin())

    def reject_claim(self, job_id: str, actor: Actor, reason: Optional[str] = None) -> Job:
        return self.transition(job_id, actor, RejectClaim(reason=reason))

    def confirm_winner(self, job_id: str, actor: Actor) -> Job:
        return self.transition(job_id, actor, ConfirmWinner())

    def propose_final_price(self, job_id: str, actor: Actor, amount: int) -> Job:
        return self.transition(job_id, actor, ProposeFinalPrice(amount=amount))

    def confirm_final_price(self, job_id: str, actor: Actor) -> Job:
        return self.transition(job_id, actor, ConfirmFinalPrice())

    def reject_final_price(self, job_id: str, actor: Actor, reason: str) -> Job:
        return self.transition(job_id, actor, RejectFinalPrice(reason=reason))

    def cancel_job(self, job_id: str, actor: Actor, reason: Optional[str] = None) -> Job:
        return self.transition(job_id, actor, Cancel(reason=reason))

    def set_lead_price(self, job_id: str, lead_price: int, reason: str, actor: Actor) -> Job:
        """Override the lead price of a posted job.

        Admin only (with override capability); the change is audited in the
        same save as the job. Contractors who already bought access keep the
        price they paid.

        Raises:
            UnauthorizedError: If the actor may not override
            InvalidTransitionError: If the job is no longer POSTED
            ValidationError: If the price or reason is invalid
            AuditError: If the audit record could not be written
        """
        return self.transition(job_id, actor, SetLeadPrice(lead_price=lead_price, reason=reason))
