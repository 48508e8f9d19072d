"""Dispute and admin override handling.

Disputes freeze a job in DISPUTED; nothing resolves them automatically.
The only way onward is an admin override, which completes the job with
an explicit final amount and is always audited.
"""

import logging
from typing import List, Optional

from jobflow.commerce.actors import Actor, ActorRole
from jobflow.commerce.authorization import AuthorizationCheck, DenyAllAuthorization
from jobflow.commerce.disputes.models import Dispute, DisputeStatus
from jobflow.commerce.errors import (
    DisputeNotFoundError,
    UnauthorizedError,
    ValidationError,
    WorkflowError,
)
from jobflow.commerce.jobs.actions import AdminOverride, OpenDispute
from jobflow.commerce.jobs.models import Job
from jobflow.commerce.jobs.service import JobService

logger = logging.getLogger(__name__)


class DisputeService:
    """Opens disputes and applies admin overrides through the job service."""

    def __init__(
        self,
        jobs: JobService,
        authorization: Optional[AuthorizationCheck] = None,
    ):
        self.jobs = jobs
        self.store = jobs.store
        self.authorization = authorization or jobs.engine.authorization or DenyAllAuthorization()

    def open_dispute(self, job_id: str, actor: Actor, reason: str) -> Dispute:
        """Escalate a job with a confirmed winner to DISPUTED.

        Args:
            job_id: Job to dispute
            actor: The job's customer or its winning contractor
            reason: Why the job is disputed (required)

        Returns:
            The created dispute

        Raises:
            UnauthorizedError: If the actor is not a party to the job
            InvalidTransitionError: If the job has no confirmed winner or is
                already disputed or terminal
            ValidationError: If reason is empty
        """
        job = self.jobs.transition(job_id, actor, OpenDispute(reason=reason))
        # Looked up by id: the dispute may already be resolved by now
        dispute = self._created_dispute(job)
        logger.info("Dispute %s opened on job %s by %s", dispute.id, job_id, actor.id)
        return dispute

    def _created_dispute(self, job: Job) -> Dispute:
        for entry in reversed(self.store.get_transitions(job.id)):
            if entry.action == OpenDispute.name and entry.metadata.get("dispute_id"):
                dispute = self.store.get_dispute(entry.metadata["dispute_id"])
                if dispute is not None:
                    return dispute
                break
        raise WorkflowError(f"Job {job.id} was disputed but its dispute record is missing")

    def admin_override(self, job_id: str, actor: Actor, final_amount: int, reason: str) -> Job:
        """Force a stuck or disputed job to COMPLETED.

        Requires the override capability, a non-empty justification and an
        explicit positive final amount. Resolves the open dispute if any
        and writes an audit record with old state, new state, actor and
        reason in the same save as the job.

        Raises:
            UnauthorizedError: If the actor lacks the override capability
            ValidationError: If reason is empty or final_amount is not positive
            InvalidTransitionError: If the job is not awaiting confirmation or disputed
            AuditError: If the audit record could not be written; the job is unchanged
        """
        if actor.role != ActorRole.ADMIN or not self.authorization.has_override_capability(actor.id):
            raise UnauthorizedError(f"Actor {actor.id} lacks the override capability")
        if not reason or not reason.strip():
            raise ValidationError("An override requires a justification")
        if not isinstance(final_amount, int) or isinstance(final_amount, bool) or final_amount <= 0:
            raise ValidationError("An override requires a positive final amount in pence")

        job = self.jobs.transition(job_id, actor, AdminOverride(final_amount=final_amount, reason=reason))
        logger.info("Admin %s overrode job %s to %s (%d)", actor.id, job_id, job.status, final_amount)
        return job

    def get_dispute(self, dispute_id: str) -> Dispute:
        """Get a dispute by ID.

        Raises:
            DisputeNotFoundError: If it does not exist
        """
        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    def open_dispute_for_job(self, job_id: str) -> Optional[Dispute]:
        return self.store.get_open_dispute(job_id)

    def list_disputes(
        self,
        status: Optional[DisputeStatus] = None,
        job_id: Optional[str] = None,
    ) -> List[Dispute]:
        return self.store.list_disputes(status=status, job_id=job_id)
