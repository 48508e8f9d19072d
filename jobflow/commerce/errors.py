"""Error taxonomy for the jobflow commerce core.

Every operation on the workflow, credit and dispute services raises one
of these. Only ConflictError is worth retrying; the rest describe a
request that cannot succeed as posed.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base exception for commerce core errors."""

    code = "workflow_error"


class ValidationError(WorkflowError):
    """Request payload is malformed (empty reason, non-positive amount, ...)."""

    code = "validation_error"


class JobNotFoundError(WorkflowError):
    """Job does not exist."""

    code = "job_not_found"


class InvalidTransitionError(WorkflowError):
    """Action is not legal in the job's current state."""

    code = "invalid_transition"


class UnauthorizedError(WorkflowError):
    """Actor is not permitted to perform this action on this job."""

    code = "unauthorized"


class AlreadyClaimedError(WorkflowError):
    """Another contractor already holds the winning claim on this job."""

    code = "already_claimed"


class InsufficientCreditsError(WorkflowError):
    """Contractor has no usable credit for this job."""

    code = "insufficient_credits"


class TrialRestrictedToSmallJobsError(WorkflowError):
    """The free-trial credit may only be spent on SMALL jobs."""

    code = "trial_restricted_to_small_jobs"


class ConflictError(WorkflowError):
    """Raised when a record's version doesn't match the expected version.

    This indicates a concurrent modification - another request updated the
    record between when we read it and when we tried to save our changes.
    Callers reload and retry.
    """

    code = "conflict"

    def __init__(
        self,
        table: str,
        record_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int],
    ):
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {table}/{record_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class TimeoutAlreadyResolvedError(WorkflowError):
    """Timeout delivered for a job that is no longer awaiting confirmation.

    Expected under at-least-once delivery; sweepers treat it as success.
    """

    code = "timeout_already_resolved"


class AccessRequiredError(UnauthorizedError):
    """Contractor has not purchased access to the job."""

    code = "access_required"


class DuplicateAccessError(WorkflowError):
    """Contractor already holds access to this job."""

    code = "duplicate_access"


class DuplicateApplicationError(WorkflowError):
    """Contractor already applied to this job."""

    code = "duplicate_application"


class AccountNotFoundError(WorkflowError):
    """Contractor has no credit account."""

    code = "account_not_found"


class CommissionNotFoundError(WorkflowError):
    """Commission payment does not exist."""

    code = "commission_not_found"


class CommissionSettlementError(WorkflowError):
    """Commission record could not be created; the completion is aborted."""

    code = "commission_settlement_failed"


class DuplicateCommissionError(CommissionSettlementError):
    """A commission already exists for this job."""

    code = "duplicate_commission"


class DisputeNotFoundError(WorkflowError):
    """Dispute does not exist."""

    code = "dispute_not_found"


class PaymentFailedError(WorkflowError):
    """Payment gateway declined or failed the charge."""

    code = "payment_failed"


class AuditError(WorkflowError):
    """An audited action could not be recorded; the action is aborted."""

    code = "audit_failed"
