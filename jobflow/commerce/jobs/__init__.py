"""Jobs subsystem for jobflow.

Models:
- Job: A job posted by a customer
- JobAccess: A contractor's purchased access to a job
- JobApplication: A contractor's bid on a job
- JobStatus / JobSize / AccessMethod / ApplicationStatus
- JobStateTransition: History entry for state changes

Actions:
- One frozen dataclass per lifecycle action (ClaimWin, ConfirmWinner, ...)

Storage:
- JobStore: Persistence protocol (compare-and-swap saves)
- InMemoryJobStorage: In-memory backend

The WorkflowEngine and JobService live in `workflow` and `service`.
"""

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
    action_from_dict,
)
from jobflow.commerce.jobs.models import (
    VALID_JOB_TRANSITIONS,
    AccessMethod,
    ApplicationStatus,
    InvariantViolation,
    Job,
    JobAccess,
    JobApplication,
    JobSize,
    JobStateTransition,
    JobStatus,
)
from jobflow.commerce.jobs.storage import InMemoryJobStorage, JobStore

__all__ = [
    # Models
    "Job",
    "JobAccess",
    "JobApplication",
    "JobStatus",
    "JobSize",
    "AccessMethod",
    "ApplicationStatus",
    "JobStateTransition",
    "InvariantViolation",
    "VALID_JOB_TRANSITIONS",
    # Actions
    "Action",
    "ACTION_TYPES",
    "action_from_dict",
    "ClaimWin",
    "RejectClaim",
    "ConfirmWinner",
    "ProposeFinalPrice",
    "ConfirmFinalPrice",
    "RejectFinalPrice",
    "SetLeadPrice",
    "TimeoutExpire",
    "OpenDispute",
    "AdminOverride",
    "Cancel",
    # Storage
    "JobStore",
    "InMemoryJobStorage",
]
