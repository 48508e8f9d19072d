"""jobflow commerce core.

Job lifecycle workflow, credit/commission accounting and dispute
handling, plus the collaborator contracts they depend on.

Subsystems:
- jobs: Job aggregate, actions, storage, WorkflowEngine, JobService
- credits: Credit accounts, commission payments, CreditService
- disputes: Disputes and admin overrides, DisputeService
- sweeper: Background timer sweep

Collaborators:
- clock: ClockService (time and delayed events)
- notifications: NotificationSink
- authorization: AuthorizationCheck
- payments: PaymentGateway
- audit: AuditLog
"""

from jobflow.commerce.actors import SYSTEM_ACTOR, Actor, ActorRole
from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.service import CreditService
from jobflow.commerce.disputes.service import DisputeService
from jobflow.commerce.errors import (
    AccessRequiredError,
    AccountNotFoundError,
    AlreadyClaimedError,
    CommissionNotFoundError,
    CommissionSettlementError,
    ConflictError,
    DisputeNotFoundError,
    DuplicateAccessError,
    DuplicateApplicationError,
    DuplicateCommissionError,
    InsufficientCreditsError,
    InvalidTransitionError,
    JobNotFoundError,
    PaymentFailedError,
    TimeoutAlreadyResolvedError,
    TrialRestrictedToSmallJobsError,
    UnauthorizedError,
    ValidationError,
    WorkflowError,
)
from jobflow.commerce.jobs.service import JobService
from jobflow.commerce.jobs.workflow import WorkflowEngine
from jobflow.commerce.sweeper import SweepReport, TimeoutSweeper

__all__ = [
    # Identity and config
    "Actor",
    "ActorRole",
    "SYSTEM_ACTOR",
    "CommerceConfig",
    # Services
    "WorkflowEngine",
    "JobService",
    "CreditService",
    "DisputeService",
    "TimeoutSweeper",
    "SweepReport",
    # Errors
    "WorkflowError",
    "ValidationError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "UnauthorizedError",
    "AccessRequiredError",
    "AlreadyClaimedError",
    "InsufficientCreditsError",
    "TrialRestrictedToSmallJobsError",
    "ConflictError",
    "TimeoutAlreadyResolvedError",
    "DuplicateAccessError",
    "DuplicateApplicationError",
    "AccountNotFoundError",
    "CommissionNotFoundError",
    "CommissionSettlementError",
    "DuplicateCommissionError",
    "DisputeNotFoundError",
    "PaymentFailedError",
]
