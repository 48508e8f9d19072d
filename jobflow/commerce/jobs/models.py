"""Job marketplace data models.

Jobs are posted by customers; contractors buy access, claim the win,
do the work, and propose a final price the customer confirms.

Money is held in pence as int. Statuses are stored as their string
values; enum members are accepted anywhere a status is set.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from jobflow.types import format_datetime, parse_datetime


class JobStatus(str, Enum):
    """Job lifecycle status."""

    POSTED = "POSTED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_FINAL_PRICE_CONFIRMATION = "AWAITING_FINAL_PRICE_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class JobSize(str, Enum):
    """Size band used for lead pricing and trial-credit eligibility."""

    SMALL = "SMALL"
    MEDIUM = "MEDIUM"
    LARGE = "LARGE"


class AccessMethod(str, Enum):
    """How a contractor paid to see a job."""

    CREDIT = "CREDIT"
    LEAD_PAYMENT = "LEAD_PAYMENT"


class ApplicationStatus(str, Enum):
    """Application lifecycle status."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


# Valid state transitions (from_status -> set of valid to_statuses)
VALID_JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.POSTED: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {
        JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION,
        JobStatus.DISPUTED,
    },
    JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION: {
        JobStatus.COMPLETED,
        JobStatus.IN_PROGRESS,
        JobStatus.DISPUTED,
    },
    JobStatus.DISPUTED: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.CANCELLED.value})

# Statuses in which a confirmed winner must exist
WINNER_STATUSES = frozenset(
    {
        JobStatus.IN_PROGRESS.value,
        JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION.value,
        JobStatus.COMPLETED.value,
        JobStatus.DISPUTED.value,
    }
)


def _enum_value(value: Any, enum_cls) -> str:
    if isinstance(value, enum_cls):
        return value.value
    return value


class InvariantViolation(ValueError):
    """A job record is internally inconsistent."""


@dataclass
class Job:
    """A job posted by a customer.

    Attributes:
        id: Unique identifier
        customer_id: Customer who posted the job
        title: Short job title
        location: Where the work happens
        service_category: Trade/service the job belongs to
        job_size: Size band (drives lead price and trial eligibility)
        budget: Optional budget hint in pence
        lead_price: Admin-set lead price in pence, overriding the size default
        status: Current lifecycle status
        won_by_contractor_id: Claimant while POSTED; confirmed winner afterwards
        contractor_proposed_amount: Final price proposed by the winner, in pence
        final_amount: Agreed final amount in pence (set only when COMPLETED)
        final_price_timeout_at: Confirmation deadline (set only while awaiting)
        version: Optimistic-concurrency counter, bumped on every save
    """

    id: str
    customer_id: str
    title: str
    location: str
    service_category: str
    job_size: str = JobSize.MEDIUM.value
    description: Optional[str] = None
    budget: Optional[int] = None
    lead_price: Optional[int] = None
    status: str = JobStatus.POSTED.value
    won_by_contractor_id: Optional[str] = None
    winner_claimed_at: Optional[datetime] = None
    winner_confirmed_at: Optional[datetime] = None
    contractor_proposed_amount: Optional[int] = None
    final_amount: Optional[int] = None
    final_price_proposed_at: Optional[datetime] = None
    final_price_timeout_at: Optional[datetime] = None
    final_price_rejected_at: Optional[datetime] = None
    final_price_rejection_reason: Optional[str] = None
    customer_confirmed: bool = False
    completed_at: Optional[datetime] = None
    completed_by_override: bool = False
    override_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        """Validate job data."""
        self.status = _enum_value(self.status, JobStatus)
        self.job_size = _enum_value(self.job_size, JobSize)

        if self.status not in {s.value for s in JobStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        if self.job_size not in {s.value for s in JobSize}:
            raise ValueError(f"Invalid job size: {self.job_size}")
        if not self.customer_id:
            raise ValueError("customer_id cannot be empty")
        if not self.title or not self.title.strip():
            raise ValueError("Title cannot be empty")
        if len(self.title) > 200:
            raise ValueError("Title too long (max 200 characters)")
        if not self.location or not self.location.strip():
            raise ValueError("Location cannot be empty")
        if not self.service_category or not self.service_category.strip():
            raise ValueError("Service category cannot be empty")
        for name in ("budget", "lead_price", "contractor_proposed_amount", "final_amount"):
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer amount in pence")
            if value <= 0:
                raise ValueError(f"{name} must be positive")
        if self.version < 1:
            raise ValueError("version must be >= 1")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    @property
    def has_pending_claim(self) -> bool:
        """A contractor claimed the win and the customer has not confirmed yet."""
        return self.status == JobStatus.POSTED.value and self.won_by_contractor_id is not None

    @property
    def has_confirmed_winner(self) -> bool:
        return self.status in WINNER_STATUSES

    @property
    def is_awaiting_final_price(self) -> bool:
        return self.status == JobStatus.AWAITING_FINAL_PRICE_CONFIRMATION.value

    def can_transition_to(self, new_status: JobStatus) -> bool:
        """Check if transition to new status is valid."""
        current = JobStatus(self.status)
        return JobStatus(new_status) in VALID_JOB_TRANSITIONS.get(current, set())

    def check_invariants(self) -> None:
        """Raise InvariantViolation if the record is inconsistent."""
        if self.has_confirmed_winner:
            if not self.won_by_contractor_id:
                raise InvariantViolation(f"Job {self.id} is {self.status} without a winner")
            if self.winner_confirmed_at is None:
                raise InvariantViolation(f"Job {self.id} is {self.status} without winner confirmation")
        elif self.winner_confirmed_at is not None:
            raise InvariantViolation(f"Job {self.id} is {self.status} with a confirmed winner")
        if self.status == JobStatus.CANCELLED.value and self.won_by_contractor_id:
            raise InvariantViolation(f"Cancelled job {self.id} still carries a winner")

        completed = self.status == JobStatus.COMPLETED.value
        if completed != (self.final_amount is not None):
            raise InvariantViolation(
                f"Job {self.id}: final_amount must be set if and only if COMPLETED"
            )
        if self.is_awaiting_final_price != (self.final_price_timeout_at is not None):
            raise InvariantViolation(
                f"Job {self.id}: final_price_timeout_at must be set if and only if awaiting confirmation"
            )
        if self.is_awaiting_final_price and self.contractor_proposed_amount is None:
            raise InvariantViolation(f"Job {self.id} is awaiting confirmation without a proposal")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "service_category": self.service_category,
            "job_size": self.job_size,
            "budget": self.budget,
            "lead_price": self.lead_price,
            "status": self.status,
            "won_by_contractor_id": self.won_by_contractor_id,
            "winner_claimed_at": format_datetime(self.winner_claimed_at),
            "winner_confirmed_at": format_datetime(self.winner_confirmed_at),
            "contractor_proposed_amount": self.contractor_proposed_amount,
            "final_amount": self.final_amount,
            "final_price_proposed_at": format_datetime(self.final_price_proposed_at),
            "final_price_timeout_at": format_datetime(self.final_price_timeout_at),
            "final_price_rejected_at": format_datetime(self.final_price_rejected_at),
            "final_price_rejection_reason": self.final_price_rejection_reason,
            "customer_confirmed": self.customer_confirmed,
            "completed_at": format_datetime(self.completed_at),
            "completed_by_override": self.completed_by_override,
            "override_reason": self.override_reason,
            "cancelled_at": format_datetime(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "disputed_at": format_datetime(self.disputed_at),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            title=data["title"],
            description=data.get("description"),
            location=data["location"],
            service_category=data["service_category"],
            job_size=data.get("job_size", JobSize.MEDIUM.value),
            budget=data.get("budget"),
            lead_price=data.get("lead_price"),
            status=data.get("status", JobStatus.POSTED.value),
            won_by_contractor_id=data.get("won_by_contractor_id"),
            winner_claimed_at=parse_datetime(data.get("winner_claimed_at")),
            winner_confirmed_at=parse_datetime(data.get("winner_confirmed_at")),
            contractor_proposed_amount=data.get("contractor_proposed_amount"),
            final_amount=data.get("final_amount"),
            final_price_proposed_at=parse_datetime(data.get("final_price_proposed_at")),
            final_price_timeout_at=parse_datetime(data.get("final_price_timeout_at")),
            final_price_rejected_at=parse_datetime(data.get("final_price_rejected_at")),
            final_price_rejection_reason=data.get("final_price_rejection_reason"),
            customer_confirmed=bool(data.get("customer_confirmed", False)),
            completed_at=parse_datetime(data.get("completed_at")),
            completed_by_override=bool(data.get("completed_by_override", False)),
            override_reason=data.get("override_reason"),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
            cancellation_reason=data.get("cancellation_reason"),
            disputed_at=parse_datetime(data.get("disputed_at")),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            version=int(data.get("version", 1)),
        )


@dataclass
class JobAccess:
    """A contractor's purchased access to one job. Append-only."""

    id: str
    job_id: str
    contractor_id: str
    method: str
    purchased_at: datetime
    amount_paid: int = 0
    payment_reference: Optional[str] = None
    credit_transaction_id: Optional[str] = None
    used_trial_credit: bool = False

    def __post_init__(self):
        self.method = _enum_value(self.method, AccessMethod)
        if self.method not in {m.value for m in AccessMethod}:
            raise ValueError(f"Invalid access method: {self.method}")
        if self.amount_paid < 0:
            raise ValueError("amount_paid cannot be negative")
        if self.method == AccessMethod.LEAD_PAYMENT.value and not self.payment_reference:
            raise ValueError("Lead payment access requires a payment reference")

    @property
    def is_credit(self) -> bool:
        return self.method == AccessMethod.CREDIT.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "method": self.method,
            "purchased_at": format_datetime(self.purchased_at),
            "amount_paid": self.amount_paid,
            "payment_reference": self.payment_reference,
            "credit_transaction_id": self.credit_transaction_id,
            "used_trial_credit": self.used_trial_credit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobAccess":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            contractor_id=data["contractor_id"],
            method=data["method"],
            purchased_at=parse_datetime(data["purchased_at"]),
            amount_paid=int(data.get("amount_paid") or 0),
            payment_reference=data.get("payment_reference"),
            credit_transaction_id=data.get("credit_transaction_id"),
            used_trial_credit=bool(data.get("used_trial_credit", False)),
        )


@dataclass
class JobApplication:
    """A contractor's declared bid on a job."""

    id: str
    job_id: str
    contractor_id: str
    proposed_rate: int
    status: str = ApplicationStatus.PENDING.value
    message: Optional[str] = None
    applied_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _enum_value(self.status, ApplicationStatus)
        if self.status not in {s.value for s in ApplicationStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        if not isinstance(self.proposed_rate, int) or self.proposed_rate <= 0:
            raise ValueError("proposed_rate must be a positive amount in pence")

    @property
    def is_pending(self) -> bool:
        return self.status == ApplicationStatus.PENDING.value

    @property
    def is_accepted(self) -> bool:
        return self.status == ApplicationStatus.ACCEPTED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "proposed_rate": self.proposed_rate,
            "status": self.status,
            "message": self.message,
            "applied_at": format_datetime(self.applied_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobApplication":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            contractor_id=data["contractor_id"],
            proposed_rate=int(data["proposed_rate"]),
            status=data.get("status", ApplicationStatus.PENDING.value),
            message=data.get("message"),
            applied_at=parse_datetime(data.get("applied_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for a job state change.

    Every successful transition writes one of these in the same
    atomic save as the job itself.
    """

    id: str
    job_id: str
    to_status: str
    action: str
    actor_id: str
    from_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "action": self.action,
            "actor_id": self.actor_id,
            "metadata": self.metadata,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStateTransition":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            action=data["action"],
            actor_id=data["actor_id"],
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")),
        )
