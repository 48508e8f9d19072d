"""Credit and commission data models.

All monetary values are integers in pence. Rates are Decimal and
rounding is half-up to the penny.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from jobflow.types import format_datetime, parse_datetime


class ClaimMethod(str, Enum):
    """Outcome of an access check."""

    CREDIT = "CREDIT"
    LEAD_PAYMENT = "LEAD_PAYMENT"
    DENIED = "DENIED"


class DenialReason(str, Enum):
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    TRIAL_RESTRICTED_TO_SMALL_JOBS = "TrialRestrictedToSmallJobs"
    LEAD_PAYMENT_UNAVAILABLE = "LeadPaymentUnavailable"


class CreditTransactionType(str, Enum):
    WEEKLY_ALLOCATION = "WEEKLY_ALLOCATION"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    JOB_ACCESS = "JOB_ACCESS"
    BONUS = "BONUS"
    TRIAL_GRANT = "TRIAL_GRANT"
    REFUND = "REFUND"


class CommissionStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    WAIVED = "WAIVED"


VALID_COMMISSION_TRANSITIONS: Dict[CommissionStatus, Set[CommissionStatus]] = {
    CommissionStatus.PENDING: {CommissionStatus.PAID, CommissionStatus.OVERDUE},
    CommissionStatus.OVERDUE: {CommissionStatus.PAID, CommissionStatus.WAIVED},
    CommissionStatus.PAID: set(),
    CommissionStatus.WAIVED: set(),
}


def round_pence(value: Decimal) -> int:
    """Round a Decimal amount of pence half-up to a whole penny."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_commission(
    final_amount: int,
    commission_rate: Decimal,
    vat_rate: Decimal,
) -> Tuple[int, int, int]:
    """Return (commission, vat, total) in pence for a final job amount."""
    if final_amount <= 0:
        raise ValueError("final_amount must be positive")
    commission = round_pence(Decimal(final_amount) * commission_rate)
    vat = round_pence(Decimal(commission) * vat_rate)
    return commission, vat, commission + vat


@dataclass(frozen=True)
class ClaimDecision:
    """Whether a contractor may access a job, and how."""

    allowed: bool
    method: ClaimMethod
    reason: Optional[DenialReason] = None
    uses_trial_credit: bool = False
    lead_price: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "method": self.method.value,
            "reason": self.reason.value if self.reason else None,
            "uses_trial_credit": self.uses_trial_credit,
            "lead_price": self.lead_price,
        }


@dataclass
class CreditAccount:
    """A contractor's credit balance and entitlements.

    `trial_credits` is the free-trial unit, tracked apart from the
    regular balance because it carries its own job-size restriction.
    """

    contractor_id: str
    credits_balance: int = 0
    trial_credits: int = 0
    has_used_free_trial: bool = False
    is_subscribed: bool = False
    weekly_credits_limit: int = 0
    last_replenished_week: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.contractor_id:
            raise ValueError("contractor_id cannot be empty")
        if self.credits_balance < 0:
            raise ValueError("credits_balance cannot be negative")
        if self.trial_credits < 0:
            raise ValueError("trial_credits cannot be negative")
        if self.weekly_credits_limit < 0:
            raise ValueError("weekly_credits_limit cannot be negative")

    @property
    def has_trial_credit(self) -> bool:
        return self.trial_credits > 0 and not self.has_used_free_trial

    @property
    def available_credits(self) -> int:
        return self.credits_balance + (self.trial_credits if self.has_trial_credit else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contractor_id": self.contractor_id,
            "credits_balance": self.credits_balance,
            "trial_credits": self.trial_credits,
            "has_used_free_trial": self.has_used_free_trial,
            "is_subscribed": self.is_subscribed,
            "weekly_credits_limit": self.weekly_credits_limit,
            "last_replenished_week": self.last_replenished_week,
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditAccount":
        return cls(
            contractor_id=data["contractor_id"],
            credits_balance=int(data.get("credits_balance", 0)),
            trial_credits=int(data.get("trial_credits", 0)),
            has_used_free_trial=bool(data.get("has_used_free_trial", False)),
            is_subscribed=bool(data.get("is_subscribed", False)),
            weekly_credits_limit=int(data.get("weekly_credits_limit", 0)),
            last_replenished_week=data.get("last_replenished_week"),
            version=int(data.get("version", 1)),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class CreditTransaction:
    """Append-only ledger entry. Positive amounts grant, negative consume."""

    id: str
    contractor_id: str
    amount: int
    type: str
    description: str
    job_id: Optional[str] = None
    admin_user_id: Optional[str] = None
    trial: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.type, CreditTransactionType):
            self.type = self.type.value
        if self.type not in {t.value for t in CreditTransactionType}:
            raise ValueError(f"Invalid transaction type: {self.type}")
        if self.amount == 0:
            raise ValueError("Transaction amount cannot be zero")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contractor_id": self.contractor_id,
            "amount": self.amount,
            "type": self.type,
            "description": self.description,
            "job_id": self.job_id,
            "admin_user_id": self.admin_user_id,
            "trial": self.trial,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditTransaction":
        return cls(
            id=data["id"],
            contractor_id=data["contractor_id"],
            amount=int(data["amount"]),
            type=data["type"],
            description=data.get("description", ""),
            job_id=data.get("job_id"),
            admin_user_id=data.get("admin_user_id"),
            trial=bool(data.get("trial", False)),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class CommissionPayment:
    """Commission owed on a completed, credit-funded job."""

    id: str
    job_id: str
    contractor_id: str
    final_job_amount: int
    commission_rate: Decimal
    commission_amount: int
    vat_amount: int
    total_amount: int
    due_date: datetime
    status: str = CommissionStatus.PENDING.value
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    overdue_at: Optional[datetime] = None
    waived_at: Optional[datetime] = None
    waived_by: Optional[str] = None
    waiver_reason: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.status, CommissionStatus):
            self.status = self.status.value
        if self.status not in {s.value for s in CommissionStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        if not isinstance(self.commission_rate, Decimal):
            self.commission_rate = Decimal(str(self.commission_rate))
        if self.final_job_amount <= 0:
            raise ValueError("final_job_amount must be positive")
        if self.commission_amount < 0 or self.vat_amount < 0:
            raise ValueError("Commission amounts cannot be negative")
        if self.commission_amount + self.vat_amount != self.total_amount:
            raise ValueError("total_amount must equal commission_amount + vat_amount")

    @property
    def is_outstanding(self) -> bool:
        return self.status in (CommissionStatus.PENDING.value, CommissionStatus.OVERDUE.value)

    def can_transition_to(self, new_status: CommissionStatus) -> bool:
        current = CommissionStatus(self.status)
        return CommissionStatus(new_status) in VALID_COMMISSION_TRANSITIONS[current]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "contractor_id": self.contractor_id,
            "final_job_amount": self.final_job_amount,
            "commission_rate": str(self.commission_rate),
            "commission_amount": self.commission_amount,
            "vat_amount": self.vat_amount,
            "total_amount": self.total_amount,
            "due_date": format_datetime(self.due_date),
            "status": self.status,
            "created_at": format_datetime(self.created_at),
            "paid_at": format_datetime(self.paid_at),
            "payment_reference": self.payment_reference,
            "overdue_at": format_datetime(self.overdue_at),
            "waived_at": format_datetime(self.waived_at),
            "waived_by": self.waived_by,
            "waiver_reason": self.waiver_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommissionPayment":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            contractor_id=data["contractor_id"],
            final_job_amount=int(data["final_job_amount"]),
            commission_rate=Decimal(str(data["commission_rate"])),
            commission_amount=int(data["commission_amount"]),
            vat_amount=int(data["vat_amount"]),
            total_amount=int(data["total_amount"]),
            due_date=parse_datetime(data["due_date"]),
            status=data.get("status", CommissionStatus.PENDING.value),
            created_at=parse_datetime(data.get("created_at")),
            paid_at=parse_datetime(data.get("paid_at")),
            payment_reference=data.get("payment_reference"),
            overdue_at=parse_datetime(data.get("overdue_at")),
            waived_at=parse_datetime(data.get("waived_at")),
            waived_by=data.get("waived_by"),
            waiver_reason=data.get("waiver_reason"),
        )
