"""Workflow actions.

One frozen dataclass per action so the engine can dispatch on the action
type instead of probing optional payload fields.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Type, Union

from jobflow.commerce.errors import ValidationError
from jobflow.types import parse_datetime


@dataclass(frozen=True)
class ClaimWin:
    """Contractor declares the customer agreed to hire them."""

    name: ClassVar[str] = "claim_win"


@dataclass(frozen=True)
class RejectClaim:
    """Customer declines a pending, unconfirmed claim."""

    name: ClassVar[str] = "reject_claim"
    reason: Optional[str] = None


@dataclass(frozen=True)
class ConfirmWinner:
    """Customer confirms the claimant; work starts."""

    name: ClassVar[str] = "confirm_winner"


@dataclass(frozen=True)
class ProposeFinalPrice:
    """Winning contractor submits the final amount (pence)."""

    name: ClassVar[str] = "propose_final_price"
    amount: int


@dataclass(frozen=True)
class ConfirmFinalPrice:
    """Customer accepts the proposed final amount."""

    name: ClassVar[str] = "confirm_final_price"


@dataclass(frozen=True)
class RejectFinalPrice:
    """Customer rejects the proposed final amount."""

    name: ClassVar[str] = "reject_final_price"
    reason: str


@dataclass(frozen=True)
class TimeoutExpire:
    """Clock delivers an expired final-price deadline.

    `deadline` is the deadline the event was scheduled for; events for an
    older proposal are recognized as stale.
    """

    name: ClassVar[str] = "timeout_expire"
    deadline: Optional[datetime] = None


@dataclass(frozen=True)
class OpenDispute:
    """Customer or winning contractor escalates the job."""

    name: ClassVar[str] = "open_dispute"
    reason: str


@dataclass(frozen=True)
class AdminOverride:
    """Admin forces completion with an explicit amount and justification."""

    name: ClassVar[str] = "admin_override"
    final_amount: int
    reason: str


@dataclass(frozen=True)
class SetLeadPrice:
    """Admin replaces the size-default lead price of a POSTED job."""

    name: ClassVar[str] = "set_lead_price"
    lead_price: int
    reason: str


@dataclass(frozen=True)
class Cancel:
    """Customer withdraws the job before a winner is confirmed."""

    name: ClassVar[str] = "cancel"
    reason: Optional[str] = None


Action = Union[
    ClaimWin,
    RejectClaim,
    ConfirmWinner,
    ProposeFinalPrice,
    ConfirmFinalPrice,
    RejectFinalPrice,
    TimeoutExpire,
    OpenDispute,
    AdminOverride,
    SetLeadPrice,
    Cancel,
]

ACTION_TYPES: Dict[str, Type] = {
    cls.name: cls
    for cls in (
        ClaimWin,
        RejectClaim,
        ConfirmWinner,
        ProposeFinalPrice,
        ConfirmFinalPrice,
        RejectFinalPrice,
        TimeoutExpire,
        OpenDispute,
        AdminOverride,
        SetLeadPrice,
        Cancel,
    )
}


def action_from_dict(name: str, payload: Optional[Dict[str, Any]] = None) -> Action:
    """Build an action from its wire name and payload.

    Unknown keys are rejected so typos surface instead of being ignored.

    Raises:
        ValidationError: If the name is unknown or the payload does not fit
    """
    cls = ACTION_TYPES.get(name)
    if cls is None:
        raise ValidationError(f"Unknown action: {name}")
    payload = dict(payload or {})
    allowed = {f.name for f in fields(cls)}
    unknown = set(payload) - allowed
    if unknown:
        raise ValidationError(f"Unexpected fields for {name}: {sorted(unknown)}")
    if cls is TimeoutExpire and payload.get("deadline"):
        payload["deadline"] = parse_datetime(payload["deadline"])
    try:
        return cls(**payload)
    except TypeError as e:
        raise ValidationError(f"Invalid payload for {name}: {e}") from e
