"""Credits subsystem for jobflow.

Models:
- CreditAccount: A contractor's balance, trial credit and subscription
- CreditTransaction: Append-only ledger entry
- CommissionPayment: Commission owed on a credit-funded completed job
- ClaimDecision: Outcome of an access check

Storage:
- CreditLedger: Ledger protocol
- InMemoryCreditLedger: In-memory backend

The CreditService lives in `service`.
"""

from jobflow.commerce.credits.models import (
    VALID_COMMISSION_TRANSITIONS,
    ClaimDecision,
    ClaimMethod,
    CommissionPayment,
    CommissionStatus,
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
    DenialReason,
    compute_commission,
    round_pence,
)
from jobflow.commerce.credits.storage import CreditLedger, InMemoryCreditLedger

__all__ = [
    # Models
    "CreditAccount",
    "CreditTransaction",
    "CreditTransactionType",
    "CommissionPayment",
    "CommissionStatus",
    "ClaimDecision",
    "ClaimMethod",
    "DenialReason",
    "VALID_COMMISSION_TRANSITIONS",
    "compute_commission",
    "round_pence",
    # Storage
    "CreditLedger",
    "InMemoryCreditLedger",
]
