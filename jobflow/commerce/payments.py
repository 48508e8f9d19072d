"""Payment gateway contract.

The core only needs to invoke a charge and learn whether it succeeded.
Card handling, intents and webhooks belong to the gateway implementation.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a charge attempt."""

    succeeded: bool
    reference: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGateway(Protocol):
    """Protocol for charging a user an amount in pence."""

    def charge(self, payer_id: str, amount: int, reference: str, description: str) -> PaymentResult:
        ...


@dataclass(frozen=True)
class RecordedCharge:
    payer_id: str
    amount: int
    reference: str
    description: str
    payment_reference: str


class InMemoryPaymentGateway:
    """Gateway that approves every charge unless the payer is blocked."""

    def __init__(self, declined_payers: Iterable[str] = ()):
        self._declined = set(declined_payers)
        self._charges: List[RecordedCharge] = []
        self._lock = threading.Lock()

    def decline(self, payer_id: str) -> None:
        self._declined.add(payer_id)

    def charge(self, payer_id: str, amount: int, reference: str, description: str) -> PaymentResult:
        if amount <= 0:
            return PaymentResult(succeeded=False, failure_reason="Amount must be positive")
        if payer_id in self._declined:
            logger.info("Declined charge of %d for %s (%s)", amount, payer_id, reference)
            return PaymentResult(succeeded=False, failure_reason="Card declined")
        payment_reference = f"pay_{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._charges.append(
                RecordedCharge(payer_id, amount, reference, description, payment_reference)
            )
        return PaymentResult(succeeded=True, reference=payment_reference)

    @property
    def charges(self) -> List[RecordedCharge]:
        with self._lock:
            return list(self._charges)
