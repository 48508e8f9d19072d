"""
Credit ledger storage.

The ledger holds contractor credit accounts, the append-only credit
transaction log and commission payment records. Balance changes are
applied atomically with the transaction entry that explains them.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from jobflow.commerce.credits.models import (
    CommissionPayment,
    CommissionStatus,
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
)
from jobflow.commerce.errors import (
    AccountNotFoundError,
    CommissionSettlementError,
    DuplicateCommissionError,
    InsufficientCreditsError,
    ValidationError,
)
from jobflow.types import utc_now

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    """Protocol for credit ledger backends."""

    # Accounts
    def create_account(self, account: CreditAccount) -> CreditAccount:
        ...

    def get_account(self, contractor_id: str) -> Optional[CreditAccount]:
        ...

    def list_accounts(self, is_subscribed: Optional[bool] = None) -> List[CreditAccount]:
        ...

    def update_subscription(
        self,
        contractor_id: str,
        is_subscribed: bool,
        weekly_credits_limit: Optional[int] = None,
    ) -> CreditAccount:
        ...

    # Balance movements
    def debit(
        self,
        contractor_id: str,
        amount: int,
        description: str,
        type: CreditTransactionType = CreditTransactionType.JOB_ACCESS,
        job_id: Optional[str] = None,
        admin_user_id: Optional[str] = None,
        use_trial: bool = False,
    ) -> CreditTransaction:
        """Consume credits.

        Raises:
            InsufficientCreditsError: If the balance (or trial unit) is too small
            AccountNotFoundError: If the contractor has no account
        """
        ...

    def credit(
        self,
        contractor_id: str,
        amount: int,
        reason: str,
        type: CreditTransactionType = CreditTransactionType.BONUS,
        job_id: Optional[str] = None,
        admin_user_id: Optional[str] = None,
        trial: bool = False,
    ) -> CreditTransaction:
        """Grant credits."""
        ...

    def replenish(self, contractor_id: str, week_key: str, target: int) -> Optional[CreditTransaction]:
        """Top the balance up to target once per week_key.

        Returns None when the week was already processed or no top-up was needed.
        """
        ...

    def list_transactions(self, contractor_id: str, limit: int = 100) -> List[CreditTransaction]:
        ...

    # Commissions
    def save_commission(
        self, commission: CommissionPayment, replace_unsettled: bool = False
    ) -> CommissionPayment:
        """Insert a commission.

        With replace_unsettled, an outstanding commission already held by
        the job is replaced; callers pass it only for a job whose completion
        never committed.

        Raises:
            DuplicateCommissionError: If the job already has a commission
            CommissionSettlementError: If the existing commission was paid or waived
        """
        ...

    def get_commission(self, commission_id: str) -> Optional[CommissionPayment]:
        ...

    def get_commission_for_job(self, job_id: str) -> Optional[CommissionPayment]:
        ...

    def list_commissions(
        self,
        contractor_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        due_before: Optional[datetime] = None,
    ) -> List[CommissionPayment]:
        ...

    def update_commission(self, commission: CommissionPayment, expected_status: CommissionStatus) -> bool:
        """Write commission only if its stored status is still expected_status."""
        ...

    def delete_commission(self, commission_id: str) -> bool:
        """Remove a commission written by a save that did not commit."""
        ...


def _new_transaction(contractor_id: str, amount: int, type, description: str, **kwargs) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        contractor_id=contractor_id,
        amount=amount,
        type=type,
        description=description,
        created_at=utc_now(),
        **kwargs,
    )


class InMemoryCreditLedger:
    """In-memory credit ledger for testing and local development."""

    def __init__(self):
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: Dict[str, List[CreditTransaction]] = {}
        self._commissions: Dict[str, CommissionPayment] = {}
        self._lock = threading.RLock()

    # === Accounts ===

    def create_account(self, account: CreditAccount) -> CreditAccount:
        with self._lock:
            if account.contractor_id in self._accounts:
                raise ValidationError(f"Credit account for {account.contractor_id} already exists")
            stored = copy.deepcopy(account)
            stored.created_at = stored.created_at or utc_now()
            stored.updated_at = stored.created_at
            self._accounts[account.contractor_id] = stored
            self._transactions.setdefault(account.contractor_id, [])
            return copy.deepcopy(stored)

    def get_account(self, contractor_id: str) -> Optional[CreditAccount]:
        with self._lock:
            account = self._accounts.get(contractor_id)
            return copy.deepcopy(account) if account else None

    def list_accounts(self, is_subscribed: Optional[bool] = None) -> List[CreditAccount]:
        with self._lock:
            accounts = [copy.deepcopy(a) for a in self._accounts.values()]
        if is_subscribed is not None:
            accounts = [a for a in accounts if a.is_subscribed == is_subscribed]
        return sorted(accounts, key=lambda a: a.contractor_id)

    def _require(self, contractor_id: str) -> CreditAccount:
        account = self._accounts.get(contractor_id)
        if account is None:
            raise AccountNotFoundError(f"No credit account for contractor {contractor_id}")
        return account

    def _touch(self, account: CreditAccount) -> None:
        account.version += 1
        account.updated_at = utc_now()

    def update_subscription(
        self,
        contractor_id: str,
        is_subscribed: bool,
        weekly_credits_limit: Optional[int] = None,
    ) -> CreditAccount:
        with self._lock:
            account = self._require(contractor_id)
            account.is_subscribed = is_subscribed
            if weekly_credits_limit is not None:
                if weekly_credits_limit < 0:
                    raise ValidationError("weekly_credits_limit cannot be negative")
                account.weekly_credits_limit = weekly_credits_limit
            self._touch(account)
            return copy.deepcopy(account)

    # === Balance movements ===

    def debit(
        self,
        contractor_id: str,
        amount: int,
        description: str,
        type: CreditTransactionType = CreditTransactionType.JOB_ACCESS,
        job_id: Optional[str] = None,
        admin_user_id: Optional[str] = None,
        use_trial: bool = False,
    ) -> CreditTransaction:
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")
        with self._lock:
            account = self._require(contractor_id)
            if use_trial:
                if amount != 1 or not account.has_trial_credit:
                    raise InsufficientCreditsError(f"Contractor {contractor_id} has no trial credit")
                account.trial_credits -= 1
                account.has_used_free_trial = True
            else:
                if account.credits_balance < amount:
                    raise InsufficientCreditsError(
                        f"Contractor {contractor_id} has {account.credits_balance} credits, needs {amount}"
                    )
                account.credits_balance -= amount
            self._touch(account)
            tx = _new_transaction(
                contractor_id,
                -amount,
                type,
                description,
                job_id=job_id,
                admin_user_id=admin_user_id,
                trial=use_trial,
            )
            self._transactions.setdefault(contractor_id, []).append(tx)
            return tx

    def credit(
        self,
        contractor_id: str,
        amount: int,
        reason: str,
        type: CreditTransactionType = CreditTransactionType.BONUS,
        job_id: Optional[str] = None,
        admin_user_id: Optional[str] = None,
        trial: bool = False,
    ) -> CreditTransaction:
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")
        with self._lock:
            account = self._require(contractor_id)
            if trial:
                account.trial_credits += amount
                account.has_used_free_trial = False
            else:
                account.credits_balance += amount
            self._touch(account)
            tx = _new_transaction(
                contractor_id,
                amount,
                type,
                reason,
                job_id=job_id,
                admin_user_id=admin_user_id,
                trial=trial,
            )
            self._transactions.setdefault(contractor_id, []).append(tx)
            return tx

    def replenish(self, contractor_id: str, week_key: str, target: int) -> Optional[CreditTransaction]:
        with self._lock:
            account = self._require(contractor_id)
            if account.last_replenished_week == week_key:
                return None
            account.last_replenished_week = week_key
            top_up = target - account.credits_balance
            if top_up <= 0:
                self._touch(account)
                return None
            account.credits_balance += top_up
            self._touch(account)
            tx = _new_transaction(
                contractor_id,
                top_up,
                CreditTransactionType.WEEKLY_ALLOCATION,
                f"Weekly allocation {week_key}",
            )
            self._transactions.setdefault(contractor_id, []).append(tx)
            return tx

    def list_transactions(self, contractor_id: str, limit: int = 100) -> List[CreditTransaction]:
        with self._lock:
            txs = list(self._transactions.get(contractor_id, []))
        return list(reversed(txs))[:limit]

    # === Commissions ===

    def save_commission(
        self, commission: CommissionPayment, replace_unsettled: bool = False
    ) -> CommissionPayment:
        with self._lock:
            existing = next(
                (c for c in self._commissions.values() if c.job_id == commission.job_id), None
            )
            if existing is not None:
                if not replace_unsettled:
                    raise DuplicateCommissionError(f"Commission already exists for job {commission.job_id}")
                if not existing.is_outstanding:
                    raise CommissionSettlementError(
                        f"Job {commission.job_id} already has a {existing.status} commission {existing.id}"
                    )
                del self._commissions[existing.id]
                logger.warning(
                    "Replacing stale commission %s for job %s with %s",
                    existing.id,
                    commission.job_id,
                    commission.id,
                )
            self._commissions[commission.id] = copy.deepcopy(commission)
        return commission

    def get_commission(self, commission_id: str) -> Optional[CommissionPayment]:
        with self._lock:
            commission = self._commissions.get(commission_id)
            return copy.deepcopy(commission) if commission else None

    def get_commission_for_job(self, job_id: str) -> Optional[CommissionPayment]:
        with self._lock:
            for commission in self._commissions.values():
                if commission.job_id == job_id:
                    return copy.deepcopy(commission)
        return None

    def list_commissions(
        self,
        contractor_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        due_before: Optional[datetime] = None,
    ) -> List[CommissionPayment]:
        with self._lock:
            result = [copy.deepcopy(c) for c in self._commissions.values()]
        if contractor_id is not None:
            result = [c for c in result if c.contractor_id == contractor_id]
        if status is not None:
            status_val = status.value if isinstance(status, CommissionStatus) else status
            result = [c for c in result if c.status == status_val]
        if due_before is not None:
            result = [c for c in result if c.due_date <= due_before]
        result.sort(key=lambda c: c.due_date)
        return result

    def update_commission(self, commission: CommissionPayment, expected_status: CommissionStatus) -> bool:
        expected = expected_status.value if isinstance(expected_status, CommissionStatus) else expected_status
        with self._lock:
            current = self._commissions.get(commission.id)
            if current is None or current.status != expected:
                return False
            self._commissions[commission.id] = copy.deepcopy(commission)
            return True

    def delete_commission(self, commission_id: str) -> bool:
        with self._lock:
            return self._commissions.pop(commission_id, None) is not None
