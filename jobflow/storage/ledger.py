"""SQLite credit ledger.

Balance changes are single conditional UPDATEs, so two concurrent debits
can never overdraw an account; each one commits with the transaction
row that explains it. Commission status changes are compare-and-swap
on the stored status.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, List, Optional

from jobflow.commerce.credits.models import (
    CommissionPayment,
    CommissionStatus,
    CreditAccount,
    CreditTransaction,
    CreditTransactionType,
)
from jobflow.commerce.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    ValidationError,
)
from jobflow.storage.schema import sortable_ts
from jobflow.storage.sqlite import SQLiteDatabase, _dumps, _value, write_commission
from jobflow.types import format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


class SQLiteCreditLedger(SQLiteDatabase):
    """CreditLedger backed by SQLite."""

    # === Accounts ===

    def create_account(self, account: CreditAccount) -> CreditAccount:
        now = account.created_at or utc_now()
        with self._connect() as conn:
            try:
                conn.execute(
                    """INSERT INTO credit_accounts
                       (contractor_id, credits_balance, trial_credits, has_used_free_trial,
                        is_subscribed, weekly_credits_limit, last_replenished_week,
                        version, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
                    (
                        account.contractor_id,
                        account.credits_balance,
                        account.trial_credits,
                        int(account.has_used_free_trial),
                        int(account.is_subscribed),
                        account.weekly_credits_limit,
                        account.last_replenished_week,
                        format_datetime(now),
                        format_datetime(now),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(
                    f"Credit account for {account.contractor_id} already exists"
                ) from e
        return self.get_account(account.contractor_id)

    def get_account(self, contractor_id: str) -> Optional[CreditAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credit_accounts WHERE contractor_id = ?", (contractor_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, is_subscribed: Optional[bool] = None) -> List[CreditAccount]:
        query = "SELECT * FROM credit_accounts"
        params: List[Any] = []
        if is_subscribed is not None:
            query += " WHERE is_subscribed = ?"
            params.append(int(is_subscribed))
        query += " ORDER BY contractor_id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_account(r) for r in rows]

    def update_subscription(
        self,
        contractor_id: str,
        is_subscribed: bool,
        weekly_credits_limit: Optional[int] = None,
    ) -> CreditAccount:
        if weekly_credits_limit is not None and weekly_credits_limit < 0:
            raise ValidationError("weekly_credits_limit cannot be negative")
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE credit_accounts
                   SET is_subscribed = ?,
                       weekly_credits_limit = COALESCE(?, weekly_credits_limit),
                       version = version + 1, updated_at = ?
                   WHERE contractor_id = ?""",
                (int(is_subscribed), weekly_credits_limit, format_datetime(utc_now()), contractor_id),
            )
            if cur.rowcount == 0:
                raise AccountNotFoundError(f"No credit account for contractor {contractor_id}")
        return self.get_account(contractor_id)

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
        if use_trial and amount != 1:
            raise ValidationError("The trial credit is a single unit")
        now = utc_now()
        with self._connect() as conn:
            if use_trial:
                cur = conn.execute(
                    """UPDATE credit_accounts
                       SET trial_credits = trial_credits - 1, has_used_free_trial = 1,
                           version = version + 1, updated_at = ?
                       WHERE contractor_id = ? AND trial_credits >= 1 AND has_used_free_trial = 0""",
                    (format_datetime(now), contractor_id),
                )
            else:
                cur = conn.execute(
                    """UPDATE credit_accounts
                       SET credits_balance = credits_balance - ?,
                           version = version + 1, updated_at = ?
                       WHERE contractor_id = ? AND credits_balance >= ?""",
                    (amount, format_datetime(now), contractor_id, amount),
                )
            if cur.rowcount == 0:
                self._require(conn, contractor_id)
                raise InsufficientCreditsError(
                    f"Contractor {contractor_id} has no {'trial credit' if use_trial else 'credits'} to spend"
                )
            tx = _new_transaction(
                contractor_id,
                -amount,
                type,
                description,
                now,
                job_id=job_id,
                admin_user_id=admin_user_id,
                trial=use_trial,
            )
            self._insert_transaction(conn, tx)
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
        now = utc_now()
        with self._connect() as conn:
            if trial:
                cur = conn.execute(
                    """UPDATE credit_accounts
                       SET trial_credits = trial_credits + ?, has_used_free_trial = 0,
                           version = version + 1, updated_at = ?
                       WHERE contractor_id = ?""",
                    (amount, format_datetime(now), contractor_id),
                )
            else:
                cur = conn.execute(
                    """UPDATE credit_accounts
                       SET credits_balance = credits_balance + ?,
                           version = version + 1, updated_at = ?
                       WHERE contractor_id = ?""",
                    (amount, format_datetime(now), contractor_id),
                )
            if cur.rowcount == 0:
                raise AccountNotFoundError(f"No credit account for contractor {contractor_id}")
            tx = _new_transaction(
                contractor_id,
                amount,
                type,
                reason,
                now,
                job_id=job_id,
                admin_user_id=admin_user_id,
                trial=trial,
            )
            self._insert_transaction(conn, tx)
        return tx

    def replenish(self, contractor_id: str, week_key: str, target: int) -> Optional[CreditTransaction]:
        now = utc_now()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            account = self._require(conn, contractor_id)
            if account.last_replenished_week == week_key:
                return None
            top_up = max(target - account.credits_balance, 0)
            cur = conn.execute(
                """UPDATE credit_accounts
                   SET credits_balance = credits_balance + ?, last_replenished_week = ?,
                       version = version + 1, updated_at = ?
                   WHERE contractor_id = ?
                     AND (last_replenished_week IS NULL OR last_replenished_week != ?)""",
                (top_up, week_key, format_datetime(now), contractor_id, week_key),
            )
            if cur.rowcount == 0 or top_up == 0:
                return None
            tx = _new_transaction(
                contractor_id,
                top_up,
                CreditTransactionType.WEEKLY_ALLOCATION,
                f"Weekly allocation {week_key}",
                now,
            )
            self._insert_transaction(conn, tx)
        return tx

    def list_transactions(self, contractor_id: str, limit: int = 100) -> List[CreditTransaction]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT data FROM credit_transactions
                   WHERE contractor_id = ? ORDER BY seq DESC LIMIT ?""",
                (contractor_id, limit),
            ).fetchall()
        return [CreditTransaction.from_dict(json.loads(r["data"])) for r in rows]

    # === Commissions ===

    def save_commission(
        self, commission: CommissionPayment, replace_unsettled: bool = False
    ) -> CommissionPayment:
        with self._connect() as conn:
            write_commission(conn, commission, replace_unsettled=replace_unsettled)
        return commission

    def get_commission(self, commission_id: str) -> Optional[CommissionPayment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM commission_payments WHERE id = ?", (commission_id,)
            ).fetchone()
        return CommissionPayment.from_dict(json.loads(row["data"])) if row else None

    def get_commission_for_job(self, job_id: str) -> Optional[CommissionPayment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM commission_payments WHERE job_id = ?", (job_id,)
            ).fetchone()
        return CommissionPayment.from_dict(json.loads(row["data"])) if row else None

    def list_commissions(
        self,
        contractor_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        due_before: Optional[datetime] = None,
    ) -> List[CommissionPayment]:
        query = "SELECT data FROM commission_payments WHERE 1=1"
        params: List[Any] = []
        if contractor_id is not None:
            query += " AND contractor_id = ?"
            params.append(contractor_id)
        if status is not None:
            query += " AND status = ?"
            params.append(_value(status))
        if due_before is not None:
            query += " AND due_date <= ?"
            params.append(sortable_ts(due_before))
        query += " ORDER BY due_date"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [CommissionPayment.from_dict(json.loads(r["data"])) for r in rows]

    def update_commission(self, commission: CommissionPayment, expected_status: CommissionStatus) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE commission_payments SET status = ?, due_date = ?, data = ?
                   WHERE id = ? AND status = ?""",
                (
                    commission.status,
                    sortable_ts(commission.due_date),
                    _dumps(commission.to_dict()),
                    commission.id,
                    _value(expected_status),
                ),
            )
            return cur.rowcount == 1

    def delete_commission(self, commission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM commission_payments WHERE id = ?", (commission_id,))
            return cur.rowcount == 1

    # === Helpers ===

    def _require(self, conn: sqlite3.Connection, contractor_id: str) -> CreditAccount:
        row = conn.execute(
            "SELECT * FROM credit_accounts WHERE contractor_id = ?", (contractor_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"No credit account for contractor {contractor_id}")
        return self._row_to_account(row)

    def _insert_transaction(self, conn: sqlite3.Connection, tx: CreditTransaction) -> None:
        seq = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM credit_transactions WHERE contractor_id = ?",
            (tx.contractor_id,),
        ).fetchone()[0]
        conn.execute(
            """INSERT INTO credit_transactions (id, contractor_id, seq, created_at, data)
               VALUES (?, ?, ?, ?, ?)""",
            (tx.id, tx.contractor_id, seq, sortable_ts(tx.created_at), _dumps(tx.to_dict())),
        )

    def _row_to_account(self, row: sqlite3.Row) -> CreditAccount:
        return CreditAccount(
            contractor_id=row["contractor_id"],
            credits_balance=row["credits_balance"],
            trial_credits=row["trial_credits"],
            has_used_free_trial=bool(row["has_used_free_trial"]),
            is_subscribed=bool(row["is_subscribed"]),
            weekly_credits_limit=row["weekly_credits_limit"],
            last_replenished_week=row["last_replenished_week"],
            version=row["version"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )


def _new_transaction(
    contractor_id: str,
    amount: int,
    type,
    description: str,
    created_at: datetime,
    **kwargs,
) -> CreditTransaction:
    return CreditTransaction(
        id=str(uuid.uuid4()),
        contractor_id=contractor_id,
        amount=amount,
        type=type,
        description=description,
        created_at=created_at,
        **kwargs,
    )
