"""Tests for credit and commission models."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from jobflow.commerce.credits.models import (
    ClaimDecision,
    ClaimMethod,
    CommissionPayment,
    CommissionStatus,
    CreditAccount,
    CreditTransaction,
    DenialReason,
    compute_commission,
    round_pence,
)

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class TestCommissionMath:
    def test_standard_commission(self):
        assert compute_commission(120000, Decimal("0.05"), Decimal("0.20")) == (6000, 1200, 7200)

    def test_half_pence_rounds_up(self):
        # 5% of 1010 = 50.5 -> 51; 20% of 51 = 10.2 -> 10
        assert compute_commission(1010, Decimal("0.05"), Decimal("0.20")) == (51, 10, 61)

    def test_vat_half_pence_rounds_up(self):
        # 5% of 2550 = 127.5 -> 128; 20% of 128 = 25.6 -> 26
        assert compute_commission(2550, Decimal("0.05"), Decimal("0.20")) == (128, 26, 154)

    def test_round_pence(self):
        assert round_pence(Decimal("2.5")) == 3
        assert round_pence(Decimal("2.49")) == 2

    def test_total_is_sum(self):
        for amount in (1, 99, 12345, 999999):
            commission, vat, total = compute_commission(amount, Decimal("0.05"), Decimal("0.20"))
            assert total == commission + vat

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            compute_commission(0, Decimal("0.05"), Decimal("0.20"))


class TestCreditAccount:
    def test_trial_credit_counts_until_used(self):
        account = CreditAccount(contractor_id="con-a", credits_balance=2, trial_credits=1)
        assert account.has_trial_credit
        assert account.available_credits == 3

        account.has_used_free_trial = True
        assert not account.has_trial_credit
        assert account.available_credits == 2

    def test_negative_balance_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            CreditAccount(contractor_id="con-a", credits_balance=-1)

    def test_round_trip(self):
        account = CreditAccount(
            contractor_id="con-a",
            credits_balance=3,
            is_subscribed=True,
            weekly_credits_limit=5,
            last_replenished_week="2025-W10",
            created_at=NOW,
        )
        assert CreditAccount.from_dict(account.to_dict()) == account


class TestCreditTransaction:
    def test_zero_amount_rejected(self):
        with pytest.raises(ValueError, match="zero"):
            CreditTransaction(id="tx-1", contractor_id="con-a", amount=0, type="BONUS", description="x")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Invalid transaction type"):
            CreditTransaction(id="tx-1", contractor_id="con-a", amount=1, type="GIFT", description="x")


class TestCommissionPayment:
    def make(self, **kwargs):
        defaults = dict(
            id="com-1",
            job_id="job-1",
            contractor_id="con-a",
            final_job_amount=120000,
            commission_rate=Decimal("0.05"),
            commission_amount=6000,
            vat_amount=1200,
            total_amount=7200,
            due_date=NOW,
        )
        defaults.update(kwargs)
        return CommissionPayment(**defaults)

    def test_total_must_match(self):
        with pytest.raises(ValueError, match="total_amount"):
            self.make(total_amount=7000)

    def test_status_transitions(self):
        commission = self.make()
        assert commission.is_outstanding
        assert commission.can_transition_to(CommissionStatus.OVERDUE)
        assert not commission.can_transition_to(CommissionStatus.WAIVED)

        overdue = self.make(status=CommissionStatus.OVERDUE)
        assert overdue.can_transition_to(CommissionStatus.WAIVED)
        assert not self.make(status="PAID").is_outstanding

    def test_round_trip_keeps_decimal_rate(self):
        commission = self.make(created_at=NOW)
        restored = CommissionPayment.from_dict(commission.to_dict())
        assert restored.commission_rate == Decimal("0.05")
        assert restored == commission


class TestClaimDecision:
    def test_to_dict(self):
        decision = ClaimDecision(
            allowed=False, method=ClaimMethod.DENIED, reason=DenialReason.INSUFFICIENT_CREDITS
        )
        assert decision.to_dict() == {
            "allowed": False,
            "method": "DENIED",
            "reason": "InsufficientCredits",
            "uses_trial_credit": False,
            "lead_price": None,
        }
