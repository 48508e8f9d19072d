"""Configuration for the jobflow commerce core."""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Mapping, Optional

# Lead prices in pence, by job size
DEFAULT_LEAD_PRICES: Dict[str, int] = {
    "SMALL": 1500,
    "MEDIUM": 3000,
    "LARGE": 5000,
}


@dataclass
class CommerceConfig:
    """Tunable constants for the workflow and accounting rules.

    Money is in pence. Rates are Decimal so rounding stays exact.
    """

    commission_rate: Decimal = Decimal("0.05")
    vat_rate: Decimal = Decimal("0.20")
    final_price_window_hours: int = 48
    commission_due_hours: int = 48
    default_weekly_credits: int = 3
    trial_credits: int = 1
    lead_prices: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LEAD_PRICES))
    conflict_retries: int = 1
    max_reason_length: int = 2000

    def __post_init__(self):
        if not Decimal("0") < self.commission_rate < Decimal("1"):
            raise ValueError("commission_rate must be between 0 and 1")
        if not Decimal("0") <= self.vat_rate < Decimal("1"):
            raise ValueError("vat_rate must be between 0 and 1")
        if self.final_price_window_hours <= 0:
            raise ValueError("final_price_window_hours must be positive")
        if self.commission_due_hours <= 0:
            raise ValueError("commission_due_hours must be positive")
        if self.default_weekly_credits < 0:
            raise ValueError("default_weekly_credits cannot be negative")
        if self.conflict_retries < 0:
            raise ValueError("conflict_retries cannot be negative")
        missing = {"SMALL", "MEDIUM", "LARGE"} - set(self.lead_prices)
        if missing:
            raise ValueError(f"lead_prices missing sizes: {sorted(missing)}")
        if any(price <= 0 for price in self.lead_prices.values()):
            raise ValueError("lead_prices must be positive")

    @property
    def final_price_window(self) -> timedelta:
        return timedelta(hours=self.final_price_window_hours)

    @property
    def commission_due_window(self) -> timedelta:
        return timedelta(hours=self.commission_due_hours)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CommerceConfig":
        """Build config from JOBFLOW_* environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get("JOBFLOW_COMMISSION_RATE"):
            kwargs["commission_rate"] = Decimal(env["JOBFLOW_COMMISSION_RATE"])
        if env.get("JOBFLOW_VAT_RATE"):
            kwargs["vat_rate"] = Decimal(env["JOBFLOW_VAT_RATE"])
        for name in (
            "final_price_window_hours",
            "commission_due_hours",
            "default_weekly_credits",
            "trial_credits",
            "conflict_retries",
        ):
            raw = env.get(f"JOBFLOW_{name.upper()}")
            if raw:
                kwargs[name] = int(raw)
        lead_prices = dict(DEFAULT_LEAD_PRICES)
        for size in lead_prices:
            raw = env.get(f"JOBFLOW_LEAD_PRICE_{size}")
            if raw:
                lead_prices[size] = int(raw)
        kwargs["lead_prices"] = lead_prices
        return cls(**kwargs)
