"""Tests for CommerceConfig."""

from datetime import timedelta
from decimal import Decimal

import pytest

from jobflow.commerce.config import CommerceConfig


def test_defaults():
    config = CommerceConfig()
    assert config.commission_rate == Decimal("0.05")
    assert config.vat_rate == Decimal("0.20")
    assert config.final_price_window == timedelta(hours=48)
    assert config.commission_due_window == timedelta(hours=48)
    assert config.lead_prices == {"SMALL": 1500, "MEDIUM": 3000, "LARGE": 5000}
    assert config.conflict_retries == 1


def test_from_env():
    config = CommerceConfig.from_env(
        {
            "JOBFLOW_COMMISSION_RATE": "0.07",
            "JOBFLOW_FINAL_PRICE_WINDOW_HOURS": "24",
            "JOBFLOW_LEAD_PRICE_LARGE": "6500",
            "JOBFLOW_CONFLICT_RETRIES": "",
        }
    )
    assert config.commission_rate == Decimal("0.07")
    assert config.final_price_window == timedelta(hours=24)
    assert config.lead_prices["LARGE"] == 6500
    assert config.lead_prices["SMALL"] == 1500
    assert config.conflict_retries == 1


def test_from_env_ignores_unrelated_variables():
    assert CommerceConfig.from_env({"PATH": "/usr/bin"}) == CommerceConfig()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"commission_rate": Decimal("0")},
        {"vat_rate": Decimal("1.5")},
        {"final_price_window_hours": 0},
        {"conflict_retries": -1},
        {"lead_prices": {"SMALL": 1500}},
    ],
)
def test_invalid_values(kwargs):
    with pytest.raises(ValueError):
        CommerceConfig(**kwargs)
