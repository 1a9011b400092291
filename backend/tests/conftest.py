import os

# Set environment variables BEFORE any expense_pipeline imports:
# expense_pipeline.config.settings is built at import time.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["APP_TIMEZONE"] = "UTC"
os.environ.pop("CURRENCY_SERVICE_URL", None)
os.environ.pop("DEFAULT_POLICIES", None)

from typing import Optional  # noqa: E402

import pytest  # noqa: E402

from expense_pipeline.core.errors import ConversionServiceError  # noqa: E402
from expense_pipeline.schemas.expense import ExpenseEvent  # noqa: E402
from expense_pipeline.schemas.policies import Policies  # noqa: E402
from expense_pipeline.services.currency import (  # noqa: E402
    ConversionQuote,
    CurrencyConversionClient,
)


class FakeCurrencyClient(CurrencyConversionClient):
    """Stands in for the HTTP conversion service; records every call."""

    def __init__(
        self,
        *,
        rate: Optional[float] = None,
        base_amount: Optional[float] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.rate = rate
        self.base_amount = base_amount
        self.error = error
        self.calls: list[dict] = []

    def convert(self, *, amount, from_currency, to_currency, date=None) -> ConversionQuote:
        self.calls.append(
            {"amount": amount, "from": from_currency, "to": to_currency, "date": date}
        )
        if self.error is not None:
            raise self.error
        base = self.base_amount if self.base_amount is not None else amount * (self.rate or 1.0)
        return ConversionQuote(base_amount=base, rate=self.rate, source="fake")


@pytest.fixture
def fake_currency_client():
    def _make(**kwargs) -> FakeCurrencyClient:
        return FakeCurrencyClient(**kwargs)

    return _make


@pytest.fixture
def failing_currency_client():
    return FakeCurrencyClient(error=ConversionServiceError("HTTP 503 calling http://fx/convert"))


@pytest.fixture
def usd_policies() -> Policies:
    return Policies.model_validate(
        {
            "base_currency": "USD",
            "age_limits": {"pending_days": 30, "rejected_days": 60},
            "category_limits": {
                "food": {"approved_up_to": 100, "pending_up_to": 150},
                "travel": {"approved_up_to": 1000, "pending_up_to": 2000},
            },
            "cost_center_rules": [{"cost_center": "core_engineering", "forbidden_category": "food"}],
        }
    )


@pytest.fixture
def make_event():
    def _make(**overrides) -> ExpenseEvent:
        data = {
            "id": "g1",
            "employee_id": "e1",
            "date": "2024-10-01",
            "original_amount": 200,
            "original_currency": "USD",
            "category": "food",
            "cost_center": "sales_team",
        }
        data.update(overrides)
        return ExpenseEvent.model_validate(data)

    return _make
