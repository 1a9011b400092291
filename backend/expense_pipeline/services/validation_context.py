from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from expense_pipeline.core.errors import InvalidExpenseDateError
from expense_pipeline.schemas.expense import ExpenseEvent
from expense_pipeline.schemas.policies import Policies
from expense_pipeline.schemas.validation import (
    STATUS_PRIORITY,
    Alert,
    AlertCode,
    ValidationResponse,
    ValidationResult,
    ValidationStatus,
    ValidationSuggestion,
)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_expense_date(raw: str) -> date:
    """Strict yyyy-mm-dd; non-existent calendar dates are rejected, never clamped."""
    s = str(raw or "").strip()
    if not _ISO_DATE_RE.match(s):
        raise InvalidExpenseDateError(raw)
    try:
        return date.fromisoformat(s)
    except ValueError as exc:
        raise InvalidExpenseDateError(raw) from exc


def zoned_today(now: Optional[datetime], tz_name: str) -> date:
    tz = ZoneInfo(tz_name or "UTC")
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is None:
        # Naive "now" is read as wall time in the configured timezone.
        return now.date()
    return now.astimezone(tz).date()


class ValidationContext:
    """Mutable accumulator for one expense's rule evaluation."""

    def __init__(
        self,
        *,
        expense: ExpenseEvent,
        policies: Policies,
        converted_amount: float,
        now: Optional[datetime] = None,
        timezone_name: str = "UTC",
    ) -> None:
        self.expense = expense
        self.policies = policies
        self.converted_amount = float(converted_amount)
        self.base_currency = policies.base_currency
        self.expense_date = parse_expense_date(expense.date)
        self.days_since_expense = max(0, (zoned_today(now, timezone_name) - self.expense_date).days)

        self.alerts: list[Alert] = []
        self.suggestions: list[ValidationSuggestion] = []
        self._current_status = ValidationStatus.APROBADO

    @property
    def current_status(self) -> ValidationStatus:
        return self._current_status

    def add_alert(self, alert: Union[Alert, tuple[AlertCode, str]]) -> None:
        if not isinstance(alert, Alert):
            code, message = alert
            alert = Alert(code=code, message=message)
        self.alerts.append(alert)

    def add_suggestion(
        self,
        rule_name: str,
        status: ValidationStatus,
        alert: Optional[Union[Alert, tuple[AlertCode, str]]] = None,
    ) -> None:
        self.suggestions.append(ValidationSuggestion(rule_name=rule_name, status=status))
        if alert is not None:
            self.add_alert(alert)
        self._promote(status)

    def _promote(self, status: ValidationStatus) -> None:
        # Monotonic: the final status is the max of every suggestion.
        if STATUS_PRIORITY[status] > STATUS_PRIORITY[self._current_status]:
            self._current_status = status

    def to_result(self) -> ValidationResult:
        return ValidationResult(
            expense_id=self.expense.id,
            final_status=self._current_status,
            alerts=list(self.alerts),
            suggestions=list(self.suggestions),
            converted_amount=self.converted_amount,
            base_currency=self.base_currency,
        )

    def to_response(self) -> ValidationResponse:
        return ValidationResponse(
            expense_id=self.expense.id,
            status=self._current_status,
            alerts=list(self.alerts),
        )
