from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from expense_pipeline.core.errors import RuleEvaluationError, ValidationInputError
from expense_pipeline.schemas.expense import ExpenseEvent
from expense_pipeline.schemas.policies import Policies
from expense_pipeline.schemas.validation import ValidationResult
from expense_pipeline.services.policies import PolicyProvider
from expense_pipeline.services.validation_context import ValidationContext
from expense_pipeline.services.validation_rules import ValidationRule, default_rules

logger = logging.getLogger("expenses.validation")


def evaluate_rules(context: ValidationContext, rules: Sequence[ValidationRule]) -> None:
    """Run rules in order over one context. The first failing rule aborts the evaluation."""
    for rule in rules:
        try:
            rule.evaluate(context)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "validation_rule_failed",
                extra={"rule": rule.name, "expense_id": context.expense.id, "error": str(exc)},
            )
            raise RuleEvaluationError(rule.name, exc) from exc


def resolve_converted_amount(expense: ExpenseEvent, policies: Policies) -> float:
    if expense.base_amount is not None:
        return float(expense.base_amount)
    if str(expense.original_currency).strip().upper() == policies.base_currency:
        return float(expense.original_amount)
    raise ValidationInputError(
        "base_amount is required when original_currency differs from the base currency"
    )


class ValidationService:
    def __init__(
        self,
        *,
        policies: Optional[PolicyProvider] = None,
        rules: Optional[Sequence[ValidationRule]] = None,
        timezone_name: str = "UTC",
    ) -> None:
        self._policies = policies
        self._rules = list(rules) if rules is not None else default_rules()
        self._timezone_name = timezone_name

    def invalidate_policies(self) -> None:
        if self._policies is not None:
            self._policies.invalidate()

    def resolve_policies(self, policies: Optional[Policies] = None) -> Policies:
        if policies is not None:
            return policies
        resolved = self._policies.get_current() if self._policies is not None else None
        if resolved is None:
            raise ValidationInputError(
                "No policies supplied and no current/default policy is configured"
            )
        return resolved

    def build_context(
        self,
        expense: ExpenseEvent,
        policies: Optional[Policies] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ValidationContext:
        resolved = self.resolve_policies(policies)
        return ValidationContext(
            expense=expense,
            policies=resolved,
            converted_amount=resolve_converted_amount(expense, resolved),
            now=now,
            timezone_name=self._timezone_name,
        )

    def evaluate(self, context: ValidationContext) -> ValidationContext:
        evaluate_rules(context, self._rules)
        return context

    def evaluate_expense(
        self,
        expense: ExpenseEvent,
        policies: Optional[Policies] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ValidationContext:
        context = self.evaluate(self.build_context(expense, policies, now=now))
        logger.info(
            "expense_validated",
            extra={
                "expense_id": expense.id,
                "status": context.current_status.value,
                "alerts": len(context.alerts),
            },
        )
        return context

    def validate_expense(
        self,
        expense: ExpenseEvent,
        policies: Optional[Policies] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        return self.evaluate_expense(expense, policies, now=now).to_result()
