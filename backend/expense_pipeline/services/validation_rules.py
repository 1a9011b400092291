from __future__ import annotations

from abc import ABC, abstractmethod

from expense_pipeline.schemas.validation import AlertCode, ValidationStatus
from expense_pipeline.services.validation_context import ValidationContext


def _fmt(amount: float) -> str:
    return f"{float(amount):g}"


class ValidationRule(ABC):
    name: str = "ValidationRule"

    @abstractmethod
    def evaluate(self, context: ValidationContext) -> None: ...


class ExpenseAgeRule(ValidationRule):
    name = "ExpenseAgeRule"

    def evaluate(self, context: ValidationContext) -> None:
        days = context.days_since_expense
        limits = context.policies.age_limits

        if days < limits.pending_days:
            context.add_suggestion(self.name, ValidationStatus.APROBADO)
            return

        if days < limits.rejected_days:
            context.add_suggestion(
                self.name,
                ValidationStatus.PENDIENTE,
                (
                    AlertCode.EXPENSE_AGE,
                    f"Expense is {days} days old, beyond the automatic approval window "
                    f"({limits.pending_days} days).",
                ),
            )
            return

        context.add_suggestion(
            self.name,
            ValidationStatus.RECHAZADO,
            (
                AlertCode.EXPENSE_AGE,
                f"Expense is {days} days old, exceeding the maximum of {limits.rejected_days} days.",
            ),
        )


class CategoryLimitRule(ValidationRule):
    name = "CategoryLimitRule"

    def evaluate(self, context: ValidationContext) -> None:
        category = context.expense.category
        limits = context.policies.category_limits.get(category)
        amount = context.converted_amount
        currency = context.base_currency

        if limits is None:
            context.add_suggestion(
                self.name,
                ValidationStatus.APROBADO,
                (
                    AlertCode.CATEGORY_CONFIG,
                    f"No limits configured for category {category}; approved by default.",
                ),
            )
            return

        if amount <= limits.approved_up_to:
            context.add_suggestion(self.name, ValidationStatus.APROBADO)
            return

        if amount <= limits.pending_up_to:
            context.add_suggestion(
                self.name,
                ValidationStatus.PENDIENTE,
                (
                    AlertCode.CATEGORY_LIMIT,
                    f"Review required: amount {_fmt(amount)} {currency} is above the automatic "
                    f"threshold ({_fmt(limits.approved_up_to)}) but within the maximum "
                    f"({_fmt(limits.pending_up_to)}).",
                ),
            )
            return

        context.add_suggestion(
            self.name,
            ValidationStatus.RECHAZADO,
            (
                AlertCode.CATEGORY_LIMIT,
                f"Amount {_fmt(amount)} {currency} exceeds the maximum limit "
                f"({_fmt(limits.pending_up_to)}).",
            ),
        )


class CostCenterRule(ValidationRule):
    name = "CostCenterRule"

    def evaluate(self, context: ValidationContext) -> None:
        cost_center = context.expense.cost_center
        category = context.expense.category

        forbidden = any(
            r.cost_center == cost_center and r.forbidden_category == category
            for r in context.policies.cost_center_rules
        )
        if not forbidden:
            context.add_suggestion(self.name, ValidationStatus.APROBADO)
            return

        context.add_suggestion(
            self.name,
            ValidationStatus.RECHAZADO,
            (
                AlertCode.COST_CENTER_POLICY,
                f"Cost center '{cost_center}' cannot report '{category}'.",
            ),
        )


def default_rules() -> list[ValidationRule]:
    return [ExpenseAgeRule(), CategoryLimitRule(), CostCenterRule()]
