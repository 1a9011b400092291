from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from expense_pipeline.schemas.expense import ExpenseEvent
from expense_pipeline.schemas.policies import Policies


class ValidationStatus(str, Enum):
    APROBADO = "APROBADO"
    PENDIENTE = "PENDIENTE"
    RECHAZADO = "RECHAZADO"


STATUS_PRIORITY: dict[ValidationStatus, int] = {
    ValidationStatus.APROBADO: 0,
    ValidationStatus.PENDIENTE: 1,
    ValidationStatus.RECHAZADO: 2,
}


class AlertCode(str, Enum):
    EXPENSE_AGE = "EXPENSE_AGE"
    CATEGORY_LIMIT = "CATEGORY_LIMIT"
    CATEGORY_CONFIG = "CATEGORY_CONFIG"
    COST_CENTER_POLICY = "COST_CENTER_POLICY"


class Alert(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: AlertCode
    message: str


class ValidationSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_name: str
    status: ValidationStatus


class ValidationResult(BaseModel):
    expense_id: str
    final_status: ValidationStatus
    alerts: list[Alert]
    suggestions: list[ValidationSuggestion]
    converted_amount: float
    base_currency: str


class ValidationResponse(BaseModel):
    """Narrow view for external consumers: no internal suggestions."""

    expense_id: str
    status: ValidationStatus
    alerts: list[Alert]


class ValidationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expense: ExpenseEvent = Field(..., validation_alias=AliasChoices("expense", "gasto"))
    policies: Optional[Policies] = Field(None, validation_alias=AliasChoices("policies", "politicas"))
