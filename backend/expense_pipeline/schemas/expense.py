from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from expense_pipeline.schemas.policies import Policies


class ExpenseEvent(BaseModel):
    """Single expense as received on the wire (English or original Spanish field names)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    employee_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("employee_id", "empleado_id", "employeeId")
    )
    date: str = Field(..., min_length=1, validation_alias=AliasChoices("date", "fecha"))
    original_amount: float = Field(
        ...,
        allow_inf_nan=False,
        validation_alias=AliasChoices("original_amount", "monto_original", "amount", "originalAmount"),
    )
    original_currency: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("original_currency", "moneda_original", "currency", "originalCurrency"),
    )
    category: str = Field(..., min_length=1, validation_alias=AliasChoices("category", "categoria"))
    cost_center: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("cost_center", "costCenter")
    )
    base_amount: Optional[float] = Field(
        None, allow_inf_nan=False, validation_alias=AliasChoices("base_amount", "monto_base", "baseAmount")
    )
    exchange_rate: Optional[float] = Field(
        None, allow_inf_nan=False, validation_alias=AliasChoices("exchange_rate", "tipo_cambio", "exchangeRate")
    )

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ExpenseBatchEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    process_id: str = Field(..., min_length=1, validation_alias=AliasChoices("process_id", "processId"))
    batch_index: int = Field(0, validation_alias=AliasChoices("batch_index", "batchIndex"))
    records: list[dict[str, Any]] = Field(default_factory=list)


class ExpenseCreatedRequest(BaseModel):
    """``expense.created`` envelope: the event plus an optional policy override."""

    model_config = ConfigDict(populate_by_name=True)

    expense: ExpenseEvent = Field(..., validation_alias=AliasChoices("expense", "gasto", "event"))
    policies: Optional[Policies] = Field(None, validation_alias=AliasChoices("policies", "politicas"))
