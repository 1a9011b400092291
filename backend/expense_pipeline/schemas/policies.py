from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class AgeLimits(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pending_days: int = Field(..., ge=0, validation_alias=AliasChoices("pending_days", "pendiente_dias"))
    rejected_days: int = Field(
        ..., ge=0, validation_alias=AliasChoices("rejected_days", "rechazado_dias")
    )

    @model_validator(mode="after")
    def check_order(self) -> "AgeLimits":
        if self.rejected_days < self.pending_days:
            raise ValueError("rejected_days must be >= pending_days")
        return self


class CategoryLimit(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    approved_up_to: float = Field(
        ..., validation_alias=AliasChoices("approved_up_to", "aprobado_hasta")
    )
    pending_up_to: float = Field(..., validation_alias=AliasChoices("pending_up_to", "pendiente_hasta"))


class CostCenterRuleConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    cost_center: str
    forbidden_category: str = Field(
        ..., validation_alias=AliasChoices("forbidden_category", "categoria_prohibida")
    )


class Policies(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    base_currency: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("base_currency", "moneda_base")
    )
    age_limits: AgeLimits = Field(
        ..., validation_alias=AliasChoices("age_limits", "limite_antiguedad")
    )
    category_limits: dict[str, CategoryLimit] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("category_limits", "limites_por_categoria"),
    )
    cost_center_rules: list[CostCenterRuleConfig] = Field(
        default_factory=list,
        validation_alias=AliasChoices("cost_center_rules", "reglas_centro_costo"),
    )

    @field_validator("base_currency")
    @classmethod
    def normalize_base_currency(cls, v: str) -> str:
        return v.strip().upper()


class PolicyDocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    policies: dict[str, Any]
    created_at: datetime
    updated_at: datetime
