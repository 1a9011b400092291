from __future__ import annotations

import math
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from expense_pipeline.core.errors import ValidationInputError
from expense_pipeline.schemas.expense import ExpenseEvent

# Batch rows come from arbitrary CSV headers; first matching alias wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "expense_id", "gasto_id"),
    "employee_id": ("empleado_id", "employee_id", "empleado", "employee"),
    "date": ("fecha", "date", "fecha_gasto", "expense_date"),
    "original_currency": ("moneda_original", "currency", "moneda", "currency_code"),
    "category": ("categoria", "category"),
    "cost_center": (
        "cost_center",
        "costcenter",
        "cost_center_id",
        "centro_costo",
        "empleado_cost_center",
    ),
    "original_amount": ("monto_original", "amount", "monto", "importe"),
    "base_amount": ("monto_base", "base_amount", "monto_clp"),
    "exchange_rate": ("tipo_cambio", "exchange_rate", "tasa_cambio"),
}

REQUIRED_FIELDS: tuple[str, ...] = (
    "id",
    "employee_id",
    "date",
    "original_amount",
    "original_currency",
    "category",
    "cost_center",
)

_MAX_COLUMNS_IN_ERROR = 30


def _key_index(raw: Mapping[str, Any]) -> dict[str, str]:
    return {str(k).strip().lower(): k for k in raw.keys()}


def _lookup(raw: Mapping[str, Any], index: dict[str, str], aliases: tuple[str, ...]) -> Any:
    for alias in aliases:
        original = index.get(alias.strip().lower())
        if original is not None and raw.get(original) is not None:
            return raw[original]
    return None


def _as_text(v: Any) -> str:
    return str(v if v is not None else "").strip()


def parse_number(v: Any) -> Optional[float]:
    """Numbers or numeric strings; a decimal comma is accepted ("12,5")."""
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
        return f if math.isfinite(f) else None
    if isinstance(v, str) and v.strip():
        try:
            f = float(v.strip().replace(",", ".", 1))
        except ValueError:
            return None
        return f if math.isfinite(f) else None
    return None


def to_expense_event(raw: Mapping[str, Any]) -> ExpenseEvent:
    """Coerce one batch row into an ExpenseEvent, reporting every missing field at once."""
    if not isinstance(raw, Mapping):
        raise ValidationInputError("Invalid record: expected a mapping of column -> value")

    index = _key_index(raw)
    values: dict[str, Any] = {}
    for field in ("id", "employee_id", "date", "original_currency", "category", "cost_center"):
        values[field] = _as_text(_lookup(raw, index, FIELD_ALIASES[field]))
    values["original_amount"] = parse_number(_lookup(raw, index, FIELD_ALIASES["original_amount"]))

    missing = [
        f
        for f in REQUIRED_FIELDS
        if values.get(f) is None or (isinstance(values.get(f), str) and not values[f])
    ]
    if missing:
        columns = [str(k) for k in raw.keys()]
        shown = ", ".join(columns[:_MAX_COLUMNS_IN_ERROR])
        if len(columns) > _MAX_COLUMNS_IN_ERROR:
            shown += "..."
        raise ValidationInputError(
            f"Invalid record: missing required fields ({', '.join(missing)}). "
            f"Received columns: {shown}"
        )

    base_amount = parse_number(_lookup(raw, index, FIELD_ALIASES["base_amount"]))
    exchange_rate = parse_number(_lookup(raw, index, FIELD_ALIASES["exchange_rate"]))
    if base_amount is not None:
        values["base_amount"] = base_amount
    if exchange_rate is not None:
        values["exchange_rate"] = exchange_rate

    try:
        return ExpenseEvent.model_validate(values)
    except ValidationError as exc:
        raise ValidationInputError(f"Invalid record: {exc}") from exc
