from __future__ import annotations

import hashlib
import json
import math
from typing import Any

from expense_pipeline.schemas.expense import ExpenseEvent


def _canonical_amount(v: Any) -> Any:
    # 200.0 and 200 must hash identically; repr() of a float is locale-independent.
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return v
    if isinstance(v, float) and math.isfinite(v) and v.is_integer():
        return int(v)
    return v


def fingerprint_payload(event: ExpenseEvent) -> dict[str, Any]:
    # Key names and order are part of the digest.
    return {
        "fecha": str(event.date),
        "monto_original": _canonical_amount(event.original_amount),
        "moneda_original": str(event.original_currency),
    }


def build_fingerprint(event: ExpenseEvent) -> str:
    """Content hash over (date, original_amount, original_currency).

    id, employee, category and cost center do not participate, so the same
    expense submitted twice under different ids is still detected.
    """
    raw = json.dumps(
        fingerprint_payload(event), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()
