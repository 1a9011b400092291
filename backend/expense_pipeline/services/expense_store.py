from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from expense_pipeline import models
from expense_pipeline.core.errors import PersistenceError

logger = logging.getLogger("expenses.store")


@dataclass(frozen=True)
class PersistedExpense:
    id: str
    job_id: Optional[str]
    employee_id: str
    date: str
    original_amount: float
    original_currency: str
    category: str
    cost_center: str
    fingerprint: str
    negative_amount_detected: bool
    base_amount: Optional[float]
    exchange_rate: Optional[float]
    validation_status: Optional[str]
    validation_alerts: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExpenseStore(ABC):
    @abstractmethod
    def exists_by_fingerprint(self, fingerprint: str) -> bool: ...

    @abstractmethod
    def upsert(self, record: PersistedExpense) -> None: ...


class SqlExpenseStore(ExpenseStore):
    """Expense store on SQLAlchemy. Each call runs in its own session."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def exists_by_fingerprint(self, fingerprint: str) -> bool:
        with self._session_factory() as db:
            row = (
                db.query(models.Expense.id)
                .filter(models.Expense.fingerprint == str(fingerprint))
                .first()
            )
            return row is not None

    def upsert(self, record: PersistedExpense) -> None:
        with self._session_factory() as db:
            try:
                existing = db.get(models.Expense, record.id)
                values = record.as_dict()
                if existing is None:
                    db.add(models.Expense(**values))
                else:
                    for k, v in values.items():
                        if k == "id":
                            continue
                        setattr(existing, k, v)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(
                    "expense_upsert_failed",
                    extra={"expense_id": record.id, "job_id": record.job_id, "error": str(exc)},
                )
                raise PersistenceError(f"Could not persist expense {record.id}: {exc}") from exc
