from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_pipeline.database import Base


class Expense(Base):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Nullable so administrative job deletion can detach the audit trail.
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    employee_id: Mapped[str] = mapped_column(String(128), nullable=False)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    original_amount: Mapped[float] = mapped_column(Float, nullable=False)
    original_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False)
    cost_center: Mapped[str] = mapped_column(String(128), nullable=False)

    # Indexed but not unique: cross-scope duplicates are kept for audit.
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    negative_amount_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    base_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    exchange_rate: Mapped[float | None] = mapped_column(Float, nullable=True)

    validation_status: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    validation_alerts: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
