from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_pipeline.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationPolicy(Base):
    __tablename__ = "validation_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # The active policy set is the row named "current".
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    policies: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )
