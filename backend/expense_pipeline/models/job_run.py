from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_pipeline.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRun(Base):
    __tablename__ = "job_runs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    pattern: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    expense_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Forward-only status machine: running -> success|failed|skipped
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running", index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Shallow-merged audit payload (event snapshot, dedup/validation outcomes, batch linkage).
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )

    stages = relationship(
        "JobRunStage",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="JobRunStage.seq",
    )


class JobRunStage(Base):
    __tablename__ = "job_run_stages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("job_runs.job_id"),
        nullable=False,
        index=True,
    )
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    # Position within the run; created_at alone can tie on coarse clocks.
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Forward-only status machine: running -> success|failed|skipped
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    run = relationship("JobRun", back_populates="stages")
