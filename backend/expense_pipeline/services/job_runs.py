from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Literal, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from expense_pipeline import models

JobStatus = Literal["running", "success", "failed", "skipped"]

JOB_STATUSES: tuple[str, ...] = ("running", "success", "failed", "skipped")
TERMINAL_STATUSES = frozenset({"success", "failed", "skipped"})

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50


def _jsonable(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, Enum):
        return _jsonable(v.value)
    if isinstance(v, float):
        return v if math.isfinite(v) else None
    if isinstance(v, (str, int, bool)):
        return v
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    if hasattr(v, "model_dump"):
        return _jsonable(v.model_dump(mode="json"))
    if isinstance(v, dict):
        return {str(k): _jsonable(vv) for k, vv in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    return str(v)


def coerce_job_status(status: Optional[str]) -> Optional[str]:
    if status is None or str(status).strip() == "":
        return None
    s = str(status).strip().lower()
    if s not in JOB_STATUSES:
        raise ValueError(f"Invalid job status: {status} (running|success|failed|skipped)")
    return s


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_job_run(
    db: Session,
    *,
    job_id: str,
    pattern: str,
    expense_id: Optional[str] = None,
    fingerprint: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
) -> models.JobRun:
    run = models.JobRun(
        job_id=str(job_id),
        pattern=str(pattern),
        expense_id=expense_id,
        fingerprint=fingerprint,
        status="running",
        finished_at=None,
        meta=_jsonable(dict(meta)) if meta else None,
    )
    db.add(run)
    db.flush()
    return run


def _get_run_or_raise(db: Session, job_id: str) -> models.JobRun:
    run = db.get(models.JobRun, str(job_id))
    if run is None:
        raise LookupError(f"Job run not found: {job_id}")
    return run


def start_job_stage(
    db: Session,
    *,
    job_id: str,
    stage: str,
    data: Optional[dict[str, Any]] = None,
) -> models.JobRunStage:
    run = _get_run_or_raise(db, job_id)
    if run.status in TERMINAL_STATUSES:
        raise ValueError(f"Run is terminal; cannot start stage '{stage}': {run.status}")

    seq = (
        db.query(func.count(models.JobRunStage.id))
        .filter(models.JobRunStage.job_id == str(job_id))
        .scalar()
        or 0
    ) + 1

    row = models.JobRunStage(
        id=str(uuid.uuid4()),
        job_id=str(job_id),
        stage=str(stage),
        seq=int(seq),
        status="running",
        finished_at=None,
        data=_jsonable(dict(data)) if data else None,
        error=None,
    )
    db.add(row)
    db.flush()
    return row


def finish_job_stage(
    db: Session,
    *,
    stage_id: str,
    status: str,
    data: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
) -> models.JobRunStage:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Invalid terminal stage status: {status}")

    row = db.get(models.JobRunStage, str(stage_id))
    if row is None:
        raise LookupError(f"Job stage not found: {stage_id}")
    if row.status in TERMINAL_STATUSES:
        raise ValueError(f"Stage is terminal; cannot transition: {row.status} -> {status}")

    row.status = status
    row.finished_at = _utcnow()
    if data is not None:
        row.data = _jsonable(dict(data))
    if error is not None:
        row.error = str(error)[:2000]
    db.flush()
    return row


def merge_job_run_meta(db: Session, *, job_id: str, patch: dict[str, Any]) -> Optional[models.JobRun]:
    """Shallow merge: top-level keys in ``patch`` replace existing ones."""
    run = db.get(models.JobRun, str(job_id))
    if run is None:
        return None
    # Reassign a fresh dict so the JSON column is flagged dirty.
    run.meta = {**dict(run.meta or {}), **_jsonable(dict(patch))}
    db.flush()
    return run


def finish_job_run(db: Session, *, job_id: str, status: str) -> models.JobRun:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Invalid terminal run status: {status}")

    run = _get_run_or_raise(db, job_id)
    if run.status in TERMINAL_STATUSES:
        raise ValueError(f"Run is terminal; cannot transition: {run.status} -> {status}")

    run.status = status
    run.finished_at = _utcnow()
    db.flush()
    return run


@dataclass(frozen=True)
class JobRunPage:
    runs: list[models.JobRun]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return max(math.ceil(self.total / self.page_size), 1)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


def list_job_runs(
    db: Session,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    status: Optional[str] = None,
    expense_id: Optional[str] = None,
    process_id: Optional[str] = None,
) -> JobRunPage:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    status = coerce_job_status(status)

    q = db.query(models.JobRun)
    if status:
        q = q.filter(models.JobRun.status == status)
    if expense_id:
        q = q.filter(models.JobRun.expense_id == str(expense_id))
    if process_id:
        q = q.filter(models.JobRun.meta["process_id"].as_string() == str(process_id))

    total = int(q.with_entities(func.count(models.JobRun.job_id)).scalar() or 0)
    total_pages = max(math.ceil(total / page_size), 1)
    page = min(page, total_pages)

    runs = (
        q.order_by(models.JobRun.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return JobRunPage(runs=runs, page=page, page_size=page_size, total=total)


def list_job_stages(db: Session, *, job_id: str) -> list[models.JobRunStage]:
    return (
        db.query(models.JobRunStage)
        .filter(models.JobRunStage.job_id == str(job_id))
        .order_by(models.JobRunStage.seq.asc(), models.JobRunStage.created_at.asc())
        .all()
    )


def delete_job_runs(db: Session, *, job_ids: Sequence[str]) -> int:
    """Delete runs and stages; persisted expenses stay, detached from the run."""
    ids = [str(j) for j in job_ids if str(j).strip()]
    if not ids:
        raise ValueError("job_ids must not be empty")

    db.query(models.JobRunStage).filter(models.JobRunStage.job_id.in_(ids)).delete(
        synchronize_session=False
    )
    db.query(models.Expense).filter(models.Expense.job_id.in_(ids)).update(
        {models.Expense.job_id: None}, synchronize_session=False
    )
    deleted = (
        db.query(models.JobRun)
        .filter(models.JobRun.job_id.in_(ids))
        .delete(synchronize_session=False)
    )
    db.flush()
    return int(deleted)


class JobRunTracker:
    """Audit trail writer used by the pipeline.

    Every operation opens its own session and commits, so a failure in a later
    stage never rolls back what was already recorded for earlier ones.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create_run(
        self,
        *,
        job_id: str,
        pattern: str,
        expense_id: Optional[str] = None,
        fingerprint: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        with self._session_factory() as db:
            create_job_run(
                db,
                job_id=job_id,
                pattern=pattern,
                expense_id=expense_id,
                fingerprint=fingerprint,
                meta=meta,
            )
            db.commit()

    def start_stage(self, job_id: str, stage: str, data: Optional[dict[str, Any]] = None) -> str:
        with self._session_factory() as db:
            row = start_job_stage(db, job_id=job_id, stage=stage, data=data)
            stage_id = str(row.id)
            db.commit()
            return stage_id

    def finish_stage(
        self,
        stage_id: str,
        status: str,
        data: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._session_factory() as db:
            finish_job_stage(db, stage_id=stage_id, status=status, data=data, error=error)
            db.commit()

    def merge_meta(self, job_id: str, patch: dict[str, Any]) -> None:
        with self._session_factory() as db:
            merge_job_run_meta(db, job_id=job_id, patch=patch)
            db.commit()

    def set_fingerprint(self, job_id: str, fingerprint: str) -> None:
        with self._session_factory() as db:
            run = _get_run_or_raise(db, job_id)
            run.fingerprint = str(fingerprint)
            db.commit()

    def finish_run(self, job_id: str, status: str) -> None:
        with self._session_factory() as db:
            finish_job_run(db, job_id=job_id, status=status)
            db.commit()

    def get_run(self, job_id: str) -> Optional[models.JobRun]:
        with self._session_factory() as db:
            run = db.get(models.JobRun, str(job_id))
            if run is not None:
                db.expunge(run)
            return run

    def list_stages(self, job_id: str) -> list[models.JobRunStage]:
        with self._session_factory() as db:
            rows = list_job_stages(db, job_id=job_id)
            for r in rows:
                db.expunge(r)
            return rows

    def list_runs(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        expense_id: Optional[str] = None,
        process_id: Optional[str] = None,
    ) -> JobRunPage:
        with self._session_factory() as db:
            result = list_job_runs(
                db,
                page=page,
                page_size=page_size,
                status=status,
                expense_id=expense_id,
                process_id=process_id,
            )
            for r in result.runs:
                db.expunge(r)
            return result

    def delete_runs(self, job_ids: Sequence[str]) -> int:
        with self._session_factory() as db:
            deleted = delete_job_runs(db, job_ids=job_ids)
            db.commit()
            return deleted
