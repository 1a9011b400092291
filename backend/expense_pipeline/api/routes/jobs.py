from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from expense_pipeline import models
from expense_pipeline.api.deps import get_db
from expense_pipeline.schemas.job_runs import (
    DeleteJobsRequest,
    DeleteJobsResponse,
    JobRunDetailResponse,
    JobRunListResponse,
    JobRunRead,
    JobRunStageRead,
    Pagination,
)
from expense_pipeline.services.job_runs import (
    DEFAULT_PAGE_SIZE,
    delete_job_runs,
    list_job_runs,
    list_job_stages,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])

_db_dep = Depends(get_db)


@router.get("", response_model=JobRunListResponse)
def list_jobs(
    page: int = Query(1),  # noqa: B008
    page_size: Optional[int] = Query(None),  # noqa: B008
    limit: Optional[int] = Query(None, description="Legacy alias of page_size"),  # noqa: B008
    status_filter: Optional[str] = Query(None, alias="status"),  # noqa: B008
    expense_id: Optional[str] = Query(None),  # noqa: B008
    process_id: Optional[str] = Query(None),  # noqa: B008
    db: Session = _db_dep,
):
    resolved_page_size = page_size if page_size is not None else limit
    try:
        result = list_job_runs(
            db,
            page=page,
            page_size=resolved_page_size or DEFAULT_PAGE_SIZE,
            status=status_filter,
            expense_id=expense_id,
            process_id=process_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return JobRunListResponse(
        data=[JobRunRead.model_validate(r) for r in result.runs],
        pagination=Pagination(
            page=result.page,
            page_size=result.page_size,
            total=result.total,
            total_pages=result.total_pages,
            has_next=result.has_next,
            has_previous=result.has_previous,
        ),
    )


@router.get("/{job_id}", response_model=JobRunDetailResponse)
def get_job(job_id: str, db: Session = _db_dep):
    run = db.get(models.JobRun, str(job_id))
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job run not found")

    stages = list_job_stages(db, job_id=run.job_id)
    return JobRunDetailResponse(
        run=JobRunRead.model_validate(run),
        stages=[JobRunStageRead.model_validate(s) for s in stages],
    )


@router.delete("", response_model=DeleteJobsResponse)
def delete_jobs(payload: DeleteJobsRequest, db: Session = _db_dep):
    try:
        deleted = delete_job_runs(db, job_ids=payload.job_ids)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    return DeleteJobsResponse(deleted=deleted)
