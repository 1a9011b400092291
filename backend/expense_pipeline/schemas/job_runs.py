from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

JobStatus = Literal["running", "success", "failed", "skipped"]


class JobRunStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    stage: str
    seq: int
    status: str
    finished_at: Optional[datetime] = None
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime


class JobRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    pattern: str
    expense_id: Optional[str] = None
    fingerprint: Optional[str] = None
    status: str
    finished_at: Optional[datetime] = None
    meta: Optional[dict[str, Any]] = None
    created_at: datetime


class JobRunDetailResponse(BaseModel):
    run: JobRunRead
    stages: list[JobRunStageRead]


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool


class JobRunListResponse(BaseModel):
    data: list[JobRunRead]
    pagination: Pagination


class DeleteJobsRequest(BaseModel):
    job_ids: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("job_ids", "jobIds")
    )


class DeleteJobsResponse(BaseModel):
    deleted: int


class PipelineOutcomeRead(BaseModel):
    job_id: str
    status: JobStatus
    reason: Optional[str] = None
    fingerprint: Optional[str] = None
    validation_status: Optional[str] = None
    alerts: list[dict[str, Any]] = Field(default_factory=list)
