from __future__ import annotations

from fastapi import APIRouter, Depends, status

from expense_pipeline.api.deps import get_pipeline
from expense_pipeline.schemas.expense import ExpenseBatchEvent, ExpenseCreatedRequest
from expense_pipeline.schemas.job_runs import PipelineOutcomeRead
from expense_pipeline.services.expense_pipeline import ExpensePipeline, PipelineOutcome

router = APIRouter(prefix="/events", tags=["events"])

_pipeline_dep = Depends(get_pipeline)


def _outcome_read(outcome: PipelineOutcome) -> PipelineOutcomeRead:
    validation = outcome.validation
    return PipelineOutcomeRead(
        job_id=outcome.job_id,
        status=outcome.status,
        reason=outcome.reason,
        fingerprint=outcome.fingerprint,
        validation_status=validation.final_status.value if validation is not None else None,
        alerts=[a.model_dump(mode="json") for a in validation.alerts] if validation is not None else [],
    )


@router.post("/expense", response_model=PipelineOutcomeRead, status_code=status.HTTP_200_OK)
def handle_expense_created(
    payload: ExpenseCreatedRequest,
    pipeline: ExpensePipeline = _pipeline_dep,
):
    outcome = pipeline.handle_expense_created(payload.expense, policies=payload.policies)
    return _outcome_read(outcome)


@router.post("/batch", response_model=list[PipelineOutcomeRead], status_code=status.HTTP_200_OK)
def handle_expense_batch(
    payload: ExpenseBatchEvent,
    pipeline: ExpensePipeline = _pipeline_dep,
):
    return [_outcome_read(o) for o in pipeline.handle_expense_batch(payload)]
