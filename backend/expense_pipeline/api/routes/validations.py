from __future__ import annotations

from fastapi import APIRouter, Depends, status

from expense_pipeline.api.deps import get_validation_service
from expense_pipeline.schemas.validation import ValidationRequest, ValidationResponse
from expense_pipeline.services.validation_service import ValidationService

router = APIRouter(prefix="/validations", tags=["validations"])

_validation_dep = Depends(get_validation_service)


@router.post("", response_model=ValidationResponse, status_code=status.HTTP_200_OK)
def validate_expense(
    payload: ValidationRequest,
    service: ValidationService = _validation_dep,
):
    # Narrow view: internal rule suggestions are not exposed.
    return service.evaluate_expense(payload.expense, payload.policies).to_response()
