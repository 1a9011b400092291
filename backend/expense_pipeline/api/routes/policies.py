from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from expense_pipeline.api.deps import get_db, get_pipeline, get_validation_service
from expense_pipeline.config import settings
from expense_pipeline.schemas.policies import PolicyDocumentRead
from expense_pipeline.services.expense_pipeline import ExpensePipeline
from expense_pipeline.services.policies import (
    CURRENT_POLICY_NAME,
    get_current_policy,
    parse_default_policies,
    save_current_policies,
    unwrap_policies_body,
)
from expense_pipeline.services.validation_service import ValidationService

router = APIRouter(prefix="/policies", tags=["policies"])

_db_dep = Depends(get_db)
_pipeline_dep = Depends(get_pipeline)
_validation_dep = Depends(get_validation_service)


@router.get("/current", response_model=Optional[PolicyDocumentRead])
def get_current_policies(db: Session = _db_dep):
    row = get_current_policy(db)
    if row is not None:
        return PolicyDocumentRead.model_validate(row)

    # Nothing stored yet: expose the DEFAULT_POLICIES fallback, or null.
    fallback = parse_default_policies(settings.default_policies)
    if fallback is None:
        return None
    now = datetime.now(timezone.utc)
    return PolicyDocumentRead(
        name=CURRENT_POLICY_NAME,
        policies=fallback.model_dump(mode="json"),
        created_at=now,
        updated_at=now,
    )


@router.put("/current", response_model=PolicyDocumentRead)
def put_current_policies(
    body: Any = Body(...),  # noqa: B008
    db: Session = _db_dep,
    pipeline: ExpensePipeline = _pipeline_dep,
    validation: ValidationService = _validation_dep,
):
    row = save_current_policies(db, unwrap_policies_body(body))
    db.commit()
    db.refresh(row)

    # Cached policy state would otherwise outlive the update by up to one TTL.
    pipeline.invalidate_policies()
    validation.invalidate_policies()
    return PolicyDocumentRead.model_validate(row)
