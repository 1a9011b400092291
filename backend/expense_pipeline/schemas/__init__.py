from expense_pipeline.schemas.expense import ExpenseBatchEvent, ExpenseCreatedRequest, ExpenseEvent
from expense_pipeline.schemas.job_runs import (
    DeleteJobsRequest,
    DeleteJobsResponse,
    JobRunDetailResponse,
    JobRunListResponse,
    JobRunRead,
    JobRunStageRead,
    Pagination,
    PipelineOutcomeRead,
)
from expense_pipeline.schemas.policies import (
    AgeLimits,
    CategoryLimit,
    CostCenterRuleConfig,
    Policies,
    PolicyDocumentRead,
)
from expense_pipeline.schemas.validation import (
    Alert,
    AlertCode,
    ValidationRequest,
    ValidationResponse,
    ValidationResult,
    ValidationStatus,
    ValidationSuggestion,
)

__all__ = [
    "AgeLimits",
    "Alert",
    "AlertCode",
    "CategoryLimit",
    "CostCenterRuleConfig",
    "DeleteJobsRequest",
    "DeleteJobsResponse",
    "ExpenseBatchEvent",
    "ExpenseCreatedRequest",
    "ExpenseEvent",
    "JobRunDetailResponse",
    "JobRunListResponse",
    "JobRunRead",
    "JobRunStageRead",
    "Pagination",
    "PipelineOutcomeRead",
    "Policies",
    "PolicyDocumentRead",
    "ValidationRequest",
    "ValidationResponse",
    "ValidationResult",
    "ValidationStatus",
    "ValidationSuggestion",
]
