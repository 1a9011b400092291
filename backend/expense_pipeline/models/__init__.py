from expense_pipeline.models.expense import Expense
from expense_pipeline.models.job_run import JobRun, JobRunStage
from expense_pipeline.models.validation_policy import ValidationPolicy

__all__ = [
    "Expense",
    "JobRun",
    "JobRunStage",
    "ValidationPolicy",
]
