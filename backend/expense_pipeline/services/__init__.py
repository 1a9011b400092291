from expense_pipeline.services.dedup import DedupDecision, DeduplicationGate
from expense_pipeline.services.expense_pipeline import (
    ExpensePipeline,
    JobContext,
    PipelineOutcome,
    build_pipeline,
)
from expense_pipeline.services.fingerprint import build_fingerprint
from expense_pipeline.services.job_runs import JobRunTracker

__all__ = [
    "DedupDecision",
    "DeduplicationGate",
    "ExpensePipeline",
    "JobContext",
    "JobRunTracker",
    "PipelineOutcome",
    "build_fingerprint",
    "build_pipeline",
]
