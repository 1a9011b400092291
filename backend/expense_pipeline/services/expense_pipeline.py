from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Optional

from sqlalchemy.orm import Session

from expense_pipeline.config import Settings
from expense_pipeline.schemas.expense import ExpenseBatchEvent, ExpenseEvent
from expense_pipeline.schemas.policies import Policies
from expense_pipeline.schemas.validation import ValidationResult
from expense_pipeline.services.cache import CacheService, build_cache_service
from expense_pipeline.services.currency import (
    ConversionResult,
    CurrencyConversionClient,
    CurrencyNormalizer,
    HttpCurrencyConversionClient,
)
from expense_pipeline.services.dedup import DeduplicationGate
from expense_pipeline.services.event_normalizer import to_expense_event
from expense_pipeline.services.expense_store import ExpenseStore, PersistedExpense, SqlExpenseStore
from expense_pipeline.services.fingerprint import build_fingerprint
from expense_pipeline.services.job_runs import JobRunTracker
from expense_pipeline.services.policies import PolicyProvider, build_policy_provider
from expense_pipeline.services.validation_service import ValidationService

logger = logging.getLogger("expenses.pipeline")

PATTERN_EXPENSE_CREATED = "expense.created"
PATTERN_EXPENSE_BATCH = "expense.batch"

ExpenseStageName = Literal["dedup", "normalize", "currency", "validation", "persist"]

NEGATIVE_AMOUNT = "negative_amount"


@dataclass(frozen=True)
class JobContext:
    job_id: str
    pattern: str
    process_id: Optional[str] = None
    batch_index: Optional[int] = None
    record_index: Optional[int] = None
    csv_row: Optional[dict[str, Any]] = None
    # Per-request override of the current policy set.
    policies: Optional[Policies] = None


@dataclass(frozen=True)
class PipelineOutcome:
    job_id: str
    status: Literal["success", "skipped"]
    reason: Optional[str] = None
    fingerprint: Optional[str] = None
    validation: Optional[ValidationResult] = None
    stages: list[str] = field(default_factory=list)


def _run_meta(event: ExpenseEvent, ctx: JobContext) -> dict[str, Any]:
    meta: dict[str, Any] = dict(event.snapshot())
    if ctx.process_id:
        meta["process_id"] = ctx.process_id
    if ctx.batch_index is not None:
        meta["batch_index"] = int(ctx.batch_index)
    if ctx.record_index is not None:
        meta["record_index"] = int(ctx.record_index)
    if ctx.csv_row:
        meta["csv_row"] = dict(ctx.csv_row)
    return meta


class ExpensePipeline:
    """Per-event control flow: dedup -> normalize -> currency -> validation -> persist.

    Every started stage is finished before the call returns and the run is
    finished exactly once. Skips (duplicate, negative amount) are successful
    terminal outcomes; any exception finishes the open stage and the run as
    ``failed`` and is re-raised for the caller to retry or abort.
    """

    def __init__(
        self,
        *,
        tracker: JobRunTracker,
        dedup: DeduplicationGate,
        currency: CurrencyNormalizer,
        validation: ValidationService,
        store: ExpenseStore,
        clock: Optional[Callable[[], datetime]] = None,
        batch_workers: int = 1,
    ) -> None:
        self._tracker = tracker
        self._dedup = dedup
        self._currency = currency
        self._validation = validation
        self._store = store
        self._clock = clock
        self._batch_workers = max(1, int(batch_workers))

    def _now(self) -> Optional[datetime]:
        return self._clock() if self._clock is not None else None

    def handle_expense_created(
        self, event: ExpenseEvent, *, policies: Optional[Policies] = None
    ) -> PipelineOutcome:
        job_id = str(uuid.uuid4())
        logger.info("expense_created_received", extra={"expense_id": event.id, "job_id": job_id})
        return self.process_expense(
            event,
            JobContext(job_id=job_id, pattern=PATTERN_EXPENSE_CREATED, policies=policies),
        )

    def handle_expense_batch(
        self, batch: ExpenseBatchEvent, *, policies: Optional[Policies] = None
    ) -> list[PipelineOutcome]:
        logger.info(
            "expense_batch_received",
            extra={
                "process_id": batch.process_id,
                "batch_index": batch.batch_index,
                "size": len(batch.records),
            },
        )

        def _process_record(record_index: int, raw: dict[str, Any]) -> PipelineOutcome:
            try:
                event = to_expense_event(raw)
                return self.process_expense(
                    event,
                    JobContext(
                        job_id=str(uuid.uuid4()),
                        pattern=PATTERN_EXPENSE_BATCH,
                        process_id=batch.process_id,
                        batch_index=batch.batch_index,
                        record_index=record_index,
                        csv_row=dict(raw),
                        policies=policies,
                    ),
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "expense_batch_record_failed",
                    extra={
                        "process_id": batch.process_id,
                        "batch_index": batch.batch_index,
                        "record_index": record_index,
                        "error": str(exc),
                    },
                )
                raise

        records = list(enumerate(batch.records, start=1))

        if self._batch_workers <= 1:
            return [_process_record(i, raw) for i, raw in records]

        with ThreadPoolExecutor(max_workers=self._batch_workers) as pool:
            futures = [pool.submit(_process_record, i, raw) for i, raw in records]
            wait(futures)
        # Re-raises the first failing record (in record order) once all rows finished.
        return [f.result() for f in futures]

    def process_expense(self, event: ExpenseEvent, ctx: JobContext) -> PipelineOutcome:
        job_id = ctx.job_id
        self._tracker.create_run(
            job_id=job_id,
            pattern=ctx.pattern,
            expense_id=event.id,
            meta=_run_meta(event, ctx),
        )

        stages: list[str] = []
        open_stage: Optional[str] = None

        def _start(name: ExpenseStageName, data: Optional[dict[str, Any]] = None) -> str:
            nonlocal open_stage
            open_stage = self._tracker.start_stage(job_id, name, data)
            stages.append(name)
            return open_stage

        def _finish(status: str, data: Optional[dict[str, Any]] = None) -> None:
            nonlocal open_stage
            stage_id = open_stage
            open_stage = None
            self._tracker.finish_stage(stage_id, status, data)

        try:
            fingerprint = build_fingerprint(event)

            _start("dedup", {"ttl_seconds": self._dedup.ttl_seconds})
            decision = self._dedup.admit(ctx.process_id, fingerprint)
            if not decision.admitted:
                data: dict[str, Any] = {"fingerprint": fingerprint, "reason": decision.reason}
                if decision.source == "db":
                    data.update({"source": "db", "duplicate": True})
                _finish("skipped", data)
                self._tracker.merge_meta(
                    job_id,
                    {
                        "dedup": {
                            "skipped": True,
                            "reason": decision.reason,
                            "fingerprint": fingerprint,
                        }
                    },
                )
                self._tracker.finish_run(job_id, "skipped")
                return PipelineOutcome(
                    job_id=job_id,
                    status="skipped",
                    reason=decision.reason,
                    fingerprint=fingerprint,
                    stages=stages,
                )
            _finish("success", {"fingerprint": fingerprint})
            self._tracker.set_fingerprint(job_id, fingerprint)

            _start("normalize")
            negative = event.original_amount < 0
            normalized_amount = abs(event.original_amount)
            normalize_data: dict[str, Any] = {
                "negative_amount_detected": negative,
                "normalized_amount": normalized_amount,
            }
            if negative:
                normalize_data["reason"] = NEGATIVE_AMOUNT
                _finish("skipped", normalize_data)
                self._tracker.merge_meta(
                    job_id,
                    {
                        "negative_amount": {
                            "skipped": True,
                            "reason": NEGATIVE_AMOUNT,
                            "original_amount": event.original_amount,
                        }
                    },
                )
                self._tracker.finish_run(job_id, "skipped")
                return PipelineOutcome(
                    job_id=job_id,
                    status="skipped",
                    reason=NEGATIVE_AMOUNT,
                    fingerprint=fingerprint,
                    stages=stages,
                )
            _finish("success", normalize_data)

            _start("currency", {"original_currency": event.original_currency})
            conversion = self._convert(event, normalized_amount, ctx.policies)
            exchange_rate = (
                event.exchange_rate if event.exchange_rate is not None else conversion.rate
            )
            _finish(
                "success",
                {
                    "base_amount": conversion.base_amount,
                    "exchange_rate": exchange_rate,
                    "rate_source": conversion.source,
                    "base_currency": conversion.base_currency,
                },
            )

            _start("validation")
            normalized_event = event.model_copy(
                update={"original_amount": normalized_amount, "base_amount": conversion.base_amount}
            )
            result = self._validation.validate_expense(
                normalized_event, ctx.policies, now=self._now()
            )
            alerts = [a.model_dump(mode="json") for a in result.alerts]
            _finish(
                "success",
                {
                    "status": result.final_status.value,
                    "alerts_count": len(alerts),
                    "alerts": alerts,
                },
            )
            self._tracker.merge_meta(
                job_id,
                {"validation": {"status": result.final_status.value, "alerts": alerts}},
            )

            _start("persist")
            self._store.upsert(
                PersistedExpense(
                    id=event.id,
                    job_id=job_id,
                    employee_id=event.employee_id,
                    date=event.date,
                    original_amount=normalized_amount,
                    original_currency=event.original_currency,
                    category=event.category,
                    cost_center=event.cost_center,
                    fingerprint=fingerprint,
                    negative_amount_detected=negative,
                    base_amount=conversion.base_amount,
                    exchange_rate=exchange_rate,
                    validation_status=result.final_status.value,
                    validation_alerts=alerts,
                )
            )
            _finish("success")

            self._tracker.finish_run(job_id, "success")
            logger.info(
                "expense_pipeline_ok",
                extra={
                    "job_id": job_id,
                    "expense_id": event.id,
                    "status": result.final_status.value,
                },
            )
            return PipelineOutcome(
                job_id=job_id,
                status="success",
                fingerprint=fingerprint,
                validation=result,
                stages=stages,
            )
        except Exception as exc:
            logger.exception(
                "expense_pipeline_failed",
                extra={"job_id": job_id, "expense_id": event.id, "error": str(exc)},
            )
            self._record_failure(job_id, open_stage, exc)
            raise

    def invalidate_policies(self) -> None:
        """Drop cached policy state after the current policy set changed."""
        self._currency.invalidate_base_currency()
        self._validation.invalidate_policies()

    def _convert(
        self, event: ExpenseEvent, normalized_amount: float, policies: Optional[Policies]
    ) -> ConversionResult:
        base_currency = policies.base_currency if policies is not None else None
        if event.base_amount is not None:
            return self._currency.normalize_precomputed(
                event.base_amount,
                normalized_amount,
                from_currency=event.original_currency,
                rate=event.exchange_rate,
                base_currency=base_currency,
            )
        return self._currency.convert(
            normalized_amount, event.original_currency, event.date, base_currency=base_currency
        )

    def _record_failure(self, job_id: str, stage_id: Optional[str], exc: Exception) -> None:
        # The original exception is what the caller sees; bookkeeping errors are only logged.
        try:
            if stage_id is not None:
                self._tracker.finish_stage(
                    stage_id,
                    "failed",
                    {"error_code": getattr(exc, "code", type(exc).__name__)},
                    error=str(exc),
                )
            self._tracker.finish_run(job_id, "failed")
        except Exception as bookkeeping_exc:  # noqa: BLE001
            logger.error(
                "expense_pipeline_fail_record_failed",
                extra={"job_id": job_id, "error": str(bookkeeping_exc)},
            )


def build_pipeline(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    cache: Optional[CacheService] = None,
    currency_client: Optional[CurrencyConversionClient] = None,
    clock: Optional[Callable[[], datetime]] = None,
    policies: Optional[PolicyProvider] = None,
) -> ExpensePipeline:
    """Composition root: one implementation per collaborator, chosen by settings."""
    cache = cache if cache is not None else build_cache_service(settings)
    store = SqlExpenseStore(session_factory)
    if policies is None:
        policies = build_policy_provider(settings, session_factory)
    client = currency_client or HttpCurrencyConversionClient(
        settings.currency_service_url, timeout_ms=settings.http_timeout_ms
    )
    return ExpensePipeline(
        tracker=JobRunTracker(session_factory),
        dedup=DeduplicationGate(
            cache,
            store,
            ttl_seconds=settings.dedup_ttl_seconds,
            atomic=settings.dedup_atomic,
        ),
        currency=CurrencyNormalizer(
            cache=cache,
            client=client,
            policies=policies,
            fx_cache_ttl_seconds=settings.fx_cache_ttl_seconds,
            base_currency_ttl_ms=settings.policies_cache_ttl_ms,
        ),
        validation=ValidationService(policies=policies, timezone_name=settings.app_timezone),
        store=store,
        clock=clock,
        batch_workers=settings.pipeline_batch_workers,
    )
