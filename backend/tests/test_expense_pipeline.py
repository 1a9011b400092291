from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_pipeline import models
from expense_pipeline.config import Settings
from expense_pipeline.core.errors import (
    ConversionServiceError,
    PersistenceError,
    RuleEvaluationError,
    ValidationInputError,
)
from expense_pipeline.database import Base
from expense_pipeline.schemas.expense import ExpenseBatchEvent
from expense_pipeline.schemas.validation import AlertCode, ValidationStatus
from expense_pipeline.services.cache import InMemoryCacheService
from expense_pipeline.services.currency import CurrencyNormalizer
from expense_pipeline.services.dedup import DeduplicationGate
from expense_pipeline.services.expense_pipeline import ExpensePipeline, JobContext, build_pipeline
from expense_pipeline.services.expense_store import SqlExpenseStore
from expense_pipeline.services.job_runs import JobRunTracker
from expense_pipeline.services.policies import StaticPolicyProvider
from expense_pipeline.services.validation_rules import ValidationRule
from expense_pipeline.services.validation_service import ValidationService

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base.metadata.create_all(bind=engine)

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def setup_function():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


class SpyValidationService(ValidationService):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    def validate_expense(self, expense, policies=None, *, now=None):
        self.calls += 1
        return super().validate_expense(expense, policies, now=now)


def _pipeline(
    policies, client, *, cache=None, batch_workers=1, store=None, rules=None
) -> ExpensePipeline:
    cache = cache if cache is not None else InMemoryCacheService()
    provider = StaticPolicyProvider(policies)
    store = store if store is not None else SqlExpenseStore(TestingSessionLocal)
    return ExpensePipeline(
        tracker=JobRunTracker(TestingSessionLocal),
        dedup=DeduplicationGate(cache, store, ttl_seconds=3600),
        currency=CurrencyNormalizer(cache=cache, client=client, policies=provider),
        validation=SpyValidationService(policies=provider, rules=rules),
        store=store,
        clock=lambda: NOW,
        batch_workers=batch_workers,
    )


def _stages(job_id: str) -> list[tuple[str, str]]:
    with TestingSessionLocal() as db:
        rows = (
            db.query(models.JobRunStage)
            .filter(models.JobRunStage.job_id == job_id)
            .order_by(models.JobRunStage.seq)
            .all()
        )
        return [(r.stage, r.status) for r in rows]


def _run(job_id: str) -> models.JobRun:
    with TestingSessionLocal() as db:
        run = db.get(models.JobRun, job_id)
        db.expunge(run)
        return run


def _expense_count() -> int:
    with TestingSessionLocal() as db:
        return db.query(models.Expense).count()


def test_end_to_end_expense_is_rejected_with_two_alerts(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())

    outcome = pipeline.handle_expense_created(make_event())

    assert outcome.status == "success"
    assert outcome.validation.final_status == ValidationStatus.RECHAZADO
    assert [a.code for a in outcome.validation.alerts] == [AlertCode.EXPENSE_AGE, AlertCode.CATEGORY_LIMIT]

    run = _run(outcome.job_id)
    assert run.status == "success"
    assert run.pattern == "expense.created"
    assert run.fingerprint == outcome.fingerprint
    assert run.meta["id"] == "g1"
    assert run.meta["validation"]["status"] == "RECHAZADO"
    assert len(run.meta["validation"]["alerts"]) == 2

    assert _stages(outcome.job_id) == [
        ("dedup", "success"),
        ("normalize", "success"),
        ("currency", "success"),
        ("validation", "success"),
        ("persist", "success"),
    ]

    with TestingSessionLocal() as db:
        expense = db.get(models.Expense, "g1")
        assert expense.job_id == outcome.job_id
        assert expense.base_amount == 200
        assert expense.exchange_rate == 1.0
        assert expense.validation_status == "RECHAZADO"
        assert len(expense.validation_alerts) == 2
        currency_stage = (
            db.query(models.JobRunStage)
            .filter(models.JobRunStage.job_id == outcome.job_id, models.JobRunStage.stage == "currency")
            .one()
        )
        assert currency_stage.data["rate_source"] == "identity"
        validation_stage = (
            db.query(models.JobRunStage)
            .filter(models.JobRunStage.job_id == outcome.job_id, models.JobRunStage.stage == "validation")
            .one()
        )
        assert validation_stage.data["alerts_count"] == 2


def test_same_event_twice_in_one_scope_persists_once(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())

    first = pipeline.process_expense(make_event(), _ctx("job-a", "proc-1"))
    second = pipeline.process_expense(make_event(), _ctx("job-b", "proc-1"))

    assert first.status == "success"
    assert second.status == "skipped"
    assert second.reason == "duplicate_fingerprint"
    assert _expense_count() == 1
    assert _stages("job-b") == [("dedup", "skipped")]
    meta = _run("job-b").meta
    assert meta["dedup"] == {"skipped": True, "reason": "duplicate_fingerprint", "fingerprint": first.fingerprint}
    assert meta["process_id"] == "proc-1"


def test_other_scope_duplicate_is_detected_in_store(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())

    pipeline.process_expense(make_event(), _ctx("job-a", "proc-1"))
    outcome = pipeline.process_expense(make_event(id="g2"), _ctx("job-b", "proc-2"))

    assert outcome.status == "skipped"
    assert outcome.reason == "duplicate_fingerprint_db"
    assert _expense_count() == 1
    with TestingSessionLocal() as db:
        stage = db.query(models.JobRunStage).filter(models.JobRunStage.job_id == "job-b").one()
        assert stage.data["source"] == "db"
        assert stage.data["duplicate"] is True


def test_negative_amount_short_circuits(make_event, usd_policies, fake_currency_client):
    client = fake_currency_client(rate=950.0)
    pipeline = _pipeline(usd_policies, client)

    outcome = pipeline.handle_expense_created(make_event(original_amount=-10, original_currency="CLP"))

    assert outcome.status == "skipped"
    assert outcome.reason == "negative_amount"
    assert client.calls == []
    assert pipeline._validation.calls == 0
    assert _expense_count() == 0
    assert _stages(outcome.job_id) == [("dedup", "success"), ("normalize", "skipped")]
    run = _run(outcome.job_id)
    assert run.status == "skipped"
    assert run.meta["negative_amount"]["original_amount"] == -10


def test_conversion_failure_marks_stage_and_run_failed(make_event, usd_policies, failing_currency_client):
    pipeline = _pipeline(usd_policies, failing_currency_client)

    with pytest.raises(ConversionServiceError):
        pipeline.process_expense(make_event(original_currency="CLP"), _ctx("job-f", None))

    assert _run("job-f").status == "failed"
    assert _stages("job-f") == [
        ("dedup", "success"),
        ("normalize", "success"),
        ("currency", "failed"),
    ]
    with TestingSessionLocal() as db:
        stage = (
            db.query(models.JobRunStage)
            .filter(models.JobRunStage.job_id == "job-f", models.JobRunStage.stage == "currency")
            .one()
        )
        assert "HTTP 503" in stage.error
        assert stage.finished_at is not None
    assert _expense_count() == 0


def test_foreign_currency_is_converted_before_validation(make_event, usd_policies, fake_currency_client):
    client = fake_currency_client(rate=0.001)
    pipeline = _pipeline(usd_policies, client)

    outcome = pipeline.handle_expense_created(
        make_event(original_currency="CLP", original_amount=90000, date="2025-01-09")
    )

    assert outcome.validation.converted_amount == 90
    assert outcome.validation.final_status == ValidationStatus.APROBADO
    assert client.calls[0]["to"] == "USD"


def test_precomputed_base_amount_skips_conversion_service(make_event, usd_policies, fake_currency_client):
    client = fake_currency_client(rate=1.0)
    pipeline = _pipeline(usd_policies, client)

    outcome = pipeline.handle_expense_created(
        make_event(original_currency="CLP", original_amount=95000, base_amount=100.04, date="2025-01-09")
    )

    assert client.calls == []
    with TestingSessionLocal() as db:
        expense = db.get(models.Expense, "g1")
        assert expense.base_amount == 100.0
        assert expense.exchange_rate == pytest.approx(100.0 / 95000)
    assert outcome.validation.final_status == ValidationStatus.APROBADO


def test_per_request_policies_override_default(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())
    lenient = usd_policies.model_copy(
        update={"age_limits": usd_policies.age_limits.model_copy(update={"pending_days": 500, "rejected_days": 900})}
    )

    outcome = pipeline.handle_expense_created(make_event(category="travel"), policies=lenient)

    assert outcome.validation.final_status == ValidationStatus.APROBADO


def test_batch_rows_are_processed_in_order_with_linkage(usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())
    batch = ExpenseBatchEvent.model_validate(
        {
            "processId": "proc-9",
            "batchIndex": 3,
            "records": [
                _row("r1", "2025-01-08", "10"),
                _row("r2", "2025-01-08", "10"),
                _row("r3", "2025-01-09", "-5"),
            ],
        }
    )

    outcomes = pipeline.handle_expense_batch(batch)

    assert [o.status for o in outcomes] == ["success", "skipped", "skipped"]
    assert [o.reason for o in outcomes] == [None, "duplicate_fingerprint", "negative_amount"]
    metas = [_run(o.job_id).meta for o in outcomes]
    assert [m["record_index"] for m in metas] == [1, 2, 3]
    assert all(m["process_id"] == "proc-9" and m["batch_index"] == 3 for m in metas)
    assert metas[0]["csv_row"]["gasto_id"] == "r1"
    assert _run(outcomes[0].job_id).pattern == "expense.batch"


def test_invalid_batch_row_aborts_batch(usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client())
    batch = ExpenseBatchEvent(
        process_id="proc-1",
        records=[_row("r1", "2025-01-08", "10"), {"gasto_id": "r2"}, _row("r3", "2025-01-07", "10")],
    )

    with pytest.raises(ValidationInputError):
        pipeline.handle_expense_batch(batch)

    # Rows after the failing one are never started.
    with TestingSessionLocal() as db:
        assert {r.expense_id for r in db.query(models.JobRun).all()} == {"r1"}


def test_concurrent_batch_reraises_first_failure(usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client(), batch_workers=4)
    batch = ExpenseBatchEvent(process_id="proc-1", records=[{"gasto_id": "bad-1"}, {"gasto_id": "bad-2"}])

    with pytest.raises(ValidationInputError):
        pipeline.handle_expense_batch(batch)


def test_concurrent_batch_returns_outcomes_in_record_order(usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client(), batch_workers=2)
    batch = ExpenseBatchEvent(process_id="proc-1", records=[_row("r1", "2025-01-08", "10")])

    outcomes = pipeline.handle_expense_batch(batch)

    assert [o.status for o in outcomes] == ["success"]


def test_build_pipeline_reads_policies_from_database(make_event, usd_policies, fake_currency_client):
    with TestingSessionLocal() as db:
        db.add(models.ValidationPolicy(name="current", policies=usd_policies.model_dump(mode="json")))
        db.commit()

    settings = Settings(database_url="sqlite://", cache_backend="memory")
    pipeline = build_pipeline(
        settings,
        TestingSessionLocal,
        currency_client=fake_currency_client(),
        clock=lambda: NOW,
    )

    outcome = pipeline.handle_expense_created(make_event())
    assert outcome.validation.final_status == ValidationStatus.RECHAZADO
    assert outcome.validation.base_currency == "USD"


def _failed_stage(job_id: str) -> models.JobRunStage:
    with TestingSessionLocal() as db:
        stage = (
            db.query(models.JobRunStage)
            .filter(models.JobRunStage.job_id == job_id)
            .order_by(models.JobRunStage.seq.desc())
            .first()
        )
        db.expunge(stage)
        return stage


class BrokenStore(SqlExpenseStore):
    def upsert(self, record):
        raise PersistenceError(f"Could not persist expense {record.id}: disk full")


class ExplodingRule(ValidationRule):
    name = "ExplodingRule"

    def evaluate(self, context):
        raise KeyError("limits")


def test_persist_failure_marks_stage_and_run_failed(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client(), store=BrokenStore(TestingSessionLocal))

    with pytest.raises(PersistenceError):
        pipeline.process_expense(make_event(), _ctx("job-p", None))

    assert _run("job-p").status == "failed"
    assert _stages("job-p")[-1] == ("persist", "failed")
    stage = _failed_stage("job-p")
    assert "disk full" in stage.error
    assert stage.data["error_code"] == "persistence_error"
    assert stage.finished_at is not None


def test_rule_failure_marks_validation_stage_and_run_failed(make_event, usd_policies, fake_currency_client):
    pipeline = _pipeline(usd_policies, fake_currency_client(), rules=[ExplodingRule()])

    with pytest.raises(RuleEvaluationError) as excinfo:
        pipeline.process_expense(make_event(), _ctx("job-r", None))

    assert excinfo.value.rule_name == "ExplodingRule"
    assert _run("job-r").status == "failed"
    assert _stages("job-r") == [
        ("dedup", "success"),
        ("normalize", "success"),
        ("currency", "success"),
        ("validation", "failed"),
    ]
    stage = _failed_stage("job-r")
    assert "ExplodingRule" in stage.error
    assert stage.data["error_code"] == "rule_evaluation_error"
    assert _expense_count() == 0


def test_request_policies_drive_currency_conversion(make_event, usd_policies, fake_currency_client):
    client = fake_currency_client(rate=0.001)
    # Nothing configured: only the request carries a base currency.
    pipeline = _pipeline(None, client)

    outcome = pipeline.handle_expense_created(
        make_event(original_currency="CLP", original_amount=90000, date="2025-01-09"),
        policies=usd_policies,
    )

    assert [c["to"] for c in client.calls] == ["USD"]
    assert outcome.validation.base_currency == "USD"
    assert outcome.validation.converted_amount == 90
    assert outcome.validation.final_status == ValidationStatus.APROBADO
    with TestingSessionLocal() as db:
        assert db.get(models.Expense, "g1").base_amount == 90


def test_zero_decimal_base_amount_is_persisted_rounded(make_event, usd_policies, fake_currency_client):
    clp_policies = usd_policies.model_copy(update={"base_currency": "CLP"})
    client = fake_currency_client(rate=823.04)
    pipeline = _pipeline(clp_policies, client)

    pipeline.handle_expense_created(make_event(original_amount=1.5, date="2025-01-09"))

    with TestingSessionLocal() as db:
        assert db.get(models.Expense, "g1").base_amount == 1235


def _ctx(job_id, process_id):
    return JobContext(job_id=job_id, pattern="expense.batch", process_id=process_id)


def _row(expense_id, date, amount):
    return {
        "gasto_id": expense_id,
        "empleado_id": "e1",
        "fecha": date,
        "monto_original": amount,
        "moneda_original": "USD",
        "categoria": "food",
        "cost_center": "sales_team",
    }
