import logging
import os

from fastapi import FastAPI

from expense_pipeline.api.router import api_router
from expense_pipeline.config import settings
from expense_pipeline.core.errors import PipelineError
from expense_pipeline.core.observability import (
    global_exception_handler,
    pipeline_error_handler,
    request_logging_middleware,
)
from expense_pipeline.database import engine, init_db

logger = logging.getLogger("expenses.http")
logging.basicConfig(
    level=getattr(logging, str(settings.log_level or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title=settings.app_name)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

# Domain errors: malformed input -> 400, currency service -> 502.
app.add_exception_handler(PipelineError, pipeline_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.include_router(api_router)


@app.on_event("startup")
def _startup():
    try:
        pool_status = engine.pool.status()
    except Exception:
        pool_status = None

    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "environment": settings.environment,
            "cache_backend": settings.cache_backend,
            "dedup_atomic": settings.dedup_atomic,
            "batch_workers": settings.pipeline_batch_workers,
            "db_pool_status": pool_status,
        },
    )
    init_db()
