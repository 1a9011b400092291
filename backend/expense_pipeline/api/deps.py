from fastapi import Request

from expense_pipeline.config import settings
from expense_pipeline.database import SessionLocal, get_db
from expense_pipeline.services.expense_pipeline import ExpensePipeline, build_pipeline
from expense_pipeline.services.policies import PolicyProvider, build_policy_provider
from expense_pipeline.services.validation_service import ValidationService

__all__ = ["get_db", "get_pipeline", "get_policy_provider", "get_validation_service"]


def get_policy_provider(request: Request) -> PolicyProvider:
    # One cached provider per app, shared by the pipeline and /validations.
    provider = getattr(request.app.state, "policy_provider", None)
    if provider is None:
        provider = build_policy_provider(settings, SessionLocal)
        request.app.state.policy_provider = provider
    return provider


def get_pipeline(request: Request) -> ExpensePipeline:
    # Built lazily once per app so the in-memory cache survives across requests.
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(settings, SessionLocal, policies=get_policy_provider(request))
        request.app.state.pipeline = pipeline
    return pipeline


def get_validation_service(request: Request) -> ValidationService:
    service = getattr(request.app.state, "validation_service", None)
    if service is None:
        service = ValidationService(
            policies=get_policy_provider(request),
            timezone_name=settings.app_timezone,
        )
        request.app.state.validation_service = service
    return service
