from fastapi import APIRouter

from expense_pipeline.api.routes import events, health, jobs, policies, validations

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(events.router)
api_router.include_router(validations.router)
api_router.include_router(jobs.router)
api_router.include_router(policies.router)
