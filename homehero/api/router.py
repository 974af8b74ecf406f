from fastapi import APIRouter

from homehero.api.routes import entitlements, health, jobs, payments

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(entitlements.router, prefix="/providers", tags=["providers"])
api_router.include_router(jobs.router, prefix="/admin/jobs", tags=["admin"])
