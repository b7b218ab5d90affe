"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from casedesk.api.v1 import consultations, health, payments

api_router = APIRouter()

# Health check
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["health"],
)

# Consultation booking and lifecycle
api_router.include_router(
    consultations.router,
    prefix="/consultations",
    tags=["consultations"],
)

# Payments and provider webhooks
api_router.include_router(
    payments.router,
    prefix="/payments",
    tags=["payments"],
)
