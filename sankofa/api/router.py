"""Main API router combining all v1 route modules.

Aggregates all routers under the ``/api/v1`` prefix so the FastAPI
application only needs to include a single router.

Includes:
    * Health: liveness and readiness checks
    * USSD: gateway callback, session status, simulator
    * SMS: single, bulk and scheduled delivery plus queue inspection
"""

from __future__ import annotations

from fastapi import APIRouter

from sankofa.api.v1 import health, sms, ussd

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(ussd.router)
api_router.include_router(sms.router)
