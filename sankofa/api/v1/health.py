"""Health check endpoints for Sankofa API v1.

Liveness and readiness checks.  Readiness checks the session store, the
delivery queue backend and the carrier credentials; a queue running in
degraded (in-process) mode reports ``degraded`` rather than failing the check outright.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual service statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness check.  Does *not* check downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness check over the session store, delivery queue and carrier."""
    checks: dict[str, str] = {}
    all_ok = True

    # -- Session store -----------------------------------------------------
    store = getattr(request.app.state, "session_store", None)
    if store is not None:
        try:
            if await store.ping():
                checks["session_store"] = "ok (in-memory)" if store.using_fallback else "ok"
            else:
                checks["session_store"] = "unreachable"
                all_ok = False
        except Exception as exc:
            checks["session_store"] = f"error: {exc!s}"
            all_ok = False
    else:
        checks["session_store"] = "not_initialised"
        all_ok = False

    # -- Delivery queue ----------------------------------------------------
    client = getattr(request.app.state, "queue_client", None)
    if client is not None:
        if client.degraded:
            checks["delivery_queue"] = "degraded (in-process delivery)"
            all_ok = False
        else:
            try:
                checks["delivery_queue"] = "ok" if await client.ping() else "unreachable"
            except Exception as exc:
                checks["delivery_queue"] = f"error: {exc!s}"
            if checks["delivery_queue"] != "ok":
                all_ok = False
    else:
        checks["delivery_queue"] = "not_initialised"
        all_ok = False

    # -- Carrier gateway ---------------------------------------------------
    gateway = getattr(request.app.state, "carrier_gateway", None)
    if gateway is not None:
        if await gateway.verify():
            checks["carrier"] = f"ok ({gateway.provider_name})"
        else:
            checks["carrier"] = f"unreachable ({gateway.provider_name})"
            all_ok = False
    else:
        checks["carrier"] = "not_initialised"

    # -- Notification audit trail -----------------------------------------
    notifications = getattr(request.app.state, "notification_logger", None)
    if notifications is not None:
        checks["notification_log"] = "ok" if notifications.is_running else "stopped"
        if notifications.dropped:
            checks["notification_log"] += f" ({notifications.dropped} dropped)"
    else:
        checks["notification_log"] = "not_initialised"

    status = "ready" if all_ok else "degraded"

    logger.info("health.readiness_check", status=status, checks=checks)

    return ReadinessResponse(status=status, checks=checks)
