"""Sankofa FastAPI application entry point.

Creates the FastAPI app, includes routers, and manages the lifecycle of
the messaging services (session store, domain directory, notification
audit trail, carrier gateway, delivery queue and USSD menu engine).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from config.settings import settings
from sankofa.api.router import api_router

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the messaging services.

    On startup:
      1. Session store (Redis, in-memory if unreachable)
      2. Domain directory and notification sink (Supabase or demo data)
      3. Notification audit logger
      4. Carrier gateway and template renderer
      5. Delivery queue (Redis, degraded in-process mode if unreachable)
      6. USSD menu state machine
      7. Store everything on ``app.state``

    On shutdown the queue workers stop first so no job is half-sent when
    its dependencies close.
    """
    _configure_logging()
    logger.info(
        "app.startup",
        env=settings.env,
        sms_provider=settings.sms_provider,
        supabase=settings.supabase_enabled,
    )

    app.state.start_time = time.time()

    # -- 1. Session store ---------------------------------------------------
    from sankofa.services.session_store import SessionStore

    session_store = SessionStore.from_url(settings.redis_url)
    await session_store.initialize()
    app.state.session_store = session_store
    app.state.session_ttl_seconds = settings.ussd_session_ttl_seconds
    logger.info("app.session_store_initialised", fallback=session_store.using_fallback)

    # -- 2. Domain directory + notification sink ----------------------------
    from sankofa.services.notification_log import InMemoryNotificationSink, NotificationSink

    supabase = None
    directory = None
    sink: NotificationSink
    if settings.supabase_enabled:
        from sankofa.services.supabase import (
            SupabaseClient,
            SupabaseDomainDirectory,
            SupabaseNotificationSink,
        )

        supabase = SupabaseClient(settings.supabase_url, settings.supabase_service_role_key)
        directory = SupabaseDomainDirectory(supabase)
        sink = SupabaseNotificationSink(supabase)
        logger.info("app.supabase_initialised")
    else:
        from sankofa.data.seed import build_demo_directory

        directory = build_demo_directory()
        sink = InMemoryNotificationSink()
        logger.warning("app.supabase_not_configured_using_demo_data")
    app.state.directory = directory
    app.state.supabase = supabase

    # -- 3. Notification audit logger ---------------------------------------
    from sankofa.services.notification_log import NotificationLogger

    notification_logger = NotificationLogger(sink, max_buffer=settings.notification_log_buffer)
    notification_logger.start()
    app.state.notification_logger = notification_logger

    # -- 4. Carrier gateway + templates -------------------------------------
    from sankofa.services.carrier import CarrierGateway
    from sankofa.services.templates import TemplateRenderer

    gateway = CarrierGateway.from_settings(settings)
    renderer = TemplateRenderer()
    app.state.carrier_gateway = gateway
    app.state.template_renderer = renderer
    logger.info("app.carrier_initialised", provider=gateway.provider_name)

    # -- 5. Delivery queue --------------------------------------------------
    from sankofa.services.delivery_queue import DeliveryQueue, QueueClient

    queue_client = QueueClient.from_url(settings.effective_queue_redis_url)
    await queue_client.initialize()
    delivery_queue = DeliveryQueue.from_settings(
        settings, queue_client, gateway, renderer, notification_logger,
    )
    delivery_queue.start()
    app.state.queue_client = queue_client
    app.state.delivery_queue = delivery_queue
    logger.info("app.delivery_queue_initialised", degraded=queue_client.degraded)

    # -- 6. USSD menu engine ------------------------------------------------
    from sankofa.services.menu import MenuStateMachine

    menu = MenuStateMachine(
        session_store,
        directory,
        renderer,
        queue=delivery_queue,
        notifications=notification_logger,
        session_ttl_seconds=settings.ussd_session_ttl_seconds,
    )
    app.state.menu = menu

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await menu.wait_for_background()
    await delivery_queue.stop()
    await notification_logger.stop()
    await gateway.close()
    await queue_client.shutdown()
    await session_store.close()
    if supabase is not None:
        await supabase.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Sankofa Messaging API",
    description=(
        "USSD menus and SMS delivery for Sankofa plastic collectors on "
        "feature phones."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "Sankofa Messaging API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "endpoints": {
            "ussd_callback": "/api/v1/ussd/callback",
            "ussd_status": "/api/v1/ussd/status",
            "ussd_test": "/api/v1/ussd/test",
            "sms_send": "/api/v1/sms/send",
            "sms_bulk": "/api/v1/sms/bulk",
            "sms_schedule": "/api/v1/sms/schedule",
            "queue_stats": "/api/v1/sms/queue/stats",
            "templates": "/api/v1/sms/templates",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("sankofa.main:app", host=settings.api_host, port=settings.api_port)
