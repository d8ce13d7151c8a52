"""USSD gateway endpoints for Sankofa API v1.

The gateway POSTs ``sessionId``, ``serviceCode``, ``phoneNumber`` and
``text`` (form-encoded or JSON) and expects a plain-text reply starting
with ``CON`` (menu continues) or ``END`` (dialog over).  ``text`` is the
cumulative ``*``-joined input of the whole dialog.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sankofa.services.menu import MenuStateMachine
from sankofa.services.phone import mask_phone, normalize_phone
from sankofa.services.session_store import SessionStore, SessionStoreError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/ussd", tags=["ussd"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class UssdCallbackRequest(BaseModel):
    """Gateway callback body (Africa's Talking field names)."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")
    service_code: str = Field(default="", alias="serviceCode")
    phone_number: str = Field(..., min_length=1, alias="phoneNumber")
    text: str = ""


class UssdTestRequest(BaseModel):
    """Drive one step of a simulated session."""

    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., min_length=1, alias="phoneNumber")
    text: str = Field(default="", alias="input")
    session_id: str | None = Field(default=None, alias="sessionId")


class UssdTestResponse(BaseModel):
    session_id: str
    input: str
    response: str
    continue_session: bool
    formatted_response: str


class UssdStatusResponse(BaseModel):
    service: str
    active_sessions: int
    session_ttl_seconds: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_menu(request: Request) -> MenuStateMachine:
    menu: MenuStateMachine | None = getattr(request.app.state, "menu", None)
    if menu is None:
        raise HTTPException(status_code=503, detail="USSD service is not initialised")
    return menu


async def _read_body(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        payload = await request.json()
        return payload if isinstance(payload, dict) else {}
    form = await request.form()
    return {key: str(value) for key, value in form.items()}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/callback", response_class=PlainTextResponse)
async def ussd_callback(request: Request) -> PlainTextResponse:
    """Gateway callback; always answers with ``CON``/``END`` text."""
    try:
        body = UssdCallbackRequest.model_validate(await _read_body(request))
    except (ValidationError, ValueError):
        logger.warning("ussd.callback_invalid_request")
        return PlainTextResponse("END Session ID and phone number are required", status_code=400)

    menu = _get_menu(request)
    logger.info(
        "ussd.callback_received",
        session_id=body.session_id,
        service_code=body.service_code,
        phone=mask_phone(normalize_phone(body.phone_number)),
        text=body.text,
    )

    response = await menu.handle(body.session_id, body.phone_number, body.text)

    logger.info(
        "ussd.callback_responded",
        session_id=body.session_id,
        continue_session=response.continue_session,
    )
    return PlainTextResponse(response.to_gateway())


@router.get("/status", response_model=UssdStatusResponse)
async def ussd_status(request: Request) -> UssdStatusResponse:
    """Number of live sessions in the session store."""
    store: SessionStore | None = getattr(request.app.state, "session_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Session store is not initialised")

    try:
        active = await store.count_active()
    except SessionStoreError as exc:
        logger.error("ussd.status_failed", exc_info=True)
        raise HTTPException(status_code=503, detail="Session store unavailable") from exc

    ttl = getattr(request.app.state, "session_ttl_seconds", 300)
    return UssdStatusResponse(service="active", active_sessions=active, session_ttl_seconds=ttl)


@router.post("/test", response_model=UssdTestResponse)
async def ussd_test(request: Request, body: UssdTestRequest) -> UssdTestResponse:
    """Run one callback step without a gateway.

    Omit ``sessionId`` to start a fresh session; pass the returned id back
    to continue it.
    """
    menu = _get_menu(request)
    session_id = body.session_id or f"test_{uuid4().hex[:12]}"

    response = await menu.handle(session_id, body.phone_number, body.text)

    return UssdTestResponse(
        session_id=session_id,
        input=body.text,
        response=response.text,
        continue_session=response.continue_session,
        formatted_response=response.to_gateway(),
    )
