"""SMS delivery endpoints for internal callers.

Thin HTTP layer over :class:`~sankofa.services.delivery_queue.DeliveryQueue`.
Validation failures (bad number, empty message, past send time) map to
400; a scheduled-id collision maps to 409.  Carrier status lookups map a
provider without a lookup API to 501 and provider failures to 502.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, model_validator

from sankofa.models.delivery import DeliveryJob, QueueStats, Recipient
from sankofa.services.carrier import CarrierError, CarrierGateway, CarrierMessageStatus, UnsupportedCarrierOperation
from sankofa.services.delivery_queue import DeliveryQueue, DuplicateJobError
from sankofa.services.templates import TemplateRenderer

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class _MessageContent(BaseModel):
    template: str | None = Field(default=None, max_length=100)
    message: str | None = Field(default=None, max_length=1600)
    data: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None

    @model_validator(mode="after")
    def _template_or_message(self) -> _MessageContent:
        if not self.template and not (self.message and self.message.strip()):
            raise ValueError("Either a non-empty message or a template is required")
        return self


class SendSMSRequest(_MessageContent):
    to: str = Field(..., min_length=1, max_length=32)


class BulkSMSRequest(_MessageContent):
    recipients: list[Recipient] = Field(..., min_length=1)
    chunk_size: int | None = Field(default=None, ge=1, le=1000)
    delay_seconds: float = Field(default=0, ge=0)


class ScheduleSMSRequest(_MessageContent):
    to: str = Field(..., min_length=1, max_length=32)
    send_at: datetime


class JobAccepted(BaseModel):
    success: bool = True
    job_id: str


class BulkAccepted(BaseModel):
    success: bool = True
    total_recipients: int
    jobs_created: int
    job_ids: list[str]


class ScheduleAccepted(BaseModel):
    success: bool = True
    job_id: str
    send_at: datetime


class CancelResult(BaseModel):
    success: bool
    job_id: str


class QueueStatsResponse(BaseModel):
    available: bool
    degraded: bool
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


class TemplateListResponse(BaseModel):
    templates: list[str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_queue(request: Request) -> DeliveryQueue:
    queue: DeliveryQueue | None = getattr(request.app.state, "delivery_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Delivery queue is not initialised")
    return queue


def _stats_response(stats: QueueStats) -> QueueStatsResponse:
    return QueueStatsResponse(**stats.model_dump(), total=stats.total)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/send", response_model=JobAccepted, status_code=202)
async def send_sms(request: Request, body: SendSMSRequest) -> JobAccepted:
    queue = _get_queue(request)
    try:
        job_id = await queue.enqueue_single(
            body.to,
            template=body.template,
            message=body.message,
            data=body.data,
            priority=body.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JobAccepted(job_id=job_id)


@router.post("/bulk", response_model=BulkAccepted, status_code=202)
async def send_bulk_sms(request: Request, body: BulkSMSRequest) -> BulkAccepted:
    queue = _get_queue(request)
    try:
        job_ids = await queue.enqueue_bulk(
            body.recipients,
            template=body.template,
            message=body.message,
            data=body.data,
            chunk_size=body.chunk_size,
            priority=body.priority,
            delay_seconds=body.delay_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BulkAccepted(
        total_recipients=len(body.recipients),
        jobs_created=len(job_ids),
        job_ids=job_ids,
    )


@router.post("/schedule", response_model=ScheduleAccepted, status_code=202)
async def schedule_sms(request: Request, body: ScheduleSMSRequest) -> ScheduleAccepted:
    queue = _get_queue(request)
    try:
        job_id = await queue.schedule(
            body.to,
            send_at=body.send_at,
            template=body.template,
            message=body.message,
            data=body.data,
            priority=body.priority,
        )
    except DuplicateJobError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ScheduleAccepted(job_id=job_id, send_at=body.send_at)


@router.delete("/scheduled/{job_id}", response_model=CancelResult)
async def cancel_scheduled_sms(request: Request, job_id: str) -> CancelResult:
    """Cancel a job that has not started; 404 if it cannot be cancelled."""
    queue = _get_queue(request)
    cancelled = await queue.cancel(job_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"No waiting or delayed job {job_id}")
    return CancelResult(success=True, job_id=job_id)


@router.get("/jobs/{job_id}", response_model=DeliveryJob)
async def get_job(request: Request, job_id: str) -> DeliveryJob:
    queue = _get_queue(request)
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.get("/status/{message_id}", response_model=CarrierMessageStatus)
async def message_status(request: Request, message_id: str) -> CarrierMessageStatus:
    """Provider-side delivery state of a sent message, by its external id."""
    gateway: CarrierGateway | None = getattr(request.app.state, "carrier_gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Carrier gateway is not initialised")
    try:
        status = await gateway.get_status(message_id)
    except UnsupportedCarrierOperation as exc:
        raise HTTPException(status_code=501, detail=str(exc)) from exc
    except CarrierError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if status is None:
        raise HTTPException(status_code=404, detail=f"Message {message_id} not found at {gateway.provider_name}")
    return status


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(request: Request) -> QueueStatsResponse:
    queue = _get_queue(request)
    return _stats_response(await queue.stats())


@router.get("/templates", response_model=TemplateListResponse)
async def list_templates(request: Request) -> TemplateListResponse:
    renderer: TemplateRenderer = getattr(request.app.state, "template_renderer", None) or TemplateRenderer()
    return TemplateListResponse(templates=renderer.list_templates())
