"""Delivery job and notification audit models.

A :class:`DeliveryJob` carries one of three closed payload shapes,
selected by the ``kind`` discriminator:

* ``single``      -- one recipient, sent as soon as a worker is free.
* ``bulk_chunk``  -- a consecutive slice of a bulk campaign.
* ``scheduled``   -- one recipient, held until ``send_at``.

The queue owns the job lifecycle; callers only enqueue and cancel.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from sankofa.models.enums import (
    JobKind,
    JobStatus,
    NotificationStatus,
    NotificationType,
    RecipientOutcome,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class Recipient(BaseModel):
    """A bulk campaign recipient; ``name`` personalises the template."""

    phone: str
    name: str = ""


class SinglePayload(BaseModel):
    kind: Literal["single"] = "single"
    recipient: str
    template: str | None = None
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class BulkChunkPayload(BaseModel):
    kind: Literal["bulk_chunk"] = "bulk_chunk"
    recipients: list[Recipient]
    template: str | None = None
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    chunk_index: int = 0
    chunk_count: int = 1
    campaign_id: str = ""


class ScheduledPayload(BaseModel):
    kind: Literal["scheduled"] = "scheduled"
    recipient: str
    template: str | None = None
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    send_at: datetime


JobPayload = Annotated[
    SinglePayload | BulkChunkPayload | ScheduledPayload,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


class RecipientResult(BaseModel):
    """Outcome of delivery to one recipient inside a job."""

    phone: str
    outcome: RecipientOutcome = RecipientOutcome.PENDING
    external_id: str | None = None
    error: str | None = None
    attempts: int = 0


class DeliveryJob(BaseModel):
    """One unit of queued SMS work."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    payload: JobPayload
    priority: int = 5
    not_before: datetime = Field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = 3
    status: JobStatus = JobStatus.WAITING
    last_error: str | None = None
    results: list[RecipientResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def kind(self) -> JobKind:
        return JobKind(self.payload.kind)

    @property
    def recipients(self) -> list[str]:
        if isinstance(self.payload, BulkChunkPayload):
            return [r.phone for r in self.payload.recipients]
        return [self.payload.recipient]

    @property
    def template(self) -> str | None:
        return self.payload.template

    @property
    def data(self) -> dict[str, Any]:
        return self.payload.data

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def result_for(self, phone: str) -> RecipientResult:
        for result in self.results:
            if result.phone == phone:
                return result
        result = RecipientResult(phone=phone)
        self.results.append(result)
        return result


class QueueStats(BaseModel):
    """Job counts by lifecycle state."""

    available: bool = True
    degraded: bool = False
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class NotificationRecord(BaseModel):
    """Append-only audit entry for one delivery attempt or state change."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: NotificationType = NotificationType.SMS
    recipient: str
    message: str
    status: NotificationStatus
    external_id: str | None = None
    error: str | None = None
    job_id: str | None = None
    template: str | None = None
    attempt: int | None = None
    scheduled_at: datetime | None = None
    session_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

