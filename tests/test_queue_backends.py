"""Tests for the queue storage backends.

Every test runs against :class:`InMemoryQueueBackend` and against
:class:`RedisQueueBackend` on fakeredis, so the Lua promote/claim scripts
and the in-memory mirror are held to the same state transitions.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import AsyncIterator
from unittest.mock import AsyncMock

import fakeredis
import fakeredis.aioredis
import pytest

from sankofa.models.delivery import DeliveryJob, SinglePayload
from sankofa.models.enums import JobStatus, NotificationStatus
from sankofa.services import delivery_queue
from sankofa.services.carrier import CarrierReceipt, TransientCarrierError
from sankofa.services.delivery_queue import (
    DeliveryQueue,
    InMemoryQueueBackend,
    QueueBackend,
    QueueClient,
    RedisQueueBackend,
)
from sankofa.services.notification_log import NotificationLogger
from sankofa.services.templates import TemplateRenderer

AMA = "+233244123456"
KOFI = "+233201112233"


def _fake_redis() -> fakeredis.aioredis.FakeRedis:
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


@pytest.fixture(params=["memory", "redis"])
async def backend(request: pytest.FixtureRequest) -> AsyncIterator[QueueBackend]:
    if request.param == "redis":
        backend: QueueBackend = RedisQueueBackend(client=_fake_redis())
    else:
        backend = InMemoryQueueBackend()
    yield backend
    await backend.close()


def _job(
    now: datetime,
    *,
    job_id: str | None = None,
    priority: int = 5,
    delay_seconds: float = 0,
    created_offset: float = 0,
    recipient: str = AMA,
) -> DeliveryJob:
    created = now + timedelta(seconds=created_offset)
    fields = {"id": job_id} if job_id else {}
    return DeliveryJob(
        payload=SinglePayload(recipient=recipient, message="x"),
        priority=priority,
        not_before=now + timedelta(seconds=delay_seconds),
        status=JobStatus.DELAYED if delay_seconds > 0 else JobStatus.WAITING,
        created_at=created,
        updated_at=created,
        **fields,
    )


# ---------------------------------------------------------------------------
# Backend state transitions
# ---------------------------------------------------------------------------


class TestQueueBackend:
    async def test_ping(self, backend: QueueBackend) -> None:
        assert await backend.ping() is True

    async def test_claim_orders_by_priority_then_age(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="old-low", priority=9, created_offset=-10))
        await backend.push(_job(now, job_id="new-high", priority=1))
        await backend.push(_job(now, job_id="old-high", priority=1, created_offset=-5))

        order = [(await backend.claim(now)).id for _ in range(3)]  # type: ignore[union-attr]
        assert order == ["old-high", "new-high", "old-low"]
        assert await backend.claim(now) is None

        counts = await backend.counts()
        assert counts["active"] == 3
        assert counts["waiting"] == 0

    async def test_claimed_job_is_marked_active(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="j1"))
        claimed = await backend.claim(now)
        assert claimed is not None and claimed.status == JobStatus.ACTIVE
        stored = await backend.load("j1")
        assert stored is not None and stored.status == JobStatus.ACTIVE

    async def test_delayed_job_promoted_when_due(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="later", delay_seconds=60))
        assert await backend.claim(now) is None, "a delayed job must not be claimed early"
        assert (await backend.counts())["delayed"] == 1

        claimed = await backend.claim(now + timedelta(seconds=61))
        assert claimed is not None and claimed.id == "later"
        counts = await backend.counts()
        assert counts["delayed"] == 0
        assert counts["active"] == 1

    async def test_promoted_job_keeps_priority(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="due-urgent", priority=1, delay_seconds=1))
        await backend.push(_job(now, job_id="waiting-normal", priority=5, created_offset=-60))

        claimed = await backend.claim(now + timedelta(seconds=2))
        assert claimed is not None and claimed.id == "due-urgent"

    async def test_retry_later_moves_active_to_delayed(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="j1"))
        job = await backend.claim(now)
        assert job is not None

        job.attempts = 1
        job.status = JobStatus.DELAYED
        job.not_before = now + timedelta(seconds=5)
        await backend.retry_later(job)

        counts = await backend.counts()
        assert counts["active"] == 0
        assert counts["delayed"] == 1
        assert await backend.claim(now + timedelta(seconds=4)) is None

        again = await backend.claim(now + timedelta(seconds=6))
        assert again is not None and again.attempts == 1

    async def test_finish_records_outcome(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="ok"))
        await backend.push(_job(now, job_id="bad"))
        for _ in range(2):
            job = await backend.claim(now)
            assert job is not None
            job.status = JobStatus.COMPLETED if job.id == "ok" else JobStatus.FAILED
            job.finished_at = now
            await backend.finish(job)

        counts = await backend.counts()
        assert counts["completed"] == 1
        assert counts["failed"] == 1
        assert counts["active"] == 0
        stored = await backend.load("bad")
        assert stored is not None and stored.status == JobStatus.FAILED

    async def test_finish_trims_to_retention(
        self, backend: QueueBackend, now: datetime, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(delivery_queue, "_FINISHED_RETENTION", 2)
        for i in range(3):
            job = _job(now, job_id=f"done-{i}")
            job.status = JobStatus.COMPLETED
            job.finished_at = now + timedelta(seconds=i)
            await backend.finish(job)

        assert (await backend.counts())["completed"] == 2

    async def test_remove_pending(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="waiting"))
        await backend.push(_job(now, job_id="delayed", delay_seconds=60))
        await backend.push(_job(now, job_id="running", created_offset=-60))
        claimed = await backend.claim(now)
        assert claimed is not None and claimed.id == "running"

        removed = await backend.remove_pending("waiting")
        assert removed is not None and removed.id == "waiting"
        removed = await backend.remove_pending("delayed")
        assert removed is not None and removed.id == "delayed"
        assert await backend.remove_pending("running") is None, "active jobs are not pending"
        assert await backend.remove_pending("unknown") is None

        counts = await backend.counts()
        assert counts["waiting"] == 0
        assert counts["delayed"] == 0
        assert counts["active"] == 1

    async def test_recover_active(self, backend: QueueBackend, now: datetime) -> None:
        await backend.push(_job(now, job_id="stalled"))
        assert await backend.claim(now) is not None

        assert await backend.recover_active() == 1
        counts = await backend.counts()
        assert counts["active"] == 0
        assert counts["waiting"] == 1
        stored = await backend.load("stalled")
        assert stored is not None and stored.status == JobStatus.WAITING

    async def test_push_replaces_finished_job(self, backend: QueueBackend, now: datetime) -> None:
        job = _job(now, job_id="scheduled_x")
        job.status = JobStatus.COMPLETED
        job.finished_at = now
        await backend.finish(job)

        await backend.push(_job(now, job_id="scheduled_x", delay_seconds=30))
        counts = await backend.counts()
        assert counts["completed"] == 0
        assert counts["delayed"] == 1

    async def test_load_missing(self, backend: QueueBackend) -> None:
        assert await backend.load("nope") is None


class TestRedisQueueBackend:
    async def test_finished_documents_expire(self, now: datetime) -> None:
        client = _fake_redis()
        backend = RedisQueueBackend(client=client, prefix="t:")
        await backend.push(_job(now, job_id="pending"))
        done = _job(now, job_id="done")
        done.status = JobStatus.COMPLETED
        done.finished_at = now
        await backend.finish(done)

        assert await client.ttl("t:job:pending") == -1, "pending jobs must not expire"
        ttl = await client.ttl("t:job:done")
        assert 0 < ttl <= 7 * 24 * 3600

    async def test_corrupt_document_skipped_on_claim(self, now: datetime) -> None:
        client = _fake_redis()
        backend = RedisQueueBackend(client=client, prefix="t:")
        await backend.push(_job(now, job_id="broken"))
        await client.set("t:job:broken", b"{not json")

        assert await backend.claim(now) is None
        assert (await backend.counts())["active"] == 0


# ---------------------------------------------------------------------------
# DeliveryQueue over each backend
# ---------------------------------------------------------------------------


def _queue(backend: QueueBackend, gateway: AsyncMock) -> DeliveryQueue:
    return DeliveryQueue(QueueClient(backend), gateway, TemplateRenderer(), NotificationLogger())


class TestDeliveryQueueOnBackends:
    async def test_retry_then_success(self, backend: QueueBackend, now: datetime) -> None:
        gateway = AsyncMock()
        gateway.send.side_effect = [
            TransientCarrierError("503"),
            CarrierReceipt(external_id="m1", status=NotificationStatus.SENT),
        ]
        queue = _queue(backend, gateway)
        job_id = await queue.enqueue_single(AMA, message="x")

        first = await queue.drain(now=now + timedelta(seconds=1))
        assert [j.status for j in first] == [JobStatus.DELAYED]
        assert await queue.drain(now=now + timedelta(seconds=3)) == [], "backoff has not elapsed"

        second = await queue.drain(now=now + timedelta(seconds=7))
        assert [j.status for j in second] == [JobStatus.COMPLETED]
        job = await queue.get_job(job_id)
        assert job is not None and job.attempts == 2
        assert (await queue.stats()).completed == 1

    async def test_cancel_active_job_returns_false(self, backend: QueueBackend, now: datetime) -> None:
        queue = _queue(backend, AsyncMock())
        job_id = await queue.enqueue_single(AMA, message="x")
        claimed = await backend.claim(now + timedelta(seconds=1))
        assert claimed is not None and claimed.id == job_id

        assert await queue.cancel(job_id) is False, "a job already running cannot be cancelled"
        job = await queue.get_job(job_id)
        assert job is not None and job.status == JobStatus.ACTIVE

    async def test_cancel_scheduled_job(self, backend: QueueBackend) -> None:
        queue = _queue(backend, AsyncMock())
        send_at = datetime.now(UTC) + timedelta(hours=1)
        job_id = await queue.schedule(KOFI, send_at=send_at, message="reminder")

        assert (await queue.stats()).delayed == 1
        assert await queue.cancel(job_id) is True
        job = await queue.get_job(job_id)
        assert job is not None and job.status == JobStatus.CANCELLED
        assert (await queue.stats()).delayed == 0

    async def test_bulk_chunks_all_delivered(self, backend: QueueBackend, now: datetime) -> None:
        gateway = AsyncMock()
        gateway.send.return_value = CarrierReceipt(external_id="m", status=NotificationStatus.SENT)
        queue = _queue(backend, gateway)
        phones = [f"+233244{i:06d}" for i in range(7)]

        job_ids = await queue.enqueue_bulk(phones, message="hi {{name}}", chunk_size=3)
        assert len(job_ids) == 3

        processed = await queue.drain(now=now + timedelta(seconds=1))
        assert sorted(j.id for j in processed) == sorted(job_ids)
        assert gateway.send.await_count == 7
        assert (await queue.stats()).completed == 3
