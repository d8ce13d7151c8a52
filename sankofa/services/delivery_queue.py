"""Durable SMS delivery queue with retry, chunking and scheduling.

Structure
---------
* :class:`QueueBackend` -- storage for job documents and the waiting /
  delayed / active / completed / failed sets.  :class:`RedisQueueBackend`
  is the durable implementation; :class:`InMemoryQueueBackend` serves
  tests and single-process development.
* :class:`QueueClient` -- owns the backend and its ``initialize`` /
  ``shutdown`` lifecycle, and tracks whether the queue is *degraded*
  (backend unreachable).
* :class:`DeliveryQueue` -- the public API (``enqueue_single``,
  ``enqueue_bulk``, ``schedule``, ``cancel``, ``stats``, ``get_job``) and
  the worker pool that executes jobs against the carrier gateway.

Delivery semantics
------------------
Jobs are processed **at least once**.  A worker that crashes after the
carrier accepted a message but before the job was recorded leaves the job
in the active set; :meth:`QueueClient.initialize` puts such jobs back in
the waiting set on the next start, so the message may be sent twice.

A transient failure delays the job by ``backoff * 2 ** (attempts - 1)``
seconds (5s, 10s, 20s with the defaults) instead of sleeping a worker.
After ``max_attempts`` the job fails permanently.  Bulk chunk jobs retry
only the recipients whose last attempt failed transiently.

When the backend is unreachable the queue degrades to sending in-process:
one attempt, no chunk delays, and scheduled sends kept on an in-process
timer that does not survive a restart.  Jobs already in the backend are left
there; workers, cancellation and job lookups keep using the backend and
the degraded flag clears as soon as it answers a ping again.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable
from uuid import uuid4

import orjson
import structlog
from pydantic import ValidationError

from sankofa.models.delivery import (
    BulkChunkPayload,
    DeliveryJob,
    NotificationRecord,
    QueueStats,
    Recipient,
    ScheduledPayload,
    SinglePayload,
)
from sankofa.models.enums import (
    JobKind,
    JobStatus,
    NotificationStatus,
    RecipientOutcome,
)
from sankofa.services.carrier import (
    CarrierGateway,
    CarrierReceipt,
    PermanentCarrierError,
    TransientCarrierError,
)
from sankofa.services.notification_log import NotificationLogger
from sankofa.services.phone import require_valid_phone
from sankofa.services.templates import TemplateRenderer

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE: Final[int] = 50
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_SECONDS: Final[float] = 5.0
DEFAULT_PRIORITY: Final[int] = 5

_PRIORITY_WEIGHT: Final[int] = 10**13
_FINISHED_RETENTION: Final[int] = 1000
_FINISHED_TTL_SECONDS: Final[int] = 7 * 24 * 3600
_PROMOTE_BATCH: Final[int] = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _waiting_score(job: DeliveryJob) -> int:
    """Lower priority first, then FIFO by creation time."""
    return job.priority * _PRIORITY_WEIGHT + _epoch_ms(job.created_at)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EmptyMessageError(ValueError):
    """Neither a non-empty message nor a template id was supplied."""


class ScheduleInPastError(ValueError):
    """The requested send time is earlier than now."""


class DuplicateJobError(ValueError):
    """A scheduled job with the same id is still pending or running."""


class QueueUnavailableError(RuntimeError):
    """The queue backend failed an operation."""


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class QueueBackend(Protocol):
    """Job storage with atomic claim semantics."""

    async def ping(self) -> bool: ...

    async def load(self, job_id: str) -> DeliveryJob | None: ...

    async def save(self, job: DeliveryJob) -> None: ...

    async def push(self, job: DeliveryJob) -> None: ...

    async def claim(self, now: datetime) -> DeliveryJob | None: ...

    async def retry_later(self, job: DeliveryJob) -> None: ...

    async def finish(self, job: DeliveryJob) -> None: ...

    async def remove_pending(self, job_id: str) -> DeliveryJob | None: ...

    async def recover_active(self) -> int: ...

    async def counts(self) -> dict[str, int]: ...

    async def close(self) -> None: ...


def _dump_job(job: DeliveryJob) -> bytes:
    return orjson.dumps(job.model_dump(mode="json"))


def _load_job(raw: bytes | None) -> DeliveryJob | None:
    if raw is None:
        return None
    try:
        return DeliveryJob.model_validate(orjson.loads(raw))
    except (orjson.JSONDecodeError, ValidationError):
        logger.error("delivery.corrupt_job_document", exc_info=True)
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

# Move due delayed jobs into the waiting set, keeping their stored score.
_PROMOTE_LUA: Final[str] = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[1], id)
  local score = redis.call('HGET', KEYS[3], id) or '0'
  redis.call('ZADD', KEYS[2], score, id)
end
return #due
"""

# Pop the best waiting job and mark it active in one step.
_CLAIM_LUA: Final[str] = """
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
redis.call('SADD', KEYS[2], popped[1])
return popped[1]
"""


class RedisQueueBackend:
    """Redis layout (all keys under ``prefix``):

    ``job:<id>``   job JSON document
    ``waiting``    zset, score = priority weight + creation ms
    ``delayed``    zset, score = ``not_before`` ms
    ``score``      hash, id -> waiting score (used on promotion)
    ``active``     set of claimed ids
    ``completed``  zset, score = finish ms (trimmed)
    ``failed``     zset, score = finish ms (trimmed)
    """

    __slots__ = ("_claim", "_pool", "_prefix", "_promote", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "sankofa:sms:",
        max_connections: int = 20,
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is not None:
            self._pool = None
            self._redis = client
        else:
            import redis.asyncio as aioredis

            self._pool = aioredis.ConnectionPool.from_url(
                url,
                max_connections=max_connections,
                decode_responses=False,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)
        self._prefix = prefix
        self._promote = self._redis.register_script(_PROMOTE_LUA)
        self._claim = self._redis.register_script(_CLAIM_LUA)

    def _k(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def _job_key(self, job_id: str) -> str:
        return self._k(f"job:{job_id}")

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def load(self, job_id: str) -> DeliveryJob | None:
        return _load_job(await self._redis.get(self._job_key(job_id)))

    async def save(self, job: DeliveryJob) -> None:
        if job.is_finished:
            await self._redis.set(self._job_key(job.id), _dump_job(job), ex=_FINISHED_TTL_SECONDS)
        else:
            await self._redis.set(self._job_key(job.id), _dump_job(job))

    async def push(self, job: DeliveryJob) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), _dump_job(job))
            pipe.hset(self._k("score"), job.id, _waiting_score(job))
            pipe.zrem(self._k("completed"), job.id)
            pipe.zrem(self._k("failed"), job.id)
            if job.status == JobStatus.DELAYED:
                pipe.zadd(self._k("delayed"), {job.id: _epoch_ms(job.not_before)})
            else:
                pipe.zadd(self._k("waiting"), {job.id: _waiting_score(job)})
            await pipe.execute()

    async def claim(self, now: datetime) -> DeliveryJob | None:
        await self._promote(
            keys=[self._k("delayed"), self._k("waiting"), self._k("score")],
            args=[_epoch_ms(now), _PROMOTE_BATCH],
        )
        job_id = await self._claim(keys=[self._k("waiting"), self._k("active")])
        if not job_id:
            return None
        job_id = job_id.decode() if isinstance(job_id, bytes) else str(job_id)

        job = await self.load(job_id)
        if job is None:
            await self._redis.srem(self._k("active"), job_id)
            return None
        job.status = JobStatus.ACTIVE
        job.updated_at = now
        await self.save(job)
        return job

    async def retry_later(self, job: DeliveryJob) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), _dump_job(job))
            pipe.srem(self._k("active"), job.id)
            pipe.zadd(self._k("delayed"), {job.id: _epoch_ms(job.not_before)})
            await pipe.execute()

    async def finish(self, job: DeliveryJob) -> None:
        target = self._k("completed" if job.status == JobStatus.COMPLETED else "failed")
        finished_ms = _epoch_ms(job.finished_at or _utcnow())
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), _dump_job(job), ex=_FINISHED_TTL_SECONDS)
            pipe.srem(self._k("active"), job.id)
            pipe.hdel(self._k("score"), job.id)
            pipe.zadd(target, {job.id: finished_ms})
            pipe.zremrangebyrank(target, 0, -(_FINISHED_RETENTION + 1))
            await pipe.execute()

    async def remove_pending(self, job_id: str) -> DeliveryJob | None:
        removed = await self._redis.zrem(self._k("waiting"), job_id)
        if not removed:
            removed = await self._redis.zrem(self._k("delayed"), job_id)
        if not removed:
            return None
        await self._redis.hdel(self._k("score"), job_id)
        return await self.load(job_id)

    async def recover_active(self) -> int:
        stalled = await self._redis.smembers(self._k("active"))
        recovered = 0
        for raw_id in stalled:
            job_id = raw_id.decode() if isinstance(raw_id, bytes) else str(raw_id)
            job = await self.load(job_id)
            if job is None:
                await self._redis.srem(self._k("active"), job_id)
                continue
            job.status = JobStatus.WAITING
            job.updated_at = _utcnow()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), _dump_job(job))
                pipe.srem(self._k("active"), job.id)
                pipe.zadd(self._k("waiting"), {job.id: _waiting_score(job)})
                await pipe.execute()
            recovered += 1
        return recovered

    async def counts(self) -> dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._k("waiting"))
            pipe.scard(self._k("active"))
            pipe.zcard(self._k("completed"))
            pipe.zcard(self._k("failed"))
            pipe.zcard(self._k("delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()
        return {
            "waiting": int(waiting),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
            "delayed": int(delayed),
        }

    async def close(self) -> None:
        await self._redis.aclose()
        if self._pool is not None:
            await self._pool.aclose()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryQueueBackend:
    """Single-process backend with the same state transitions as Redis.

    Job documents are stored as serialised bytes so callers never share
    mutable job objects with the backend.
    """

    __slots__ = ("_active", "_completed", "_delayed", "_docs", "_failed", "_lock", "_waiting")

    def __init__(self) -> None:
        self._docs: dict[str, bytes] = {}
        self._waiting: dict[str, int] = {}
        self._delayed: dict[str, datetime] = {}
        self._active: set[str] = set()
        self._completed: dict[str, datetime] = {}
        self._failed: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> bool:
        return True

    async def load(self, job_id: str) -> DeliveryJob | None:
        return _load_job(self._docs.get(job_id))

    async def save(self, job: DeliveryJob) -> None:
        self._docs[job.id] = _dump_job(job)

    async def push(self, job: DeliveryJob) -> None:
        async with self._lock:
            self._docs[job.id] = _dump_job(job)
            self._completed.pop(job.id, None)
            self._failed.pop(job.id, None)
            if job.status == JobStatus.DELAYED:
                self._delayed[job.id] = job.not_before
            else:
                self._waiting[job.id] = _waiting_score(job)

    async def claim(self, now: datetime) -> DeliveryJob | None:
        async with self._lock:
            for job_id in [i for i, due in self._delayed.items() if due <= now]:
                del self._delayed[job_id]
                job = _load_job(self._docs.get(job_id))
                if job is not None:
                    self._waiting[job_id] = _waiting_score(job)

            if not self._waiting:
                return None
            job_id = min(self._waiting, key=self._waiting.__getitem__)
            del self._waiting[job_id]
            self._active.add(job_id)

            job = _load_job(self._docs.get(job_id))
            if job is None:
                self._active.discard(job_id)
                return None
            job.status = JobStatus.ACTIVE
            job.updated_at = now
            self._docs[job_id] = _dump_job(job)
            return job

    async def retry_later(self, job: DeliveryJob) -> None:
        async with self._lock:
            self._docs[job.id] = _dump_job(job)
            self._active.discard(job.id)
            self._delayed[job.id] = job.not_before

    async def finish(self, job: DeliveryJob) -> None:
        async with self._lock:
            self._docs[job.id] = _dump_job(job)
            self._active.discard(job.id)
            target = self._completed if job.status == JobStatus.COMPLETED else self._failed
            target[job.id] = job.finished_at or _utcnow()
            if len(target) > _FINISHED_RETENTION:
                oldest = min(target, key=target.__getitem__)
                del target[oldest]

    async def remove_pending(self, job_id: str) -> DeliveryJob | None:
        async with self._lock:
            if self._waiting.pop(job_id, None) is None and self._delayed.pop(job_id, None) is None:
                return None
            return _load_job(self._docs.get(job_id))

    async def recover_active(self) -> int:
        async with self._lock:
            recovered = 0
            for job_id in list(self._active):
                self._active.discard(job_id)
                job = _load_job(self._docs.get(job_id))
                if job is None:
                    continue
                job.status = JobStatus.WAITING
                job.updated_at = _utcnow()
                self._docs[job_id] = _dump_job(job)
                self._waiting[job_id] = _waiting_score(job)
                recovered += 1
            return recovered

    async def counts(self) -> dict[str, int]:
        return {
            "waiting": len(self._waiting),
            "active": len(self._active),
            "completed": len(self._completed),
            "failed": len(self._failed),
            "delayed": len(self._delayed),
        }

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# QueueClient
# ---------------------------------------------------------------------------


class QueueClient:
    """Owns the queue backend connection and its availability state.

    Parameters
    ----------
    backend:
        Durable backend.  *None* starts the queue degraded.
    """

    __slots__ = ("_backend", "_degraded", "_initialized")

    def __init__(self, backend: QueueBackend | None) -> None:
        self._backend = backend
        self._degraded = backend is None
        self._initialized = False

    @classmethod
    def from_url(cls, redis_url: str | None) -> QueueClient:
        if not redis_url:
            return cls(None)
        try:
            return cls(RedisQueueBackend(url=redis_url))
        except Exception:
            logger.warning("delivery.redis_init_failed", redis_url=redis_url)
            return cls(None)

    @property
    def backend(self) -> QueueBackend:
        if self._backend is None:
            raise QueueUnavailableError("No queue backend configured")
        return self._backend

    @property
    def has_backend(self) -> bool:
        return self._backend is not None

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Check the backend and requeue jobs left active by a crashed worker."""
        self._initialized = True
        if self._backend is None:
            logger.warning("delivery.no_backend_degraded_mode")
            self._degraded = True
            return

        if not await self._backend.ping():
            logger.warning("delivery.backend_unavailable_degraded_mode")
            self._degraded = True
            return

        self._degraded = False
        recovered = await self._backend.recover_active()
        if recovered:
            logger.warning("delivery.recovered_stalled_jobs", count=recovered)
        logger.info("delivery.backend_connected", backend=type(self._backend).__name__)

    def mark_degraded(self, reason: str) -> None:
        if not self._degraded:
            logger.warning("delivery.degraded_mode_enabled", reason=reason)
        self._degraded = True

    async def recover(self) -> bool:
        """Clear the degraded flag if the backend answers a ping again.

        Returns *True* when the durable backend is usable.
        """
        if not self._degraded:
            return True
        if self._backend is None or not await self._backend.ping():
            return False
        self._degraded = False
        logger.info("delivery.backend_recovered", backend=type(self._backend).__name__)
        return True

    async def ping(self) -> bool:
        if self._backend is None:
            return False
        return await self._backend.ping()

    async def shutdown(self) -> None:
        if self._backend is not None:
            with contextlib.suppress(Exception):
                await self._backend.close()
        self._initialized = False
        logger.info("delivery.backend_closed")


# ---------------------------------------------------------------------------
# DeliveryQueue
# ---------------------------------------------------------------------------


RecipientLike = str | Recipient | Mapping[str, Any]


class DeliveryQueue:
    """Enqueue, schedule and execute SMS delivery jobs.

    Parameters
    ----------
    client:
        Backend owner; see :class:`QueueClient`.
    gateway:
        Carrier gateway used by workers.
    renderer:
        Renders template ids and custom bodies.
    notifications:
        Audit trail; one record per attempt and per scheduling.
    chunk_size, max_attempts, backoff_seconds, default_priority:
        Queue defaults (overridable per bulk call where noted).
    send_timeout:
        Upper bound in seconds on a single carrier call.
    bulk_concurrency:
        Concurrent carrier calls inside one bulk chunk.
    worker_concurrency:
        Number of worker tasks started by :meth:`start`.
    poll_interval:
        Seconds an idle worker waits before checking for work again.
    """

    __slots__ = (
        "_backoff",
        "_bulk_concurrency",
        "_chunk_size",
        "_client",
        "_default_priority",
        "_gateway",
        "_local_jobs",
        "_local_tasks",
        "_max_attempts",
        "_notifications",
        "_poll_interval",
        "_renderer",
        "_running",
        "_send_timeout",
        "_timers",
        "_worker_concurrency",
        "_workers",
    )

    def __init__(
        self,
        client: QueueClient,
        gateway: CarrierGateway,
        renderer: TemplateRenderer,
        notifications: NotificationLogger,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        default_priority: int = DEFAULT_PRIORITY,
        send_timeout: float = 10.0,
        bulk_concurrency: int = 10,
        worker_concurrency: int = 2,
        poll_interval: float = 1.0,
    ) -> None:
        self._client = client
        self._gateway = gateway
        self._renderer = renderer
        self._notifications = notifications
        self._chunk_size = chunk_size
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._default_priority = default_priority
        self._send_timeout = send_timeout
        self._bulk_concurrency = bulk_concurrency
        self._worker_concurrency = worker_concurrency
        self._poll_interval = poll_interval
        self._workers: list[asyncio.Task] = []  # type: ignore[type-arg]
        self._running = False
        # Degraded-mode bookkeeping: jobs sent in-process and pending timers.
        self._local_jobs: dict[str, DeliveryJob] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._local_tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        client: QueueClient,
        gateway: CarrierGateway,
        renderer: TemplateRenderer,
        notifications: NotificationLogger,
    ) -> DeliveryQueue:
        return cls(
            client,
            gateway,
            renderer,
            notifications,
            chunk_size=settings.sms_chunk_size,
            max_attempts=settings.sms_max_attempts,
            backoff_seconds=settings.sms_backoff_seconds,
            default_priority=settings.sms_default_priority,
            send_timeout=settings.sms_timeout_seconds,
            bulk_concurrency=settings.sms_bulk_concurrency,
            worker_concurrency=settings.queue_worker_concurrency,
            poll_interval=settings.queue_poll_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def client(self) -> QueueClient:
        return self._client

    @property
    def is_running(self) -> bool:
        return self._running

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the next try after *attempts* failed attempts."""
        return self._backoff * (2 ** max(0, attempts - 1))

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_content(template: str | None, message: str | None) -> None:
        if not template and not (message and message.strip()):
            raise EmptyMessageError("Either a non-empty message or a template is required")

    @staticmethod
    def _coerce_recipient(item: RecipientLike) -> Recipient:
        if isinstance(item, Recipient):
            phone, name = item.phone, item.name
        elif isinstance(item, Mapping):
            phone, name = str(item.get("phone", "")), str(item.get("name") or "")
        else:
            phone, name = str(item), ""
        return Recipient(phone=require_valid_phone(phone), name=name)

    # ------------------------------------------------------------------
    # Enqueue API
    # ------------------------------------------------------------------

    async def enqueue_single(
        self,
        recipient: str,
        *,
        template: str | None = None,
        message: str | None = None,
        data: Mapping[str, Any] | None = None,
        priority: int | None = None,
        delay_seconds: float = 0,
    ) -> str:
        """Queue one SMS; returns the job id.

        Raises
        ------
        InvalidPhoneNumberError
            If *recipient* is not a dialable Ghana number.
        EmptyMessageError
            If neither *message* nor *template* was given.
        """
        self._require_content(template, message)
        phone = require_valid_phone(recipient)

        job = self._new_job(
            SinglePayload(recipient=phone, template=template, message=message, data=dict(data or {})),
            priority=priority,
            delay_seconds=delay_seconds,
        )
        await self._submit(job)
        logger.info("delivery.single_enqueued", job_id=job.id, to=phone, template=template)
        return job.id

    async def enqueue_bulk(
        self,
        recipients: Sequence[RecipientLike],
        *,
        template: str | None = None,
        message: str | None = None,
        data: Mapping[str, Any] | None = None,
        chunk_size: int | None = None,
        priority: int | None = None,
        delay_seconds: float = 0,
    ) -> list[str]:
        """Split *recipients* into chunks and queue one job per chunk.

        Produces ``ceil(len(recipients) / chunk_size)`` jobs.  Every
        recipient is validated before anything is queued.
        """
        self._require_content(template, message)
        if not recipients:
            raise ValueError("At least one recipient is required")
        size = chunk_size or self._chunk_size
        if size < 1:
            raise ValueError("chunk_size must be at least 1")

        normalized = [self._coerce_recipient(r) for r in recipients]
        chunks = chunked(normalized, size)
        campaign_id = f"bulk_{uuid4().hex[:12]}"

        job_ids: list[str] = []
        for index, chunk in enumerate(chunks):
            job = self._new_job(
                BulkChunkPayload(
                    recipients=chunk,
                    template=template,
                    message=message,
                    data=dict(data or {}),
                    chunk_index=index,
                    chunk_count=len(chunks),
                    campaign_id=campaign_id,
                ),
                priority=priority,
                delay_seconds=delay_seconds,
            )
            await self._submit(job)
            job_ids.append(job.id)

        logger.info(
            "delivery.bulk_enqueued",
            campaign_id=campaign_id,
            total_recipients=len(normalized),
            chunks=len(chunks),
            job_ids=job_ids,
        )
        return job_ids

    async def schedule(
        self,
        recipient: str,
        *,
        send_at: datetime,
        template: str | None = None,
        message: str | None = None,
        data: Mapping[str, Any] | None = None,
        priority: int | None = None,
        now: datetime | None = None,
    ) -> str:
        """Queue one SMS to be sent no earlier than *send_at*.

        The job id is ``scheduled_<recipient>_<send_at epoch seconds>``.

        Raises
        ------
        ScheduleInPastError
            If *send_at* is earlier than now; nothing is queued.
        DuplicateJobError
            If a job with the same id is still waiting, delayed or active.
        """
        self._require_content(template, message)
        phone = require_valid_phone(recipient)

        now = now or _utcnow()
        if send_at.tzinfo is None:
            send_at = send_at.replace(tzinfo=UTC)
        delay = (send_at - now).total_seconds()
        if delay < 0:
            raise ScheduleInPastError("Scheduled time must be in the future")

        job_id = f"scheduled_{phone}_{int(send_at.timestamp())}"
        existing = self._local_jobs.get(job_id)
        if existing is None and await self._backend_usable():
            try:
                existing = await self._client.backend.load(job_id)
            except Exception as exc:
                logger.warning("delivery.schedule_backend_failed", job_id=job_id, error=str(exc))
                self._client.mark_degraded(str(exc))
        if existing is not None and not existing.is_finished:
            raise DuplicateJobError(f"A scheduled SMS with id {job_id} is already pending")

        data = dict(data or {})
        job = self._new_job(
            ScheduledPayload(recipient=phone, template=template, message=message, data=data, send_at=send_at),
            priority=priority,
            delay_seconds=delay,
            now=now,
            job_id=job_id,
        )

        if not await self._push_durable(job):
            self._schedule_local(job, delay)

        self._notifications.record(
            NotificationRecord(
                recipient=phone,
                message=self._render_body(job, data),
                status=NotificationStatus.SCHEDULED,
                job_id=job_id,
                template=template,
                scheduled_at=send_at,
            )
        )
        logger.info("delivery.scheduled", job_id=job_id, to=phone, delay_seconds=round(delay))
        return job_id

    async def cancel(self, job_id: str) -> bool:
        """Cancel a waiting or delayed job.  Active or finished jobs are left alone."""
        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()
            job = self._local_jobs[job_id]
            self._mark_cancelled(job)
            logger.info("delivery.cancelled", job_id=job_id, local=True)
            return True

        if job_id in self._local_jobs or not self._client.has_backend:
            return False

        # Durable jobs stay cancellable while new sends run in-process.
        try:
            job = await self._client.backend.remove_pending(job_id)
            if job is None:
                logger.info("delivery.cancel_noop", job_id=job_id)
                return False
            self._mark_cancelled(job)
            await self._client.backend.save(job)
        except Exception as exc:
            logger.warning("delivery.cancel_backend_failed", job_id=job_id, error=str(exc))
            self._client.mark_degraded(str(exc))
            return False
        logger.info("delivery.cancelled", job_id=job_id)
        return True

    async def stats(self) -> QueueStats:
        if not await self._backend_usable():
            local = list(self._local_jobs.values())
            return QueueStats(
                available=False,
                degraded=True,
                delayed=sum(1 for j in local if j.status == JobStatus.DELAYED),
                active=sum(1 for j in local if j.status == JobStatus.ACTIVE),
                completed=sum(1 for j in local if j.status == JobStatus.COMPLETED),
                failed=sum(1 for j in local if j.status == JobStatus.FAILED),
            )
        counts = await self._client.backend.counts()
        return QueueStats(available=True, degraded=False, **counts)

    async def get_job(self, job_id: str) -> DeliveryJob | None:
        """Return the job with its per-recipient outcomes, or *None*."""
        local = self._local_jobs.get(job_id)
        if local is not None:
            return local
        if not self._client.has_backend:
            return None
        try:
            return await self._client.backend.load(job_id)
        except Exception as exc:
            logger.warning("delivery.get_job_backend_failed", job_id=job_id, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _new_job(
        self,
        payload: SinglePayload | BulkChunkPayload | ScheduledPayload,
        *,
        priority: int | None,
        delay_seconds: float,
        now: datetime | None = None,
        job_id: str | None = None,
    ) -> DeliveryJob:
        now = now or _utcnow()
        delayed = delay_seconds > 0
        fields: dict[str, Any] = {}
        if job_id is not None:
            fields["id"] = job_id
        return DeliveryJob(
            payload=payload,
            priority=self._default_priority if priority is None else priority,
            not_before=now + timedelta(seconds=max(0.0, delay_seconds)),
            max_attempts=self._max_attempts,
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            created_at=now,
            updated_at=now,
            **fields,
        )

    async def _backend_usable(self) -> bool:
        """True when the durable backend takes work; pings a degraded one again."""
        if not self._client.degraded:
            return True
        try:
            return await self._client.recover()
        except Exception:
            return False

    async def _push_durable(self, job: DeliveryJob) -> bool:
        if not await self._backend_usable():
            return False
        try:
            await self._client.backend.push(job)
        except Exception as exc:
            logger.warning("delivery.enqueue_backend_failed", job_id=job.id, error=str(exc))
            self._client.mark_degraded(str(exc))
            return False
        self._local_jobs.pop(job.id, None)
        return True

    async def _submit(self, job: DeliveryJob) -> None:
        if not await self._push_durable(job):
            await self._run_local(job)

    async def _run_local(self, job: DeliveryJob) -> None:
        """Degraded path: one in-process attempt, no delay."""
        job.max_attempts = 1
        job.not_before = _utcnow()
        self._remember_local(job)
        await self.process_job(job)

    def _schedule_local(self, job: DeliveryJob, delay: float) -> None:
        job.max_attempts = 1
        self._remember_local(job)
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._timers.pop(job.id, None)
            task = loop.create_task(self.process_job(job), name=f"sms-scheduled-{job.id}")
            self._local_tasks.add(task)
            task.add_done_callback(self._local_task_done)

        self._timers[job.id] = loop.call_later(delay, _fire)
        logger.warning("delivery.scheduled_in_process", job_id=job.id, delay_seconds=round(delay))

    def _local_task_done(self, task: asyncio.Task) -> None:  # type: ignore[type-arg]
        self._local_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("delivery.scheduled_in_process_failed", task=task.get_name(), exc_info=exc)

    def _remember_local(self, job: DeliveryJob) -> None:
        self._local_jobs[job.id] = job
        if len(self._local_jobs) <= _FINISHED_RETENTION:
            return
        for job_id, known in list(self._local_jobs.items()):
            if known.is_finished:
                del self._local_jobs[job_id]
            if len(self._local_jobs) <= _FINISHED_RETENTION:
                break

    @staticmethod
    def _mark_cancelled(job: DeliveryJob) -> None:
        now = _utcnow()
        job.status = JobStatus.CANCELLED
        job.updated_at = now
        job.finished_at = now

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _render_body(self, job: DeliveryJob, data: Mapping[str, Any]) -> str:
        if job.template:
            return self._renderer.render(job.template, data)
        return self._renderer.render_custom(job.payload.message or "", data)

    def _recipient_data(self, job: DeliveryJob, phone: str) -> dict[str, Any]:
        data = dict(job.data)
        if isinstance(job.payload, BulkChunkPayload):
            for recipient in job.payload.recipients:
                if recipient.phone == phone and recipient.name:
                    data["name"] = recipient.name
                    break
        return data

    async def _attempt(self, job: DeliveryJob, phone: str, semaphore: asyncio.Semaphore) -> None:
        """Send to one recipient, record the outcome on the job and the audit trail."""
        result = job.result_for(phone)
        body = self._render_body(job, self._recipient_data(job, phone))
        result.attempts += 1

        async with semaphore:
            try:
                receipt: CarrierReceipt = await asyncio.wait_for(
                    self._gateway.send(phone, body),
                    timeout=self._send_timeout,
                )
            except (TransientCarrierError, TimeoutError) as exc:
                error = str(exc) or "carrier call timed out"
                result.error = error
                self._record_attempt(job, phone, body, NotificationStatus.FAILED, error=error)
                return
            except PermanentCarrierError as exc:
                result.outcome = RecipientOutcome.FAILED
                result.error = str(exc)
                self._record_attempt(job, phone, body, NotificationStatus.FAILED, error=str(exc))
                return
            except Exception as exc:
                # Unclassified gateway failure counts against the retry budget.
                logger.error("delivery.send_unexpected_error", job_id=job.id, to=phone, exc_info=True)
                result.error = str(exc) or type(exc).__name__
                self._record_attempt(job, phone, body, NotificationStatus.FAILED, error=result.error)
                return

        result.outcome = RecipientOutcome.SENT
        result.external_id = receipt.external_id
        result.error = None
        self._record_attempt(job, phone, body, receipt.status, external_id=receipt.external_id)

    def _record_attempt(
        self,
        job: DeliveryJob,
        phone: str,
        body: str,
        status: NotificationStatus,
        *,
        external_id: str | None = None,
        error: str | None = None,
    ) -> None:
        self._notifications.record(
            NotificationRecord(
                recipient=phone,
                message=body,
                status=status,
                external_id=external_id,
                error=error,
                job_id=job.id,
                template=job.template,
                attempt=job.attempts,
            )
        )

    async def process_job(self, job: DeliveryJob, *, now: datetime | None = None) -> DeliveryJob:
        """Run one attempt of *job* and move it to its next state.

        Only recipients still pending are attempted.  The job then
        completes, fails, or goes back to the delayed set with backoff.
        """
        now = now or _utcnow()
        job.status = JobStatus.ACTIVE
        job.attempts += 1
        job.updated_at = now

        for phone in job.recipients:
            job.result_for(phone)
        pending = [r.phone for r in job.results if r.outcome == RecipientOutcome.PENDING]

        log = logger.bind(job_id=job.id, kind=job.kind.value, attempt=job.attempts)
        semaphore = asyncio.Semaphore(self._bulk_concurrency)
        await asyncio.gather(*(self._attempt(job, phone, semaphore) for phone in pending))

        still_pending = [r for r in job.results if r.outcome == RecipientOutcome.PENDING]
        failed = [r for r in job.results if r.outcome == RecipientOutcome.FAILED]

        if still_pending and job.attempts < job.max_attempts:
            delay = self.backoff_delay(job.attempts)
            job.status = JobStatus.DELAYED
            job.not_before = now + timedelta(seconds=delay)
            job.last_error = still_pending[0].error
            log.warning(
                "delivery.job_retry_scheduled",
                pending=len(still_pending),
                delay_seconds=delay,
                error=job.last_error,
            )
            await self._persist_retry(job)
            return job

        for result in still_pending:
            result.outcome = RecipientOutcome.FAILED
            failed.append(result)

        job.finished_at = now
        if job.kind == JobKind.BULK_CHUNK:
            # Every recipient has had its attempts; failures are per recipient.
            job.status = JobStatus.COMPLETED
            job.last_error = f"{len(failed)} of {len(job.results)} recipients failed" if failed else None
            log.info(
                "delivery.chunk_completed",
                sent=len(job.results) - len(failed),
                failed=len(failed),
            )
        elif failed:
            job.status = JobStatus.FAILED
            job.last_error = failed[0].error
            log.error("delivery.job_failed", error=job.last_error)
        else:
            job.status = JobStatus.COMPLETED
            job.last_error = None
            log.info("delivery.job_completed")

        await self._persist_finish(job)
        return job

    async def _persist_retry(self, job: DeliveryJob) -> None:
        if job.id in self._local_jobs:
            return
        await self._client.backend.retry_later(job)

    async def _persist_finish(self, job: DeliveryJob) -> None:
        if job.id in self._local_jobs:
            return
        await self._client.backend.finish(job)

    async def process_next(self, *, now: datetime | None = None) -> DeliveryJob | None:
        """Claim and run the next due job, if any."""
        now = now or _utcnow()
        job = await self._client.backend.claim(now)
        if job is None:
            return None
        return await self.process_job(job, now=now)

    async def drain(self, *, now: datetime | None = None, limit: int = 10_000) -> list[DeliveryJob]:
        """Process due jobs until none are left (or *limit* is reached)."""
        processed: list[DeliveryJob] = []
        while len(processed) < limit:
            job = await self.process_next(now=now)
            if job is None:
                break
            processed.append(job)
        return processed

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        log = logger.bind(worker=index)
        log.info("delivery.worker_started")
        try:
            while self._running:
                if not await self._backend_usable():
                    await asyncio.sleep(self._poll_interval)
                    continue
                try:
                    job = await self.process_next()
                except Exception:
                    log.error("delivery.worker_error", exc_info=True)
                    await asyncio.sleep(self._poll_interval)
                    continue
                if job is None:
                    await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            log.info("delivery.worker_cancelled")
            raise
        finally:
            log.info("delivery.worker_stopped")

    def start(self) -> None:
        """Start ``worker_concurrency`` worker tasks."""
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"sms-worker-{i}")
            for i in range(self._worker_concurrency)
        ]
        logger.info("delivery.workers_started", count=len(self._workers))

    async def stop(self) -> None:
        """Stop workers, drop pending in-process timers and wait for fired ones."""
        logger.info("delivery.stopping")
        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []

        for job_id, handle in list(self._timers.items()):
            handle.cancel()
            logger.warning("delivery.scheduled_in_process_dropped", job_id=job_id)
        self._timers.clear()

        if self._local_tasks:
            await asyncio.gather(*list(self._local_tasks), return_exceptions=True)
        logger.info("delivery.stopped")


def chunked(items: Iterable[Any], size: int) -> list[list[Any]]:
    """Consecutive slices of *items*, each at most *size* long."""
    batch = list(items)
    return [batch[i:i + size] for i in range(0, len(batch), size)]
