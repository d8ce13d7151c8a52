"""Best-effort audit trail for delivery attempts.

Callers hand :class:`~sankofa.models.NotificationRecord` instances to
:meth:`NotificationLogger.record`, which never blocks and never raises:
records go into a bounded in-process buffer drained by a background task
into a :class:`NotificationSink`.  A full buffer drops the record and
logs a warning; a sink failure is logged and the drain loop continues.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol, runtime_checkable

import structlog

from sankofa.models.delivery import NotificationRecord
from sankofa.models.enums import NotificationStatus

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationSink(Protocol):
    """Destination for audit records (database table, list, ...)."""

    async def write(self, record: NotificationRecord) -> None: ...


class InMemoryNotificationSink:
    """Keeps every record in a list; used in development and tests."""

    __slots__ = ("records",)

    def __init__(self) -> None:
        self.records: list[NotificationRecord] = []

    async def write(self, record: NotificationRecord) -> None:
        self.records.append(record)

    def for_recipient(self, phone: str) -> list[NotificationRecord]:
        return [r for r in self.records if r.recipient == phone]

    def with_status(self, status: NotificationStatus) -> list[NotificationRecord]:
        return [r for r in self.records if r.status == status]


# ---------------------------------------------------------------------------
# NotificationLogger
# ---------------------------------------------------------------------------


class NotificationLogger:
    """Bounded, fire-and-forget writer in front of a sink.

    Parameters
    ----------
    sink:
        Where drained records are written.
    max_buffer:
        Records held in memory before new ones are dropped.
    """

    __slots__ = ("_dropped", "_queue", "_running", "_sink", "_task", "_written")

    def __init__(self, sink: NotificationSink | None = None, *, max_buffer: int = 1000) -> None:
        self._sink: NotificationSink = sink or InMemoryNotificationSink()
        self._queue: asyncio.Queue[NotificationRecord] = asyncio.Queue(maxsize=max_buffer)
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False
        self._dropped = 0
        self._written = 0

    # -- Properties ---------------------------------------------------------

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def written(self) -> int:
        return self._written

    # -- Producer side ------------------------------------------------------

    def record(self, record: NotificationRecord) -> bool:
        """Buffer *record* for writing.  Returns *False* if it was dropped."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "notification_log.buffer_full_dropped",
                recipient=record.recipient,
                status=record.status.value,
                dropped_total=self._dropped,
            )
            return False
        return True

    # -- Consumer side ------------------------------------------------------

    async def _write(self, record: NotificationRecord) -> None:
        try:
            await self._sink.write(record)
            self._written += 1
        except Exception:
            logger.error(
                "notification_log.write_failed",
                recipient=record.recipient,
                status=record.status.value,
                exc_info=True,
            )

    async def _drain_loop(self) -> None:
        logger.info("notification_log.started")
        try:
            while True:
                record = await self._queue.get()
                try:
                    await self._write(record)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("notification_log.cancelled")
            raise

    async def flush(self) -> None:
        """Wait until every buffered record has reached the sink."""
        if self._running:
            await self._queue.join()
            return
        while not self._queue.empty():
            record = self._queue.get_nowait()
            try:
                await self._write(record)
            finally:
                self._queue.task_done()

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._drain_loop(), name="notification-log-drain")

    async def stop(self, *, timeout: float = 5.0) -> None:
        """Drain what is buffered (bounded by *timeout*) and stop the task."""
        if self._task is None:
            await self.flush()
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning("notification_log.stop_timeout", pending=self._queue.qsize())

        self._running = False
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("notification_log.stopped", written=self._written, dropped=self._dropped)
