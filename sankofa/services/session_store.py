"""USSD session persistence with Redis primary and in-memory fallback.

Sessions are stored as orjson documents keyed by session id.  Expiry is
enforced twice: the backend TTL removes stale keys eventually, and
:meth:`SessionStore.get` compares ``expires_at`` at read time so an
expired session is reported as absent even before the backend sweeps it.

Writes are last-writer-wins.  The gateway never issues concurrent
callbacks for one session, so no per-key locking happens here.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import orjson
import structlog
from pydantic import ValidationError

from sankofa.models.session import UssdSession

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = structlog.get_logger(__name__)


class SessionStoreError(RuntimeError):
    """The session backend could not complete an operation."""


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionBackend(Protocol):
    """Async key-value backend for serialised sessions."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def count(self, prefix: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisSessionBackend:
    """Redis-backed session storage using ``redis.asyncio``.

    Pass *client* to reuse an existing connection; otherwise a pool is
    built from *url*.
    """

    __slots__ = ("_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        max_connections: int = 20,
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is not None:
            self._pool = None
            self._redis = client
            return

        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=max(1, ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def count(self, prefix: str) -> int:
        total = 0
        async for _ in self._redis.scan_iter(match=f"{prefix}*", count=500):
            total += 1
        return total

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        if self._pool is not None:
            await self._pool.aclose()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _Entry:
    __slots__ = ("expires_at", "value")

    def __init__(self, value: bytes, ttl_seconds: int) -> None:
        self.value = value
        self.expires_at = time.monotonic() + ttl_seconds

    @property
    def expired(self) -> bool:
        return time.monotonic() > self.expires_at


class InMemorySessionBackend:
    """Process-local backend for development, tests and Redis outages.

    Expired entries are evicted lazily on access and during :meth:`count`.
    """

    __slots__ = ("_data", "_lock")

    def __init__(self) -> None:
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expired:
                del self._data[key]
                return None
            return entry.value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = _Entry(value, max(1, ttl_seconds))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def count(self, prefix: str) -> int:
        async with self._lock:
            for key in [k for k, e in self._data.items() if e.expired]:
                del self._data[key]
            return sum(1 for k in self._data if k.startswith(prefix))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


# ---------------------------------------------------------------------------
# SessionStore  --  public API
# ---------------------------------------------------------------------------


class SessionStore:
    """Get/put/delete facade over a :class:`SessionBackend`.

    Parameters
    ----------
    backend:
        Primary backend.  Defaults to an in-memory backend.
    fallback:
        Used instead of *backend* when :meth:`initialize` finds the primary
        unreachable.  Pass *None* to surface the outage instead.
    namespace:
        Key prefix for every session document.
    """

    __slots__ = ("_backend", "_fallback", "_namespace", "_using_fallback")

    def __init__(
        self,
        backend: SessionBackend | None = None,
        *,
        fallback: SessionBackend | None = None,
        namespace: str = "ussd:session:",
    ) -> None:
        self._backend: SessionBackend = backend or InMemorySessionBackend()
        self._fallback = fallback
        self._namespace = namespace
        self._using_fallback = False

    @classmethod
    def from_url(cls, redis_url: str | None) -> SessionStore:
        """Redis-backed store that falls back to memory if Redis is down."""
        if not redis_url:
            return cls(InMemorySessionBackend())
        try:
            backend: SessionBackend = RedisSessionBackend(url=redis_url)
        except Exception:
            logger.warning("session_store.redis_init_failed", redis_url=redis_url)
            return cls(InMemorySessionBackend())
        return cls(backend, fallback=InMemorySessionBackend())

    def _key(self, session_id: str) -> str:
        return f"{self._namespace}{session_id}"

    @property
    def using_fallback(self) -> bool:
        return self._using_fallback

    # -- Lifecycle ----------------------------------------------------------

    async def initialize(self) -> bool:
        """Check the primary backend once; switch to the fallback if down.

        Returns whether the primary backend is in use.
        """
        if await self._backend.ping():
            logger.info("session_store.connected", backend=type(self._backend).__name__)
            return True

        if self._fallback is None:
            logger.error("session_store.unavailable", backend=type(self._backend).__name__)
            return False

        logger.warning("session_store.redis_unavailable_using_inmemory")
        with contextlib.suppress(Exception):
            await self._backend.close()
        self._backend = self._fallback
        self._fallback = None
        self._using_fallback = True
        return False

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self._backend.close()

    # -- Operations ---------------------------------------------------------

    async def get(self, session_id: str, *, now: datetime | None = None) -> UssdSession | None:
        """Load a live session, or *None* if absent, expired or unreadable.

        Raises
        ------
        SessionStoreError
            If the backend itself fails.
        """
        try:
            raw = await self._backend.get(self._key(session_id))
        except Exception as exc:
            logger.error("session_store.get_failed", session_id=session_id, exc_info=True)
            raise SessionStoreError(f"Failed to read session {session_id}") from exc

        if raw is None:
            return None

        try:
            session = UssdSession.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError, ValueError):
            logger.warning("session_store.corrupt_session", session_id=session_id)
            return None

        if session.is_expired(now):
            logger.debug("session_store.expired", session_id=session_id)
            return None
        return session

    async def put(self, session: UssdSession, *, now: datetime | None = None) -> None:
        """Upsert *session*; the backend TTL tracks its ``expires_at``."""
        raw = orjson.dumps(session.model_dump(mode="json"))
        ttl = session.remaining_seconds(now)
        try:
            await self._backend.set(self._key(session.session_id), raw, ttl_seconds=ttl)
        except Exception as exc:
            logger.error("session_store.put_failed", session_id=session.session_id, exc_info=True)
            raise SessionStoreError(f"Failed to write session {session.session_id}") from exc

    async def delete(self, session_id: str) -> None:
        try:
            await self._backend.delete(self._key(session_id))
        except Exception as exc:
            logger.error("session_store.delete_failed", session_id=session_id, exc_info=True)
            raise SessionStoreError(f"Failed to delete session {session_id}") from exc

    async def count_active(self) -> int:
        """Number of sessions the backend still holds."""
        try:
            return await self._backend.count(self._namespace)
        except Exception as exc:
            logger.error("session_store.count_failed", exc_info=True)
            raise SessionStoreError("Failed to count sessions") from exc
