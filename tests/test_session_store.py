"""Tests for USSD session persistence.

The store facade runs against the in-memory backend and the Redis backend
(served by fakeredis, no server needed).
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import AsyncIterator
from unittest.mock import AsyncMock

import fakeredis
import fakeredis.aioredis
import pytest

from sankofa.models.session import UssdSession
from sankofa.services.session_store import (
    InMemorySessionBackend,
    RedisSessionBackend,
    SessionStore,
    SessionStoreError,
)


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


def _fake_redis() -> fakeredis.aioredis.FakeRedis:
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture(params=["memory", "redis"])
async def store(request: pytest.FixtureRequest) -> AsyncIterator[SessionStore]:
    if request.param == "redis":
        store = SessionStore(RedisSessionBackend(client=_fake_redis()))
    else:
        store = SessionStore(InMemorySessionBackend())
    yield store
    await store.close()


def _session(now: datetime, session_id: str = "ATUid_1", ttl: int = 300) -> UssdSession:
    return UssdSession.start(session_id, "+233244123456", ttl, now=now)


# -----------------------------------------------------------------------
# InMemorySessionBackend
# -----------------------------------------------------------------------


class TestInMemorySessionBackend:
    async def test_set_get_delete(self) -> None:
        backend = InMemorySessionBackend()
        await backend.set("k", b"v", ttl_seconds=60)
        assert await backend.get("k") == b"v"
        await backend.delete("k")
        assert await backend.get("k") is None, "get should return None after delete"

    async def test_count_by_prefix(self) -> None:
        backend = InMemorySessionBackend()
        await backend.set("ussd:session:a", b"1", ttl_seconds=60)
        await backend.set("ussd:session:b", b"2", ttl_seconds=60)
        await backend.set("other:c", b"3", ttl_seconds=60)
        assert await backend.count("ussd:session:") == 2

    async def test_close_clears(self) -> None:
        backend = InMemorySessionBackend()
        await backend.set("k", b"v", ttl_seconds=60)
        await backend.close()
        assert await backend.get("k") is None


# -----------------------------------------------------------------------
# RedisSessionBackend
# -----------------------------------------------------------------------


class TestRedisSessionBackend:
    async def test_set_applies_ttl(self) -> None:
        client = _fake_redis()
        backend = RedisSessionBackend(client=client)
        await backend.set("ussd:session:a", b"v", ttl_seconds=60)

        assert await backend.get("ussd:session:a") == b"v"
        ttl = await client.ttl("ussd:session:a")
        assert 0 < ttl <= 60, f"expected a key TTL of at most 60s, got {ttl}"

    async def test_ttl_never_below_one_second(self) -> None:
        client = _fake_redis()
        backend = RedisSessionBackend(client=client)
        await backend.set("ussd:session:a", b"v", ttl_seconds=0)
        assert await client.ttl("ussd:session:a") == 1

    async def test_count_and_delete(self) -> None:
        backend = RedisSessionBackend(client=_fake_redis())
        await backend.set("ussd:session:a", b"1", ttl_seconds=60)
        await backend.set("ussd:session:b", b"2", ttl_seconds=60)
        await backend.set("other:c", b"3", ttl_seconds=60)
        assert await backend.count("ussd:session:") == 2

        await backend.delete("ussd:session:a")
        assert await backend.get("ussd:session:a") is None
        assert await backend.count("ussd:session:") == 1

    async def test_ping(self) -> None:
        backend = RedisSessionBackend(client=_fake_redis())
        assert await backend.ping() is True
        await backend.close()

    async def test_store_round_trip_through_redis(self, now: datetime) -> None:
        client = _fake_redis()
        store = SessionStore(RedisSessionBackend(client=client))
        session = _session(now)
        session.history.append("3")
        await store.put(session, now=now)

        raw = await client.get("ussd:session:ATUid_1")
        assert raw is not None and b'"history":["3"]' in raw
        loaded = await store.get("ATUid_1", now=now)
        assert loaded is not None and loaded.history == ["3"]


# -----------------------------------------------------------------------
# SessionStore
# -----------------------------------------------------------------------


class TestSessionStore:
    async def test_put_then_get_round_trips_fields(self, store: SessionStore, now: datetime) -> None:
        session = _session(now)
        session.history.append("1")
        session.current_menu = "checkBalance"
        session.data["hub"] = {"hub_name": "Agbogbloshie"}
        await store.put(session, now=now)

        loaded = await store.get("ATUid_1", now=now)
        assert loaded is not None
        assert loaded.current_menu == "checkBalance"
        assert loaded.history == ["1"]
        assert loaded.data["hub"]["hub_name"] == "Agbogbloshie"
        assert loaded.expires_at == session.expires_at

    async def test_put_is_upsert(self, store: SessionStore, now: datetime) -> None:
        session = _session(now)
        await store.put(session, now=now)
        session.current_menu = "nearestHub"
        await store.put(session, now=now)
        loaded = await store.get("ATUid_1", now=now)
        assert loaded is not None and loaded.current_menu == "nearestHub"
        assert await store.count_active() == 1

    async def test_expired_session_reads_as_absent(self, store: SessionStore, now: datetime) -> None:
        await store.put(_session(now, ttl=300), now=now)
        assert await store.get("ATUid_1", now=now + timedelta(seconds=299)) is not None
        assert await store.get("ATUid_1", now=now + timedelta(seconds=301)) is None, (
            "a session past expires_at must behave as absent"
        )

    async def test_delete(self, store: SessionStore, now: datetime) -> None:
        await store.put(_session(now), now=now)
        await store.delete("ATUid_1")
        assert await store.get("ATUid_1", now=now) is None

    async def test_corrupt_document_reads_as_absent(self, now: datetime) -> None:
        backend = InMemorySessionBackend()
        store = SessionStore(backend)
        await backend.set("ussd:session:bad", b"{not json", ttl_seconds=60)
        assert await store.get("bad", now=now) is None

    async def test_backend_failure_raises_store_error(self, now: datetime) -> None:
        backend = AsyncMock()
        backend.get.side_effect = ConnectionError("redis down")
        backend.set.side_effect = ConnectionError("redis down")
        store = SessionStore(backend)

        with pytest.raises(SessionStoreError):
            await store.get("x", now=now)
        with pytest.raises(SessionStoreError):
            await store.put(_session(now), now=now)


class TestSessionStoreLifecycle:
    async def test_initialize_uses_fallback_when_primary_down(self, now: datetime) -> None:
        primary = AsyncMock()
        primary.ping.return_value = False
        fallback = InMemorySessionBackend()
        store = SessionStore(primary, fallback=fallback)

        assert await store.initialize() is False
        assert store.using_fallback is True
        await store.put(_session(now), now=now)
        assert await fallback.count("ussd:session:") == 1, "writes should land in the fallback"
        primary.set.assert_not_called()

    async def test_initialize_keeps_healthy_primary(self) -> None:
        store = SessionStore(InMemorySessionBackend(), fallback=InMemorySessionBackend())
        assert await store.initialize() is True
        assert store.using_fallback is False

    async def test_from_url_without_url_is_in_memory(self) -> None:
        store = SessionStore.from_url(None)
        assert await store.ping() is True
