"""Read-only access to collector, collection and hub records.

The menu engine only needs three lookups, expressed by the
:class:`DomainDirectory` protocol.  :class:`InMemoryDomainDirectory`
serves seeded demo data in development and tests; the PostgREST-backed
implementation lives in :mod:`sankofa.services.supabase`.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

import structlog

from sankofa.models.domain import CollectionSummary, CollectorProfile, HubInfo

logger = structlog.get_logger(__name__)

DEFAULT_RECENT_LIMIT = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@runtime_checkable
class DomainDirectory(Protocol):
    """Lookups the USSD menus render from."""

    async def get_collector_by_phone(self, phone: str) -> CollectorProfile | None: ...

    async def get_recent_collections(
        self,
        collector_id: str,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[CollectionSummary]: ...

    async def get_nearest_hub(self, location: str | None = None) -> HubInfo | None: ...


class InMemoryDomainDirectory:
    """Dictionary-backed directory.

    Parameters
    ----------
    collectors:
        Profiles keyed by canonical phone number on insertion.
    collections:
        Collection summaries keyed by collector id.
    hubs:
        Active hubs; a hub in the caller's location wins, else the first.
    """

    __slots__ = ("_collections", "_collectors", "_hubs")

    def __init__(
        self,
        collectors: list[CollectorProfile] | None = None,
        collections: dict[str, list[CollectionSummary]] | None = None,
        hubs: list[HubInfo] | None = None,
    ) -> None:
        self._collectors: dict[str, CollectorProfile] = {c.phone: c for c in collectors or []}
        self._collections: dict[str, list[CollectionSummary]] = dict(collections or {})
        self._hubs: list[HubInfo] = list(hubs or [])

    def add_collector(self, collector: CollectorProfile) -> None:
        self._collectors[collector.phone] = collector

    def add_collection(self, collector_id: str, collection: CollectionSummary) -> None:
        self._collections.setdefault(collector_id, []).append(collection)

    async def get_collector_by_phone(self, phone: str) -> CollectorProfile | None:
        return self._collectors.get(phone)

    async def get_recent_collections(
        self,
        collector_id: str,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[CollectionSummary]:
        items = sorted(
            self._collections.get(collector_id, []),
            key=lambda c: c.created_at or _EPOCH,
            reverse=True,
        )
        return items[:limit]

    async def get_nearest_hub(self, location: str | None = None) -> HubInfo | None:
        if not self._hubs:
            return None
        if location:
            for hub in self._hubs:
                if hub.location and hub.location.lower() == location.lower():
                    return hub
        return self._hubs[0]
