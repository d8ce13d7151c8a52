"""Supabase (PostgREST) adapters for domain lookups and the audit trail.

Talks to ``{SUPABASE_URL}/rest/v1`` directly over :mod:`httpx` with the
service-role key.  Reads are retried with exponential backoff on
transport errors and 5xx responses; the audit insert is attempted once
and left to the notification logger to report.

Tables used:

* ``users``          -- ``id, name, phone, cash, health_tokens, total_earnings, location``
* ``collections``    -- ``weight, plastic_type, amount, created_at, status`` by ``collector_id``
* ``hubs``           -- ``name, address, operating_hours, location`` where ``status = active``
* ``notifications``  -- one row per :class:`~sankofa.models.NotificationRecord`
"""

from __future__ import annotations

from typing import Any, Final

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sankofa.models.delivery import NotificationRecord
from sankofa.models.domain import CollectionSummary, CollectorProfile, HubInfo
from sankofa.services.domain import DEFAULT_RECENT_LIMIT

logger = structlog.get_logger(__name__)

_REST_PATH: Final[str] = "/rest/v1"
_DEFAULT_TIMEOUT: Final[float] = 10.0


class SupabaseError(RuntimeError):
    """PostgREST returned an error response."""


class _RetryableSupabaseError(SupabaseError):
    """5xx / 429 from PostgREST; worth another try."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SupabaseClient:
    """Thin async PostgREST client.

    Parameters
    ----------
    url:
        Project URL, e.g. ``https://abc.supabase.co``.
    service_role_key:
        Key sent as both ``apikey`` and bearer token.
    http_client:
        Optional pre-built client (tests inject one with a mock transport).
    """

    __slots__ = ("_client", "_owns_client")

    def __init__(
        self,
        url: str,
        service_role_key: str,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
        }
        if http_client is None:
            self._client = httpx.AsyncClient(
                base_url=url.rstrip("/") + _REST_PATH,
                headers=headers,
                timeout=timeout,
            )
            self._owns_client = True
        else:
            http_client.headers.update(headers)
            self._client = http_client
            self._owns_client = False

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, _RetryableSupabaseError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def select(self, table: str, params: dict[str, str]) -> list[dict[str, Any]]:
        """``GET /{table}`` with PostgREST filter params."""
        response = await self._client.get(f"/{table}", params=params)
        self._raise_for_status(response, table)
        return response.json()

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        """``POST /{table}`` without returning the inserted row."""
        response = await self._client.post(
            f"/{table}",
            json=row,
            headers={"Prefer": "return=minimal"},
        )
        self._raise_for_status(response, table)

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/hubs", params={"select": "name", "limit": "1"})
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response, table: str) -> None:
        if response.status_code < 400:
            return
        detail = response.text[:200]
        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("supabase.retryable_status", table=table, status=response.status_code)
            raise _RetryableSupabaseError(f"{table}: HTTP {response.status_code} {detail}")
        raise SupabaseError(f"{table}: HTTP {response.status_code} {detail}")


# ---------------------------------------------------------------------------
# Domain directory
# ---------------------------------------------------------------------------


class SupabaseDomainDirectory:
    """:class:`~sankofa.services.domain.DomainDirectory` over PostgREST."""

    __slots__ = ("_client",)

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_collector_by_phone(self, phone: str) -> CollectorProfile | None:
        rows = await self._client.select(
            "users",
            {
                "select": "id,name,phone,cash,health_tokens,total_earnings,location",
                "phone": f"eq.{phone}",
                "limit": "1",
            },
        )
        if not rows:
            return None
        row = rows[0]
        return CollectorProfile(
            id=str(row["id"]),
            name=row.get("name") or "",
            phone=row.get("phone") or phone,
            cash=row.get("cash") or 0.0,
            health_tokens=row.get("health_tokens") or 0.0,
            total_earnings=row.get("total_earnings") or 0.0,
            location=_location_label(row.get("location")),
        )

    async def get_recent_collections(
        self,
        collector_id: str,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> list[CollectionSummary]:
        rows = await self._client.select(
            "collections",
            {
                "select": "weight,plastic_type,amount,created_at,status",
                "collector_id": f"eq.{collector_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [
            CollectionSummary(
                weight=row.get("weight") or 0.0,
                plastic_type=row.get("plastic_type") or "plastic",
                amount=row.get("amount") or 0.0,
                created_at=row.get("created_at"),
                status=row.get("status"),
            )
            for row in rows
        ]

    async def get_nearest_hub(self, location: str | None = None) -> HubInfo | None:
        # Location matching is not modelled in the hubs table yet; the
        # first active hub is returned.
        rows = await self._client.select(
            "hubs",
            {
                "select": "name,address,operating_hours,location",
                "status": "eq.active",
                "limit": "1",
            },
        )
        if not rows:
            return None
        row = rows[0]
        return HubInfo(
            name=row.get("name") or "",
            address=row.get("address") or "",
            operating_hours=row.get("operating_hours") or "",
            location=_location_label(row.get("location")),
        )


def _location_label(value: Any) -> str | None:
    """``location`` is free text or a JSON object with a ``city``/``name``."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("city") or value.get("name") or value.get("region")
    return str(value)


# ---------------------------------------------------------------------------
# Audit sink
# ---------------------------------------------------------------------------


class SupabaseNotificationSink:
    """Writes :class:`NotificationRecord` rows to the ``notifications`` table."""

    __slots__ = ("_client",)

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def write(self, record: NotificationRecord) -> None:
        await self._client.insert(
            "notifications",
            {
                "type": record.type.value,
                "recipient": record.recipient,
                "message": record.message,
                "status": record.status.value,
                "created_at": record.created_at.isoformat(),
                "metadata": {
                    "record_id": record.id,
                    "message_id": record.external_id,
                    "template": record.template,
                    "error": record.error,
                    "job_id": record.job_id,
                    "attempt": record.attempt,
                    "scheduled_at": record.scheduled_at.isoformat() if record.scheduled_at else None,
                    "session_id": record.session_id,
                },
            },
        )
