"""Carrier gateway: the one place outbound SMS leaves the process.

:class:`CarrierGateway` wraps a single provider -- Twilio, Africa's
Talking, or a mock used when no credentials are configured -- behind
``send(recipient, body) -> CarrierReceipt``.  It can also look up a sent
message (:meth:`CarrierGateway.get_status`, Twilio only) and check the
configured credentials (:meth:`CarrierGateway.verify`).

Every failure is classified so the delivery queue knows whether to retry:

* :class:`TransientCarrierError` -- timeouts, connection errors, HTTP 429
  and 5xx, and provider statuses that mean "try again later".
* :class:`PermanentCarrierError` -- any other 4xx or an outright rejection
  of the number or sender.

The gateway owns one :class:`httpx.AsyncClient`; call :meth:`close` on
shutdown.
"""

from __future__ import annotations

from typing import Any, Final
from urllib.parse import quote
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel

from sankofa.models.enums import NotificationStatus
from sankofa.services.templates import calculate_sms_segments, preview

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Errors / results
# ---------------------------------------------------------------------------


class CarrierError(Exception):
    """Base class for provider failures."""


class TransientCarrierError(CarrierError):
    """The send may succeed if retried later."""


class PermanentCarrierError(CarrierError):
    """The provider rejected the message; retrying will not help."""


class UnsupportedCarrierOperation(CarrierError):
    """The provider has no API for the requested operation."""


class CarrierReceipt(BaseModel):
    """Provider acknowledgement of one accepted message."""

    external_id: str
    status: NotificationStatus = NotificationStatus.SENT
    provider: str = ""
    segments: int = 1


class CarrierMessageStatus(BaseModel):
    """Provider-side state of one message, looked up by its external id."""

    external_id: str
    status: str
    provider: str = ""
    to: str | None = None
    sender: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    date_created: str | None = None
    date_sent: str | None = None
    date_updated: str | None = None


def _classify_status(provider: str, response: httpx.Response) -> None:
    """Raise the matching carrier error for a non-2xx response."""
    if response.is_success:
        return
    detail = response.text[:200]
    message = f"{provider} HTTP {response.status_code}: {detail}"
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientCarrierError(message)
    raise PermanentCarrierError(message)


# ---------------------------------------------------------------------------
# Provider implementations
# ---------------------------------------------------------------------------


class _SMSProviderBase:
    """Abstract base for SMS gateway providers."""

    name: str = "base"

    async def send(self, client: httpx.AsyncClient, to: str, body: str) -> CarrierReceipt:
        raise NotImplementedError

    async def fetch_status(self, client: httpx.AsyncClient, external_id: str) -> CarrierMessageStatus | None:
        raise UnsupportedCarrierOperation(f"{self.name} has no message status lookup")

    async def verify(self, client: httpx.AsyncClient) -> bool:
        raise NotImplementedError


class _TwilioProvider(_SMSProviderBase):
    """Twilio Programmable Messaging (form POST, HTTP basic auth)."""

    name = "twilio"
    _BASE_URL: Final[str] = "https://api.twilio.com/2010-04-01"

    def __init__(self, account_sid: str, auth_token: str, from_number: str) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number

    async def send(self, client: httpx.AsyncClient, to: str, body: str) -> CarrierReceipt:
        response = await client.post(
            f"{self._BASE_URL}/Accounts/{self._account_sid}/Messages.json",
            data={"To": to, "From": self._from_number, "Body": body},
            auth=(self._account_sid, self._auth_token),
        )
        _classify_status(self.name, response)

        result: dict[str, Any] = response.json()
        if result.get("status") == "failed" or result.get("error_code"):
            raise PermanentCarrierError(
                f"twilio rejected message: {result.get('error_code')} {result.get('error_message')}"
            )
        return CarrierReceipt(external_id=str(result.get("sid", "")), provider=self.name)

    async def fetch_status(self, client: httpx.AsyncClient, external_id: str) -> CarrierMessageStatus | None:
        response = await client.get(
            f"{self._BASE_URL}/Accounts/{self._account_sid}/Messages/{quote(external_id, safe='')}.json",
            auth=(self._account_sid, self._auth_token),
        )
        if response.status_code == 404:
            return None
        _classify_status(self.name, response)

        result: dict[str, Any] = response.json()
        error_code = result.get("error_code")
        return CarrierMessageStatus(
            external_id=str(result.get("sid") or external_id),
            status=str(result.get("status") or "unknown"),
            provider=self.name,
            to=result.get("to"),
            sender=result.get("from"),
            error_code=str(error_code) if error_code is not None else None,
            error_message=result.get("error_message"),
            date_created=result.get("date_created"),
            date_sent=result.get("date_sent"),
            date_updated=result.get("date_updated"),
        )

    async def verify(self, client: httpx.AsyncClient) -> bool:
        """Fetch the account record; an inactive or unknown account fails."""
        response = await client.get(
            f"{self._BASE_URL}/Accounts/{self._account_sid}.json",
            auth=(self._account_sid, self._auth_token),
        )
        if not response.is_success:
            return False
        return response.json().get("status", "active") == "active"


class _AfricasTalkingProvider(_SMSProviderBase):
    """Africa's Talking bulk messaging API (form POST, ``apiKey`` header).

    Delivery reports arrive by callback only, so there is no status lookup.
    """

    name = "africastalking"
    _BASE_URL: Final[str] = "https://api.africastalking.com/version1/messaging"
    _SANDBOX_URL: Final[str] = "https://api.sandbox.africastalking.com/version1/messaging"
    _USER_URL: Final[str] = "https://api.africastalking.com/version1/user"
    _SANDBOX_USER_URL: Final[str] = "https://api.sandbox.africastalking.com/version1/user"

    # Per-recipient statusCode values.
    _OK_CODES: Final[frozenset[int]] = frozenset({100, 101, 102})
    _RETRY_CODES: Final[frozenset[int]] = frozenset({500, 501})

    def __init__(self, username: str, api_key: str, sender_id: str = "") -> None:
        self._username = username
        self._api_key = api_key
        self._sender_id = sender_id
        sandbox = username == "sandbox"
        self._url = self._SANDBOX_URL if sandbox else self._BASE_URL
        self._user_url = self._SANDBOX_USER_URL if sandbox else self._USER_URL

    @property
    def _headers(self) -> dict[str, str]:
        return {"apiKey": self._api_key, "Accept": "application/json"}

    async def verify(self, client: httpx.AsyncClient) -> bool:
        """Fetch the account's user data (balance); a rejected key fails."""
        response = await client.get(
            self._user_url,
            params={"username": self._username},
            headers=self._headers,
        )
        return response.is_success

    async def send(self, client: httpx.AsyncClient, to: str, body: str) -> CarrierReceipt:
        form = {"username": self._username, "to": to, "message": body}
        if self._sender_id:
            form["from"] = self._sender_id

        response = await client.post(
            self._url,
            data=form,
            headers=self._headers,
        )
        _classify_status(self.name, response)

        payload: dict[str, Any] = response.json()
        recipients = payload.get("SMSMessageData", {}).get("Recipients") or []
        if not recipients:
            message = payload.get("SMSMessageData", {}).get("Message", "no recipients accepted")
            raise PermanentCarrierError(f"africastalking rejected message: {message}")

        entry = recipients[0]
        code = int(entry.get("statusCode", 0))
        if code in self._OK_CODES:
            return CarrierReceipt(external_id=str(entry.get("messageId", "")), provider=self.name)

        reason = f"africastalking status {code} {entry.get('status', '')}".strip()
        if code in self._RETRY_CODES:
            raise TransientCarrierError(reason)
        raise PermanentCarrierError(reason)


class _MockProvider(_SMSProviderBase):
    """Logs instead of sending; used when no carrier is configured."""

    name = "mock"

    async def send(self, client: httpx.AsyncClient, to: str, body: str) -> CarrierReceipt:
        logger.info(
            "mock_sms.sent",
            to=to,
            message_preview=preview(body, 80),
            length=len(body),
        )
        return CarrierReceipt(
            external_id=f"mock_{uuid4().hex[:12]}",
            status=NotificationStatus.MOCK,
            provider=self.name,
        )

    async def fetch_status(self, client: httpx.AsyncClient, external_id: str) -> CarrierMessageStatus | None:
        if not external_id.startswith("mock_"):
            return None
        return CarrierMessageStatus(external_id=external_id, status="delivered", provider=self.name)

    async def verify(self, client: httpx.AsyncClient) -> bool:
        return True


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class CarrierGateway:
    """Send SMS through one provider with transient/permanent classification.

    Parameters
    ----------
    provider:
        A provider instance; see :meth:`from_settings`.
    timeout:
        Per-request HTTP timeout in seconds.
    http_client:
        Optional pre-built client (tests inject one with a mock transport).
    """

    __slots__ = ("_client", "_owns_client", "_provider")

    def __init__(
        self,
        provider: _SMSProviderBase | None = None,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._provider = provider or _MockProvider()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Any, *, http_client: httpx.AsyncClient | None = None) -> CarrierGateway:
        """Pick the provider named by ``sms_provider``; mock if credentials are missing."""
        provider_name = getattr(settings, "sms_provider", "mock")
        provider: _SMSProviderBase

        if provider_name == "twilio" and settings.twilio_account_sid and settings.twilio_auth_token:
            provider = _TwilioProvider(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_phone_number,
            )
        elif provider_name == "africastalking" and settings.at_username and settings.at_api_key:
            provider = _AfricasTalkingProvider(
                settings.at_username,
                settings.at_api_key,
                settings.at_sender_id,
            )
        else:
            if provider_name != "mock":
                logger.warning("carrier.credentials_missing_using_mock", provider=provider_name)
            provider = _MockProvider()

        logger.info("carrier.configured", provider=provider.name)
        return cls(provider, timeout=settings.sms_timeout_seconds, http_client=http_client)

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def is_mock(self) -> bool:
        return isinstance(self._provider, _MockProvider)

    async def send(self, recipient: str, body: str) -> CarrierReceipt:
        """Hand one message to the provider.

        Raises
        ------
        TransientCarrierError
            Timeouts, connection failures, 429/5xx and retryable statuses.
        PermanentCarrierError
            Rejections that retrying will not fix.
        """
        log = logger.bind(provider=self._provider.name, to=recipient)
        try:
            receipt = await self._provider.send(self._client, recipient, body)
        except CarrierError as exc:
            log.warning("carrier.send_failed", error=str(exc), transient=isinstance(exc, TransientCarrierError))
            raise
        except httpx.TimeoutException as exc:
            log.warning("carrier.timeout")
            raise TransientCarrierError(f"{self._provider.name} request timed out") from exc
        except httpx.TransportError as exc:
            log.warning("carrier.transport_error", error=str(exc))
            raise TransientCarrierError(f"{self._provider.name} transport error: {exc}") from exc
        except ValueError as exc:
            # Unparseable response body.
            log.error("carrier.bad_response", error=str(exc))
            raise PermanentCarrierError(f"{self._provider.name} returned an unreadable response") from exc

        receipt.segments = calculate_sms_segments(body)
        log.info("carrier.sent", external_id=receipt.external_id, segments=receipt.segments)
        return receipt

    async def get_status(self, external_id: str) -> CarrierMessageStatus | None:
        """Look up a sent message at the provider; *None* if it is unknown there.

        Raises
        ------
        UnsupportedCarrierOperation
            The provider only reports delivery through callbacks.
        TransientCarrierError, PermanentCarrierError
            Classified as for :meth:`send`.
        """
        log = logger.bind(provider=self._provider.name, external_id=external_id)
        try:
            status = await self._provider.fetch_status(self._client, external_id)
        except CarrierError:
            raise
        except httpx.TimeoutException as exc:
            log.warning("carrier.status_timeout")
            raise TransientCarrierError(f"{self._provider.name} status lookup timed out") from exc
        except httpx.TransportError as exc:
            log.warning("carrier.status_transport_error", error=str(exc))
            raise TransientCarrierError(f"{self._provider.name} transport error: {exc}") from exc
        except ValueError as exc:
            log.error("carrier.bad_response", error=str(exc))
            raise PermanentCarrierError(f"{self._provider.name} returned an unreadable response") from exc

        log.info("carrier.status_fetched", status=status.status if status else None)
        return status

    async def verify(self) -> bool:
        """Check the configured credentials against the provider.  Never raises."""
        try:
            ok = await self._provider.verify(self._client)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("carrier.verify_failed", provider=self._provider.name, error=str(exc))
            return False

        if ok:
            logger.info("carrier.verified", provider=self._provider.name)
        else:
            logger.warning("carrier.verify_rejected", provider=self._provider.name)
        return ok

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
