"""Tests for the carrier gateway and its providers.

HTTP is served by :class:`httpx.MockTransport`; nothing leaves the process.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable

import httpx
import pytest

from sankofa.models.enums import NotificationStatus
from sankofa.services.carrier import (
    CarrierGateway,
    PermanentCarrierError,
    TransientCarrierError,
    UnsupportedCarrierOperation,
    _AfricasTalkingProvider,
    _TwilioProvider,
)

AMA = "+233244123456"


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _settings(**overrides: Any) -> SimpleNamespace:
    values = {
        "sms_provider": "mock",
        "twilio_account_sid": "",
        "twilio_auth_token": "",
        "twilio_phone_number": "",
        "at_username": "",
        "at_api_key": "",
        "at_sender_id": "",
        "sms_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestFromSettings:
    def test_mock_by_default(self) -> None:
        gateway = CarrierGateway.from_settings(_settings())
        assert gateway.is_mock is True
        assert gateway.provider_name == "mock"

    def test_missing_credentials_fall_back_to_mock(self) -> None:
        gateway = CarrierGateway.from_settings(_settings(sms_provider="twilio"))
        assert gateway.is_mock is True, "twilio without credentials should use the mock provider"

    def test_twilio_selected_with_credentials(self) -> None:
        gateway = CarrierGateway.from_settings(
            _settings(sms_provider="twilio", twilio_account_sid="AC1", twilio_auth_token="tok"),
        )
        assert gateway.provider_name == "twilio"

    def test_africastalking_selected_with_credentials(self) -> None:
        gateway = CarrierGateway.from_settings(
            _settings(sms_provider="africastalking", at_username="sankofa", at_api_key="key"),
        )
        assert gateway.provider_name == "africastalking"


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------


class TestMockProvider:
    async def test_send_returns_mock_receipt(self) -> None:
        gateway = CarrierGateway()
        receipt = await gateway.send(AMA, "hello")
        assert receipt.status == NotificationStatus.MOCK
        assert receipt.external_id.startswith("mock_")
        assert receipt.segments == 1
        await gateway.close()

    async def test_segments_reported(self) -> None:
        gateway = CarrierGateway()
        receipt = await gateway.send(AMA, "GH₵ " * 30)
        assert receipt.segments == 2
        await gateway.close()


# ---------------------------------------------------------------------------
# Twilio
# ---------------------------------------------------------------------------


class TestTwilio:
    async def test_success(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content.decode()
            seen["auth"] = request.headers.get("authorization", "")
            return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+15550000000"), http_client=_client(handler))
        receipt = await gateway.send(AMA, "hello")

        assert receipt.external_id == "SM123"
        assert receipt.status == NotificationStatus.SENT
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json"
        assert "To=%2B233244123456" in seen["body"]
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_status_is_transient(self, status_code: int) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(status_code, text="busy")),
        )
        with pytest.raises(TransientCarrierError):
            await gateway.send(AMA, "hello")

    async def test_client_error_is_permanent(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(400, json={"code": 21211})),
        )
        with pytest.raises(PermanentCarrierError):
            await gateway.send(AMA, "hello")

    async def test_failed_status_in_body_is_permanent(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(
                lambda request: httpx.Response(201, json={"sid": "SM1", "status": "failed", "error_code": 30006}),
            ),
        )
        with pytest.raises(PermanentCarrierError):
            await gateway.send(AMA, "hello")

    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+1555"), http_client=_client(handler))
        with pytest.raises(TransientCarrierError):
            await gateway.send(AMA, "hello")

    async def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+1555"), http_client=_client(handler))
        with pytest.raises(TransientCarrierError):
            await gateway.send(AMA, "hello")

    async def test_unreadable_body_is_permanent(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(201, text="<html>")),
        )
        with pytest.raises(PermanentCarrierError):
            await gateway.send(AMA, "hello")


# ---------------------------------------------------------------------------
# Africa's Talking
# ---------------------------------------------------------------------------


def _at_response(code: int, status: str = "Success") -> dict[str, Any]:
    return {
        "SMSMessageData": {
            "Message": "Sent to 1/1",
            "Recipients": [{"number": AMA, "statusCode": code, "status": status, "messageId": "ATXid_1"}],
        },
    }


class TestAfricasTalking:
    async def test_success_uses_api_key_header(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["api_key"] = request.headers.get("apikey")
            seen["body"] = request.content.decode()
            return httpx.Response(201, json=_at_response(101))

        gateway = CarrierGateway(_AfricasTalkingProvider("sankofa", "key", "SANKOFA"), http_client=_client(handler))
        receipt = await gateway.send(AMA, "hello")

        assert receipt.external_id == "ATXid_1"
        assert seen["url"] == "https://api.africastalking.com/version1/messaging"
        assert seen["api_key"] == "key"
        assert "from=SANKOFA" in seen["body"]

    async def test_sandbox_username_uses_sandbox_url(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["host"] = request.url.host
            return httpx.Response(201, json=_at_response(100))

        gateway = CarrierGateway(_AfricasTalkingProvider("sandbox", "key"), http_client=_client(handler))
        await gateway.send(AMA, "hello")
        assert seen["host"] == "api.sandbox.africastalking.com"

    async def test_retryable_status_code_is_transient(self) -> None:
        gateway = CarrierGateway(
            _AfricasTalkingProvider("sankofa", "key"),
            http_client=_client(lambda request: httpx.Response(201, json=_at_response(500, "InternalServerError"))),
        )
        with pytest.raises(TransientCarrierError):
            await gateway.send(AMA, "hello")

    async def test_invalid_number_is_permanent(self) -> None:
        gateway = CarrierGateway(
            _AfricasTalkingProvider("sankofa", "key"),
            http_client=_client(lambda request: httpx.Response(201, json=_at_response(403, "InvalidPhoneNumber"))),
        )
        with pytest.raises(PermanentCarrierError):
            await gateway.send(AMA, "hello")

    async def test_no_recipients_is_permanent(self) -> None:
        gateway = CarrierGateway(
            _AfricasTalkingProvider("sankofa", "key"),
            http_client=_client(
                lambda request: httpx.Response(201, json={"SMSMessageData": {"Message": "InvalidSenderId"}}),
            ),
        )
        with pytest.raises(PermanentCarrierError, match="InvalidSenderId"):
            await gateway.send(AMA, "hello")


# ---------------------------------------------------------------------------
# Status lookup and credential checks
# ---------------------------------------------------------------------------


_TWILIO_MESSAGE = {
    "sid": "SM123",
    "status": "undelivered",
    "to": AMA,
    "from": "+15550000000",
    "error_code": 30003,
    "error_message": "Unreachable destination handset",
    "date_created": "Mon, 19 Oct 2026 10:00:00 +0000",
    "date_sent": "Mon, 19 Oct 2026 10:00:01 +0000",
    "date_updated": "Mon, 19 Oct 2026 10:00:09 +0000",
}


class TestGetStatus:
    async def test_twilio_status_fetched(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization", "")
            return httpx.Response(200, json=_TWILIO_MESSAGE)

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+15550000000"), http_client=_client(handler))
        status = await gateway.get_status("SM123")

        assert status is not None
        assert seen["method"] == "GET"
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages/SM123.json"
        assert seen["auth"].startswith("Basic ")
        assert status.status == "undelivered"
        assert status.provider == "twilio"
        assert status.sender == "+15550000000"
        assert status.error_code == "30003"
        assert status.date_updated == "Mon, 19 Oct 2026 10:00:09 +0000"

    async def test_twilio_unknown_message_is_none(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(404, json={"code": 20404})),
        )
        assert await gateway.get_status("SMnope") is None

    async def test_twilio_message_id_is_path_escaped(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.raw_path.decode()
            return httpx.Response(404)

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+1555"), http_client=_client(handler))
        await gateway.get_status("../Calls")
        assert seen["path"] == "/2010-04-01/Accounts/AC1/Messages/..%2FCalls.json"

    async def test_twilio_server_error_is_transient(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(503, text="busy")),
        )
        with pytest.raises(TransientCarrierError):
            await gateway.get_status("SM123")

    async def test_twilio_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+1555"), http_client=_client(handler))
        with pytest.raises(TransientCarrierError):
            await gateway.get_status("SM123")

    async def test_africastalking_has_no_lookup(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        gateway = CarrierGateway(_AfricasTalkingProvider("sankofa", "key"), http_client=_client(handler))
        with pytest.raises(UnsupportedCarrierOperation):
            await gateway.get_status("ATXid_1")

    async def test_mock_reports_delivered_for_its_own_ids(self) -> None:
        gateway = CarrierGateway()
        receipt = await gateway.send(AMA, "hello")

        status = await gateway.get_status(receipt.external_id)
        assert status is not None and status.status == "delivered"
        assert await gateway.get_status("SM123") is None


class TestVerify:
    async def test_twilio_active_account(self) -> None:
        seen: dict[str, str] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"sid": "AC1", "status": "active"})

        gateway = CarrierGateway(_TwilioProvider("AC1", "tok", "+1555"), http_client=_client(handler))
        assert await gateway.verify() is True
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC1.json"

    async def test_twilio_suspended_account_fails(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "tok", "+1555"),
            http_client=_client(lambda request: httpx.Response(200, json={"sid": "AC1", "status": "suspended"})),
        )
        assert await gateway.verify() is False

    async def test_twilio_bad_credentials_fail(self) -> None:
        gateway = CarrierGateway(
            _TwilioProvider("AC1", "wrong", "+1555"),
            http_client=_client(lambda request: httpx.Response(401, json={"code": 20003})),
        )
        assert await gateway.verify() is False

    async def test_africastalking_user_lookup(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["api_key"] = request.headers.get("apikey")
            return httpx.Response(200, json={"UserData": {"balance": "KES 120.00"}})

        gateway = CarrierGateway(_AfricasTalkingProvider("sandbox", "key"), http_client=_client(handler))
        assert await gateway.verify() is True
        assert seen["url"].host == "api.sandbox.africastalking.com"
        assert seen["url"].path == "/version1/user"
        assert seen["url"].params["username"] == "sandbox"
        assert seen["api_key"] == "key"

    async def test_africastalking_rejected_key_fails(self) -> None:
        gateway = CarrierGateway(
            _AfricasTalkingProvider("sankofa", "bad"),
            http_client=_client(lambda request: httpx.Response(401, text="The supplied authentication is invalid")),
        )
        assert await gateway.verify() is False

    async def test_connection_error_never_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        gateway = CarrierGateway(_AfricasTalkingProvider("sankofa", "key"), http_client=_client(handler))
        assert await gateway.verify() is False

    async def test_mock_always_verifies(self) -> None:
        assert await CarrierGateway().verify() is True
