"""Tests for the Stripe payment handler using a mocked HTTP transport."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from ucp_merchant.domain.exceptions import NotFoundError, PaymentFailedError, PaymentProviderError
from ucp_merchant.domain.payments import (
    CapturePaymentRequest,
    CreatePaymentRequest,
    RefundRequest,
)
from ucp_merchant.domain.state_machines import PaymentStatus
from ucp_merchant.domain.value_objects import Money
from ucp_merchant.infrastructure.payments.stripe_handler import (
    StripePaymentHandler,
    encode_form,
    from_minor_units,
    to_minor_units,
)


class RecordingTransport:
    """Mock transport that records requests and replays canned responses."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def form(self, index: int = -1) -> dict[str, list[str]]:
        return parse_qs(self.requests[index].content.decode())


def _handler(transport: RecordingTransport, **kwargs) -> StripePaymentHandler:
    client = httpx.AsyncClient(transport=httpx.MockTransport(transport), base_url="https://api.stripe.test")
    return StripePaymentHandler(api_key="sk_test_123", client=client, **kwargs)


def _intent_json(status: str = "requires_payment_method", **extra) -> dict:
    return {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 10599,
        "currency": "usd",
        "status": status,
        "client_secret": "pi_123_secret",
        "metadata": {"checkout_session_id": "cs-1"},
        "created": 1_767_225_600,
        **extra,
    }


class TestMinorUnits:
    """Tests for amount conversion."""

    def test_two_decimal_currency(self) -> None:
        """USD amounts are sent in cents."""
        assert to_minor_units(Money.of("105.99", "USD")) == 10599
        assert from_minor_units(10599, "usd") == Money.of("105.99", "USD")

    def test_zero_decimal_currency(self) -> None:
        """JPY has no minor unit."""
        assert to_minor_units(Money.of("1500", "JPY")) == 1500
        assert from_minor_units(1500, "jpy").amount == Decimal("1500")

    def test_rounds_half_up(self) -> None:
        """Sub-cent amounts are rounded half up."""
        assert to_minor_units(Money.of("0.005", "USD")) == 1


class TestEncodeForm:
    """Tests for Stripe form encoding."""

    def test_nested_values(self) -> None:
        """Dicts and lists become bracketed keys and None is dropped."""
        pairs = encode_form({"amount": 100, "metadata": {"a": "b"}, "types": ["card"], "skip": None, "x": True})
        assert pairs == [
            ("amount", "100"),
            ("metadata[a]", "b"),
            ("types[0]", "card"),
            ("x", "true"),
        ]


class TestStripePaymentHandler:
    """Tests for Stripe API calls."""

    @pytest.mark.asyncio
    async def test_create_payment_intent(self) -> None:
        """Create sends minor units, manual capture and the idempotency key."""
        transport = RecordingTransport(httpx.Response(200, json=_intent_json()))
        handler = _handler(transport)

        intent = await handler.create_payment_intent(
            CreatePaymentRequest(
                amount=Money.of("105.99", "USD"),
                checkout_session_id="cs-1",
                idempotency_key="cs-1:payment:0",
            )
        )

        request = transport.requests[0]
        assert request.url.path == "/v1/payment_intents"
        assert request.headers["Idempotency-Key"] == "cs-1:payment:0"
        assert request.headers["Authorization"] == "Bearer sk_test_123"
        form = transport.form()
        assert form["amount"] == ["10599"]
        assert form["currency"] == ["usd"]
        assert form["capture_method"] == ["manual"]
        assert form["metadata[checkout_session_id]"] == ["cs-1"]
        assert intent.id == "pi_123"
        assert intent.status == PaymentStatus.PENDING
        assert intent.amount == Money.of("105.99", "USD")

    @pytest.mark.parametrize(
        "stripe_status,expected",
        [
            ("requires_capture", PaymentStatus.AUTHORIZED),
            ("requires_action", PaymentStatus.REQUIRES_ACTION),
            ("canceled", PaymentStatus.CANCELLED),
            ("processing", PaymentStatus.PENDING),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(self, stripe_status, expected) -> None:
        """Stripe statuses map onto payment statuses."""
        transport = RecordingTransport(httpx.Response(200, json=_intent_json(stripe_status)))
        intent = await _handler(transport).get_payment_intent("pi_123")
        assert intent.status == expected

    @pytest.mark.asyncio
    async def test_succeeded_is_captured(self) -> None:
        """A succeeded intent reports the received amount."""
        transport = RecordingTransport(
            httpx.Response(200, json=_intent_json("succeeded", amount_received=10599))
        )
        intent = await _handler(transport).capture_payment(CapturePaymentRequest(payment_intent_id="pi_123"))

        assert intent.status == PaymentStatus.CAPTURED
        assert intent.amount_captured == Money.of("105.99", "USD")
        assert transport.requests[0].url.path == "/v1/payment_intents/pi_123/capture"
        assert transport.requests[0].headers["Idempotency-Key"] == "pi_123:capture"

    @pytest.mark.asyncio
    async def test_failed_attempt_maps_to_failed(self) -> None:
        """A payment error on the intent marks it failed."""
        transport = RecordingTransport(
            httpx.Response(
                200,
                json=_intent_json(
                    "requires_payment_method",
                    last_payment_error={"message": "Your card was declined.", "code": "card_declined"},
                ),
            )
        )
        intent = await _handler(transport).get_payment_intent("pi_123")

        assert intent.status == PaymentStatus.FAILED
        assert intent.error_message == "Your card was declined."

    @pytest.mark.asyncio
    async def test_card_error_is_decline(self) -> None:
        """HTTP 402 is a declined payment."""
        transport = RecordingTransport(
            httpx.Response(402, json={"error": {"message": "Your card was declined.", "code": "card_declined"}})
        )
        with pytest.raises(PaymentFailedError) as exc_info:
            await _handler(transport).create_payment_intent(
                CreatePaymentRequest(amount=Money.of("10.00"), checkout_session_id="cs-1")
            )

        assert exc_info.value.error_code == "PAYMENT_DECLINED"
        assert exc_info.value.message == "Your card was declined."
        assert exc_info.value.details["stripe_code"] == "card_declined"

    @pytest.mark.asyncio
    async def test_server_error_is_provider_error(self) -> None:
        """5xx responses leave the outcome unknown."""
        transport = RecordingTransport(httpx.Response(503, json={"error": {"message": "unavailable"}}))
        with pytest.raises(PaymentProviderError):
            await _handler(transport).capture_payment(CapturePaymentRequest(payment_intent_id="pi_123"))

    @pytest.mark.asyncio
    async def test_transport_error_is_provider_error(self) -> None:
        """Network failures are raised as provider errors and not retried for writes."""
        transport = RecordingTransport(httpx.ConnectError("connection refused"))
        with pytest.raises(PaymentProviderError):
            await _handler(transport).cancel_payment("pi_123")
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_reads_are_retried(self) -> None:
        """get_payment_intent retries provider errors."""
        transport = RecordingTransport(
            httpx.Response(500, json={}),
            httpx.Response(200, json=_intent_json("requires_capture")),
        )
        intent = await _handler(transport, read_retries=1).get_payment_intent("pi_123")
        assert intent.status == PaymentStatus.AUTHORIZED
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        """404 maps to NotFoundError."""
        transport = RecordingTransport(httpx.Response(404, json={"error": {"message": "No such payment_intent"}}))
        with pytest.raises(NotFoundError):
            await _handler(transport).get_payment_intent("pi_missing")

    @pytest.mark.asyncio
    async def test_partial_refund(self) -> None:
        """Refunds send the amount in minor units."""
        transport = RecordingTransport(
            httpx.Response(
                200,
                json={"id": "re_1", "amount": 599, "currency": "usd", "status": "succeeded", "created": 1_767_225_600},
            )
        )
        refund = await _handler(transport).refund(
            RefundRequest(payment_intent_id="pi_123", amount=Money.of("5.99"), idempotency_key="ord-1:refund:0")
        )

        assert transport.form()["amount"] == ["599"]
        assert transport.form()["payment_intent"] == ["pi_123"]
        assert refund.amount == Money.of("5.99")
        assert refund.id == "re_1"


class TestStripeWebhooks:
    """Tests for Stripe-Signature verification."""

    @staticmethod
    def _sign(payload: bytes, secret: str = "whsec_test", timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    @staticmethod
    def _payload() -> bytes:
        return json.dumps(
            {
                "id": "evt_1",
                "type": "payment_intent.succeeded",
                "created": 1_767_225_600,
                "data": {"object": {"id": "pi_123", "object": "payment_intent"}},
            }
        ).encode()

    @pytest.mark.asyncio
    async def test_valid_signature(self) -> None:
        """A correctly signed event is parsed."""
        handler = _handler(RecordingTransport(), webhook_secret="whsec_test")
        payload = self._payload()

        event = await handler.parse_webhook_event(payload, self._sign(payload))

        assert event is not None
        assert event.id == "evt_1"
        assert event.payment_intent_id == "pi_123"

    @pytest.mark.asyncio
    async def test_tampered_payload(self) -> None:
        """Changing the payload invalidates the signature."""
        handler = _handler(RecordingTransport(), webhook_secret="whsec_test")
        signature = self._sign(self._payload())
        assert await handler.parse_webhook_event(self._payload().replace(b"evt_1", b"evt_2"), signature) is None

    @pytest.mark.asyncio
    async def test_stale_timestamp(self) -> None:
        """Old signatures are rejected."""
        handler = _handler(RecordingTransport(), webhook_secret="whsec_test")
        payload = self._payload()
        signature = self._sign(payload, timestamp=int(time.time()) - 3600)
        assert await handler.parse_webhook_event(payload, signature) is None

    @pytest.mark.asyncio
    async def test_missing_secret(self) -> None:
        """Without a configured secret nothing is accepted."""
        handler = _handler(RecordingTransport())
        payload = self._payload()
        assert await handler.parse_webhook_event(payload, self._sign(payload)) is None
