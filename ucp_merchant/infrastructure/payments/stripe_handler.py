"""Stripe payment handler.

Talks to the Stripe REST API with ``httpx``. Intents are created with
manual capture so the checkout flow can authorize, then capture.

Mutating calls (create, confirm, capture, cancel, refund) carry a Stripe
``Idempotency-Key`` and are never retried here: a transport failure makes
the outcome unknown and is raised as ``PaymentProviderError`` so the caller
can reconcile. Reads (``get_payment_intent``) are retried.
"""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
import structlog

from ucp_merchant.domain.exceptions import NotFoundError, PaymentFailedError, PaymentProviderError
from ucp_merchant.domain.payments import (
    AvailableMethod,
    AvailablePaymentMethods,
    CapturePaymentRequest,
    CardDetails,
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentIntent,
    PaymentMethodInfo,
    PaymentMethodType,
    PaymentWebhookEvent,
    Refund,
    RefundRequest,
    RefundStatus,
)
from ucp_merchant.domain.state_machines import PaymentStatus
from ucp_merchant.domain.value_objects import Money
from ucp_merchant.infrastructure.payments.handler import PaymentHandler

logger = structlog.get_logger()

# Stripe status -> canonical payment status
_STATUS_MAP: dict[str, PaymentStatus] = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "canceled": PaymentStatus.CANCELLED,
    "succeeded": PaymentStatus.CAPTURED,
}

_METHOD_TYPE_MAP: dict[PaymentMethodType, str] = {
    PaymentMethodType.CARD: "card",
    PaymentMethodType.GOOGLE_PAY: "card",
    PaymentMethodType.APPLE_PAY: "card",
    PaymentMethodType.PAYPAL: "paypal",
    PaymentMethodType.BANK_TRANSFER: "us_bank_account",
    PaymentMethodType.CRYPTO: "crypto",
}

WEBHOOK_TOLERANCE_SECONDS = 300


def to_minor_units(money: Money) -> int:
    """Convert an amount to the integer minor units Stripe expects."""
    scaled = money.amount.scaleb(money.minor_units)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(value: int, currency: str) -> Money:
    currency = currency.upper()
    units = Money.zero(currency).minor_units
    return Money(amount=Decimal(value).scaleb(-units), currency=currency)


def encode_form(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts and lists into Stripe's bracketed form fields."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripePaymentHandler(PaymentHandler):
    """Payment handler backed by the Stripe API."""

    name = "stripe"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str | None = None,
        base_url: str = "https://api.stripe.com",
        timeout: float = 30.0,
        read_retries: int = 2,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize handler.

        Args:
            api_key: Stripe secret key.
            webhook_secret: Endpoint secret used to verify webhooks.
            base_url: API base URL.
            timeout: Per-request timeout in seconds.
            read_retries: Extra attempts for idempotent reads.
            client: Optional preconfigured client (tests use a mock transport).
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.read_retries = read_retries
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            response = await client.request(
                method,
                f"/v1{path}",
                data=dict(encode_form(data)) if data else None,
                params=params,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning("Stripe request failed", method=method, path=path, error=str(e))
            raise PaymentProviderError(
                f"Payment provider unreachable: {e}",
                {"provider": self.name, "path": path},
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code < 400:
            return body

        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message") or f"Stripe error: {response.status_code}"
        details = {"provider": self.name, "stripe_code": error.get("code"), "status": response.status_code}
        if response.status_code == 404:
            raise NotFoundError("PaymentIntent", path.rsplit("/", 1)[-1])
        if response.status_code == 429 or response.status_code >= 500:
            raise PaymentProviderError(message, details)
        if response.status_code == 402:
            raise PaymentFailedError(message, details, error_code="PAYMENT_DECLINED")
        raise PaymentFailedError(message, details)

    def _to_intent(self, data: dict[str, Any], request: CreatePaymentRequest | None = None) -> PaymentIntent:
        currency = data.get("currency", "usd")
        metadata = data.get("metadata") or {}
        last_error = data.get("last_payment_error") or {}
        status = _STATUS_MAP.get(data.get("status", ""), PaymentStatus.PENDING)
        if status == PaymentStatus.PENDING and data.get("status") == "requires_payment_method" and last_error:
            status = PaymentStatus.FAILED
        received = data.get("amount_received") or 0
        created = data.get("created")
        return PaymentIntent(
            id=data["id"],
            status=status,
            amount=from_minor_units(data.get("amount", 0), currency),
            amount_captured=from_minor_units(received, currency) if received else None,
            checkout_session_id=(
                request.checkout_session_id if request else metadata.get("checkout_session_id", "")
            ),
            payment_method_type=request.payment_method_type if request else PaymentMethodType.CARD,
            client_secret=data.get("client_secret"),
            error_message=last_error.get("message"),
            error_code=last_error.get("code"),
            created_at=(
                datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc)
            ),
            captured_at=datetime.now(timezone.utc) if status == PaymentStatus.CAPTURED else None,
            metadata=dict(metadata),
        )

    # -------------------------------------------------------------------------
    # PaymentHandler
    # -------------------------------------------------------------------------

    async def get_available_methods(self, customer_id: str | None = None) -> AvailablePaymentMethods:
        saved: list[PaymentMethodInfo] = []
        if customer_id:
            try:
                saved = await self.get_saved_payment_methods(customer_id)
            except NotFoundError:
                logger.info("Stripe customer not found", customer_id=customer_id)
        return AvailablePaymentMethods(
            methods=[
                AvailableMethod(PaymentMethodType.CARD, "Credit/Debit Card"),
                AvailableMethod(PaymentMethodType.GOOGLE_PAY, "Google Pay"),
                AvailableMethod(PaymentMethodType.APPLE_PAY, "Apple Pay"),
            ],
            saved_methods=saved,
        )

    async def create_payment_intent(self, request: CreatePaymentRequest) -> PaymentIntent:
        params: dict[str, Any] = {
            "amount": to_minor_units(request.amount),
            "currency": request.amount.currency.lower(),
            "payment_method_types": [_METHOD_TYPE_MAP.get(request.payment_method_type, "card")],
            "capture_method": "manual",
            "metadata": {"checkout_session_id": request.checkout_session_id, **request.metadata},
            "customer": request.customer_id,
            "receipt_email": request.customer_email,
        }
        data = await self._request(
            "POST", "/payment_intents", data=params, idempotency_key=request.idempotency_key
        )
        intent = self._to_intent(data, request)
        logger.info(
            "Stripe payment intent created",
            payment_intent_id=intent.id,
            status=intent.status.value,
        )
        return intent

    async def confirm_payment(self, request: ConfirmPaymentRequest) -> PaymentIntent:
        params: dict[str, Any] = {"payment_method": request.payment_method_id or request.payment_token}
        if request.save_payment_method:
            params["setup_future_usage"] = "off_session"
        data = await self._request(
            "POST",
            f"/payment_intents/{request.payment_intent_id}/confirm",
            data=params,
            idempotency_key=f"{request.payment_intent_id}:confirm",
        )
        return self._to_intent(data)

    async def capture_payment(self, request: CapturePaymentRequest) -> PaymentIntent:
        params: dict[str, Any] = {}
        if request.amount is not None:
            params["amount_to_capture"] = to_minor_units(request.amount)
        data = await self._request(
            "POST",
            f"/payment_intents/{request.payment_intent_id}/capture",
            data=params,
            idempotency_key=f"{request.payment_intent_id}:capture",
        )
        return self._to_intent(data)

    async def cancel_payment(self, payment_intent_id: str) -> PaymentIntent:
        data = await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/cancel",
            idempotency_key=f"{payment_intent_id}:cancel",
        )
        return self._to_intent(data)

    async def refund(self, request: RefundRequest) -> Refund:
        params: dict[str, Any] = {
            "payment_intent": request.payment_intent_id,
            "amount": to_minor_units(request.amount) if request.amount else None,
            "reason": request.reason,
        }
        data = await self._request("POST", "/refunds", data=params, idempotency_key=request.idempotency_key)
        created = data.get("created")
        return Refund(
            id=data["id"],
            payment_intent_id=request.payment_intent_id,
            amount=from_minor_units(data.get("amount", 0), data.get("currency", "usd")),
            status=RefundStatus.SUCCEEDED if data.get("status") == "succeeded" else RefundStatus.PENDING,
            reason=data.get("reason"),
            created_at=(
                datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc)
            ),
        )

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        attempt = 0
        while True:
            try:
                data = await self._request("GET", f"/payment_intents/{payment_intent_id}")
                return self._to_intent(data)
            except PaymentProviderError:
                if attempt >= self.read_retries:
                    raise
                attempt += 1
                logger.info(
                    "Retrying Stripe read",
                    payment_intent_id=payment_intent_id,
                    attempt=attempt,
                )
                await asyncio.sleep(0.2 * attempt)

    async def get_saved_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]:
        data = await self._request("GET", "/payment_methods", params={"customer": customer_id, "type": "card"})
        methods = []
        for pm in data.get("data", []):
            card = pm.get("card")
            methods.append(
                PaymentMethodInfo(
                    id=pm["id"],
                    type=PaymentMethodType.CARD,
                    card=(
                        CardDetails(
                            brand=card["brand"],
                            last4=card["last4"],
                            expiry_month=card["exp_month"],
                            expiry_year=card["exp_year"],
                            funding=card.get("funding"),
                        )
                        if card
                        else None
                    ),
                    billing_email=(pm.get("billing_details") or {}).get("email"),
                    created_at=datetime.fromtimestamp(pm.get("created", 0), tz=timezone.utc),
                )
            )
        return methods

    async def delete_payment_method(self, payment_method_id: str) -> None:
        await self._request(
            "POST",
            f"/payment_methods/{payment_method_id}/detach",
            idempotency_key=f"{payment_method_id}:detach",
        )

    async def parse_webhook_event(self, payload: bytes, signature: str) -> PaymentWebhookEvent | None:
        """Verify a ``Stripe-Signature`` header (``t=...,v1=...``) and parse the event."""
        if not self.webhook_secret:
            logger.warning("Stripe webhook secret not configured")
            return None

        parts: dict[str, list[str]] = {}
        for item in (signature or "").split(","):
            key, _, value = item.strip().partition("=")
            parts.setdefault(key, []).append(value)
        try:
            timestamp = int(parts.get("t", [""])[0])
        except ValueError:
            return None
        if abs(time.time() - timestamp) > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("Stripe webhook timestamp outside tolerance", timestamp=timestamp)
            return None

        signed = f"{timestamp}.".encode() + payload
        expected = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in parts.get("v1", [])):
            logger.warning("Stripe webhook signature mismatch")
            return None

        try:
            event = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        obj = (event.get("data") or {}).get("object") or {}
        return PaymentWebhookEvent(
            id=event.get("id", ""),
            type=event.get("type", ""),
            payment_intent_id=obj.get("id") if obj.get("object") == "payment_intent" else obj.get("payment_intent"),
            data=event.get("data") or {},
            created_at=datetime.fromtimestamp(event.get("created", timestamp), tz=timezone.utc),
        )
