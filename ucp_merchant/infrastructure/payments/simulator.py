"""Deterministic payment simulator.

An in-process payment provider for development and tests. It keeps
intents in memory, enforces the payment state machine, honours create
idempotency keys and lets tests script failures:

- ``should_fail_payment``: intents are created already failed.
- ``should_require_action``: intents are created in requires_action.
- ``inject_fault``: make the next call of an operation raise, optionally
  after the operation took effect (a lost response).
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass

import structlog

from ucp_merchant.domain.base import utc_now
from ucp_merchant.domain.exceptions import NotFoundError
from ucp_merchant.domain.payments import (
    AvailableMethod,
    AvailablePaymentMethods,
    CapturePaymentRequest,
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
from ucp_merchant.infrastructure.payments.handler import PaymentHandler

logger = structlog.get_logger()

DEFAULT_FAILURE_MESSAGE = "Payment declined"


@dataclass
class _Fault:
    error: Exception
    after_effect: bool


class SimulatedPaymentHandler(PaymentHandler):
    """In-memory payment provider with scriptable failures.

    Attributes:
        should_fail_payment: Create intents in the failed state.
        should_require_action: Create intents in requires_action.
        failure_message: Message attached to failed intents.
        calls: Log of (operation, payment_intent_id) for assertions.
    """

    name = "simulator"

    def __init__(self, webhook_secret: str | None = None, latency_seconds: float = 0.0) -> None:
        """Initialize simulator.

        Args:
            webhook_secret: Secret for webhook signatures; None accepts any
                well-formed payload.
            latency_seconds: Delay applied to every call.
        """
        self.webhook_secret = webhook_secret
        self.latency_seconds = latency_seconds
        self.should_fail_payment = False
        self.should_require_action = False
        self.failure_message = DEFAULT_FAILURE_MESSAGE
        self.calls: list[tuple[str, str | None]] = []
        self._intents: dict[str, PaymentIntent] = {}
        self._refunds: dict[str, Refund] = {}
        self._saved_methods: dict[str, list[PaymentMethodInfo]] = {}
        self._idempotency_keys: dict[str, str] = {}
        self._faults: dict[str, _Fault] = {}
        self._counter = 0

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def inject_fault(self, operation: str, error: Exception, after_effect: bool = False) -> None:
        """Make the next call of ``operation`` raise ``error``.

        Args:
            operation: Method name, e.g. "capture_payment".
            error: Exception to raise.
            after_effect: Apply the operation first, then raise (the
                provider did the work but the response was lost).
        """
        self._faults[operation] = _Fault(error=error, after_effect=after_effect)

    def add_saved_payment_method(self, customer_id: str, method: PaymentMethodInfo) -> None:
        self._saved_methods.setdefault(customer_id, []).append(method)

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def sign_webhook(self, payload: bytes) -> str:
        """Compute the signature this simulator expects for ``payload``."""
        return hmac.new((self.webhook_secret or "").encode(), payload, hashlib.sha256).hexdigest()

    def reset(self) -> None:
        """Forget all state and restore default behaviour."""
        self._intents.clear()
        self._refunds.clear()
        self._saved_methods.clear()
        self._idempotency_keys.clear()
        self._faults.clear()
        self.calls.clear()
        self._counter = 0
        self.should_fail_payment = False
        self.should_require_action = False
        self.failure_message = DEFAULT_FAILURE_MESSAGE

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_sim_{self._counter:06d}"

    async def _enter(self, operation: str, payment_intent_id: str | None) -> _Fault | None:
        self.calls.append((operation, payment_intent_id))
        await asyncio.sleep(self.latency_seconds)
        fault = self._faults.pop(operation, None)
        if fault is not None and not fault.after_effect:
            raise fault.error
        return fault

    def _get(self, payment_intent_id: str) -> PaymentIntent:
        intent = self._intents.get(payment_intent_id)
        if intent is None:
            raise NotFoundError("PaymentIntent", payment_intent_id)
        return intent

    @staticmethod
    def _snapshot(intent: PaymentIntent) -> PaymentIntent:
        return PaymentIntent.from_dict(intent.to_dict())

    @staticmethod
    def _finish(fault: _Fault | None) -> None:
        if fault is not None:
            raise fault.error

    # -------------------------------------------------------------------------
    # PaymentHandler
    # -------------------------------------------------------------------------

    async def get_available_methods(self, customer_id: str | None = None) -> AvailablePaymentMethods:
        saved = list(self._saved_methods.get(customer_id, [])) if customer_id else []
        return AvailablePaymentMethods(
            methods=[
                AvailableMethod(PaymentMethodType.CARD, "Credit/Debit Card"),
                AvailableMethod(PaymentMethodType.GOOGLE_PAY, "Google Pay"),
                AvailableMethod(PaymentMethodType.APPLE_PAY, "Apple Pay"),
                AvailableMethod(PaymentMethodType.PAYPAL, "PayPal", enabled=False),
            ],
            saved_methods=saved,
        )

    async def create_payment_intent(self, request: CreatePaymentRequest) -> PaymentIntent:
        fault = await self._enter("create_payment_intent", None)
        if request.idempotency_key and request.idempotency_key in self._idempotency_keys:
            existing = self._intents[self._idempotency_keys[request.idempotency_key]]
            self._finish(fault)
            return self._snapshot(existing)

        intent_id = self._next_id("pi")
        intent = PaymentIntent(
            id=intent_id,
            status=PaymentStatus.PENDING,
            amount=request.amount,
            checkout_session_id=request.checkout_session_id,
            payment_method_type=request.payment_method_type,
            client_secret=f"{intent_id}_secret",
            metadata=dict(request.metadata),
        )
        if self.should_fail_payment:
            intent.fail(self.failure_message, "card_declined")
        elif self.should_require_action:
            intent.require_action()

        self._intents[intent_id] = intent
        if request.idempotency_key:
            self._idempotency_keys[request.idempotency_key] = intent_id
        logger.info(
            "Simulated payment intent created",
            payment_intent_id=intent_id,
            amount=request.amount.amount_str,
            currency=request.amount.currency,
            status=intent.status.value,
        )
        self._finish(fault)
        return self._snapshot(intent)

    async def confirm_payment(self, request: ConfirmPaymentRequest) -> PaymentIntent:
        fault = await self._enter("confirm_payment", request.payment_intent_id)
        intent = self._get(request.payment_intent_id)
        if self.should_fail_payment:
            intent.fail(self.failure_message, "card_declined")
        else:
            intent.authorize()
            if request.save_payment_method and request.payment_token:
                customer_id = intent.metadata.get("customer_id")
                if customer_id:
                    self.add_saved_payment_method(
                        customer_id,
                        PaymentMethodInfo(id=self._next_id("pm"), type=intent.payment_method_type),
                    )
        self._finish(fault)
        return self._snapshot(intent)

    async def capture_payment(self, request: CapturePaymentRequest) -> PaymentIntent:
        fault = await self._enter("capture_payment", request.payment_intent_id)
        intent = self._get(request.payment_intent_id)
        intent.capture(request.amount)
        self._finish(fault)
        return self._snapshot(intent)

    async def cancel_payment(self, payment_intent_id: str) -> PaymentIntent:
        fault = await self._enter("cancel_payment", payment_intent_id)
        intent = self._get(payment_intent_id)
        intent.cancel()
        self._finish(fault)
        return self._snapshot(intent)

    async def refund(self, request: RefundRequest) -> Refund:
        fault = await self._enter("refund", request.payment_intent_id)
        intent = self._get(request.payment_intent_id)
        amount = intent.refund(request.amount)
        refund = Refund(
            id=self._next_id("re"),
            payment_intent_id=intent.id,
            amount=amount,
            status=RefundStatus.SUCCEEDED,
            reason=request.reason,
        )
        self._refunds[refund.id] = refund
        self._finish(fault)
        return refund

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        fault = await self._enter("get_payment_intent", payment_intent_id)
        intent = self._get(payment_intent_id)
        self._finish(fault)
        return self._snapshot(intent)

    async def get_saved_payment_methods(self, customer_id: str) -> list[PaymentMethodInfo]:
        return list(self._saved_methods.get(customer_id, []))

    async def delete_payment_method(self, payment_method_id: str) -> None:
        for customer_id, methods in self._saved_methods.items():
            remaining = [m for m in methods if m.id != payment_method_id]
            if len(remaining) != len(methods):
                self._saved_methods[customer_id] = remaining
                return
        raise NotFoundError("PaymentMethod", payment_method_id)

    async def parse_webhook_event(self, payload: bytes, signature: str) -> PaymentWebhookEvent | None:
        if self.webhook_secret is not None and not hmac.compare_digest(self.sign_webhook(payload), signature or ""):
            logger.warning("Simulated webhook signature mismatch")
            return None
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        return PaymentWebhookEvent(
            id=data.get("id") or self._next_id("evt"),
            type=data.get("type", "payment_intent.succeeded"),
            payment_intent_id=data.get("payment_intent_id"),
            data=data,
            created_at=utc_now(),
        )

