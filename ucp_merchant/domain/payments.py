"""Payment types shared by every payment handler.

A ``PaymentIntent`` is one attempt to move money for a checkout session.
Its status only changes through the methods below, which enforce the
payment state machine (a captured payment can be refunded, never
cancelled; partial captures and refunds are bounded by what is left).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Self

from ucp_merchant.domain.base import format_datetime, parse_datetime, utc_now
from ucp_merchant.domain.exceptions import ValidationError
from ucp_merchant.domain.state_machines import PaymentStatus, validate_payment_transition
from ucp_merchant.domain.value_objects import Money


class PaymentMethodType(str, Enum):
    """Payment method types a handler may support."""

    CARD = "card"
    GOOGLE_PAY = "google_pay"
    APPLE_PAY = "apple_pay"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ============================================================================
# Payment Methods
# ============================================================================


@dataclass(frozen=True)
class CardDetails:
    """Display details of a card (never the full number)."""

    brand: str
    last4: str
    expiry_month: int
    expiry_year: int
    funding: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "brand": self.brand,
            "last4": self.last4,
            "expiry_month": self.expiry_month,
            "expiry_year": self.expiry_year,
            "funding": self.funding,
        }


@dataclass(frozen=True)
class PaymentMethodInfo:
    """A saved payment method of a customer."""

    id: str
    type: PaymentMethodType
    created_at: datetime = field(default_factory=utc_now)
    card: CardDetails | None = None
    billing_email: str | None = None
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "card": self.card.to_dict() if self.card else None,
            "billing_email": self.billing_email,
            "is_default": self.is_default,
            "created_at": format_datetime(self.created_at),
        }


@dataclass(frozen=True)
class AvailableMethod:
    type: PaymentMethodType
    name: str
    enabled: bool = True
    icon: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "name": self.name, "enabled": self.enabled, "icon": self.icon}


@dataclass(frozen=True)
class AvailablePaymentMethods:
    """Methods offered for a checkout, plus the customer's saved methods."""

    methods: list[AvailableMethod]
    saved_methods: list[PaymentMethodInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "methods": [m.to_dict() for m in self.methods],
            "saved_methods": [m.to_dict() for m in self.saved_methods],
        }


# ============================================================================
# Requests
# ============================================================================


@dataclass(frozen=True)
class CreatePaymentRequest:
    """Request to create a payment intent.

    Attributes:
        amount: Amount to charge (the snapshotted cart total).
        checkout_session_id: Session the payment belongs to.
        payment_method_type: Method type the buyer chose.
        idempotency_key: Provider-side idempotency key; a retried create
            with the same key returns the original intent.
    """

    amount: Money
    checkout_session_id: str
    payment_method_type: PaymentMethodType = PaymentMethodType.CARD
    customer_id: str | None = None
    customer_email: str | None = None
    return_url: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmPaymentRequest:
    payment_intent_id: str
    payment_method_id: str | None = None
    payment_token: str | None = None
    save_payment_method: bool = False


@dataclass(frozen=True)
class CapturePaymentRequest:
    """Capture an authorized intent; ``amount`` enables partial capture."""

    payment_intent_id: str
    amount: Money | None = None


@dataclass(frozen=True)
class RefundRequest:
    """Refund a captured intent; ``amount`` enables partial refunds."""

    payment_intent_id: str
    amount: Money | None = None
    reason: str | None = None
    idempotency_key: str | None = None


# ============================================================================
# Payment Intent
# ============================================================================


@dataclass
class PaymentIntent:
    """One attempt to move money for a checkout session.

    Attributes:
        id: Provider-assigned identifier.
        status: Current payment status.
        amount: Authorized amount.
        amount_captured: Amount captured so far.
        amount_refunded: Amount refunded so far.
        client_secret: Secret for client-side confirmation flows.
        error_message: Provider message of the last failure.
        error_code: Provider code of the last failure.
    """

    id: str
    status: PaymentStatus
    amount: Money
    checkout_session_id: str
    payment_method_type: PaymentMethodType = PaymentMethodType.CARD
    amount_captured: Money | None = None
    amount_refunded: Money | None = None
    client_secret: str | None = None
    redirect_url: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    captured_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def refundable_amount(self) -> Money:
        """Captured amount not yet refunded."""
        captured = self.amount_captured or Money.zero(self.amount.currency)
        refunded = self.amount_refunded or Money.zero(self.amount.currency)
        return captured - refunded

    def _transition(self, target: PaymentStatus) -> None:
        validate_payment_transition(self.id, self.status, target)
        self.status = target
        self.updated_at = utc_now()

    def authorize(self) -> None:
        self._transition(PaymentStatus.AUTHORIZED)

    def require_action(self) -> None:
        self._transition(PaymentStatus.REQUIRES_ACTION)

    def fail(self, message: str, code: str | None = None) -> None:
        self._transition(PaymentStatus.FAILED)
        self.error_message = message
        self.error_code = code

    def cancel(self) -> None:
        self._transition(PaymentStatus.CANCELLED)

    def capture(self, amount: Money | None = None) -> Money:
        """Capture all or part of the authorized amount.

        Raises:
            InvalidStateTransitionError: If the intent is not authorized.
            ValidationError: If ``amount`` exceeds the authorized amount.
        """
        validate_payment_transition(self.id, self.status, PaymentStatus.CAPTURED)
        captured = amount if amount is not None else self.amount
        if captured.is_negative() or captured.is_zero() or captured > self.amount:
            raise ValidationError(
                "Capture amount must be positive and at most the authorized amount",
                {"payment_intent_id": self.id, "amount": captured.amount_str},
            )
        self._transition(PaymentStatus.CAPTURED)
        self.amount_captured = captured
        self.captured_at = self.updated_at
        return captured

    def refund(self, amount: Money | None = None) -> Money:
        """Refund all or part of the remaining captured balance.

        Raises:
            InvalidStateTransitionError: If nothing has been captured.
            ValidationError: If ``amount`` exceeds the refundable balance.
        """
        validate_payment_transition(self.id, self.status, PaymentStatus.REFUNDED)
        remaining = self.refundable_amount
        refunded = amount if amount is not None else remaining
        if refunded.is_negative() or refunded.is_zero() or refunded > remaining:
            raise ValidationError(
                "Refund amount must be positive and at most the refundable balance",
                {
                    "payment_intent_id": self.id,
                    "amount": refunded.amount_str,
                    "refundable": remaining.amount_str,
                },
            )
        self.amount_refunded = (self.amount_refunded or Money.zero(self.amount.currency)) + refunded
        if self.refundable_amount.is_zero():
            self._transition(PaymentStatus.REFUNDED)
        else:
            self._transition(PaymentStatus.PARTIALLY_REFUNDED)
        return refunded

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "amount": self.amount.to_dict(),
            "amount_captured": self.amount_captured.to_dict() if self.amount_captured else None,
            "amount_refunded": self.amount_refunded.to_dict() if self.amount_refunded else None,
            "checkout_session_id": self.checkout_session_id,
            "payment_method_type": self.payment_method_type.value,
            "client_secret": self.client_secret,
            "redirect_url": self.redirect_url,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "captured_at": format_datetime(self.captured_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        captured = data.get("amount_captured")
        refunded = data.get("amount_refunded")
        return cls(
            id=data["id"],
            status=PaymentStatus(data["status"]),
            amount=Money.from_dict(data["amount"]),
            checkout_session_id=data["checkout_session_id"],
            payment_method_type=PaymentMethodType(data.get("payment_method_type", "card")),
            amount_captured=Money.from_dict(captured) if captured else None,
            amount_refunded=Money.from_dict(refunded) if refunded else None,
            client_secret=data.get("client_secret"),
            redirect_url=data.get("redirect_url"),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
            captured_at=parse_datetime(data.get("captured_at")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class Refund:
    id: str
    payment_intent_id: str
    amount: Money
    status: RefundStatus
    reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payment_intent_id": self.payment_intent_id,
            "amount": self.amount.to_dict(),
            "status": self.status.value,
            "reason": self.reason,
            "created_at": format_datetime(self.created_at),
        }


@dataclass(frozen=True)
class PaymentWebhookEvent:
    """A verified event delivered by the payment provider."""

    id: str
    type: str
    data: dict[str, Any]
    created_at: datetime
    payment_intent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payment_intent_id": self.payment_intent_id,
            "data": self.data,
            "created_at": format_datetime(self.created_at),
        }
