"""Domain events for checkout sessions and orders.

Events are recorded on aggregates while they mutate and published by the
application layer once the aggregate has been persisted.
"""

from dataclasses import dataclass
from typing import Any, ClassVar

from ucp_merchant.domain.base import DomainEvent


# ============================================================================
# Checkout Events
# ============================================================================


@dataclass(frozen=True)
class CheckoutSessionCreated(DomainEvent):
    """Event raised when a checkout session is opened."""

    event_type: ClassVar[str] = "checkout.created"

    session_id: str = ""
    merchant_id: str = ""
    total: str = "0"
    currency: str = "USD"

    def _payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "merchant_id": self.merchant_id,
            "total": self.total,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class CheckoutSessionUpdated(DomainEvent):
    """Event raised when session fields change through an update command."""

    event_type: ClassVar[str] = "checkout.updated"

    session_id: str = ""
    changes: tuple[str, ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "changes": list(self.changes)}


@dataclass(frozen=True)
class CheckoutStatusChanged(DomainEvent):
    """Event raised on every checkout status transition."""

    event_type: ClassVar[str] = "checkout.status_changed"

    session_id: str = ""
    from_status: str = ""
    to_status: str = ""
    reason: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class DiscountApplied(DomainEvent):
    """Event raised when a discount code is applied to a session."""

    event_type: ClassVar[str] = "checkout.discount_applied"

    session_id: str = ""
    discount_id: str = ""
    code: str = ""
    amount: str = "0"
    currency: str = "USD"

    def _payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "discount_id": self.discount_id,
            "code": self.code,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class DiscountRemoved(DomainEvent):
    """Event raised when an applied discount is removed."""

    event_type: ClassVar[str] = "checkout.discount_removed"

    session_id: str = ""
    discount_id: str = ""
    code: str = ""
    amount: str = "0"
    currency: str = "USD"

    def _payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "discount_id": self.discount_id,
            "code": self.code,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class CheckoutCompleted(DomainEvent):
    """Event raised when payment is captured and the order exists."""

    event_type: ClassVar[str] = "checkout.completed"

    session_id: str = ""
    order_id: str = ""
    payment_intent_id: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "order_id": self.order_id,
            "payment_intent_id": self.payment_intent_id,
        }


# ============================================================================
# Order Events
# ============================================================================


@dataclass(frozen=True)
class OrderCreated(DomainEvent):
    """Event raised when an order is materialized from a checkout."""

    event_type: ClassVar[str] = "order.created"

    order_id: str = ""
    order_number: str = ""
    checkout_session_id: str = ""
    total: str = "0"
    currency: str = "USD"

    def _payload(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "checkout_session_id": self.checkout_session_id,
            "total": self.total,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class OrderStatusChanged(DomainEvent):
    """Event raised on every order status transition."""

    event_type: ClassVar[str] = "order.status_changed"

    order_id: str = ""
    from_status: str = ""
    to_status: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
        }


@dataclass(frozen=True)
class OrderRefunded(DomainEvent):
    """Event raised when money is returned for an order."""

    event_type: ClassVar[str] = "order.refunded"

    order_id: str = ""
    refund_id: str = ""
    amount: str = "0"
    currency: str = "USD"

    def _payload(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "refund_id": self.refund_id,
            "amount": self.amount,
            "currency": self.currency,
        }
