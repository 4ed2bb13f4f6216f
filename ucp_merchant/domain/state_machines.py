"""State machines for domain entities.

Deterministic state machines that define valid state transitions for
checkout sessions, payment intents and orders. Every mutation of a status
field goes through one of the ``validate_*_transition`` helpers.
"""

from enum import Enum

from ucp_merchant.domain.exceptions import InvalidStateTransitionError


# ============================================================================
# Checkout Session State Machine
# ============================================================================


class CheckoutStatus(str, Enum):
    """Checkout session lifecycle states.

    State diagram:
        PENDING ◄────────────► READY ──────────► CANCELLED
          │                      │                   ▲
          │ complete()           │ complete()        │ cancel
          ▼                      ▼                   │
        PROCESSING ◄─────────────┘             PENDING
          │         │
          │         └──► FAILED (order not persisted, payment refunded)
          ▼
        COMPLETED

    PROCESSING only exists while ``complete()`` runs; a payment failure
    returns the session to the state it came from.
    """

    PENDING = "PENDING"
    READY = "READY"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    def can_transition_to(self, target: "CheckoutStatus") -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.

        Returns:
            True if transition is valid.
        """
        return target in _CHECKOUT_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["CheckoutStatus"]:
        """Get list of valid target states."""
        return list(_CHECKOUT_TRANSITIONS.get(self, set()))

    def is_editable(self) -> bool:
        """Check if addresses, shipping, discounts and payment method may change."""
        return self in {CheckoutStatus.PENDING, CheckoutStatus.READY}

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_CHECKOUT_TRANSITIONS.get(self, set())) == 0


# Checkout transitions (defined outside enum to avoid Enum restrictions)
_CHECKOUT_TRANSITIONS: dict[CheckoutStatus, set[CheckoutStatus]] = {
    CheckoutStatus.PENDING: {
        CheckoutStatus.READY,
        CheckoutStatus.PROCESSING,
        CheckoutStatus.CANCELLED,
    },
    CheckoutStatus.READY: {
        CheckoutStatus.PENDING,
        CheckoutStatus.PROCESSING,
        CheckoutStatus.CANCELLED,
    },
    CheckoutStatus.PROCESSING: {
        CheckoutStatus.PENDING,
        CheckoutStatus.READY,
        CheckoutStatus.COMPLETED,
        CheckoutStatus.FAILED,
    },
    CheckoutStatus.COMPLETED: set(),  # Terminal state
    CheckoutStatus.CANCELLED: set(),  # Terminal state
    CheckoutStatus.FAILED: set(),  # Terminal state
}


# ============================================================================
# Payment Intent State Machine
# ============================================================================


class PaymentStatus(str, Enum):
    """Payment intent lifecycle states.

    State diagram:
        PENDING ──────────► REQUIRES_ACTION
          │  │  ╲                 │  │  ╲
          │  │   ╲                │  │   ▼
          │  │    ▼               │  │  FAILED
          │  │   FAILED           │  ▼
          │  ▼                    │ CANCELLED
          │ CANCELLED             │
          ▼                       ▼
        AUTHORIZED ◄──────────────┘
          │     ╲
          │      ▼
          │     CANCELLED
          ▼
        CAPTURED ──► PARTIALLY_REFUNDED ──► REFUNDED
           ╲                                   ▲
            ╲──────────────────────────────────┘

    A captured payment can only be refunded, never cancelled.
    """

    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        """Check if transition to target state is valid."""
        return target in _PAYMENT_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["PaymentStatus"]:
        """Get list of valid target states."""
        return list(_PAYMENT_TRANSITIONS.get(self, set()))

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_PAYMENT_TRANSITIONS.get(self, set())) == 0

    def is_settled(self) -> bool:
        """Check if money has been captured (possibly partly refunded since)."""
        return self in {
            PaymentStatus.CAPTURED,
            PaymentStatus.PARTIALLY_REFUNDED,
            PaymentStatus.REFUNDED,
        }


_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.FAILED,
        PaymentStatus.REQUIRES_ACTION,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.REQUIRES_ACTION: {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.AUTHORIZED: {PaymentStatus.CAPTURED, PaymentStatus.CANCELLED},
    PaymentStatus.CAPTURED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
    PaymentStatus.PARTIALLY_REFUNDED: {
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIALLY_REFUNDED,
    },
    PaymentStatus.FAILED: set(),  # Terminal state
    PaymentStatus.CANCELLED: set(),  # Terminal state
    PaymentStatus.REFUNDED: set(),  # Terminal state
}


# ============================================================================
# Order State Machine
# ============================================================================


class OrderStatus(str, Enum):
    """Order lifecycle states.

    Orders are created CONFIRMED from a completed checkout. Afterwards only
    fulfilment (PROCESSING, SHIPPED, DELIVERED) and refund states change.
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    FAILED = "FAILED"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        """Check if transition to target state is valid."""
        return target in _ORDER_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["OrderStatus"]:
        """Get list of valid target states."""
        return list(_ORDER_TRANSITIONS.get(self, set()))

    def is_cancellable(self) -> bool:
        """Check if the order can still be cancelled (nothing shipped yet)."""
        return self in {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return len(_ORDER_TRANSITIONS.get(self, set())) == 0


_REFUND_TARGETS = {OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED}

_ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    }
    | _REFUND_TARGETS,
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED} | _REFUND_TARGETS,
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED} | _REFUND_TARGETS,
    OrderStatus.DELIVERED: set(_REFUND_TARGETS),
    OrderStatus.PARTIALLY_REFUNDED: {
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    }
    | _REFUND_TARGETS,
    OrderStatus.CANCELLED: set(),  # Terminal state
    OrderStatus.REFUNDED: set(),  # Terminal state
    OrderStatus.FAILED: set(),  # Terminal state
}


# ============================================================================
# Transition Validators
# ============================================================================


def validate_checkout_transition(
    session_id: str,
    current_status: CheckoutStatus,
    target_status: CheckoutStatus,
) -> None:
    """Validate and raise if checkout state transition is invalid.

    Args:
        session_id: Session identifier for error message.
        current_status: Current session status.
        target_status: Target session status.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="CheckoutSession",
            entity_id=session_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def validate_payment_transition(
    payment_intent_id: str,
    current_status: PaymentStatus,
    target_status: PaymentStatus,
) -> None:
    """Validate and raise if payment intent state transition is invalid.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="PaymentIntent",
            entity_id=payment_intent_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def validate_order_transition(
    order_id: str,
    current_status: OrderStatus,
    target_status: OrderStatus,
) -> None:
    """Validate and raise if order state transition is invalid.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=order_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )
