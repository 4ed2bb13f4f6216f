"""Tests for domain state machines."""

import pytest

from ucp_merchant.domain.exceptions import InvalidStateTransitionError
from ucp_merchant.domain.state_machines import (
    CheckoutStatus,
    OrderStatus,
    PaymentStatus,
    validate_checkout_transition,
    validate_order_transition,
    validate_payment_transition,
)


class TestCheckoutStatus:
    """Tests for the checkout state machine."""

    def test_pending_and_ready_toggle(self) -> None:
        """PENDING and READY move both ways."""
        assert CheckoutStatus.PENDING.can_transition_to(CheckoutStatus.READY)
        assert CheckoutStatus.READY.can_transition_to(CheckoutStatus.PENDING)

    def test_processing_can_revert(self) -> None:
        """PROCESSING returns to PENDING or READY on failure."""
        assert CheckoutStatus.PROCESSING.can_transition_to(CheckoutStatus.READY)
        assert CheckoutStatus.PROCESSING.can_transition_to(CheckoutStatus.PENDING)

    def test_processing_cannot_be_cancelled(self) -> None:
        """A session mid-payment cannot be cancelled."""
        assert not CheckoutStatus.PROCESSING.can_transition_to(CheckoutStatus.CANCELLED)

    @pytest.mark.parametrize(
        "status", [CheckoutStatus.COMPLETED, CheckoutStatus.CANCELLED, CheckoutStatus.FAILED]
    )
    def test_terminal_states(self, status: CheckoutStatus) -> None:
        """COMPLETED, CANCELLED and FAILED are terminal."""
        assert status.is_terminal()
        assert not status.is_editable()

    def test_invalid_transition_raises(self) -> None:
        """Invalid transitions raise with the allowed targets."""
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_checkout_transition("cs-1", CheckoutStatus.COMPLETED, CheckoutStatus.PENDING)
        assert exc_info.value.details["allowed_transitions"] == []


class TestPaymentStatus:
    """Tests for the payment state machine."""

    def test_happy_path(self) -> None:
        """pending -> authorized -> captured -> refunded."""
        assert PaymentStatus.PENDING.can_transition_to(PaymentStatus.AUTHORIZED)
        assert PaymentStatus.AUTHORIZED.can_transition_to(PaymentStatus.CAPTURED)
        assert PaymentStatus.CAPTURED.can_transition_to(PaymentStatus.REFUNDED)

    def test_captured_cannot_be_cancelled(self) -> None:
        """A captured payment can only be refunded."""
        with pytest.raises(InvalidStateTransitionError):
            validate_payment_transition("pi_1", PaymentStatus.CAPTURED, PaymentStatus.CANCELLED)

    def test_partial_refunds_repeat(self) -> None:
        """Partial refunds can follow each other."""
        assert PaymentStatus.PARTIALLY_REFUNDED.can_transition_to(PaymentStatus.PARTIALLY_REFUNDED)

    def test_settled(self) -> None:
        """Captured states are settled."""
        assert PaymentStatus.CAPTURED.is_settled()
        assert not PaymentStatus.AUTHORIZED.is_settled()


class TestOrderStatus:
    """Tests for the order state machine."""

    def test_fulfilment_path(self) -> None:
        """CONFIRMED -> PROCESSING -> SHIPPED -> DELIVERED."""
        validate_order_transition("o-1", OrderStatus.CONFIRMED, OrderStatus.PROCESSING)
        validate_order_transition("o-1", OrderStatus.PROCESSING, OrderStatus.SHIPPED)
        validate_order_transition("o-1", OrderStatus.SHIPPED, OrderStatus.DELIVERED)

    def test_shipped_cannot_be_cancelled(self) -> None:
        """Shipped orders are refunded, not cancelled."""
        assert not OrderStatus.SHIPPED.is_cancellable()
        with pytest.raises(InvalidStateTransitionError):
            validate_order_transition("o-1", OrderStatus.SHIPPED, OrderStatus.CANCELLED)

    def test_refunded_is_terminal(self) -> None:
        """REFUNDED is terminal."""
        assert OrderStatus.REFUNDED.is_terminal()
