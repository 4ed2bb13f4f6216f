"""Tests for the order application service."""

import pytest

from ucp_merchant.application.checkout_service import CheckoutService
from ucp_merchant.application.order_service import LineItemProgress, OrderService
from ucp_merchant.domain.commands import SelectShippingOption, SetPaymentMethod, SetShippingAddress
from ucp_merchant.domain.entities import Order
from ucp_merchant.domain.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from ucp_merchant.domain.state_machines import OrderStatus, PaymentStatus
from ucp_merchant.domain.value_objects import Money


async def _place_order(checkout_service: CheckoutService, cart, address, card) -> Order:
    session = await checkout_service.create(cart)
    await checkout_service.update(
        session.id,
        [SetShippingAddress(address), SelectShippingOption("standard"), SetPaymentMethod(card)],
    )
    result = await checkout_service.complete(session.id)
    return result.order


class TestOrderQueries:
    """Tests for fetching orders."""

    @pytest.mark.asyncio
    async def test_get_order(self, checkout_service, order_service: OrderService, cart, address, card) -> None:
        """Placed orders can be fetched by id."""
        order = await _place_order(checkout_service, cart, address, card)
        fetched = await order_service.get(order.id)
        assert fetched.order_number == order.order_number

    @pytest.mark.asyncio
    async def test_get_unknown_order(self, order_service: OrderService) -> None:
        """Unknown orders raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await order_service.get("missing")

    @pytest.mark.asyncio
    async def test_list_orders_by_status(self, checkout_service, order_service, cart, address, card) -> None:
        """Orders can be filtered by status."""
        order = await _place_order(checkout_service, cart, address, card)
        assert [o.id for o in await order_service.list_orders(status=OrderStatus.CONFIRMED)] == [order.id]
        assert await order_service.list_orders(status=OrderStatus.SHIPPED) == []


class TestOrderUpdates:
    """Tests for fulfilment updates."""

    @pytest.mark.asyncio
    async def test_ship_with_tracking(self, checkout_service, order_service, cart, address, card) -> None:
        """Shipping records tracking and line progress."""
        order = await _place_order(checkout_service, cart, address, card)
        order = await order_service.update(
            order.id,
            status=OrderStatus.SHIPPED,
            line_items=[LineItemProgress("li-1", quantity_fulfilled=2)],
            tracking_number="1Z999",
            carrier="UPS",
        )
        assert order.status == OrderStatus.SHIPPED
        assert order.tracking_number == "1Z999"
        assert order.get_line_item("li-1").quantity_fulfilled == 2

    @pytest.mark.asyncio
    async def test_invalid_transition_changes_nothing(
        self, checkout_service, order_service, cart, address, card
    ) -> None:
        """An invalid status leaves the order untouched."""
        order = await _place_order(checkout_service, cart, address, card)
        with pytest.raises(InvalidStateTransitionError):
            await order_service.update(
                order.id,
                status=OrderStatus.DELIVERED,
                line_items=[LineItemProgress("li-1", quantity_fulfilled=2)],
            )
        stored = await order_service.get(order.id)
        assert stored.get_line_item("li-1").quantity_fulfilled == 0

    @pytest.mark.asyncio
    async def test_cancel_refunds_payment(self, checkout_service, order_service, simulator, cart, address, card) -> None:
        """Cancelling a confirmed order refunds what was paid."""
        order = await _place_order(checkout_service, cart, address, card)
        order = await order_service.cancel(order.id)
        assert order.status == OrderStatus.CANCELLED
        assert order.totals.amount_refunded == Money.of("105.99")
        intent = await simulator.get_payment_intent(order.payment_intent_id)
        assert intent.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_cancel_shipped_order_rejected(
        self, checkout_service, order_service, simulator, cart, address, card
    ) -> None:
        """Shipped orders cannot be cancelled and nothing is refunded."""
        order = await _place_order(checkout_service, cart, address, card)
        await order_service.update(order.id, status=OrderStatus.SHIPPED)
        with pytest.raises(InvalidStateTransitionError):
            await order_service.cancel(order.id)
        assert simulator.call_count("refund") == 0


class TestOrderRefunds:
    """Tests for refunds."""

    @pytest.mark.asyncio
    async def test_partial_refund(self, checkout_service, order_service, cart, address, card) -> None:
        """A partial refund leaves the rest refundable."""
        order = await _place_order(checkout_service, cart, address, card)
        result = await order_service.refund(order.id, Money.of("5.99"), reason="shipping refund")
        assert result.refund.amount == Money.of("5.99")
        assert result.order.status == OrderStatus.PARTIALLY_REFUNDED
        assert result.order.totals.refundable == Money.of("100.00")

    @pytest.mark.asyncio
    async def test_full_refund_after_partial(self, checkout_service, order_service, cart, address, card) -> None:
        """Refunding the remainder moves the order to REFUNDED."""
        order = await _place_order(checkout_service, cart, address, card)
        await order_service.refund(order.id, Money.of("5.99"))
        result = await order_service.refund(order.id)
        assert result.refund.amount == Money.of("100.00")
        assert result.order.status == OrderStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_refund_exceeding_paid_rejected(
        self, checkout_service, order_service, simulator, cart, address, card
    ) -> None:
        """Refunds larger than the refundable amount never reach the provider."""
        order = await _place_order(checkout_service, cart, address, card)
        with pytest.raises(ValidationError):
            await order_service.refund(order.id, Money.of("200.00"))
        assert simulator.call_count("refund") == 0

    @pytest.mark.asyncio
    async def test_refund_in_other_currency_rejected(self, checkout_service, order_service, cart, address, card) -> None:
        """Refund currency must match the order."""
        order = await _place_order(checkout_service, cart, address, card)
        with pytest.raises(ValidationError):
            await order_service.refund(order.id, Money.of("1.00", "EUR"))

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_order_unchanged(
        self, checkout_service, order_service, simulator, cart, address, card
    ) -> None:
        """A failed provider refund is not booked."""
        order = await _place_order(checkout_service, cart, address, card)
        simulator.inject_fault("refund", PaymentProviderError("unavailable"))
        with pytest.raises(PaymentProviderError):
            await order_service.refund(order.id, Money.of("10.00"))
        stored = await order_service.get(order.id)
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.totals.amount_refunded == Money.zero("USD")
