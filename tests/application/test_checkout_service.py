"""Tests for the checkout application service."""

import asyncio
from datetime import timedelta

import pytest

from ucp_merchant.application.checkout_service import REQUIRES_ACTION_CODE, CheckoutService
from ucp_merchant.domain.base import utc_now
from ucp_merchant.domain.commands import SelectShippingOption, SetPaymentMethod, SetShippingAddress
from ucp_merchant.domain.entities import Cart, CheckoutSession, LineItem, Order
from ucp_merchant.domain.exceptions import (
    CheckoutExpiredError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentFailedError,
    PaymentProviderError,
    ShippingAddressRequiredError,
    ValidationError,
)
from ucp_merchant.domain.state_machines import CheckoutStatus, OrderStatus, PaymentStatus
from ucp_merchant.domain.value_objects import Money, PaymentMethod
from ucp_merchant.infrastructure.storage import InMemoryStorage


async def _ready_session(service: CheckoutService, cart: Cart, address, card) -> CheckoutSession:
    session = await service.create(cart)
    return await service.update(
        session.id,
        [SetShippingAddress(address), SelectShippingOption("standard"), SetPaymentMethod(card)],
    )


class FailingOrderStorage(InMemoryStorage):
    """Storage that cannot persist completed checkouts."""

    async def save_completed_checkout(self, session: CheckoutSession, order: Order) -> None:
        raise RuntimeError("database unavailable")


# ============================================================================
# Session lifecycle
# ============================================================================


class TestCreateAndUpdate:
    """Tests for creating and updating sessions."""

    @pytest.mark.asyncio
    async def test_create_session(self, checkout_service: CheckoutService, cart: Cart, storage) -> None:
        """A new session is PENDING and stored."""
        session = await checkout_service.create(cart, metadata={"agent": "test"})
        assert session.status == CheckoutStatus.PENDING
        assert session.expires_at is not None
        stored = await storage.get_session(session.id)
        assert stored is not None
        assert stored.metadata == {"agent": "test"}

    @pytest.mark.asyncio
    async def test_unsupported_currency_rejected(self, checkout_service: CheckoutService) -> None:
        """Carts in unsupported currencies are rejected."""
        cart = Cart.create(items=[LineItem.create("p", "Tea", 1, Money.of("3.00", "GBP"))])
        with pytest.raises(ValidationError):
            await checkout_service.create(cart)

    @pytest.mark.asyncio
    async def test_update_commands_make_session_ready(self, checkout_service, cart, address, card) -> None:
        """Address, shipping and payment commands make the session READY."""
        session = await _ready_session(checkout_service, cart, address, card)
        assert session.status == CheckoutStatus.READY
        assert session.cart.total == Money.of("105.99")

    @pytest.mark.asyncio
    async def test_update_is_all_or_nothing(self, checkout_service, cart, address, storage) -> None:
        """A failing command leaves the stored session untouched."""
        session = await checkout_service.create(cart)
        with pytest.raises(ValidationError):
            await checkout_service.update(
                session.id, [SetShippingAddress(address), SelectShippingOption("teleport")]
            )
        stored = await storage.get_session(session.id)
        assert stored.shipping_address is None

    @pytest.mark.asyncio
    async def test_get_unknown_session(self, checkout_service: CheckoutService) -> None:
        """Unknown sessions raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await checkout_service.get("missing")

    @pytest.mark.asyncio
    async def test_list_sessions_by_status(self, checkout_service, cart, address, card) -> None:
        """Sessions can be filtered by status."""
        await checkout_service.create(cart)
        ready = await _ready_session(
            checkout_service,
            Cart.create(items=[LineItem.create("p", "Cap", 1, Money.of("20.00"))]),
            address,
            card,
        )
        sessions = await checkout_service.list_sessions(status=CheckoutStatus.READY)
        assert [s.id for s in sessions] == [ready.id]


class TestShippingAndDiscounts:
    """Tests for shipping selection and discounts."""

    @pytest.mark.asyncio
    async def test_shipping_options_require_address(self, checkout_service, cart) -> None:
        """Options are only offered once an address is set."""
        session = await checkout_service.create(cart)
        with pytest.raises(ShippingAddressRequiredError):
            await checkout_service.get_shipping_options(session.id)

    @pytest.mark.asyncio
    async def test_shipping_options_in_cart_currency(self, checkout_service, cart, address) -> None:
        """Options are listed for the cart's currency."""
        session = await checkout_service.create(cart)
        await checkout_service.update(session.id, [SetShippingAddress(address)])
        options = await checkout_service.get_shipping_options(session.id)
        assert {o.id for o in options} == {"standard", "express", "overnight"}

    @pytest.mark.asyncio
    async def test_select_express_shipping(self, checkout_service, cart) -> None:
        """Express on a 100.00 cart totals 112.99."""
        session = await checkout_service.create(cart)
        session = await checkout_service.select_shipping(session.id, "express")
        assert session.cart.total == Money.of("112.99")

    @pytest.mark.asyncio
    async def test_apply_and_remove_discount(self, checkout_service, cart) -> None:
        """SAVE20 cycles between 80.00 and 100.00."""
        session = await checkout_service.create(cart)
        for _ in range(3):
            result = await checkout_service.apply_discount(session.id, "SAVE20")
            assert result.applied.amount == Money.of("20.00")
            assert result.session.cart.total == Money.of("80.00")
            session = await checkout_service.remove_discount(session.id, result.applied.discount_id)
            assert session.cart.total == Money.of("100.00")

    @pytest.mark.asyncio
    async def test_validate_discount_does_not_apply(self, checkout_service, cart, storage) -> None:
        """Validation only estimates."""
        session = await checkout_service.create(cart)
        estimate = await checkout_service.validate_discount(session.id, "SAVE10")
        assert estimate.valid
        stored = await storage.get_session(session.id)
        assert stored.applied_discounts == []


class TestCancelAndExpire:
    """Tests for cancellation and expiry."""

    @pytest.mark.asyncio
    async def test_cancel_session(self, checkout_service, cart) -> None:
        """PENDING sessions can be cancelled."""
        session = await checkout_service.create(cart)
        session = await checkout_service.cancel(session.id, reason="no longer needed")
        assert session.status == CheckoutStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_completed_session_rejected(self, checkout_service, cart, address, card) -> None:
        """Completed sessions cannot be cancelled."""
        session = await _ready_session(checkout_service, cart, address, card)
        await checkout_service.complete(session.id)
        with pytest.raises(InvalidStateTransitionError):
            await checkout_service.cancel(session.id)

    @pytest.mark.asyncio
    async def test_expired_session_cancelled_on_access(self, storage, simulator, cart, address) -> None:
        """Sessions past their expiry are cancelled and reject edits."""
        later = utc_now() + timedelta(hours=7)
        service = CheckoutService(storage, simulator, clock=lambda: later)
        session = await service.create(cart)
        with pytest.raises(CheckoutExpiredError):
            await service.update(session.id, [SetShippingAddress(address)])
        session = await service.get(session.id)
        assert session.status == CheckoutStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_expired_session_cannot_complete(self, storage, simulator, cart, card) -> None:
        """Completing an expired session fails without charging."""
        later = utc_now() + timedelta(hours=7)
        service = CheckoutService(storage, simulator, clock=lambda: later)
        session = await service.create(cart)
        with pytest.raises(CheckoutExpiredError):
            await service.complete(session.id, payment_method=card)
        assert simulator.call_count("create_payment_intent") == 0


# ============================================================================
# Completion
# ============================================================================


class TestComplete:
    """Tests for completing checkout."""

    @pytest.mark.asyncio
    async def test_complete_creates_order(self, checkout_service, simulator, storage, cart, address, card) -> None:
        """Payment is created, confirmed and captured, then the order stored."""
        session = await _ready_session(checkout_service, cart, address, card)
        result = await checkout_service.complete(session.id)

        assert result.session.status == CheckoutStatus.COMPLETED
        assert result.session.order_id == result.order.id
        assert result.order.status == OrderStatus.CONFIRMED
        assert result.order.totals.amount_paid == Money.of("105.99")
        assert result.payment_intent.status == PaymentStatus.CAPTURED
        assert simulator.call_count("create_payment_intent") == 1
        assert simulator.call_count("confirm_payment") == 1
        assert simulator.call_count("capture_payment") == 1
        assert await storage.get_order(result.order.id) is not None

    @pytest.mark.asyncio
    async def test_complete_twice_returns_same_order(self, checkout_service, simulator, cart, address, card) -> None:
        """A second complete replays the first order without charging again."""
        session = await _ready_session(checkout_service, cart, address, card)
        first = await checkout_service.complete(session.id)
        second = await checkout_service.complete(session.id)
        assert second.replayed
        assert second.order.id == first.order.id
        assert simulator.call_count("create_payment_intent") == 1

    @pytest.mark.asyncio
    async def test_concurrent_complete_creates_one_order(
        self, checkout_service, simulator, storage, cart, address, card
    ) -> None:
        """Concurrent completes of one session produce a single order."""
        simulator.latency_seconds = 0.01
        session = await _ready_session(checkout_service, cart, address, card)

        results = await asyncio.gather(*(checkout_service.complete(session.id) for _ in range(5)))

        assert len({r.order.id for r in results}) == 1
        assert sum(1 for r in results if not r.replayed) == 1
        assert len(await storage.list_orders()) == 1
        assert simulator.call_count("create_payment_intent") == 1

    @pytest.mark.asyncio
    async def test_complete_from_pending_with_payment_method(self, checkout_service, cart, card) -> None:
        """A payment method passed to complete is enough to pay."""
        session = await checkout_service.create(cart)
        result = await checkout_service.complete(session.id, payment_method=card)
        assert result.order.totals.total == Money.of("100.00")
        assert result.order.shipping_address is None

    @pytest.mark.asyncio
    async def test_unsupported_payment_type_rejected(self, checkout_service, storage, cart, address, card) -> None:
        """Unknown payment method types fail before any charge."""
        session = await _ready_session(checkout_service, cart, address, card)
        with pytest.raises(ValidationError):
            await checkout_service.complete(session.id, payment_method=PaymentMethod(type="barter"))
        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.READY

    @pytest.mark.asyncio
    async def test_events_published(self, checkout_service, publisher, cart, address, card) -> None:
        """Completion publishes checkout and order events."""
        session = await _ready_session(checkout_service, cart, address, card)
        await checkout_service.complete(session.id)
        assert publisher.recent(event_type="checkout.completed")
        assert publisher.recent(event_type="order.created")


class TestCompleteFailures:
    """Tests for payment failures during completion."""

    @pytest.mark.asyncio
    async def test_declined_payment_reverts_session(
        self, checkout_service, simulator, storage, cart, address, card
    ) -> None:
        """A decline leaves the session READY with no order."""
        simulator.should_fail_payment = True
        session = await _ready_session(checkout_service, cart, address, card)

        with pytest.raises(PaymentFailedError) as exc_info:
            await checkout_service.complete(session.id)

        assert exc_info.value.message == "Payment declined"
        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.READY
        assert stored.payment_attempt == 1
        assert stored.payment_intent_id is None
        assert stored.failure_reason == "Payment declined"
        assert await storage.list_orders() == []

    @pytest.mark.asyncio
    async def test_retry_after_decline_succeeds(self, checkout_service, simulator, cart, address, card) -> None:
        """After a decline a new attempt creates a new intent."""
        simulator.should_fail_payment = True
        session = await _ready_session(checkout_service, cart, address, card)
        with pytest.raises(PaymentFailedError):
            await checkout_service.complete(session.id)

        simulator.should_fail_payment = False
        result = await checkout_service.complete(session.id)
        assert result.session.status == CheckoutStatus.COMPLETED
        assert simulator.call_count("create_payment_intent") == 2

    @pytest.mark.asyncio
    async def test_requires_action_keeps_intent(self, checkout_service, simulator, storage, cart, address, card) -> None:
        """Customer action is reported with the intent's client secret."""
        simulator.should_require_action = True
        session = await _ready_session(checkout_service, cart, address, card)

        with pytest.raises(PaymentFailedError) as exc_info:
            await checkout_service.complete(session.id)

        error = exc_info.value
        assert error.error_code == REQUIRES_ACTION_CODE
        assert error.details["client_secret"]
        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.READY
        assert stored.payment_intent_id == error.details["payment_intent_id"]

    @pytest.mark.asyncio
    async def test_cancel_voids_kept_intent(self, checkout_service, simulator, cart, address, card) -> None:
        """Cancelling a session cancels an intent left from an attempt."""
        simulator.should_require_action = True
        session = await _ready_session(checkout_service, cart, address, card)
        with pytest.raises(PaymentFailedError) as exc_info:
            await checkout_service.complete(session.id)

        await checkout_service.cancel(session.id)

        intent = await simulator.get_payment_intent(exc_info.value.details["payment_intent_id"])
        assert intent.status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_provider_error_resumes_same_intent(
        self, checkout_service, simulator, storage, cart, address, card
    ) -> None:
        """An unknown capture outcome keeps the intent; the retry resumes it."""
        simulator.inject_fault("capture_payment", PaymentProviderError("connection reset"))
        session = await _ready_session(checkout_service, cart, address, card)

        with pytest.raises(PaymentProviderError):
            await checkout_service.complete(session.id)
        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.READY
        assert stored.payment_intent_id is not None

        result = await checkout_service.complete(session.id)
        assert result.payment_intent.id == stored.payment_intent_id
        assert simulator.call_count("create_payment_intent") == 1

    @pytest.mark.asyncio
    async def test_lost_capture_response_is_reconciled(self, checkout_service, simulator, cart, address, card) -> None:
        """A capture that succeeded but whose response was lost still completes."""
        simulator.inject_fault("capture_payment", PaymentProviderError("timeout"), after_effect=True)
        session = await _ready_session(checkout_service, cart, address, card)

        result = await checkout_service.complete(session.id)

        assert result.session.status == CheckoutStatus.COMPLETED
        assert simulator.call_count("capture_payment") == 1

    @pytest.mark.asyncio
    async def test_lost_create_response_not_retried(
        self, checkout_service, simulator, storage, cart, address, card
    ) -> None:
        """A create with an unknown outcome is surfaced, never repeated in-process."""
        simulator.inject_fault("create_payment_intent", PaymentProviderError("timeout"), after_effect=True)
        session = await _ready_session(checkout_service, cart, address, card)

        with pytest.raises(PaymentProviderError):
            await checkout_service.complete(session.id)

        assert simulator.call_count("create_payment_intent") == 1
        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.READY
        orphan = await simulator.get_payment_intent("pi_sim_000001")
        assert orphan.status != PaymentStatus.CAPTURED

        result = await checkout_service.complete(session.id)
        assert result.session.status == CheckoutStatus.COMPLETED
        assert simulator.call_count("create_payment_intent") == 2

    @pytest.mark.asyncio
    async def test_cart_change_discards_kept_intent(
        self, checkout_service, simulator, storage, cart, address, card
    ) -> None:
        """A kept intent for another amount is cancelled and replaced."""
        simulator.inject_fault("capture_payment", PaymentProviderError("connection reset"))
        session = await _ready_session(checkout_service, cart, address, card)
        with pytest.raises(PaymentProviderError):
            await checkout_service.complete(session.id)
        stale_id = (await storage.get_session(session.id)).payment_intent_id

        await checkout_service.apply_discount(session.id, "SAVE10")
        result = await checkout_service.complete(session.id)

        assert result.payment_intent.id != stale_id
        assert result.order.totals.amount_paid == Money.of("95.99")
        stale = await simulator.get_payment_intent(stale_id)
        assert stale.status == PaymentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_order_storage_failure_refunds_payment(self, simulator, cart, address, card) -> None:
        """If the order cannot be stored the capture is refunded."""
        storage = FailingOrderStorage()
        service = CheckoutService(storage, simulator)
        session = await _ready_session(service, cart, address, card)

        with pytest.raises(RuntimeError):
            await service.complete(session.id)

        stored = await storage.get_session(session.id)
        assert stored.status == CheckoutStatus.FAILED
        assert stored.order_id is None
        intent = await simulator.get_payment_intent(stored.payment_intent_id)
        assert intent.status == PaymentStatus.REFUNDED
        assert await storage.list_orders() == []
