"""Checkout application service.

Orchestrates the checkout session lifecycle including:
- Creating sessions from priced carts
- Applying update commands, shipping selection and discounts
- Completing checkout: payment intent, confirm, capture, order creation
- Cancelling and expiring sessions

All mutations of one session run under a per-session lock, so two
concurrent ``complete`` calls produce a single order.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

import structlog

from ucp_merchant.application.event_publisher import LoggingEventPublisher
from ucp_merchant.application.locks import KeyedLock
from ucp_merchant.domain.base import utc_now
from ucp_merchant.domain.commands import (
    CancelCheckout,
    CheckoutCommand,
    SelectShippingOption,
    SetBillingAddress,
    SetCustomer,
    SetPaymentMethod,
    SetShippingAddress,
)
from ucp_merchant.domain.discounts import AppliedDiscount, DiscountEngine, DiscountEstimate
from ucp_merchant.domain.entities import Cart, CheckoutSession, Order
from ucp_merchant.domain.exceptions import (
    CheckoutExpiredError,
    NotFoundError,
    PaymentFailedError,
    PaymentProviderError,
    ShippingAddressRequiredError,
    ValidationError,
)
from ucp_merchant.domain.payments import (
    AvailablePaymentMethods,
    CapturePaymentRequest,
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    PaymentIntent,
    PaymentMethodType,
    RefundRequest,
)
from ucp_merchant.domain.shipping import ShippingCatalog
from ucp_merchant.domain.state_machines import CheckoutStatus, PaymentStatus
from ucp_merchant.domain.value_objects import Customer, PaymentMethod, ShippingOption
from ucp_merchant.infrastructure.payments.handler import PaymentHandler
from ucp_merchant.infrastructure.storage import StorageProvider

logger = structlog.get_logger()

T = TypeVar("T")

REQUIRES_ACTION_CODE = "PAYMENT_REQUIRES_ACTION"

_VOIDABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.REQUIRES_ACTION, PaymentStatus.AUTHORIZED})


async def call_provider(call: Callable[[], Awaitable[T]], timeout: float, operation: str) -> T:
    """Run one payment provider call with a deadline.

    Raises:
        PaymentProviderError: If the call does not finish within ``timeout``.
    """
    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning("Payment provider call timed out", operation=operation, timeout=timeout)
        raise PaymentProviderError(
            "Payment provider timed out",
            {"operation": operation, "timeout_seconds": timeout},
        ) from e


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class ApplyDiscountResult:
    """Result of applying a discount code."""

    session: CheckoutSession
    applied: AppliedDiscount


@dataclass
class CompleteCheckoutResult:
    """Result of completing a checkout.

    Attributes:
        order: The order created for the session.
        session: The COMPLETED session.
        payment_intent: Captured intent (None when replayed).
        replayed: The session was already completed by an earlier call.
    """

    order: Order
    session: CheckoutSession
    payment_intent: PaymentIntent | None = None
    replayed: bool = False


# ============================================================================
# Checkout Service
# ============================================================================


class CheckoutService:
    """Application service for checkout sessions.

    Orchestrates the flow:
    1. Create session from a priced cart
    2. Collect addresses, customer, shipping option and payment method
    3. Apply or remove discounts
    4. Complete: create, confirm and capture a payment, then create the order
    """

    def __init__(
        self,
        storage: StorageProvider,
        payment_handler: PaymentHandler,
        discount_engine: DiscountEngine | None = None,
        shipping_catalog: ShippingCatalog | None = None,
        locks: KeyedLock | None = None,
        publisher: LoggingEventPublisher | None = None,
        merchant_id: str = "merchant-demo",
        session_ttl: timedelta | None = timedelta(hours=6),
        payment_timeout: float = 30.0,
        supported_currencies: Iterable[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize service.

        Args:
            storage: Session and order storage.
            payment_handler: Payment provider.
            discount_engine: Discount engine (default catalog if omitted).
            shipping_catalog: Shipping options (defaults if omitted).
            locks: Per-session locks, shared with other services.
            publisher: Domain event publisher.
            merchant_id: Merchant owning new sessions.
            session_ttl: Lifetime of new sessions; None disables expiry.
            payment_timeout: Deadline in seconds for each provider call.
            supported_currencies: Currencies accepted for new carts.
            clock: Source of the current time.
        """
        self.storage = storage
        self.payment_handler = payment_handler
        self.discount_engine = discount_engine if discount_engine is not None else DiscountEngine()
        self.shipping_catalog = shipping_catalog if shipping_catalog is not None else ShippingCatalog()
        self.locks = locks if locks is not None else KeyedLock()
        self.publisher = publisher if publisher is not None else LoggingEventPublisher()
        self.merchant_id = merchant_id
        self.session_ttl = session_ttl
        self.payment_timeout = payment_timeout
        self.supported_currencies = {c.upper() for c in supported_currencies} if supported_currencies else None
        self._clock = clock

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load(self, session_id: str) -> CheckoutSession:
        session = await self.storage.get_session(session_id)
        if session is None:
            raise NotFoundError("CheckoutSession", session_id)
        return session

    async def _save(self, session: CheckoutSession) -> None:
        await self.storage.set_session(session)
        self.publisher.publish(session.collect_events())

    async def _expire_if_due(self, session: CheckoutSession) -> bool:
        if not session.is_expired(self._clock()):
            return False
        session.expire()
        await self._save(session)
        logger.info("Checkout session expired", session_id=session.id)
        return True

    async def _load_editable(self, session_id: str) -> CheckoutSession:
        """Load a session for mutation.

        Raises:
            NotFoundError: Unknown session.
            CheckoutExpiredError: The session just expired.
        """
        session = await self._load(session_id)
        if await self._expire_if_due(session):
            raise CheckoutExpiredError(session_id)
        return session

    async def _persist_quietly(self, session: CheckoutSession) -> None:
        """Save a session on an error path; a storage failure is logged only."""
        try:
            await self._save(session)
        except Exception:
            logger.exception("Failed to save checkout session state", session_id=session.id)

    async def _call(self, call: Callable[[], Awaitable[T]], operation: str) -> T:
        return await call_provider(call, self.payment_timeout, operation)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def create(
        self,
        cart: Cart,
        customer: Customer | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        """Open a checkout session for a cart.

        Args:
            cart: Cart built with ``Cart.create`` (already validated).
            customer: Optional customer; addresses on it are copied.
            metadata: Free-form string metadata.

        Returns:
            The new PENDING session.

        Raises:
            CartInvariantError: If the cart totals are inconsistent.
            ValidationError: If the cart currency is not supported.
        """
        if self.supported_currencies and cart.currency not in self.supported_currencies:
            raise ValidationError(
                f"Currency {cart.currency} is not supported",
                {"currency": cart.currency, "supported": sorted(self.supported_currencies)},
            )
        session = CheckoutSession.create(
            merchant_id=self.merchant_id,
            cart=cart,
            customer=customer,
            metadata=metadata,
            ttl=self.session_ttl,
        )
        await self._save(session)

        logger.info(
            "Checkout session created",
            session_id=session.id,
            item_count=cart.item_count,
            total=cart.total.amount_str,
            currency=cart.currency,
        )
        return session

    async def get(self, session_id: str) -> CheckoutSession:
        """Get a session; an editable session past its expiry is cancelled first."""
        async with self.locks.lock(session_id):
            session = await self._load(session_id)
            await self._expire_if_due(session)
            return session

    async def list_sessions(
        self,
        status: CheckoutStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CheckoutSession]:
        return await self.storage.list_sessions(status=status, limit=limit, offset=offset)

    async def update(self, session_id: str, commands: Sequence[CheckoutCommand]) -> CheckoutSession:
        """Apply update commands in order.

        Either every command is applied and saved, or none is.

        Raises:
            CheckoutNotEditableError: If the session is not PENDING/READY.
            NotFoundError: Unknown session or shipping option.
        """
        async with self.locks.lock(session_id):
            session = await self._load_editable(session_id)
            for command in commands:
                self._apply_command(session, command)
            await self._save(session)

        logger.info(
            "Checkout session updated",
            session_id=session_id,
            commands=[type(c).__name__ for c in commands],
            status=session.status.value,
        )
        return session

    def _apply_command(self, session: CheckoutSession, command: CheckoutCommand) -> None:
        if isinstance(command, SetShippingAddress):
            session.set_shipping_address(command.address)
        elif isinstance(command, SetBillingAddress):
            session.set_billing_address(command.address)
        elif isinstance(command, SelectShippingOption):
            session.select_shipping_option(self.shipping_catalog.get(command.option_id))
        elif isinstance(command, SetCustomer):
            session.set_customer(command.customer)
        elif isinstance(command, SetPaymentMethod):
            session.set_payment_method(command.payment_method)
        elif isinstance(command, CancelCheckout):
            session.cancel(command.reason)
        else:
            raise ValidationError(f"Unsupported checkout command: {type(command).__name__}")

    async def cancel(self, session_id: str, reason: str | None = None) -> CheckoutSession:
        """Cancel a PENDING or READY session.

        An intent kept from an interrupted payment attempt is cancelled with
        the provider so no authorization is left behind.

        Raises:
            InvalidStateTransitionError: If the session is past READY.
        """
        async with self.locks.lock(session_id):
            session = await self._load(session_id)
            if await self._expire_if_due(session):
                return session
            session.cancel(reason)
            if session.payment_intent_id:
                await self._void_intent(session.payment_intent_id)
            await self._save(session)

        logger.info("Checkout session cancelled", session_id=session_id, reason=reason)
        return session

    async def _void_intent(self, payment_intent_id: str) -> None:
        intent = await self._call(
            lambda: self.payment_handler.get_payment_intent(payment_intent_id),
            "get_payment_intent",
        )
        if intent.status in _VOIDABLE:
            await self._call(lambda: self.payment_handler.cancel_payment(payment_intent_id), "cancel_payment")
            logger.info("Payment intent voided", payment_intent_id=payment_intent_id)

    # -------------------------------------------------------------------------
    # Shipping
    # -------------------------------------------------------------------------

    async def get_shipping_options(self, session_id: str) -> list[ShippingOption]:
        """List shipping options for the session's currency.

        Raises:
            ShippingAddressRequiredError: If no shipping address is set.
        """
        session = await self.get(session_id)
        if session.shipping_address is None:
            raise ShippingAddressRequiredError(session_id)
        return self.shipping_catalog.options_for(session.cart.currency)

    async def select_shipping(self, session_id: str, option_id: str) -> CheckoutSession:
        """Select a shipping option, replacing any previous selection."""
        async with self.locks.lock(session_id):
            session = await self._load_editable(session_id)
            option = self.shipping_catalog.get(option_id)
            session.select_shipping_option(option)
            await self._save(session)

        logger.info(
            "Shipping option selected",
            session_id=session_id,
            option_id=option_id,
            total=session.cart.total.amount_str,
        )
        return session

    # -------------------------------------------------------------------------
    # Discounts
    # -------------------------------------------------------------------------

    async def apply_discount(self, session_id: str, code: str) -> ApplyDiscountResult:
        async with self.locks.lock(session_id):
            session = await self._load_editable(session_id)
            applied = self.discount_engine.apply(session, code)
            await self._save(session)
        return ApplyDiscountResult(session=session, applied=applied)

    async def remove_discount(self, session_id: str, discount_id: str) -> CheckoutSession:
        async with self.locks.lock(session_id):
            session = await self._load_editable(session_id)
            self.discount_engine.remove(session, discount_id)
            await self._save(session)
        return session

    async def validate_discount(self, session_id: str, code: str) -> DiscountEstimate:
        """Estimate a code against the session without applying it."""
        session = await self.get(session_id)
        return self.discount_engine.validate(code, session)

    # -------------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------------

    async def get_payment_methods(self, session_id: str) -> AvailablePaymentMethods:
        session = await self.get(session_id)
        customer_id = session.customer.id if session.customer else None
        return await self._call(
            lambda: self.payment_handler.get_available_methods(customer_id),
            "get_available_methods",
        )

    @staticmethod
    def _payment_method_type(session: CheckoutSession) -> PaymentMethodType:
        if session.payment_method is None:
            return PaymentMethodType.CARD
        try:
            return PaymentMethodType(session.payment_method.type.lower())
        except ValueError as e:
            raise ValidationError(
                f"Unsupported payment method type: {session.payment_method.type}",
                {"type": session.payment_method.type, "supported": [t.value for t in PaymentMethodType]},
            ) from e

    async def complete(
        self,
        session_id: str,
        payment_method: PaymentMethod | None = None,
        save_payment_method: bool = False,
    ) -> CompleteCheckoutResult:
        """Complete checkout: charge the cart total and create the order.

        Args:
            session_id: Session to complete.
            payment_method: Payment method to use (replaces the session's).
            save_payment_method: Ask the provider to save the method.

        Returns:
            CompleteCheckoutResult with the order.

        Raises:
            PaymentFailedError: The payment was declined or needs customer
                action; the session keeps its previous status.
            PaymentProviderError: The provider outcome is unknown; the
                session keeps its previous status and the intent id, so a
                retry resumes the same payment.
            CheckoutExpiredError: The session expired.
        """
        async with self.locks.lock(session_id):
            session = await self._load(session_id)

            if session.status == CheckoutStatus.COMPLETED:
                return await self._replay_completed(session)

            if session.status == CheckoutStatus.PROCESSING:
                # Left over from an interrupted attempt; resume it.
                previous = CheckoutStatus.READY if session.is_ready else CheckoutStatus.PENDING
            else:
                if await self._expire_if_due(session):
                    raise CheckoutExpiredError(session_id)
                if payment_method is not None:
                    session.set_payment_method(payment_method)
                self._payment_method_type(session)
                previous = session.begin_processing()
            await self._save(session)

            logger.info(
                "Checkout completion started",
                session_id=session_id,
                total=session.cart.total.amount_str,
                currency=session.cart.currency,
                attempt=session.payment_attempt,
            )

            try:
                intent = await self._obtain_intent(session)
                intent = await self._drive_payment(session, intent, save_payment_method)
            except PaymentFailedError as e:
                keep = e.error_code == REQUIRES_ACTION_CODE
                await self._abort(session, previous, e.message, keep_payment_intent=keep)
                raise
            except Exception as e:
                await self._abort(session, previous, str(e), keep_payment_intent=True)
                raise

            return await self._materialize(session, previous, intent)

    async def _replay_completed(self, session: CheckoutSession) -> CompleteCheckoutResult:
        order = await self.storage.get_order(session.order_id or "")
        if order is None:
            raise NotFoundError("Order", session.order_id or "")
        logger.info("Checkout already completed", session_id=session.id, order_id=order.id)
        return CompleteCheckoutResult(order=order, session=session, replayed=True)

    async def _abort(
        self,
        session: CheckoutSession,
        previous: CheckoutStatus,
        reason: str,
        keep_payment_intent: bool,
    ) -> None:
        session.revert_processing(previous, reason, keep_payment_intent=keep_payment_intent)
        await self._persist_quietly(session)
        logger.warning(
            "Checkout payment attempt failed",
            session_id=session.id,
            reason=reason,
            status=session.status.value,
            payment_intent_id=session.payment_intent_id,
            attempt=session.payment_attempt,
        )

    async def _obtain_intent(self, session: CheckoutSession) -> PaymentIntent:
        """Resume the session's intent if it is still usable, else create one."""
        if session.payment_intent_id:
            intent = await self._call(
                lambda: self.payment_handler.get_payment_intent(session.payment_intent_id),
                "get_payment_intent",
            )
            if intent.amount == session.cart.total and intent.status not in (
                PaymentStatus.FAILED,
                PaymentStatus.CANCELLED,
            ):
                logger.info(
                    "Resuming payment intent",
                    session_id=session.id,
                    payment_intent_id=intent.id,
                    status=intent.status.value,
                )
                return intent
            await self._discard_intent(session, intent)

        return await self._create_intent(session)

    async def _discard_intent(self, session: CheckoutSession, intent: PaymentIntent) -> None:
        """Release an intent that no longer matches the session's cart."""
        if intent.status in (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED):
            await self._call(
                lambda: self.payment_handler.refund(
                    RefundRequest(
                        payment_intent_id=intent.id,
                        reason="cart_changed",
                        idempotency_key=f"{intent.id}:discard",
                    )
                ),
                "refund",
            )
        elif intent.status in _VOIDABLE:
            await self._call(lambda: self.payment_handler.cancel_payment(intent.id), "cancel_payment")
        logger.info(
            "Discarded stale payment intent",
            session_id=session.id,
            payment_intent_id=intent.id,
            status=intent.status.value,
        )
        session.payment_intent_id = None

    async def _create_intent(self, session: CheckoutSession) -> PaymentIntent:
        customer = session.customer
        request = CreatePaymentRequest(
            amount=session.cart.total,
            checkout_session_id=session.id,
            payment_method_type=self._payment_method_type(session),
            customer_id=customer.id if customer else None,
            customer_email=customer.contact.email if customer else None,
            idempotency_key=f"{session.id}:{session.payment_attempt}",
            metadata={"customer_id": customer.id} if customer and customer.id else {},
        )
        # Never retried here: an unknown outcome reverts the session and the
        # client retries the whole completion under its Idempotency-Key.
        intent = await self._call(
            lambda: self.payment_handler.create_payment_intent(request),
            "create_payment_intent",
        )

        session.attach_payment_intent(intent.id)
        await self._save(session)
        return intent

    async def _step(
        self,
        intent: PaymentIntent,
        call: Callable[[], Awaitable[PaymentIntent]],
        operation: str,
    ) -> PaymentIntent:
        """Run one payment step, reconciling with the provider if the outcome is unknown."""
        try:
            return await self._call(call, operation)
        except PaymentProviderError:
            logger.warning(
                "Payment outcome unknown, reconciling",
                payment_intent_id=intent.id,
                operation=operation,
            )
            try:
                current = await self._call(
                    lambda: self.payment_handler.get_payment_intent(intent.id),
                    "get_payment_intent",
                )
            except PaymentProviderError:
                logger.warning("Reconciliation failed", payment_intent_id=intent.id)
                raise
            if current.status == intent.status:
                raise
            logger.info(
                "Payment progressed despite provider error",
                payment_intent_id=intent.id,
                status=current.status.value,
            )
            return current

    async def _drive_payment(
        self,
        session: CheckoutSession,
        intent: PaymentIntent,
        save_payment_method: bool,
    ) -> PaymentIntent:
        """Confirm and capture until the intent is captured."""
        method = session.payment_method
        while intent.status != PaymentStatus.CAPTURED:
            status = intent.status
            if status == PaymentStatus.PENDING:
                request = ConfirmPaymentRequest(
                    payment_intent_id=intent.id,
                    payment_token=method.token if method else None,
                    save_payment_method=save_payment_method,
                )
                intent = await self._step(
                    intent, lambda: self.payment_handler.confirm_payment(request), "confirm_payment"
                )
            elif status == PaymentStatus.AUTHORIZED:
                capture = CapturePaymentRequest(payment_intent_id=intent.id)
                intent = await self._step(
                    intent, lambda: self.payment_handler.capture_payment(capture), "capture_payment"
                )
            elif status == PaymentStatus.REQUIRES_ACTION:
                raise PaymentFailedError(
                    "Payment requires additional customer action",
                    {
                        "payment_intent_id": intent.id,
                        "client_secret": intent.client_secret,
                        "redirect_url": intent.redirect_url,
                    },
                    error_code=REQUIRES_ACTION_CODE,
                )
            else:
                raise PaymentFailedError(
                    intent.error_message or f"Payment {status.value}",
                    {"payment_intent_id": intent.id, "provider_code": intent.error_code},
                )

            if intent.status == status:
                raise PaymentProviderError(
                    "Payment is still processing",
                    {"payment_intent_id": intent.id, "status": status.value},
                )
        return intent

    async def _materialize(
        self,
        session: CheckoutSession,
        previous: CheckoutStatus,
        intent: PaymentIntent,
    ) -> CompleteCheckoutResult:
        """Create the order and store it together with the COMPLETED session."""
        processing_snapshot = session.to_dict()
        order = Order.create_from_session(session, intent)
        session.mark_completed(order.id)
        try:
            await self.storage.save_completed_checkout(session, order)
        except Exception as e:
            logger.exception(
                "Failed to store order after capture",
                session_id=session.id,
                payment_intent_id=intent.id,
            )
            await self._compensate(CheckoutSession.from_dict(processing_snapshot), previous, intent, str(e))
            raise

        self.publisher.publish([*session.collect_events(), *order.collect_events()])
        logger.info(
            "Checkout completed",
            session_id=session.id,
            order_id=order.id,
            order_number=order.order_number,
            payment_intent_id=intent.id,
            total=order.totals.total.amount_str,
        )
        return CompleteCheckoutResult(order=order, session=session, payment_intent=intent)

    async def _compensate(
        self,
        session: CheckoutSession,
        previous: CheckoutStatus,
        intent: PaymentIntent,
        reason: str,
    ) -> None:
        """Refund a capture whose order could not be stored."""
        try:
            refund = await self._call(
                lambda: self.payment_handler.refund(
                    RefundRequest(
                        payment_intent_id=intent.id,
                        reason="order_creation_failed",
                        idempotency_key=f"{intent.id}:compensate",
                    )
                ),
                "refund",
            )
        except Exception:
            logger.exception("Compensating refund failed", session_id=session.id, payment_intent_id=intent.id)
            session.revert_processing(previous, reason, keep_payment_intent=True)
            await self._persist_quietly(session)
            return

        logger.info(
            "Capture refunded after order failure",
            session_id=session.id,
            payment_intent_id=intent.id,
            refund_id=refund.id,
        )
        session.mark_failed(reason)
        await self._persist_quietly(session)
