"""Order application service.

Orchestrates order lifecycle management including:
- Listing and fetching orders
- Fulfilment progress: status, line item quantities, tracking
- Refunds through the payment handler
- Cancellation, refunding what was paid
"""

from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from ucp_merchant.application.checkout_service import call_provider
from ucp_merchant.application.event_publisher import LoggingEventPublisher
from ucp_merchant.application.locks import KeyedLock
from ucp_merchant.domain.entities import Order
from ucp_merchant.domain.exceptions import NotFoundError, ValidationError
from ucp_merchant.domain.payments import Refund, RefundRequest
from ucp_merchant.domain.state_machines import OrderStatus, validate_order_transition
from ucp_merchant.domain.value_objects import Money
from ucp_merchant.infrastructure.payments.handler import PaymentHandler
from ucp_merchant.infrastructure.storage import StorageProvider

logger = structlog.get_logger()


# ============================================================================
# Service Types
# ============================================================================


@dataclass(frozen=True)
class LineItemProgress:
    """Fulfilment progress reported for one order line."""

    line_item_id: str
    quantity_fulfilled: int
    quantity_cancelled: int = 0


@dataclass
class RefundOrderResult:
    """Result of refunding an order."""

    order: Order
    refund: Refund


# ============================================================================
# Order Service
# ============================================================================


class OrderService:
    """Application service for managing orders after checkout."""

    def __init__(
        self,
        storage: StorageProvider,
        payment_handler: PaymentHandler,
        locks: KeyedLock | None = None,
        publisher: LoggingEventPublisher | None = None,
        payment_timeout: float = 30.0,
    ) -> None:
        self.storage = storage
        self.payment_handler = payment_handler
        self.locks = locks if locks is not None else KeyedLock()
        self.publisher = publisher if publisher is not None else LoggingEventPublisher()
        self.payment_timeout = payment_timeout

    async def _load(self, order_id: str) -> Order:
        order = await self.storage.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def _save(self, order: Order) -> None:
        await self.storage.set_order(order)
        self.publisher.publish(order.collect_events())

    async def get(self, order_id: str) -> Order:
        return await self._load(order_id)

    async def list_orders(
        self,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        return await self.storage.list_orders(status=status, limit=limit, offset=offset)

    async def update(
        self,
        order_id: str,
        status: OrderStatus | None = None,
        line_items: Sequence[LineItemProgress] = (),
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> Order:
        """Record fulfilment progress.

        Cancelling a paid order refunds the outstanding amount first.

        Args:
            order_id: Order to update.
            status: New status, if it changes.
            line_items: Fulfilled/cancelled quantities per line.
            tracking_number: Shipment tracking number.
            carrier: Shipping carrier.

        Returns:
            The updated order.

        Raises:
            InvalidStateTransitionError: If the status change is not allowed.
            ValidationError: If line quantities are invalid.
        """
        async with self.locks.lock(f"order:{order_id}"):
            order = await self._load(order_id)
            if status is not None and status != order.status:
                validate_order_transition(order.id, order.status, status)

            for progress in line_items:
                order.update_line_item(
                    progress.line_item_id,
                    progress.quantity_fulfilled,
                    progress.quantity_cancelled,
                )
            if tracking_number is not None or carrier is not None:
                order.set_tracking(tracking_number, carrier)

            if status == OrderStatus.CANCELLED and not order.totals.refundable.is_zero():
                await self._refund(order, None, "order_cancelled", update_status=False)
            if status is not None:
                order.update_status(status)
            await self._save(order)

        logger.info(
            "Order updated",
            order_id=order_id,
            status=order.status.value,
            tracking_number=order.tracking_number,
        )
        return order

    async def cancel(self, order_id: str) -> Order:
        return await self.update(order_id, status=OrderStatus.CANCELLED)

    async def refund(self, order_id: str, amount: Money | None = None, reason: str | None = None) -> RefundOrderResult:
        """Refund all or part of what was paid for an order.

        Args:
            order_id: Order to refund.
            amount: Amount to refund; the whole refundable amount if None.
            reason: Reason passed to the provider.

        Raises:
            ValidationError: Non-positive amount or more than is refundable.
            InvalidStateTransitionError: The order cannot be refunded in its state.
            PaymentFailedError: The provider rejected the refund.
        """
        async with self.locks.lock(f"order:{order_id}"):
            order = await self._load(order_id)
            refund = await self._refund(order, amount, reason, update_status=True)
            await self._save(order)
        return RefundOrderResult(order=order, refund=refund)

    async def _refund(self, order: Order, amount: Money | None, reason: str | None, update_status: bool) -> Refund:
        refundable = order.totals.refundable
        amount = amount if amount is not None else refundable
        if amount.currency != refundable.currency:
            raise ValidationError(
                "Refund currency does not match the order",
                {"order_id": order.id, "currency": amount.currency, "order_currency": refundable.currency},
            )
        if amount.is_zero() or amount.is_negative():
            raise ValidationError("Refund amount must be positive", {"order_id": order.id})
        if amount > refundable:
            raise ValidationError(
                "Refund exceeds the amount paid for the order",
                {"order_id": order.id, "amount": amount.amount_str, "refundable": refundable.amount_str},
            )
        if update_status:
            target = OrderStatus.REFUNDED if amount == refundable else OrderStatus.PARTIALLY_REFUNDED
            validate_order_transition(order.id, order.status, target)

        payment_intent_id = order.payment_intent_id
        if payment_intent_id is None:
            raise ValidationError("Order has no payment to refund", {"order_id": order.id})

        request = RefundRequest(
            payment_intent_id=payment_intent_id,
            amount=amount,
            reason=reason,
            idempotency_key=f"{order.id}:refund:{order.totals.amount_refunded.amount_str}",
        )
        refund = await call_provider(lambda: self.payment_handler.refund(request), self.payment_timeout, "refund")
        order.record_refund(refund, update_status=update_status)

        logger.info(
            "Order refunded",
            order_id=order.id,
            refund_id=refund.id,
            amount=refund.amount.amount_str,
            currency=refund.amount.currency,
            status=order.status.value,
        )
        return refund
