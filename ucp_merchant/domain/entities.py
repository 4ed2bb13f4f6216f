"""Domain entities and aggregates.

Contains the cart priced inside a checkout session, the CheckoutSession
aggregate owned by the checkout service, and the Order aggregate created
from a completed session by ``Order.create_from_session``.
"""

import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Self
from uuid import uuid4

from ucp_merchant.domain.base import (
    AggregateRoot,
    Entity,
    ValueObject,
    format_datetime,
    parse_datetime,
    utc_now,
)
from ucp_merchant.domain.discounts import AppliedDiscount
from ucp_merchant.domain.events import (
    CheckoutCompleted,
    CheckoutSessionCreated,
    CheckoutSessionUpdated,
    CheckoutStatusChanged,
    DiscountApplied,
    DiscountRemoved,
    OrderCreated,
    OrderRefunded,
    OrderStatusChanged,
)
from ucp_merchant.domain.exceptions import (
    CartInvariantError,
    CheckoutNotEditableError,
    CurrencyMismatchError,
    NotFoundError,
    ValidationError,
)
from ucp_merchant.domain.payments import PaymentIntent, Refund
from ucp_merchant.domain.state_machines import (
    CheckoutStatus,
    OrderStatus,
    PaymentStatus,
    validate_checkout_transition,
    validate_order_transition,
)
from ucp_merchant.domain.value_objects import (
    Address,
    Customer,
    Money,
    PaymentMethod,
    ShippingOption,
    sum_money,
)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_id() -> str:
    return str(uuid4())


def generate_order_number() -> str:
    """Human-readable order number, e.g. ``ORD-LZ3K9Q1A-7F2C``."""
    value = int(time.time() * 1000)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return f"ORD-{''.join(reversed(digits))}-{secrets.token_hex(2).upper()}"


def _money_or_none(data: dict[str, Any] | None) -> Money | None:
    return Money.from_dict(data) if data else None


def _dict_or_none(value: Any) -> Any:
    return value.to_dict() if value is not None else None


# ============================================================================
# Cart
# ============================================================================


@dataclass(frozen=True)
class LineItem(ValueObject):
    """A product line in a cart.

    Attributes:
        id: Line identifier, unique within the cart.
        product_id: Merchant product identifier.
        name: Product name for display.
        quantity: Number of units (> 0).
        unit_price: Price per unit.
        total_price: unit_price * quantity.
    """

    id: str
    product_id: str
    name: str
    quantity: int
    unit_price: Money
    total_price: Money
    sku: str | None = None
    description: str | None = None
    image_url: str | None = None

    def __post_init__(self) -> None:
        """Validate quantity and line total."""
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValidationError(
                f"Invalid quantity {self.quantity}: Quantity must be positive",
                {"line_item_id": self.id, "quantity": self.quantity},
            )
        expected = self.unit_price * self.quantity
        if not self.total_price.approx_equals(expected):
            raise CartInvariantError(
                f"Line item {self.id} total {self.total_price.amount_str} does not equal "
                f"unit price x quantity ({expected.amount_str})",
                {
                    "line_item_id": self.id,
                    "total_price": self.total_price.amount_str,
                    "expected": expected.amount_str,
                },
            )

    @classmethod
    def create(
        cls,
        product_id: str,
        name: str,
        quantity: int,
        unit_price: Money,
        total_price: Money | None = None,
        line_item_id: str | None = None,
        **kwargs: Any,
    ) -> Self:
        """Create a line item, computing the total when omitted."""
        if total_price is None:
            if isinstance(quantity, bool) or not isinstance(quantity, int):
                raise ValidationError(f"Invalid quantity {quantity}", {"quantity": quantity})
            total_price = unit_price * quantity
        return cls(
            id=line_item_id or generate_id(),
            product_id=product_id,
            name=name,
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            **kwargs,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            name=data["name"],
            quantity=data["quantity"],
            unit_price=Money.from_dict(data["unit_price"]),
            total_price=Money.from_dict(data["total_price"]),
            sku=data.get("sku"),
            description=data.get("description"),
            image_url=data.get("image_url"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price.to_dict(),
            "total_price": self.total_price.to_dict(),
            "image_url": self.image_url,
        }


@dataclass
class Cart:
    """Priced contents of a checkout session.

    Invariants (0.01 tolerance):
        subtotal == sum of line totals
        total == subtotal + tax + shipping - discount

    All amounts share the currency of the first line item.
    """

    items: list[LineItem]
    subtotal: Money
    total: Money
    tax: Money | None = None
    shipping: Money | None = None
    discount: Money | None = None

    @classmethod
    def create(
        cls,
        items: list[LineItem],
        tax: Money | None = None,
        shipping: Money | None = None,
        discount: Money | None = None,
        subtotal: Money | None = None,
        total: Money | None = None,
    ) -> "Cart":
        """Create a cart, computing or validating subtotal and total.

        Args:
            items: Line items (at least one).
            tax: Tax amount (optional).
            shipping: Shipping amount (optional).
            discount: Discount amount (optional).
            subtotal: Client-supplied subtotal to validate (optional).
            total: Client-supplied total to validate (optional).

        Returns:
            Cart with totals recomputed from its components.

        Raises:
            ValidationError: If the cart has no items.
            CartInvariantError: If supplied totals do not add up.
            CurrencyMismatchError: If amounts use different currencies.
        """
        if not items:
            raise ValidationError("Cart must contain at least one item")
        currency = items[0].unit_price.currency
        computed_subtotal = sum_money((item.total_price for item in items), currency)
        if subtotal is not None and not subtotal.approx_equals(computed_subtotal):
            raise CartInvariantError(
                f"Cart subtotal {subtotal.amount_str} does not equal the sum of line "
                f"items ({computed_subtotal.amount_str})",
                {"subtotal": subtotal.amount_str, "expected": computed_subtotal.amount_str},
            )
        cart = cls(
            items=list(items),
            subtotal=computed_subtotal,
            total=computed_subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
        )
        cart.recalculate()
        if total is not None and not total.approx_equals(cart.total):
            raise CartInvariantError(
                f"Cart total {total.amount_str} does not equal subtotal + tax + shipping "
                f"- discount ({cart.total.amount_str})",
                {"total": total.amount_str, "expected": cart.total.amount_str},
            )
        return cart

    @property
    def currency(self) -> str:
        return self.subtotal.currency

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def expected_total(self) -> Money:
        zero = Money.zero(self.currency)
        return (
            self.subtotal
            + (self.tax or zero)
            + (self.shipping or zero)
            - (self.discount or zero)
        )

    def recalculate(self) -> None:
        """Recompute the total from its components."""
        self.total = self.expected_total()

    def validate(self) -> None:
        """Check both cart invariants.

        Raises:
            CartInvariantError: If an invariant is violated.
        """
        computed_subtotal = sum_money((item.total_price for item in self.items), self.currency)
        if not self.subtotal.approx_equals(computed_subtotal):
            raise CartInvariantError(
                "Cart subtotal does not equal the sum of line items",
                {"subtotal": self.subtotal.amount_str, "expected": computed_subtotal.amount_str},
            )
        expected_total = self.expected_total()
        if not self.total.approx_equals(expected_total):
            raise CartInvariantError(
                "Cart total does not equal subtotal + tax + shipping - discount",
                {"total": self.total.amount_str, "expected": expected_total.amount_str},
            )

    def _check_currency(self, amount: Money) -> None:
        if amount.currency != self.currency:
            raise CurrencyMismatchError(self.currency, amount.currency)

    def set_shipping(self, price: Money | None) -> None:
        """Replace the shipping amount and recompute the total."""
        if price is not None:
            self._check_currency(price)
        self.shipping = price
        self.recalculate()

    def set_discount(self, amount: Money | None) -> None:
        """Replace the discount amount and recompute the total."""
        if amount is not None:
            self._check_currency(amount)
        self.discount = amount
        self.recalculate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cart":
        cart = cls(
            items=[LineItem.from_dict(item) for item in data["items"]],
            subtotal=Money.from_dict(data["subtotal"]),
            total=Money.from_dict(data["total"]),
            tax=_money_or_none(data.get("tax")),
            shipping=_money_or_none(data.get("shipping")),
            discount=_money_or_none(data.get("discount")),
        )
        cart.validate()
        return cart

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal.to_dict(),
            "tax": _dict_or_none(self.tax),
            "shipping": _dict_or_none(self.shipping),
            "discount": _dict_or_none(self.discount),
            "total": self.total.to_dict(),
        }


# ============================================================================
# Checkout Session Aggregate
# ============================================================================


@dataclass(kw_only=True)
class CheckoutSession(AggregateRoot):
    """Checkout session aggregate root.

    A session is mutable while PENDING or READY. It becomes READY once a
    shipping address, a shipping option and a payment method are all
    present, and drops back to PENDING if one of them goes away. The
    session keeps only the id of its payment intent; the payment handler
    owns the intent itself.

    Attributes:
        merchant_id: Merchant selling the cart.
        cart: Priced cart.
        status: Current checkout status.
        applied_discounts: Discounts with their exact applied amounts.
        payment_intent_id: Intent of the current payment attempt.
        payment_attempt: Number of failed payment attempts so far.
        order_id: Order created when the session completed.
        expires_at: Sessions still PENDING/READY past this instant expire.
    """

    merchant_id: str
    cart: Cart
    status: CheckoutStatus = CheckoutStatus.PENDING
    customer: Customer | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    selected_shipping_option: ShippingOption | None = None
    payment_method: PaymentMethod | None = None
    applied_discounts: list[AppliedDiscount] = field(default_factory=list)
    payment_intent_id: str | None = None
    payment_attempt: int = 0
    order_id: str | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    failure_reason: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        merchant_id: str,
        cart: Cart,
        customer: Customer | None = None,
        metadata: dict[str, str] | None = None,
        ttl: timedelta | None = None,
        session_id: str | None = None,
    ) -> "CheckoutSession":
        """Open a new checkout session.

        Addresses carried on the customer are copied onto the session.

        Args:
            merchant_id: Merchant selling the cart.
            cart: Validated cart.
            customer: Optional customer.
            metadata: Free-form string metadata.
            ttl: Lifetime of the session before it expires.
            session_id: Optional pre-generated id.

        Returns:
            New PENDING session.
        """
        cart.validate()
        now = utc_now()
        session = cls(
            id=session_id or generate_id(),
            merchant_id=merchant_id,
            cart=cart,
            customer=customer,
            shipping_address=customer.shipping_address if customer else None,
            billing_address=customer.billing_address if customer else None,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
            expires_at=now + ttl if ttl else None,
        )
        session._record_event(
            CheckoutSessionCreated(
                aggregate_id=session.id,
                aggregate_type="CheckoutSession",
                session_id=session.id,
                merchant_id=merchant_id,
                total=cart.total.amount_str,
                currency=cart.currency,
            )
        )
        return session

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """Check if everything needed to complete is present."""
        return (
            self.shipping_address is not None
            and self.selected_shipping_option is not None
            and self.payment_method is not None
        )

    @property
    def discount_total(self) -> Money:
        return sum_money((d.amount for d in self.applied_discounts), self.cart.currency)

    def has_discount(self, discount_id: str) -> bool:
        return any(d.discount_id == discount_id for d in self.applied_discounts)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if an editable session has outlived its expiry."""
        if self.expires_at is None or not self.status.is_editable():
            return False
        return (now or utc_now()) >= self.expires_at

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _transition(self, target: CheckoutStatus, reason: str | None = None) -> None:
        validate_checkout_transition(self.id, self.status, target)
        previous = self.status
        self.status = target
        self._touch()
        self._record_event(
            CheckoutStatusChanged(
                aggregate_id=self.id,
                aggregate_type="CheckoutSession",
                session_id=self.id,
                from_status=previous.value,
                to_status=target.value,
                reason=reason,
            )
        )

    def _ensure_editable(self) -> None:
        if not self.status.is_editable():
            raise CheckoutNotEditableError(self.id, self.status.value)

    def _changed(self, *fields: str) -> None:
        self._touch()
        self._record_event(
            CheckoutSessionUpdated(
                aggregate_id=self.id,
                aggregate_type="CheckoutSession",
                session_id=self.id,
                changes=fields,
            )
        )
        self.refresh_readiness()

    def refresh_readiness(self) -> None:
        """Move between PENDING and READY to match the session's contents."""
        if not self.status.is_editable():
            return
        target = CheckoutStatus.READY if self.is_ready else CheckoutStatus.PENDING
        if target != self.status:
            self._transition(target)

    def set_shipping_address(self, address: Address) -> None:
        self._ensure_editable()
        self.shipping_address = address
        self._changed("shipping_address")

    def set_billing_address(self, address: Address) -> None:
        self._ensure_editable()
        self.billing_address = address
        self._changed("billing_address")

    def set_customer(self, customer: Customer) -> None:
        """Attach customer details; addresses on the customer fill empty slots."""
        self._ensure_editable()
        self.customer = customer
        changes = ["customer"]
        if customer.shipping_address and self.shipping_address is None:
            self.shipping_address = customer.shipping_address
            changes.append("shipping_address")
        if customer.billing_address and self.billing_address is None:
            self.billing_address = customer.billing_address
            changes.append("billing_address")
        self._changed(*changes)

    def set_payment_method(self, payment_method: PaymentMethod) -> None:
        self._ensure_editable()
        self.payment_method = payment_method
        self._changed("payment_method")

    def select_shipping_option(self, option: ShippingOption) -> None:
        """Select a shipping option, replacing any previous selection.

        Raises:
            CheckoutNotEditableError: If the session is not PENDING/READY.
            CurrencyMismatchError: If the option is priced in another currency.
        """
        self._ensure_editable()
        self.cart.set_shipping(option.price)
        self.selected_shipping_option = option
        self._changed("selected_shipping_option", "cart")

    def add_discount(self, applied: AppliedDiscount) -> None:
        """Record an applied discount and reprice the cart."""
        self._ensure_editable()
        self.applied_discounts.append(applied)
        self.cart.set_discount(self.discount_total)
        self._touch()
        self._record_event(
            DiscountApplied(
                aggregate_id=self.id,
                aggregate_type="CheckoutSession",
                session_id=self.id,
                discount_id=applied.discount_id,
                code=applied.code,
                amount=applied.amount.amount_str,
                currency=applied.amount.currency,
            )
        )

    def remove_discount(self, discount_id: str) -> AppliedDiscount:
        """Remove an applied discount, restoring exactly its amount.

        Raises:
            NotFoundError: If the discount is not applied.
        """
        self._ensure_editable()
        removed = next((d for d in self.applied_discounts if d.discount_id == discount_id), None)
        if removed is None:
            raise NotFoundError("AppliedDiscount", discount_id)
        self.applied_discounts = [d for d in self.applied_discounts if d.discount_id != discount_id]
        self.cart.set_discount(self.discount_total if self.applied_discounts else None)
        self._touch()
        self._record_event(
            DiscountRemoved(
                aggregate_id=self.id,
                aggregate_type="CheckoutSession",
                session_id=self.id,
                discount_id=removed.discount_id,
                code=removed.code,
                amount=removed.amount.amount_str,
                currency=removed.amount.currency,
            )
        )
        return removed

    def begin_processing(self) -> CheckoutStatus:
        """Enter PROCESSING and return the status to revert to on failure."""
        previous = self.status
        if not previous.is_editable():
            raise CheckoutNotEditableError(self.id, previous.value)
        self._transition(CheckoutStatus.PROCESSING)
        return previous

    def attach_payment_intent(self, payment_intent_id: str) -> None:
        self.payment_intent_id = payment_intent_id
        self._touch()

    def revert_processing(
        self,
        previous: CheckoutStatus,
        reason: str,
        keep_payment_intent: bool = False,
    ) -> None:
        """Leave PROCESSING after a failed payment attempt.

        Args:
            previous: Status the session had before ``begin_processing``.
            reason: Failure message recorded on the session.
            keep_payment_intent: Keep the intent id so the next attempt
                resumes it instead of creating a new charge.
        """
        self.payment_attempt += 1
        self.failure_reason = reason
        if not keep_payment_intent:
            self.payment_intent_id = None
        self._transition(previous, reason=reason)

    def mark_completed(self, order_id: str) -> None:
        self._transition(CheckoutStatus.COMPLETED)
        self.order_id = order_id
        self.completed_at = self.updated_at
        self.failure_reason = None
        self._record_event(
            CheckoutCompleted(
                aggregate_id=self.id,
                aggregate_type="CheckoutSession",
                session_id=self.id,
                order_id=order_id,
                payment_intent_id=self.payment_intent_id or "",
            )
        )

    def mark_failed(self, reason: str) -> None:
        self.failure_reason = reason
        self._transition(CheckoutStatus.FAILED, reason=reason)

    def cancel(self, reason: str | None = None) -> None:
        """Cancel the session (only from PENDING or READY).

        Raises:
            InvalidStateTransitionError: If the session is past READY.
        """
        self._transition(CheckoutStatus.CANCELLED, reason=reason)
        self.cancelled_at = self.updated_at

    def expire(self) -> None:
        self.cancel(reason="expired")

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "status": self.status.value,
            "cart": self.cart.to_dict(),
            "customer": _dict_or_none(self.customer),
            "shipping_address": _dict_or_none(self.shipping_address),
            "billing_address": _dict_or_none(self.billing_address),
            "selected_shipping_option": _dict_or_none(self.selected_shipping_option),
            "payment_method": _dict_or_none(self.payment_method),
            "applied_discounts": [d.to_dict() for d in self.applied_discounts],
            "payment_intent_id": self.payment_intent_id,
            "payment_attempt": self.payment_attempt,
            "order_id": self.order_id,
            "failure_reason": self.failure_reason,
            "metadata": dict(self.metadata),
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "expires_at": format_datetime(self.expires_at),
            "completed_at": format_datetime(self.completed_at),
            "cancelled_at": format_datetime(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckoutSession":
        def _opt(key: str, factory: Any) -> Any:
            value = data.get(key)
            return factory(value) if value else None

        return cls(
            id=data["id"],
            merchant_id=data["merchant_id"],
            status=CheckoutStatus(data["status"]),
            cart=Cart.from_dict(data["cart"]),
            customer=_opt("customer", Customer.from_dict),
            shipping_address=_opt("shipping_address", Address.from_dict),
            billing_address=_opt("billing_address", Address.from_dict),
            selected_shipping_option=_opt("selected_shipping_option", ShippingOption.from_dict),
            payment_method=_opt("payment_method", PaymentMethod.from_dict),
            applied_discounts=[AppliedDiscount.from_dict(d) for d in data.get("applied_discounts", [])],
            payment_intent_id=data.get("payment_intent_id"),
            payment_attempt=data.get("payment_attempt", 0),
            order_id=data.get("order_id"),
            failure_reason=data.get("failure_reason"),
            metadata=dict(data.get("metadata") or {}),
            version=data.get("version", 1),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
            expires_at=parse_datetime(data.get("expires_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
        )


# ============================================================================
# Order Aggregate
# ============================================================================


@dataclass
class OrderLineItem(Entity):
    """Line of an order with its fulfilment progress."""

    product_id: str
    name: str
    quantity: int
    unit_price: Money
    total_price: Money
    sku: str | None = None
    description: str | None = None
    quantity_fulfilled: int = 0
    quantity_cancelled: int = 0

    @classmethod
    def from_line_item(cls, item: LineItem) -> "OrderLineItem":
        return cls(
            id=item.id,
            product_id=item.product_id,
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
            sku=item.sku,
            description=item.description,
        )

    @property
    def open_quantity(self) -> int:
        return self.quantity - self.quantity_fulfilled - self.quantity_cancelled

    def update_progress(self, quantity_fulfilled: int, quantity_cancelled: int) -> None:
        """Set fulfilled and cancelled quantities.

        Raises:
            ValidationError: If quantities are negative, decrease, or exceed
                the ordered quantity.
        """
        if quantity_fulfilled < self.quantity_fulfilled or quantity_cancelled < self.quantity_cancelled:
            raise ValidationError(
                "Fulfilled and cancelled quantities cannot decrease",
                {"line_item_id": self.id},
            )
        if quantity_fulfilled + quantity_cancelled > self.quantity:
            raise ValidationError(
                "Fulfilled plus cancelled quantity exceeds ordered quantity",
                {
                    "line_item_id": self.id,
                    "quantity": self.quantity,
                    "quantity_fulfilled": quantity_fulfilled,
                    "quantity_cancelled": quantity_cancelled,
                },
            )
        self.quantity_fulfilled = quantity_fulfilled
        self.quantity_cancelled = quantity_cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "quantity_fulfilled": self.quantity_fulfilled,
            "quantity_cancelled": self.quantity_cancelled,
            "unit_price": self.unit_price.to_dict(),
            "total_price": self.total_price.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLineItem":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            name=data["name"],
            quantity=data["quantity"],
            unit_price=Money.from_dict(data["unit_price"]),
            total_price=Money.from_dict(data["total_price"]),
            sku=data.get("sku"),
            description=data.get("description"),
            quantity_fulfilled=data.get("quantity_fulfilled", 0),
            quantity_cancelled=data.get("quantity_cancelled", 0),
        )


@dataclass(frozen=True)
class OrderTotals(ValueObject):
    """Financial snapshot of an order."""

    subtotal: Money
    total: Money
    amount_paid: Money
    amount_refunded: Money
    tax: Money | None = None
    shipping: Money | None = None
    discount: Money | None = None

    @property
    def refundable(self) -> Money:
        return self.amount_paid - self.amount_refunded

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": self.subtotal.to_dict(),
            "tax": _dict_or_none(self.tax),
            "shipping": _dict_or_none(self.shipping),
            "discount": _dict_or_none(self.discount),
            "total": self.total.to_dict(),
            "amount_paid": self.amount_paid.to_dict(),
            "amount_refunded": self.amount_refunded.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderTotals":
        return cls(
            subtotal=Money.from_dict(data["subtotal"]),
            total=Money.from_dict(data["total"]),
            amount_paid=Money.from_dict(data["amount_paid"]),
            amount_refunded=Money.from_dict(data["amount_refunded"]),
            tax=_money_or_none(data.get("tax")),
            shipping=_money_or_none(data.get("shipping")),
            discount=_money_or_none(data.get("discount")),
        )


@dataclass
class OrderPayment:
    """Payment recorded on an order (one per captured intent)."""

    id: str
    amount: Money
    status: PaymentStatus
    transaction_id: str
    method: PaymentMethod | None = None
    amount_refunded: Money | None = None
    captured_at: datetime | None = None
    refunded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": _dict_or_none(self.method),
            "amount": self.amount.to_dict(),
            "amount_refunded": _dict_or_none(self.amount_refunded),
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "captured_at": format_datetime(self.captured_at),
            "refunded_at": format_datetime(self.refunded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderPayment":
        method = data.get("method")
        return cls(
            id=data["id"],
            amount=Money.from_dict(data["amount"]),
            status=PaymentStatus(data["status"]),
            transaction_id=data["transaction_id"],
            method=PaymentMethod.from_dict(method) if method else None,
            amount_refunded=_money_or_none(data.get("amount_refunded")),
            captured_at=parse_datetime(data.get("captured_at")),
            refunded_at=parse_datetime(data.get("refunded_at")),
        )


@dataclass(kw_only=True)
class Order(AggregateRoot):
    """Order aggregate root.

    Orders are created exactly once from a completed checkout session and
    snapshot its contents. Afterwards only fulfilment progress (status,
    fulfilled/cancelled quantities, tracking) and refund bookkeeping change.
    """

    order_number: str
    merchant_id: str
    checkout_session_id: str
    line_items: list[OrderLineItem]
    totals: OrderTotals
    status: OrderStatus = OrderStatus.CONFIRMED
    customer: Customer | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    shipping_option: ShippingOption | None = None
    applied_discounts: list[AppliedDiscount] = field(default_factory=list)
    payments: list[OrderPayment] = field(default_factory=list)
    notes: str | None = None
    tracking_number: str | None = None
    carrier: str | None = None
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def create_from_session(
        cls,
        session: CheckoutSession,
        payment: PaymentIntent,
        order_id: str | None = None,
        order_number: str | None = None,
    ) -> "Order":
        """Create a confirmed order from a session whose payment was captured.

        Factory method that snapshots the session's cart, customer,
        addresses and discounts.

        Args:
            session: Session being completed.
            payment: Captured payment intent for the session.
            order_id: Optional pre-generated order id.
            order_number: Optional pre-generated order number.

        Returns:
            New CONFIRMED Order with its OrderCreated event recorded.

        Raises:
            ValidationError: If the cart is empty or the payment is not captured.
        """
        if not session.cart.items:
            raise ValidationError("Cannot create order from empty cart", {"session_id": session.id})
        if payment.status != PaymentStatus.CAPTURED or payment.amount_captured is None:
            raise ValidationError(
                "Cannot create order before payment is captured",
                {"session_id": session.id, "payment_status": payment.status.value},
            )

        cart = session.cart
        now = utc_now()
        order = cls(
            id=order_id or generate_id(),
            order_number=order_number or generate_order_number(),
            merchant_id=session.merchant_id,
            checkout_session_id=session.id,
            line_items=[OrderLineItem.from_line_item(item) for item in cart.items],
            totals=OrderTotals(
                subtotal=cart.subtotal,
                tax=cart.tax,
                shipping=cart.shipping,
                discount=cart.discount,
                total=cart.total,
                amount_paid=payment.amount_captured,
                amount_refunded=Money.zero(cart.currency),
            ),
            customer=session.customer,
            shipping_address=session.shipping_address,
            billing_address=session.billing_address or session.shipping_address,
            shipping_option=session.selected_shipping_option,
            applied_discounts=list(session.applied_discounts),
            payments=[
                OrderPayment(
                    id=generate_id(),
                    amount=payment.amount_captured,
                    status=PaymentStatus.CAPTURED,
                    transaction_id=payment.id,
                    method=session.payment_method,
                    captured_at=payment.captured_at or now,
                )
            ],
            metadata=dict(session.metadata),
            created_at=now,
            updated_at=now,
            confirmed_at=now,
        )
        order._record_event(
            OrderCreated(
                aggregate_id=order.id,
                aggregate_type="Order",
                order_id=order.id,
                order_number=order.order_number,
                checkout_session_id=session.id,
                total=cart.total.amount_str,
                currency=cart.currency,
            )
        )
        return order

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.line_items)

    @property
    def payment_intent_id(self) -> str | None:
        return self.payments[0].transaction_id if self.payments else None

    def get_line_item(self, line_item_id: str) -> OrderLineItem:
        for item in self.line_items:
            if item.id == line_item_id:
                return item
        raise NotFoundError("OrderLineItem", line_item_id)

    # -------------------------------------------------------------------------
    # Fulfilment
    # -------------------------------------------------------------------------

    def update_status(self, target: OrderStatus) -> None:
        """Transition the order status.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if target == self.status:
            return
        validate_order_transition(self.id, self.status, target)
        previous = self.status
        self.status = target
        self._touch()
        if target == OrderStatus.CANCELLED:
            self.cancelled_at = self.updated_at
        elif target == OrderStatus.DELIVERED:
            self.completed_at = self.updated_at
        self._record_event(
            OrderStatusChanged(
                aggregate_id=self.id,
                aggregate_type="Order",
                order_id=self.id,
                from_status=previous.value,
                to_status=target.value,
            )
        )

    def update_line_item(self, line_item_id: str, quantity_fulfilled: int, quantity_cancelled: int) -> None:
        self.get_line_item(line_item_id).update_progress(quantity_fulfilled, quantity_cancelled)
        self._touch()

    def set_tracking(self, tracking_number: str | None, carrier: str | None) -> None:
        if tracking_number is not None:
            self.tracking_number = tracking_number
        if carrier is not None:
            self.carrier = carrier
        self._touch()

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def record_refund(self, refund: Refund, update_status: bool = True) -> None:
        """Book a refund issued by the payment handler.

        Args:
            refund: Successful refund.
            update_status: Move to REFUNDED / PARTIALLY_REFUNDED.

        Raises:
            ValidationError: If the refund exceeds the refundable amount.
        """
        if refund.amount > self.totals.refundable:
            raise ValidationError(
                "Refund exceeds the amount paid for the order",
                {
                    "order_id": self.id,
                    "amount": refund.amount.amount_str,
                    "refundable": self.totals.refundable.amount_str,
                },
            )
        self.totals = replace(self.totals, amount_refunded=self.totals.amount_refunded + refund.amount)
        fully_refunded = self.totals.refundable.is_zero()
        for payment in self.payments:
            if payment.transaction_id == refund.payment_intent_id:
                payment.amount_refunded = (payment.amount_refunded or Money.zero(payment.amount.currency)) + refund.amount
                payment.status = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED
                payment.refunded_at = refund.created_at
        self._touch()
        self._record_event(
            OrderRefunded(
                aggregate_id=self.id,
                aggregate_type="Order",
                order_id=self.id,
                refund_id=refund.id,
                amount=refund.amount.amount_str,
                currency=refund.amount.currency,
            )
        )
        if update_status:
            self.update_status(OrderStatus.REFUNDED if fully_refunded else OrderStatus.PARTIALLY_REFUNDED)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "merchant_id": self.merchant_id,
            "checkout_session_id": self.checkout_session_id,
            "status": self.status.value,
            "customer": _dict_or_none(self.customer),
            "shipping_address": _dict_or_none(self.shipping_address),
            "billing_address": _dict_or_none(self.billing_address),
            "shipping_option": _dict_or_none(self.shipping_option),
            "line_items": [item.to_dict() for item in self.line_items],
            "applied_discounts": [d.to_dict() for d in self.applied_discounts],
            "totals": self.totals.to_dict(),
            "payments": [p.to_dict() for p in self.payments],
            "notes": self.notes,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "metadata": dict(self.metadata),
            "version": self.version,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "confirmed_at": format_datetime(self.confirmed_at),
            "cancelled_at": format_datetime(self.cancelled_at),
            "completed_at": format_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        customer = data.get("customer")
        shipping = data.get("shipping_address")
        billing = data.get("billing_address")
        option = data.get("shipping_option")
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            merchant_id=data["merchant_id"],
            checkout_session_id=data["checkout_session_id"],
            status=OrderStatus(data["status"]),
            customer=Customer.from_dict(customer) if customer else None,
            shipping_address=Address.from_dict(shipping) if shipping else None,
            billing_address=Address.from_dict(billing) if billing else None,
            shipping_option=ShippingOption.from_dict(option) if option else None,
            line_items=[OrderLineItem.from_dict(item) for item in data["line_items"]],
            applied_discounts=[AppliedDiscount.from_dict(d) for d in data.get("applied_discounts", [])],
            totals=OrderTotals.from_dict(data["totals"]),
            payments=[OrderPayment.from_dict(p) for p in data.get("payments", [])],
            notes=data.get("notes"),
            tracking_number=data.get("tracking_number"),
            carrier=data.get("carrier"),
            metadata=dict(data.get("metadata") or {}),
            version=data.get("version", 1),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
            confirmed_at=parse_datetime(data.get("confirmed_at")),
            cancelled_at=parse_datetime(data.get("cancelled_at")),
            completed_at=parse_datetime(data.get("completed_at")),
        )
