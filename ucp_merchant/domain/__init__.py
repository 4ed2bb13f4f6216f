"""Domain layer - Money, checkout sessions, discounts, payments and orders.

This module exports the core domain building blocks:

- **Value Objects**: Money, Address, Customer, ShippingOption, PaymentMethod
- **Aggregates**: CheckoutSession, Order
- **State Machines**: CheckoutStatus, PaymentStatus, OrderStatus
- **Discount Engine**: DiscountEngine, DiscountCatalog, AppliedDiscount
- **Exceptions**: DomainError and its subclasses

Example usage:
    from ucp_merchant.domain import Cart, LineItem, Money

    item = LineItem.create("sku-1", "Widget", 2, Money.of("50.00"))
    cart = Cart.create([item])
    print(cart.total)  # $100.00 USD
"""

from ucp_merchant.domain.discounts import (
    AppliedDiscount,
    Discount,
    DiscountCatalog,
    DiscountEngine,
    DiscountType,
)
from ucp_merchant.domain.entities import (
    Cart,
    CheckoutSession,
    LineItem,
    Order,
    OrderLineItem,
    OrderPayment,
    OrderTotals,
)
from ucp_merchant.domain.exceptions import (
    AuthError,
    CurrencyMismatchError,
    DomainError,
    IdempotencyConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentFailedError,
    PaymentProviderError,
    RateLimitedError,
    ValidationError,
)
from ucp_merchant.domain.payments import PaymentIntent, PaymentMethodType, Refund
from ucp_merchant.domain.state_machines import CheckoutStatus, OrderStatus, PaymentStatus
from ucp_merchant.domain.value_objects import (
    Address,
    Contact,
    Customer,
    Money,
    PaymentMethod,
    ShippingOption,
    add_money,
    compare_money,
    subtract_money,
)

__all__ = [
    "Address",
    "AppliedDiscount",
    "AuthError",
    "Cart",
    "CheckoutSession",
    "CheckoutStatus",
    "Contact",
    "CurrencyMismatchError",
    "Customer",
    "Discount",
    "DiscountCatalog",
    "DiscountEngine",
    "DiscountType",
    "DomainError",
    "IdempotencyConflictError",
    "InvalidStateTransitionError",
    "LineItem",
    "Money",
    "NotFoundError",
    "Order",
    "OrderLineItem",
    "OrderPayment",
    "OrderStatus",
    "OrderTotals",
    "PaymentFailedError",
    "PaymentIntent",
    "PaymentMethod",
    "PaymentMethodType",
    "PaymentProviderError",
    "PaymentStatus",
    "RateLimitedError",
    "Refund",
    "ShippingOption",
    "ValidationError",
    "add_money",
    "compare_money",
    "subtract_money",
]
