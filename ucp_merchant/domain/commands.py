"""Checkout update commands.

A PATCH on a checkout session carries a list of explicit commands instead
of a bag of optional fields; each command names exactly one change.
"""

from dataclasses import dataclass

from ucp_merchant.domain.value_objects import Address, Customer, PaymentMethod


@dataclass(frozen=True)
class SetShippingAddress:
    address: Address


@dataclass(frozen=True)
class SetBillingAddress:
    address: Address


@dataclass(frozen=True)
class SelectShippingOption:
    """Select a shipping option, replacing any previous selection."""

    option_id: str


@dataclass(frozen=True)
class SetCustomer:
    customer: Customer


@dataclass(frozen=True)
class SetPaymentMethod:
    payment_method: PaymentMethod


@dataclass(frozen=True)
class CancelCheckout:
    reason: str | None = None


CheckoutCommand = (
    SetShippingAddress
    | SetBillingAddress
    | SelectShippingOption
    | SetCustomer
    | SetPaymentMethod
    | CancelCheckout
)
