"""API schemas for the merchant server.

Pydantic models for request validation. Each request model converts
itself into domain objects with ``to_domain``/``to_command``; responses
are rendered from the aggregates' ``to_dict`` forms.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ucp_merchant.domain.commands import (
    CancelCheckout,
    CheckoutCommand,
    SelectShippingOption,
    SetBillingAddress,
    SetCustomer,
    SetPaymentMethod,
    SetShippingAddress,
)
from ucp_merchant.domain.entities import Cart, LineItem
from ucp_merchant.domain.state_machines import OrderStatus
from ucp_merchant.domain.value_objects import Address, Contact, Customer, Money, PaymentMethod

DECIMAL_PATTERN = r"^-?[0-9]+(\.[0-9]+)?$"


# ============================================================================
# Common Schemas
# ============================================================================


class MoneySchema(BaseModel):
    """Monetary amount as a decimal string."""

    amount: str = Field(..., pattern=DECIMAL_PATTERN, description="Decimal amount, e.g. '19.99'")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="ISO 4217 code")

    def to_domain(self) -> Money:
        return Money(amount=self.amount, currency=self.currency)


class AddressSchema(BaseModel):
    line1: str = Field(..., min_length=1, max_length=255)
    line2: str | None = Field(default=None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    region: str | None = Field(default=None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(default="US", min_length=2, max_length=2)

    def to_domain(self) -> Address:
        return Address(
            line1=self.line1,
            line2=self.line2,
            city=self.city,
            region=self.region,
            postal_code=self.postal_code,
            country=self.country,
        )


class ContactSchema(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)


class CustomerSchema(BaseModel):
    id: str | None = None
    contact: ContactSchema
    shipping_address: AddressSchema | None = None
    billing_address: AddressSchema | None = None

    def to_domain(self) -> Customer:
        return Customer(
            id=self.id,
            contact=Contact(name=self.contact.name, email=self.contact.email, phone=self.contact.phone),
            shipping_address=self.shipping_address.to_domain() if self.shipping_address else None,
            billing_address=self.billing_address.to_domain() if self.billing_address else None,
        )


class PaymentMethodSchema(BaseModel):
    type: str = Field(..., min_length=1, description="card, google_pay, apple_pay, ...")
    provider: str | None = None
    token: str | None = None
    last_four: str | None = Field(default=None, max_length=4)

    def to_domain(self) -> PaymentMethod:
        return PaymentMethod(type=self.type, provider=self.provider, token=self.token, last_four=self.last_four)


# ============================================================================
# Checkout Schemas
# ============================================================================


class LineItemSchema(BaseModel):
    id: str | None = None
    product_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    unit_price: MoneySchema
    total_price: MoneySchema | None = None
    sku: str | None = None
    description: str | None = None
    image_url: str | None = None

    def to_domain(self) -> LineItem:
        return LineItem.create(
            product_id=self.product_id,
            name=self.name,
            quantity=self.quantity,
            unit_price=self.unit_price.to_domain(),
            total_price=self.total_price.to_domain() if self.total_price else None,
            line_item_id=self.id,
            sku=self.sku,
            description=self.description,
            image_url=self.image_url,
        )


class CartSchema(BaseModel):
    """Cart submitted by the client.

    Discounts are applied only through the discount endpoints, so a
    client-supplied ``discount`` is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    items: list[LineItemSchema] = Field(..., min_length=1)
    tax: MoneySchema | None = None
    shipping: MoneySchema | None = None
    subtotal: MoneySchema | None = Field(default=None, description="Checked against the items if given")
    total: MoneySchema | None = Field(default=None, description="Checked against the computed total if given")

    def to_domain(self) -> Cart:
        return Cart.create(
            items=[item.to_domain() for item in self.items],
            tax=self.tax.to_domain() if self.tax else None,
            shipping=self.shipping.to_domain() if self.shipping else None,
            subtotal=self.subtotal.to_domain() if self.subtotal else None,
            total=self.total.to_domain() if self.total else None,
        )


class CreateCheckoutRequest(BaseModel):
    cart: CartSchema
    customer: CustomerSchema | None = None
    metadata: dict[str, str] | None = None


class SetShippingAddressCommand(BaseModel):
    type: Literal["set_shipping_address"]
    address: AddressSchema

    def to_command(self) -> CheckoutCommand:
        return SetShippingAddress(self.address.to_domain())


class SetBillingAddressCommand(BaseModel):
    type: Literal["set_billing_address"]
    address: AddressSchema

    def to_command(self) -> CheckoutCommand:
        return SetBillingAddress(self.address.to_domain())


class SelectShippingOptionCommand(BaseModel):
    type: Literal["select_shipping_option"]
    option_id: str = Field(..., min_length=1)

    def to_command(self) -> CheckoutCommand:
        return SelectShippingOption(self.option_id)


class SetCustomerCommand(BaseModel):
    type: Literal["set_customer"]
    customer: CustomerSchema

    def to_command(self) -> CheckoutCommand:
        return SetCustomer(self.customer.to_domain())


class SetPaymentMethodCommand(BaseModel):
    type: Literal["set_payment_method"]
    payment_method: PaymentMethodSchema

    def to_command(self) -> CheckoutCommand:
        return SetPaymentMethod(self.payment_method.to_domain())


class CancelCommand(BaseModel):
    type: Literal["cancel"]
    reason: str | None = None

    def to_command(self) -> CheckoutCommand:
        return CancelCheckout(self.reason)


UpdateCommand = Annotated[
    SetShippingAddressCommand
    | SetBillingAddressCommand
    | SelectShippingOptionCommand
    | SetCustomerCommand
    | SetPaymentMethodCommand
    | CancelCommand,
    Field(discriminator="type"),
]


class UpdateCheckoutRequest(BaseModel):
    """Ordered list of update commands, applied all-or-nothing."""

    commands: list[UpdateCommand] = Field(..., min_length=1)


class DiscountCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CompleteCheckoutRequest(BaseModel):
    payment_method: PaymentMethodSchema | None = None
    save_payment_method: bool = False


class CancelCheckoutRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# ============================================================================
# Order Schemas
# ============================================================================


class LineItemProgressSchema(BaseModel):
    line_item_id: str
    quantity_fulfilled: int = Field(..., ge=0)
    quantity_cancelled: int = Field(default=0, ge=0)


class UpdateOrderRequest(BaseModel):
    status: OrderStatus | None = None
    line_items: list[LineItemProgressSchema] = Field(default_factory=list)
    tracking_number: str | None = Field(default=None, max_length=100)
    carrier: str | None = Field(default=None, max_length=100)


class RefundOrderRequest(BaseModel):
    amount: MoneySchema | None = Field(default=None, description="Defaults to the full refundable amount")
    reason: str | None = Field(default=None, max_length=500)


# ============================================================================
# Response Schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response.

    All API errors follow this format for consistency.
    """

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] = Field(default_factory=dict, description="Additional error details")
    request_id: str | None = Field(default=None, description="Request ID for correlation")


class CompleteCheckoutResponse(BaseModel):
    success: bool = True
    order_id: str
    order_number: str
    replayed: bool = False
    order: dict[str, Any]


class ListResponse(BaseModel):
    items: list[dict[str, Any]]
    limit: int
    offset: int
    has_more: bool


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    service: str
    version: str
