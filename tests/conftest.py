"""Shared fixtures for the merchant test suite."""

import pytest

from ucp_merchant.application.checkout_service import CheckoutService
from ucp_merchant.application.event_publisher import LoggingEventPublisher
from ucp_merchant.application.locks import KeyedLock
from ucp_merchant.application.order_service import OrderService
from ucp_merchant.domain.entities import Cart, LineItem
from ucp_merchant.domain.value_objects import Address, Contact, Customer, Money, PaymentMethod
from ucp_merchant.infrastructure.payments.simulator import SimulatedPaymentHandler
from ucp_merchant.infrastructure.storage import InMemoryStorage


@pytest.fixture
def cart() -> Cart:
    """Cart with a single 100.00 USD line."""
    return Cart.create(
        items=[
            LineItem.create(
                product_id="prod-1",
                name="Trail Running Shoes",
                quantity=2,
                unit_price=Money.of("50.00", "USD"),
                line_item_id="li-1",
            )
        ]
    )


@pytest.fixture
def address() -> Address:
    return Address(line1="1 Market St", city="San Francisco", postal_code="94105", country="US", region="CA")


@pytest.fixture
def customer(address: Address) -> Customer:
    return Customer(
        id="cus-1",
        contact=Contact(name="Ada Lovelace", email="ada@example.com"),
        shipping_address=address,
    )


@pytest.fixture
def card() -> PaymentMethod:
    return PaymentMethod(type="card", provider="simulator", token="tok_visa", last_four="4242")


@pytest.fixture
def simulator() -> SimulatedPaymentHandler:
    return SimulatedPaymentHandler()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def publisher() -> LoggingEventPublisher:
    return LoggingEventPublisher()


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def checkout_service(
    storage: InMemoryStorage,
    simulator: SimulatedPaymentHandler,
    locks: KeyedLock,
    publisher: LoggingEventPublisher,
) -> CheckoutService:
    return CheckoutService(
        storage=storage,
        payment_handler=simulator,
        locks=locks,
        publisher=publisher,
        supported_currencies=["USD", "EUR"],
    )


@pytest.fixture
def order_service(
    storage: InMemoryStorage,
    simulator: SimulatedPaymentHandler,
    locks: KeyedLock,
    publisher: LoggingEventPublisher,
) -> OrderService:
    return OrderService(storage=storage, payment_handler=simulator, locks=locks, publisher=publisher)
