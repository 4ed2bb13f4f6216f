"""Value Objects for the domain layer.

Value objects are immutable objects that are defined by their attributes
rather than identity. Money is the most important one: every amount in
the engine is an exact ``Decimal`` paired with an ISO 4217 currency code.
"""

import re
from dataclasses import dataclass
from decimal import MAX_EMAX, MAX_PREC, MIN_EMIN, ROUND_HALF_UP, Context, Decimal, InvalidOperation, Overflow
from typing import Any, Iterable, Self

from ucp_merchant.domain.base import ValueObject
from ucp_merchant.domain.exceptions import (
    CurrencyMismatchError,
    InvalidMoneyError,
    ValidationError,
)

# Wire format for amounts: optional sign, digits, optional fraction.
_AMOUNT_PATTERN = re.compile(r"-?[0-9]+(\.[0-9]+)?")

# Currencies whose minor unit is not cents.
_MINOR_UNITS: dict[str, int] = {"JPY": 0, "KRW": 0, "VND": 0, "BHD": 3, "KWD": 3}

# Tolerance used when checking totals that were supplied by a client.
MONEY_TOLERANCE = Decimal("0.01")

# Arithmetic context wide enough that sums, differences and products are exact
_EXACT = Context(prec=MAX_PREC, Emax=MAX_EMAX, Emin=MIN_EMIN, traps=[InvalidOperation, Overflow])


def _coerce_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidMoneyError(value, "Floating point amounts are not exact")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        text = value.strip()
        if not _AMOUNT_PATTERN.fullmatch(text):
            raise InvalidMoneyError(value)
        try:
            return Decimal(text)
        except InvalidOperation as e:
            raise InvalidMoneyError(value) from e
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise InvalidMoneyError(value, "Amount must be finite")
        return value
    raise InvalidMoneyError(value, f"Unsupported amount type {type(value).__name__}")


# ============================================================================
# Money
# ============================================================================


@dataclass(frozen=True)
class Money(ValueObject):
    """Exact monetary value with currency.

    Amounts are kept as ``Decimal`` without rounding; only percentage
    calculations round (half-up) to the currency's minor units.

    Attributes:
        amount: Exact decimal amount in major units (e.g. dollars).
        currency: ISO 4217 currency code (e.g. 'USD').
    """

    amount: Decimal
    currency: str = "USD"

    def __post_init__(self) -> None:
        """Normalize amount and currency."""
        object.__setattr__(self, "amount", _coerce_amount(self.amount))
        if not isinstance(self.currency, str) or len(self.currency) != 3 or not self.currency.isalpha():
            raise InvalidMoneyError(self.currency, "Currency must be a 3-letter ISO 4217 code")
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "USD") -> Self:
        """Create zero amount money."""
        return cls(amount=Decimal("0"), currency=currency)

    @classmethod
    def of(cls, amount: str | int | Decimal, currency: str = "USD") -> Self:
        """Create money from a decimal string, int or Decimal.

        Args:
            amount: Amount in major units. Floats are rejected.
            currency: Currency code.

        Returns:
            Money instance.

        Raises:
            InvalidMoneyError: If the amount is not an exact decimal.
        """
        return cls(amount=amount, currency=currency)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create money from its wire representation."""
        if not isinstance(data, dict) or "amount" not in data or "currency" not in data:
            raise InvalidMoneyError(data, "Money requires 'amount' and 'currency'")
        return cls(amount=data["amount"], currency=data["currency"])

    @property
    def minor_units(self) -> int:
        """Number of decimal places of the currency's minor unit."""
        return _MINOR_UNITS.get(self.currency, 2)

    @property
    def amount_str(self) -> str:
        """Amount rendered as a decimal string padded to minor units.

        Extra precision is never rounded away.
        """
        amount = self.amount
        if amount == 0:
            amount = abs(amount)
        exponent = amount.as_tuple().exponent
        if isinstance(exponent, int) and -exponent < self.minor_units:
            amount = amount.quantize(Decimal(1).scaleb(-self.minor_units), context=_EXACT)
        return format(amount, "f")

    def to_dict(self) -> dict[str, str]:
        """Convert to wire representation."""
        return {"amount": self.amount_str, "currency": self.currency}

    def _check_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        """Add two money amounts.

        Raises:
            CurrencyMismatchError: If currencies don't match.
        """
        self._check_currency(other)
        return Money(amount=_EXACT.add(self.amount, other.amount), currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        """Subtract money amounts. The result may be negative.

        Raises:
            CurrencyMismatchError: If currencies don't match.
        """
        self._check_currency(other)
        return Money(amount=_EXACT.subtract(self.amount, other.amount), currency=self.currency)

    def __mul__(self, quantity: int | Decimal) -> "Money":
        if isinstance(quantity, (bool, float)) or not isinstance(quantity, (int, Decimal)):
            raise InvalidMoneyError(quantity, "Multiplier must be an int or Decimal")
        return Money(amount=_EXACT.multiply(self.amount, Decimal(quantity)), currency=self.currency)

    def __rmul__(self, quantity: int | Decimal) -> "Money":
        return self.__mul__(quantity)

    def __neg__(self) -> "Money":
        return Money(amount=_EXACT.minus(self.amount), currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def percentage(self, percent: Decimal | int | str) -> "Money":
        """Return ``percent`` % of this amount, rounded half-up to minor units.

        Args:
            percent: Percentage between 0 and 100.

        Returns:
            New Money with the rounded share.
        """
        share = _EXACT.multiply(self.amount, Decimal(str(percent))).scaleb(-2, _EXACT)
        return Money(amount=share, currency=self.currency).rounded()

    def rounded(self) -> "Money":
        """Round half-up to the currency's minor units."""
        quantum = Decimal(1).scaleb(-self.minor_units)
        return Money(
            amount=self.amount.quantize(quantum, rounding=ROUND_HALF_UP, context=_EXACT),
            currency=self.currency,
        )

    def approx_equals(self, other: "Money", tolerance: Decimal = MONEY_TOLERANCE) -> bool:
        """Check equality within ``tolerance`` (same currency required)."""
        self._check_currency(other)
        return _EXACT.abs(_EXACT.subtract(self.amount, other.amount)) <= tolerance

    def min(self, other: "Money") -> "Money":
        """Return the smaller of two amounts."""
        return self if self <= other else other

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def __str__(self) -> str:
        """Return formatted string representation (e.g. '$12.99 USD')."""
        symbol = {"USD": "$", "EUR": "€", "GBP": "£"}.get(self.currency, "")
        return f"{symbol}{self.amount_str} {self.currency}"


def add_money(a: Money, b: Money) -> Money:
    """Add two same-currency amounts."""
    return a + b


def subtract_money(a: Money, b: Money) -> Money:
    """Subtract ``b`` from ``a`` (same currency)."""
    return a - b


def compare_money(a: Money, b: Money) -> int:
    """Three-way compare of two same-currency amounts.

    Returns:
        -1, 0 or 1.
    """
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def sum_money(values: Iterable[Money], currency: str = "USD") -> Money:
    """Sum amounts, starting from zero in ``currency``."""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


# ============================================================================
# Address Value Object
# ============================================================================


@dataclass(frozen=True)
class Address(ValueObject):
    """Shipping or billing address.

    Attributes:
        line1: Primary address line.
        city: City name.
        postal_code: Postal/ZIP code.
        country: ISO 3166-1 alpha-2 country code.
        line2: Secondary address line (optional).
        region: State/province/region (optional).
    """

    line1: str
    city: str
    postal_code: str
    country: str = "US"
    line2: str | None = None
    region: str | None = None

    def __post_init__(self) -> None:
        """Validate address fields."""
        if not self.line1 or not self.line1.strip():
            raise ValidationError("Address line1 cannot be empty", {"field": "line1"})
        if not self.city or not self.city.strip():
            raise ValidationError("City cannot be empty", {"field": "city"})
        if not self.postal_code or not self.postal_code.strip():
            raise ValidationError("Postal code cannot be empty", {"field": "postal_code"})
        if not self.country or len(self.country) != 2:
            raise ValidationError(
                "Country must be an ISO 3166-1 alpha-2 code", {"field": "country"}
            )
        # Normalize country to uppercase
        object.__setattr__(self, "country", self.country.upper())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            line1=data.get("line1", ""),
            city=data.get("city", ""),
            postal_code=data.get("postal_code", ""),
            country=data.get("country", "US"),
            line2=data.get("line2"),
            region=data.get("region"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "region": self.region,
            "postal_code": self.postal_code,
            "country": self.country,
        }

    def format_single_line(self) -> str:
        """Format address as single line."""
        parts = [self.line1]
        if self.line2:
            parts.append(self.line2)
        parts.append(self.city)
        if self.region:
            parts.append(self.region)
        parts.extend([self.postal_code, self.country])
        return ", ".join(parts)


# ============================================================================
# Customer Information
# ============================================================================


@dataclass(frozen=True)
class Contact(ValueObject):
    """Customer contact details.

    Attributes:
        name: Customer full name.
        email: Email address (optional).
        phone: Phone number (optional).
    """

    name: str
    email: str | None = None
    phone: str | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("Contact name cannot be empty", {"field": "name"})
        if self.email is not None and "@" not in self.email:
            raise ValidationError("Invalid email address", {"field": "email"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(name=data.get("name", ""), email=data.get("email"), phone=data.get("phone"))

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "email": self.email, "phone": self.phone}


@dataclass(frozen=True)
class Customer(ValueObject):
    """Customer attached to a checkout session or order."""

    contact: Contact
    id: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        shipping = data.get("shipping_address")
        billing = data.get("billing_address")
        return cls(
            contact=Contact.from_dict(data.get("contact") or {}),
            id=data.get("id"),
            shipping_address=Address.from_dict(shipping) if shipping else None,
            billing_address=Address.from_dict(billing) if billing else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "contact": self.contact.to_dict(),
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
        }


# ============================================================================
# Shipping and Payment Selections
# ============================================================================


@dataclass(frozen=True)
class ShippingOption(ValueObject):
    """A shipping method the merchant offers.

    Attributes:
        id: Option identifier (e.g. 'express').
        name: Display name.
        price: Price added to the cart when selected.
        description: Optional description.
        estimated_delivery: Human-readable delivery estimate.
        carrier: Carrier name.
    """

    id: str
    name: str
    price: Money
    description: str | None = None
    estimated_delivery: str | None = None
    carrier: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            id=data["id"],
            name=data["name"],
            price=Money.from_dict(data["price"]),
            description=data.get("description"),
            estimated_delivery=data.get("estimated_delivery"),
            carrier=data.get("carrier"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price.to_dict(),
            "estimated_delivery": self.estimated_delivery,
            "carrier": self.carrier,
        }


@dataclass(frozen=True)
class PaymentMethod(ValueObject):
    """Payment method chosen for a checkout session.

    Attributes:
        type: Method type (card, google_pay, apple_pay, ...).
        provider: Payment provider name (optional).
        token: One-time token or saved payment method id (optional).
        last_four: Last four digits for display (optional).
    """

    type: str
    provider: str | None = None
    token: str | None = None
    last_four: str | None = None

    def __post_init__(self) -> None:
        if not self.type or not self.type.strip():
            raise ValidationError("Payment method type cannot be empty", {"field": "type"})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            type=data.get("type", ""),
            provider=data.get("provider"),
            token=data.get("token"),
            last_four=data.get("last_four"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "provider": self.provider,
            "token": self.token,
            "last_four": self.last_four,
        }
