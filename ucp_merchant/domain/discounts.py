"""Discount Engine.

Turns a promo code into an ``AppliedDiscount`` against a checkout
session's cart. Percentages are computed on the subtotal, fixed amounts
are capped, and the combined discount of every applied code never exceeds
the subtotal. Removal restores exactly the amount that was applied.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Self

import structlog

from ucp_merchant.domain.base import ValueObject, utc_now
from ucp_merchant.domain.exceptions import (
    DiscountAlreadyAppliedError,
    InvalidDiscountCodeError,
    ValidationError,
)
from ucp_merchant.domain.value_objects import Money

if TYPE_CHECKING:
    from ucp_merchant.domain.entities import Cart, CheckoutSession

logger = structlog.get_logger()


class DiscountType(str, Enum):
    """How a discount value is interpreted."""

    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class DiscountScope(str, Enum):
    """What a discount applies to. Only whole-order discounts are priced."""

    ORDER = "ORDER"


# ============================================================================
# Discount Definitions
# ============================================================================


@dataclass(frozen=True)
class Discount(ValueObject):
    """A promotion the merchant offers.

    Attributes:
        id: Stable discount identifier.
        code: Code entered by the buyer (case-insensitive).
        name: Display name.
        type: PERCENTAGE (value is 0-100) or FIXED_AMOUNT.
        percentage: Percentage off for PERCENTAGE discounts.
        amount: Amount off for FIXED_AMOUNT discounts.
        min_purchase_amount: Subtotal required before the code applies.
        max_discount_amount: Cap on the computed discount.
        is_active: Inactive codes are rejected.
        starts_at: Code is invalid before this instant.
        expires_at: Code is invalid from this instant on.
    """

    id: str
    code: str
    name: str
    type: DiscountType
    percentage: Decimal | None = None
    amount: Money | None = None
    scope: DiscountScope = DiscountScope.ORDER
    description: str | None = None
    min_purchase_amount: Money | None = None
    max_discount_amount: Money | None = None
    is_active: bool = True
    starts_at: datetime | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", self.code.upper())
        if self.type == DiscountType.PERCENTAGE:
            if self.percentage is None or not Decimal(0) <= self.percentage <= Decimal(100):
                raise ValidationError(
                    "Percentage discount requires a value between 0 and 100",
                    {"discount_id": self.id},
                )
        elif self.amount is None or self.amount.is_negative():
            raise ValidationError(
                "Fixed amount discount requires a non-negative amount",
                {"discount_id": self.id},
            )

    @classmethod
    def percent_off(cls, discount_id: str, code: str, name: str, percentage: int | str, **kwargs: Any) -> Self:
        """Build a PERCENTAGE discount."""
        return cls(
            id=discount_id,
            code=code,
            name=name,
            type=DiscountType.PERCENTAGE,
            percentage=Decimal(str(percentage)),
            **kwargs,
        )

    @classmethod
    def amount_off(cls, discount_id: str, code: str, name: str, amount: Money, **kwargs: Any) -> Self:
        """Build a FIXED_AMOUNT discount."""
        return cls(
            id=discount_id,
            code=code,
            name=name,
            type=DiscountType.FIXED_AMOUNT,
            amount=amount,
            **kwargs,
        )

    @property
    def value(self) -> str:
        """Discount value as a string (percentage or amount)."""
        if self.type == DiscountType.PERCENTAGE:
            return str(self.percentage)
        assert self.amount is not None
        return self.amount.amount_str

    def is_available(self, now: datetime) -> bool:
        """Check activity flag and validity window."""
        if not self.is_active:
            return False
        if self.starts_at is not None and now < self.starts_at:
            return False
        if self.expires_at is not None and now >= self.expires_at:
            return False
        return True


@dataclass(frozen=True)
class AppliedDiscount(ValueObject):
    """A discount as it was applied to one session.

    ``amount`` is stored exactly as computed so that removal restores the
    cart total to the cent.
    """

    discount_id: str
    code: str
    name: str
    type: DiscountType
    amount: Money
    scope: DiscountScope = DiscountScope.ORDER
    line_item_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            discount_id=data["discount_id"],
            code=data["code"],
            name=data["name"],
            type=DiscountType(data["type"]),
            amount=Money.from_dict(data["amount"]),
            scope=DiscountScope(data.get("scope", DiscountScope.ORDER.value)),
            line_item_id=data.get("line_item_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "discount_id": self.discount_id,
            "code": self.code,
            "name": self.name,
            "type": self.type.value,
            "scope": self.scope.value,
            "amount": self.amount.to_dict(),
            "line_item_id": self.line_item_id,
        }


@dataclass(frozen=True)
class DiscountEstimate:
    """Result of validating a code without applying it."""

    code: str
    valid: bool
    discount: Discount | None = None
    estimated_amount: Money | None = None
    reason: str | None = None


DEFAULT_DISCOUNTS: tuple[Discount, ...] = (
    Discount.percent_off("disc-1", "SAVE10", "10% Off", 10),
    Discount.percent_off("disc-2", "SAVE20", "20% Off", 20),
    Discount.amount_off("disc-3", "FLAT5", "$5 Off", Money.of("5.00", "USD")),
    Discount.percent_off("disc-4", "WELCOME", "Welcome Discount", 15),
)


class DiscountCatalog:
    """Lookup of discounts by code."""

    def __init__(self, discounts: Iterable[Discount] = DEFAULT_DISCOUNTS) -> None:
        self._by_code: dict[str, Discount] = {d.code: d for d in discounts}

    def find(self, code: str) -> Discount | None:
        """Find a discount by code (case-insensitive)."""
        return self._by_code.get((code or "").strip().upper())

    def add(self, discount: Discount) -> None:
        self._by_code[discount.code] = discount

    def all(self) -> list[Discount]:
        return list(self._by_code.values())


# ============================================================================
# Discount Engine
# ============================================================================


class DiscountEngine:
    """Computes, applies and removes discounts on checkout sessions.

    The engine performs no locking itself; callers serialize mutations of a
    session (the checkout service holds the per-session lock).
    """

    def __init__(
        self,
        catalog: DiscountCatalog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize engine.

        Args:
            catalog: Discount catalog. Defaults to the built-in codes.
            clock: Source of "now" for validity windows.
        """
        self.catalog = catalog if catalog is not None else DiscountCatalog()
        self._clock = clock

    def calculate(self, discount: Discount, cart: "Cart", already_discounted: Money) -> Money:
        """Compute the amount a discount takes off a cart.

        Args:
            discount: Discount definition.
            cart: Cart being priced.
            already_discounted: Sum of discounts already applied.

        Returns:
            Amount off, never more than what is left of the subtotal.

        Raises:
            InvalidDiscountCodeError: If the cart does not qualify.
        """
        subtotal = cart.subtotal
        if discount.min_purchase_amount is not None:
            if discount.min_purchase_amount.currency != subtotal.currency:
                raise InvalidDiscountCodeError(discount.code, "Currency not supported")
            if subtotal < discount.min_purchase_amount:
                raise InvalidDiscountCodeError(
                    discount.code,
                    f"Minimum purchase of {discount.min_purchase_amount.amount_str} "
                    f"{discount.min_purchase_amount.currency} not met",
                )

        if discount.type == DiscountType.PERCENTAGE:
            assert discount.percentage is not None
            amount = subtotal.percentage(discount.percentage)
        else:
            assert discount.amount is not None
            if discount.amount.currency != subtotal.currency:
                raise InvalidDiscountCodeError(discount.code, "Currency not supported")
            amount = discount.amount.min(subtotal)

        if discount.max_discount_amount is not None and discount.max_discount_amount.currency == subtotal.currency:
            amount = amount.min(discount.max_discount_amount)

        # Stacked discounts may never push the combined discount past the subtotal.
        remaining = subtotal - already_discounted
        if remaining.is_negative():
            remaining = Money.zero(subtotal.currency)
        return amount.min(remaining)

    def _evaluate(self, code: str, session: "CheckoutSession") -> tuple[Discount, Money]:
        discount = self.catalog.find(code)
        if discount is None:
            raise InvalidDiscountCodeError(code)
        if not discount.is_available(self._clock()):
            raise InvalidDiscountCodeError(discount.code, "Code is not active")
        if session.has_discount(discount.id):
            raise DiscountAlreadyAppliedError(discount.code, discount.id)

        amount = self.calculate(discount, session.cart, session.discount_total)
        if amount.is_zero() and not session.cart.subtotal.is_zero():
            raise InvalidDiscountCodeError(discount.code, "No remaining discountable amount")
        return discount, amount

    def apply(self, session: "CheckoutSession", code: str) -> AppliedDiscount:
        """Apply a discount code to a session.

        Args:
            session: Session to discount. Must be editable.
            code: Promo code entered by the buyer.

        Returns:
            The applied discount with its exact amount.

        Raises:
            InvalidDiscountCodeError: Unknown, inactive or inapplicable code.
            DiscountAlreadyAppliedError: The discount is already on the session.
        """
        discount, amount = self._evaluate(code, session)
        applied = AppliedDiscount(
            discount_id=discount.id,
            code=discount.code,
            name=discount.name,
            type=discount.type,
            scope=discount.scope,
            amount=amount,
        )
        session.add_discount(applied)
        logger.info(
            "Discount applied",
            session_id=session.id,
            code=discount.code,
            amount=amount.amount_str,
            total=session.cart.total.amount_str,
        )
        return applied

    def remove(self, session: "CheckoutSession", discount_id: str) -> Money:
        """Remove an applied discount and return the restored cart total.

        Raises:
            NotFoundError: If the discount is not applied to the session.
        """
        removed = session.remove_discount(discount_id)
        logger.info(
            "Discount removed",
            session_id=session.id,
            code=removed.code,
            amount=removed.amount.amount_str,
            total=session.cart.total.amount_str,
        )
        return session.cart.total

    def validate(self, code: str, session: "CheckoutSession") -> DiscountEstimate:
        """Check a code against a session without applying it."""
        try:
            discount, amount = self._evaluate(code, session)
        except (InvalidDiscountCodeError, DiscountAlreadyAppliedError) as e:
            return DiscountEstimate(code=code, valid=False, reason=e.message)
        return DiscountEstimate(code=discount.code, valid=True, discount=discount, estimated_amount=amount)
