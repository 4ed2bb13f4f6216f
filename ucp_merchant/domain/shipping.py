"""Shipping options offered at checkout."""

from collections.abc import Iterable

from ucp_merchant.domain.exceptions import ValidationError
from ucp_merchant.domain.value_objects import Money, ShippingOption

DEFAULT_SHIPPING_OPTIONS: tuple[ShippingOption, ...] = (
    ShippingOption(
        id="standard",
        name="Standard Shipping",
        description="5-7 business days",
        price=Money.of("5.99", "USD"),
        estimated_delivery="5-7 business days",
        carrier="USPS",
    ),
    ShippingOption(
        id="express",
        name="Express Shipping",
        description="2-3 business days",
        price=Money.of("12.99", "USD"),
        estimated_delivery="2-3 business days",
        carrier="UPS",
    ),
    ShippingOption(
        id="overnight",
        name="Overnight Shipping",
        description="Next business day",
        price=Money.of("24.99", "USD"),
        estimated_delivery="1 business day",
        carrier="FedEx",
    ),
)


class ShippingCatalog:
    """Shipping options the merchant can fulfil with.

    Prices are fixed per option; options priced in a different currency
    than the cart are not offered.
    """

    def __init__(self, options: Iterable[ShippingOption] = DEFAULT_SHIPPING_OPTIONS) -> None:
        self._options = {option.id: option for option in options}

    def options_for(self, currency: str) -> list[ShippingOption]:
        """List options priced in the cart's currency."""
        return [o for o in self._options.values() if o.price.currency == currency]

    def get(self, option_id: str) -> ShippingOption:
        """Get an option by id.

        Raises:
            ValidationError: If the option does not exist.
        """
        option = self._options.get(option_id)
        if option is None:
            raise ValidationError(f"Unknown shipping option: {option_id}", {"option_id": option_id})
        return option
