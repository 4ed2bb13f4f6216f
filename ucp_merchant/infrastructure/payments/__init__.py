"""Payment provider adapters.

``create_payment_handler`` picks the provider named in settings.
"""

from ucp_merchant.infrastructure.config import Settings
from ucp_merchant.infrastructure.payments.handler import PaymentHandler
from ucp_merchant.infrastructure.payments.simulator import SimulatedPaymentHandler
from ucp_merchant.infrastructure.payments.stripe_handler import StripePaymentHandler


def create_payment_handler(settings: Settings) -> PaymentHandler:
    """Build the configured payment handler.

    Raises:
        ValueError: If Stripe is selected without an API key.
    """
    if settings.payment_provider == "stripe":
        if not settings.stripe_api_key:
            raise ValueError("UCP_STRIPE_API_KEY is required when payment_provider is 'stripe'")
        return StripePaymentHandler(
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret or None,
            base_url=settings.stripe_base_url,
            timeout=settings.payment_timeout_seconds,
        )
    return SimulatedPaymentHandler()


__all__ = [
    "PaymentHandler",
    "SimulatedPaymentHandler",
    "StripePaymentHandler",
    "create_payment_handler",
]
