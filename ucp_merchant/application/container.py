"""Service container.

Builds every long-lived collaborator once per application instance and
wires them together. FastAPI dependencies read the container from
``request.app.state.container``.
"""

from dataclasses import dataclass
from datetime import timedelta

from ucp_merchant.application.checkout_service import CheckoutService
from ucp_merchant.application.event_publisher import LoggingEventPublisher
from ucp_merchant.application.idempotency_service import IdempotencyService, InMemoryIdempotencyStore
from ucp_merchant.application.locks import KeyedLock
from ucp_merchant.application.order_service import OrderService
from ucp_merchant.application.rate_limit_service import FixedWindowRateLimiter
from ucp_merchant.application.signature_service import RequestSignatureVerifier
from ucp_merchant.application.webhook_service import PaymentWebhookService
from ucp_merchant.domain.discounts import DiscountEngine
from ucp_merchant.domain.shipping import ShippingCatalog
from ucp_merchant.infrastructure.config import Settings
from ucp_merchant.infrastructure.payments import PaymentHandler, create_payment_handler
from ucp_merchant.infrastructure.storage import StorageProvider, create_storage


@dataclass
class ServiceContainer:
    """Application-wide services and their shared dependencies."""

    settings: Settings
    storage: StorageProvider
    payment_handler: PaymentHandler
    publisher: LoggingEventPublisher
    checkout_service: CheckoutService
    order_service: OrderService
    webhook_service: PaymentWebhookService
    idempotency_service: IdempotencyService
    rate_limiter: FixedWindowRateLimiter
    signature_verifier: RequestSignatureVerifier | None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        payment_handler: PaymentHandler | None = None,
        storage: StorageProvider | None = None,
    ) -> "ServiceContainer":
        """Build the container.

        Args:
            settings: Application settings.
            payment_handler: Override the configured payment handler.
            storage: Override the configured storage provider.
        """
        storage = storage if storage is not None else create_storage(settings)
        payment_handler = payment_handler if payment_handler is not None else create_payment_handler(settings)
        locks = KeyedLock()
        publisher = LoggingEventPublisher()

        checkout_service = CheckoutService(
            storage=storage,
            payment_handler=payment_handler,
            discount_engine=DiscountEngine(),
            shipping_catalog=ShippingCatalog(),
            locks=locks,
            publisher=publisher,
            merchant_id=settings.merchant_id,
            session_ttl=timedelta(minutes=settings.session_ttl_minutes) if settings.session_ttl_minutes > 0 else None,
            payment_timeout=settings.payment_timeout_seconds,
            supported_currencies=settings.supported_currencies,
        )
        order_service = OrderService(
            storage=storage,
            payment_handler=payment_handler,
            locks=locks,
            publisher=publisher,
            payment_timeout=settings.payment_timeout_seconds,
        )
        return cls(
            settings=settings,
            storage=storage,
            payment_handler=payment_handler,
            publisher=publisher,
            checkout_service=checkout_service,
            order_service=order_service,
            webhook_service=PaymentWebhookService(payment_handler),
            idempotency_service=IdempotencyService(InMemoryIdempotencyStore(settings.idempotency_ttl_seconds)),
            rate_limiter=FixedWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds),
            signature_verifier=(
                RequestSignatureVerifier(settings.signature_secret, settings.signature_max_age_seconds)
                if settings.signature_enabled
                else None
            ),
        )

    async def startup(self) -> None:
        await self.storage.initialize()

    async def shutdown(self) -> None:
        await self.payment_handler.close()
        await self.storage.close()
