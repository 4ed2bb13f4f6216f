"""Application layer module.

Contains application services (use cases) that orchestrate domain logic
and infrastructure, plus the request guards used by the API middleware.
"""

from ucp_merchant.application.checkout_service import CheckoutService, CompleteCheckoutResult
from ucp_merchant.application.container import ServiceContainer
from ucp_merchant.application.idempotency_service import IdempotencyService
from ucp_merchant.application.order_service import OrderService
from ucp_merchant.application.rate_limit_service import FixedWindowRateLimiter
from ucp_merchant.application.signature_service import RequestSignatureVerifier

__all__ = [
    "CheckoutService",
    "CompleteCheckoutResult",
    "FixedWindowRateLimiter",
    "IdempotencyService",
    "OrderService",
    "RequestSignatureVerifier",
    "ServiceContainer",
]
