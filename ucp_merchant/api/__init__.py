"""API layer module.

Contains FastAPI routers, middleware and request/response schemas.
"""

from ucp_merchant.api.checkouts import router as checkouts_router
from ucp_merchant.api.discovery import router as discovery_router
from ucp_merchant.api.health import router as health_router
from ucp_merchant.api.orders import router as orders_router
from ucp_merchant.api.payments import router as payments_router

__all__ = [
    "checkouts_router",
    "discovery_router",
    "health_router",
    "orders_router",
    "payments_router",
]
