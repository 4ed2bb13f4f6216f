"""Capability discovery.

``GET /.well-known/ucp`` publishes what this merchant supports: the
shopping services, their REST binding, payment handlers, currencies and
countries. The document is cached in storage for
``capabilities_ttl_seconds``.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Request

from ucp_merchant.api.dependencies import get_container
from ucp_merchant.application.container import ServiceContainer

logger = structlog.get_logger()

router = APIRouter(tags=["Discovery"])

UCP_VERSION = "2026-01-11"


def build_capabilities(container: ServiceContainer) -> dict[str, Any]:
    """Build the discovery document from settings and the payment handler."""
    settings = container.settings
    base_url = settings.base_url.rstrip("/")
    return {
        "version": UCP_VERSION,
        "merchant_id": settings.merchant_id,
        "merchant_name": settings.merchant_name,
        "services": {
            "dev.ucp.shopping": {
                "version": UCP_VERSION,
                "rest": {"endpoint": base_url},
                "capabilities": [
                    {
                        "name": "dev.ucp.shopping.checkout",
                        "version": UCP_VERSION,
                        "extensions": ["discount", "fulfillment"],
                    },
                    {"name": "dev.ucp.shopping.orders", "version": UCP_VERSION},
                ],
            }
        },
        "payment_handlers": [{"id": container.payment_handler.name, "name": container.payment_handler.name}],
        "supported_currencies": list(settings.supported_currencies),
        "supported_countries": list(settings.supported_countries),
    }


@router.get("/.well-known/ucp")
async def get_capabilities(request: Request) -> dict[str, Any]:
    container = get_container(request)
    merchant_id = container.settings.merchant_id

    document = await container.storage.get_capabilities(merchant_id)
    if document is None:
        document = build_capabilities(container)
        await container.storage.set_capabilities(
            merchant_id, document, container.settings.capabilities_ttl_seconds
        )
        logger.debug("Capability document rebuilt", merchant_id=merchant_id)
    return document
