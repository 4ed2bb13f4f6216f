"""UCP merchant server main application module.

This module builds the FastAPI application: the service container,
middleware, exception handlers and routers.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ucp_merchant import __version__
from ucp_merchant.api.checkouts import router as checkouts_router
from ucp_merchant.api.discovery import router as discovery_router
from ucp_merchant.api.errors import register_exception_handlers
from ucp_merchant.api.health import router as health_router
from ucp_merchant.api.middleware import setup_middleware
from ucp_merchant.api.orders import router as orders_router
from ucp_merchant.api.payments import router as payments_router
from ucp_merchant.application.container import ServiceContainer
from ucp_merchant.infrastructure.config import Settings
from ucp_merchant.infrastructure.logging import configure_logging
from ucp_merchant.infrastructure.payments import PaymentHandler
from ucp_merchant.infrastructure.storage import StorageProvider

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    payment_handler: PaymentHandler | None = None,
    storage: StorageProvider | None = None,
) -> FastAPI:
    """Create the merchant application.

    Args:
        settings: Settings to use; loaded from the environment if None.
        payment_handler: Override the configured payment handler.
        storage: Override the configured storage provider.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or Settings()
    container = ServiceContainer.from_settings(settings, payment_handler=payment_handler, storage=storage)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        configure_logging(settings.log_level, settings.log_json)
        await container.startup()
        logger.info(
            "Starting UCP merchant server",
            version=__version__,
            merchant_id=settings.merchant_id,
            storage=settings.storage_type,
            payment_handler=container.payment_handler.name,
        )

        yield

        # Shutdown
        logger.info("Shutting down UCP merchant server")
        await container.shutdown()

    app = FastAPI(
        title="UCP Merchant Server",
        description="Checkout, payment and order engine for the Universal Commerce Protocol",
        version=settings.api_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.container = container

    # CORS middleware (must be added before custom middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_middleware(app)
    register_exception_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(discovery_router)
    app.include_router(checkouts_router)
    app.include_router(orders_router)
    app.include_router(payments_router)
    return app


app = create_app()
