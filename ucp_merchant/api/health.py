"""Health check endpoints.

Provides endpoints for monitoring service health and readiness.
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ucp_merchant import __version__
from ucp_merchant.api.dependencies import get_container
from ucp_merchant.api.schemas import HealthResponse

logger = structlog.get_logger()

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health.

    Returns:
        Health status with service name and version.
    """
    return HealthResponse(status="healthy", service="ucp-merchant", version=__version__)


@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """Check if the storage backend answers.

    Returns:
        Readiness status; 503 when storage is unreachable.
    """
    container = get_container(request)
    try:
        await container.storage.list_sessions(limit=1)
    except Exception as e:
        logger.warning("Readiness check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unavailable", "reason": str(e)})
    return JSONResponse(content={"status": "ready"})
