"""API middleware for the merchant server.

Provides:
- Request ID correlation
- Fixed-window rate limiting
- Request signature verification
"""

import time
from collections.abc import Callable
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ucp_merchant.api.dependencies import get_container
from ucp_merchant.api.errors import domain_error_response
from ucp_merchant.api.idempotency import IdempotencyMiddleware
from ucp_merchant.application.signature_service import SIGNATURE_HEADER, TIMESTAMP_HEADER
from ucp_merchant.domain.exceptions import AuthError, RateLimitedError

logger = structlog.get_logger()

# Paths that bypass rate limiting and signatures
EXEMPT_PATHS = {
    "/health",
    "/ready",
    "/docs",
    "/redoc",
    "/openapi.json",
}

# Webhooks are verified by the payment handler's own scheme
SIGNATURE_EXEMPT_PATHS = EXEMPT_PATHS | {"/webhooks/payments"}

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def default_client_key(request: Request) -> str:
    """Socket peer address.

    The first ``X-Forwarded-For`` hop is used instead only when
    ``rate_limit_trust_forwarded_for`` is set, since clients control the header.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and get_container(request).settings.rate_limit_trust_forwarded_for:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ============================================================================
# Request ID Middleware
# ============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID for correlation.

    Generates or extracts a request ID and adds it to:
    - Request state for access in handlers
    - Response headers for client correlation
    - Log context for tracing
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "Request completed",
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
            )
            structlog.contextvars.unbind_contextvars("request_id", "method", "path")

        response.headers[self.HEADER_NAME] = request_id
        return response


# ============================================================================
# Rate Limit Middleware
# ============================================================================


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limiting per client.

    Adds ``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and
    ``X-RateLimit-Reset`` to every counted response; over the limit the
    request is rejected with 429 and ``Retry-After``.
    """

    def __init__(self, app, key_func: Callable[[Request], str] = default_client_key) -> None:
        super().__init__(app)
        self.key_func = key_func

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        container = get_container(request)
        if not container.settings.rate_limit_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        result = await container.rate_limiter.hit(self.key_func(request))
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(int(result.reset_at)),
        }
        if not result.allowed:
            response = domain_error_response(request, RateLimitedError(result.retry_after))
        else:
            response = await call_next(request)
        response.headers.update(headers)
        return response


# ============================================================================
# Signature Middleware
# ============================================================================


class SignatureMiddleware(BaseHTTPMiddleware):
    """Verify ``UCP-Signature`` / ``UCP-Timestamp`` on mutating requests."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        verifier = get_container(request).signature_verifier
        if (
            verifier is None
            or request.method in SAFE_METHODS
            or request.url.path in SIGNATURE_EXEMPT_PATHS
        ):
            return await call_next(request)

        body = await request.body()
        try:
            verifier.verify(
                request.headers.get(TIMESTAMP_HEADER),
                request.headers.get(SIGNATURE_HEADER),
                body,
            )
        except AuthError as e:
            logger.warning("Request signature rejected", reason=e.message)
            return domain_error_response(request, e)
        return await call_next(request)


# ============================================================================
# Middleware Setup
# ============================================================================


def setup_middleware(app: FastAPI) -> None:
    """Configure all middleware for the application.

    Middleware is added in reverse order (last added = first executed):
    request id, rate limit, signature, idempotency.

    Args:
        app: FastAPI application instance.
    """
    app.add_middleware(IdempotencyMiddleware)
    app.add_middleware(SignatureMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)
