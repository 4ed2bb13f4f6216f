"""Idempotency middleware for mutating endpoints.

Provides:
- Idempotency-Key header handling
- Byte-identical replay of the stored response for duplicate requests
- Request conflict detection
"""

from collections.abc import Callable

import structlog
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ucp_merchant.api.dependencies import get_container
from ucp_merchant.api.errors import domain_error_response, error_body
from ucp_merchant.domain.exceptions import IdempotencyConflictError

logger = structlog.get_logger()

# Path prefixes whose mutating requests are deduplicated
IDEMPOTENT_PREFIXES = ("/checkout", "/orders")
IDEMPOTENT_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

MAX_KEY_LENGTH = 255

REPLAYED_HEADER = "X-Idempotent-Replayed"

# Headers recomputed for every response, never replayed
_UNSTORED_HEADERS = {"content-length", "content-type"}


def _is_idempotent_request(path: str, method: str) -> bool:
    """Check if a request is subject to idempotency handling.

    Args:
        path: Request path.
        method: HTTP method.
    """
    if method not in IDEMPOTENT_METHODS:
        return False
    return any(path == prefix or path.startswith(prefix + "/") for prefix in IDEMPOTENT_PREFIXES)


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Middleware for idempotency key handling.

    For mutating checkout and order endpoints:
    - Reserves the Idempotency-Key before the handler runs
    - Replays the stored response if the key was seen before
    - Makes concurrent duplicates wait for the first execution
    - Rejects reuse of a key for a different request with 409
    """

    HEADER_NAME = "Idempotency-Key"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path.rstrip("/") or "/"
        method = request.method

        if not _is_idempotent_request(path, method):
            return await call_next(request)

        container = get_container(request)
        service = container.idempotency_service
        idempotency_key = request.headers.get(self.HEADER_NAME)

        if not idempotency_key:
            if container.settings.idempotency_required:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content=error_body(
                        request,
                        "IDEMPOTENCY_KEY_REQUIRED",
                        f"{self.HEADER_NAME} header is required",
                    ),
                )
            logger.debug("Request without idempotency key", path=path, method=method)
            return await call_next(request)

        if len(idempotency_key) > MAX_KEY_LENGTH:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=error_body(
                    request,
                    "VALIDATION_ERROR",
                    f"{self.HEADER_NAME} must be at most {MAX_KEY_LENGTH} characters",
                ),
            )

        body = await request.body()
        result = await service.check(idempotency_key, method, path, body)

        if result.is_conflict:
            return domain_error_response(request, IdempotencyConflictError(idempotency_key))

        if result.is_cached and result.cached_response:
            cached = result.cached_response
            return Response(
                content=cached.body,
                status_code=cached.status_code,
                media_type=cached.media_type,
                headers={**cached.headers, REPLAYED_HEADER: "true"},
            )

        stored = False
        try:
            response = await call_next(request)
            if response.status_code >= 500:
                return response

            response_body = b""
            async for chunk in response.body_iterator:
                response_body += chunk if isinstance(chunk, bytes) else chunk.encode()

            headers = {k: v for k, v in response.headers.items() if k.lower() not in _UNSTORED_HEADERS}
            await service.store(
                idempotency_key=idempotency_key,
                method=method,
                path=path,
                request_body=body,
                status_code=response.status_code,
                body=response_body,
                media_type=response.headers.get("content-type"),
                headers=headers,
            )
            stored = True
        finally:
            # Nothing was stored; free the key for a retry
            if not stored:
                await service.release(idempotency_key)

        return Response(
            content=response_body,
            status_code=response.status_code,
            media_type=response.headers.get("content-type"),
            headers=headers,
        )
