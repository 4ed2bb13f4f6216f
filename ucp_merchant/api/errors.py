"""Error responses.

Every error leaves the API in the same envelope:
``{"error_code", "message", "details", "request_id"}``.
"""

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ucp_merchant.domain.exceptions import DomainError, RateLimitedError

logger = structlog.get_logger()


def error_body(request: Request, error_code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "error_code": error_code,
        "message": message,
        "details": details if details is not None else {},
        "request_id": getattr(request.state, "request_id", None),
    }


def domain_error_response(request: Request, exc: DomainError) -> JSONResponse:
    """Render a domain error with its status code and envelope."""
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, exc.error_code, exc.message, exc.details),
        headers=headers or None,
    )


async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Domain error",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
        method=request.method,
    )
    return domain_error_response(request, exc)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    detail = exc.detail
    if isinstance(detail, dict):
        body = error_body(
            request,
            detail.get("error_code", "ERROR"),
            detail.get("message", str(detail)),
            detail.get("details"),
        )
    else:
        body = error_body(request, "ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body(request, "VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent format."""
    logger.exception(
        "Unhandled exception in handler",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content=error_body(request, "INTERNAL_ERROR", "An internal error occurred"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
