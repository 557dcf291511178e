"""Global exception handlers for consistent error responses.

Design:
- RateLimitExceededError → 429 with the rate limit body and headers
- Other AppError subclasses → 400 with the standard error envelope
- Unexpected Exception → generic 500 (safety net)
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from marketplace.core.errors import AppError, RateLimitExceededError
from marketplace.core.logging import get_request_id
from marketplace.core.rate_limit import build_rate_limit_response

logger = logging.getLogger(__name__)


async def rate_limit_error_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Render a denied rate limit decision as HTTP 429.

    Args:
        request: FastAPI request object.
        exc: Error carrying the denying decision.

    Returns:
        JSONResponse with ``success``, ``error`` and ``retryAfter`` fields.
    """
    service = getattr(request.app.state, "rate_limiter", None)
    include_headers = service.include_headers if service is not None else True

    return build_rate_limit_response(
        exc.result,
        now_ms=exc.now_ms,
        message=exc.message,
        include_headers=include_headers,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with status 400 and error details.
    """
    status_code = 400

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(status_code=status_code, content={"error": error_content})


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors.

    Logs the failure for debugging while returning a generic message, so no
    stack traces or internal messages reach the client.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app.

    Specific handlers are registered before the general fallback; Starlette
    resolves handlers by walking the exception's MRO, so the rate limit
    handler wins over the generic AppError one.
    """
    app.exception_handler(RateLimitExceededError)(rate_limit_error_handler)
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
