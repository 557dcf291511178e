from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response

from marketplace.core.rate_limit import get_rate_limit_service
from marketplace.schemas.health import HealthResponse, RateLimitHealthResponse

router = APIRouter(tags=["Health"])

_NO_STORE = "no-store, no-cache, must-revalidate"


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request, response: Response) -> HealthResponse:
    """Health check endpoint.

    Used by load balancers and monitoring systems to determine service health.
    Never rate limited and never cached.
    """

    settings = request.app.state.settings
    response.headers["Cache-Control"] = _NO_STORE
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.monotonic() - request.app.state.started_at, 3),
        environment=settings.app_env,
        version=settings.app.version,
    )


@router.get("/health/rate-limit", response_model=RateLimitHealthResponse)
def rate_limit_health(request: Request, response: Response) -> RateLimitHealthResponse:
    """Report which rate limit backend is answering."""

    response.headers["Cache-Control"] = _NO_STORE
    return RateLimitHealthResponse(**get_rate_limit_service(request).status())
