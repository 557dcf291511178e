from __future__ import annotations

"""Application factory for the FastAPI app.

The factory is the composition root: it builds the rate limit service from
settings, stores it on ``app.state.rate_limiter`` and ties the in-memory
sweeper and the Redis client to the app lifespan.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from marketplace.api.routes import health_router
from marketplace.core.config import Settings, settings as default_settings
from marketplace.core.exception_handlers import setup_exception_handlers
from marketplace.core.logging import configure_logging
from marketplace.core.middleware import request_id_middleware
from marketplace.core.rate_limit import RateLimitService, build_rate_limit_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    service: RateLimitService = app.state.rate_limiter
    service.start()
    try:
        yield
    finally:
        await service.aclose()


def create_app(
    settings: Settings | None = None,
    *,
    rate_limiter: RateLimitService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        settings: Settings to build from; defaults to the global instance.
        rate_limiter: Pre-built service, mainly for tests with a fake clock.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    app = FastAPI(
        title="Marketplace API",
        description=(
            "Source-code marketplace API. Sensitive endpoints are guarded by a "
            "per-client, per-endpoint rate limiter backed by Redis with an "
            "in-memory fallback."
        ),
        version=cfg.app.version,
        debug=cfg.app.debug,
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.started_at = time.monotonic()
    app.state.rate_limiter = rate_limiter or build_rate_limit_service(cfg)

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)
    app.include_router(health_router)

    return app
