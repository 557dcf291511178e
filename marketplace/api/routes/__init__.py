from __future__ import annotations

from marketplace.api.routes.health import router as health_router

__all__ = ["health_router"]
