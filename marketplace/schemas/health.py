"""Pydantic schemas for health responses."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness payload."""

    status: str = Field("ok", description="Always 'ok' while the process serves requests.")
    timestamp: str = Field(..., description="ISO-8601 UTC time of the check.")
    uptime_seconds: float = Field(..., description="Seconds since the application started.")
    environment: str = Field(..., description="Value of APP_ENV.")
    version: str = Field(..., description="Application version.")


class RateLimitHealthResponse(BaseModel):
    """Rate limiter backend snapshot."""

    enabled: bool
    backend: str = Field(..., description="Preferred backend name.")
    state: str | None = Field(
        None,
        description="Remote backend state: unconfigured, connected or degraded.",
    )
    memory_windows: int = Field(..., description="Windows currently tracked in memory.")
