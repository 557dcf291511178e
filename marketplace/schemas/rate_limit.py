from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RateLimitErrorResponse(BaseModel):
    """Body returned with HTTP 429 when a client exceeds its budget."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(False, description="Always false for throttled requests")
    error: str = Field(..., description="User-facing retry message")
    retry_after: int = Field(
        ...,
        alias="retryAfter",
        ge=0,
        description="Seconds until the client may retry",
    )
