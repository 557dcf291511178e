"""Application-level exception types.

This module defines domain errors used across the HTTP layer, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict

from marketplace.adapters.rate_limit.base import RateLimitResult


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    http_status: int
    retry_after: int
    limit: int
    scope: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised by the rate limit dependency when a request is denied.

    Attributes:
        result: Decision that denied the request.
        now_ms: Epoch milliseconds at decision time, for Retry-After.
    """

    result: RateLimitResult | None = field(default=None, kw_only=True)
    now_ms: float = field(default=0.0, kw_only=True)
