"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not the concrete backends) so the
in-memory store and the Redis-backed counter stay interchangeable.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch milliseconds when the current window resets.
        backend: Name of the backend that produced the decision.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    backend: str = "memory"

    def retry_after_seconds(self, now_ms: float) -> int:
        """Whole seconds until the window resets, never negative."""
        return max(0, int(math.ceil((self.reset_at - now_ms) / 1000)))


class BackendState(str, Enum):
    """Lifecycle of the remote counter backend."""

    UNCONFIGURED = "unconfigured"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class AbstractRateLimiter(ABC):
    """Interface for rate limiter backends."""

    @abstractmethod
    async def check(
        self,
        identifier: str,
        *,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and decide whether it may pass.

        Args:
            identifier: Pre-scoped key (e.g., ``"login:10.0.0.1"``).
            limit: Max requests allowed per window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
