"""Rate limiting adapters.

Two interchangeable backends behind ``AbstractRateLimiter``: an in-process
fixed-window store and a Redis sliding-window counter that falls back to it.
"""

from marketplace.adapters.rate_limit.base import AbstractRateLimiter, BackendState, RateLimitResult
from marketplace.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from marketplace.adapters.rate_limit.redis_window import RedisSlidingWindowRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "BackendState",
    "InMemoryFixedWindowRateLimiter",
    "RateLimitResult",
    "RedisSlidingWindowRateLimiter",
]
