"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any import that might load settings, so
tests never pick up a developer's Redis credentials.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.pop("REDIS_TOKEN", None)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from marketplace.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from marketplace.adapters.rate_limit.redis_window import RedisSlidingWindowRateLimiter
from marketplace.core.rate_limit import RateLimitService


class FakeClock:
    """Deterministic clock returning UNIX seconds."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory(clock: FakeClock) -> InMemoryFixedWindowRateLimiter:
    return InMemoryFixedWindowRateLimiter(clock=clock)


@pytest.fixture
def service(clock: FakeClock, memory: InMemoryFixedWindowRateLimiter) -> RateLimitService:
    """Service with an unconfigured remote, i.e. memory-only."""
    remote = RedisSlidingWindowRateLimiter(url=None, token=None, fallback=memory, clock=clock)
    return RateLimitService(remote, memory, clock=clock)
