"""Tests for the Redis sliding-window adapter and its fallback behavior."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import Mock

import pytest
from redis.exceptions import AuthenticationError, ConnectionError as RedisConnectionError

from marketplace.adapters.rate_limit.base import BackendState
from marketplace.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from marketplace.adapters.rate_limit.redis_window import (
    RedisSlidingWindowRateLimiter,
    is_auth_error,
)


class FakePipeline:
    """Queues sorted-set commands and replays them on execute()."""

    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._ops: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def __getattr__(self, name: str):
        def queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        self._client.executions += 1
        if self._client.fail_with is not None:
            raise self._client.fail_with
        return [getattr(self._client, f"_{name}")(*args, **kwargs) for name, args, kwargs in self._ops]


class FakeRedis:
    """Minimal in-process stand-in for redis.asyncio.Redis sorted sets."""

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.expiries: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self.close_fails_with: Exception | None = None
        self.executions = 0
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def _zremrangebyscore(self, key: str, low: float, high: float) -> int:
        zset = self.zsets.setdefault(key, {})
        doomed = [m for m, score in zset.items() if low <= score <= high]
        for member in doomed:
            del zset[member]
        return len(doomed)

    def _zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def _zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _pexpire(self, key: str, ms: int) -> bool:
        self.expiries[key] = ms
        return True

    def _zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list:
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start : end + 1]

    async def zrem(self, key: str, member: str) -> int:
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def aclose(self) -> None:
        self.closed = True
        if self.close_fails_with is not None:
            raise self.close_fails_with


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def factory(fake_redis: FakeRedis) -> Mock:
    return Mock(return_value=fake_redis)


def _adapter(clock, factory, **kwargs) -> RedisSlidingWindowRateLimiter:
    memory = InMemoryFixedWindowRateLimiter(clock=clock)
    return RedisSlidingWindowRateLimiter(
        url="redis://cache:6379",
        token="secret-token",
        fallback=memory,
        client_factory=factory,
        retry_cooldown_seconds=60,
        clock=clock,
        **kwargs,
    )


def test_unconfigured_uses_memory_without_building_client(clock) -> None:
    factory = Mock()
    memory = InMemoryFixedWindowRateLimiter(clock=clock)
    adapter = RedisSlidingWindowRateLimiter(
        url="redis://cache:6379",
        token=None,
        fallback=memory,
        client_factory=factory,
        clock=clock,
    )

    result = asyncio.run(adapter.check("login:1.2.3.4", limit=2, window_seconds=60))

    assert adapter.state is BackendState.UNCONFIGURED
    assert result.backend == "memory"
    assert result.remaining == 1
    factory.assert_not_called()


def test_sliding_window_counts_and_denies(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)

    async def scenario() -> list:
        return [await adapter.check("login:1.2.3.4", limit=2, window_seconds=10) for _ in range(4)]

    results = asyncio.run(scenario())

    assert [r.allowed for r in results] == [True, True, False, False]
    assert [r.remaining for r in results] == [1, 0, 0, 0]
    assert all(r.backend == "redis" for r in results)
    assert results[-1].reset_at == 1_010_000
    # Denied requests are not kept in the window
    assert len(fake_redis.zsets["ratelimit:login:1.2.3.4"]) == 2
    assert fake_redis.expiries["ratelimit:login:1.2.3.4"] == 10_000
    assert adapter.state is BackendState.CONNECTED
    factory.assert_called_once_with("redis://cache:6379", "secret-token", 2.0)


def test_sliding_window_frees_slots_as_time_passes(clock, factory) -> None:
    adapter = _adapter(clock, factory)

    async def scenario() -> None:
        assert (await adapter.check("k", limit=2, window_seconds=10)).allowed
        clock.advance(5)
        assert (await adapter.check("k", limit=2, window_seconds=10)).allowed
        assert not (await adapter.check("k", limit=2, window_seconds=10)).allowed

        # First request leaves the window, second is still inside
        clock.advance(5)
        result = await adapter.check("k", limit=2, window_seconds=10)
        assert result.allowed
        assert result.remaining == 0
        assert not (await adapter.check("k", limit=2, window_seconds=10)).allowed

    asyncio.run(scenario())


def test_key_prefix_namespaces_counters(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory, key_prefix="shop")

    asyncio.run(adapter.check("get-user:1.2.3.4", limit=5, window_seconds=10))

    assert list(fake_redis.zsets) == ["shop:get-user:1.2.3.4"]


def test_runtime_failure_falls_back_and_degrades(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = RedisConnectionError("connection refused")

    result = asyncio.run(adapter.check("k", limit=3, window_seconds=60))

    assert result.allowed is True
    assert result.backend == "memory"
    assert adapter.state is BackendState.DEGRADED
    assert fake_redis.closed is True


def test_non_redis_failure_degrades(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = RuntimeError("Task got Future attached to a different loop")

    async def scenario() -> list:
        return [await adapter.check("k", limit=3, window_seconds=60) for _ in range(5)]

    results = asyncio.run(scenario())

    assert all(r.backend == "memory" for r in results)
    assert adapter.state is BackendState.DEGRADED
    assert fake_redis.executions == 1
    assert fake_redis.closed is True
    factory.assert_called_once()


def test_close_failure_still_degrades(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = RedisConnectionError("connection reset by peer")
    fake_redis.close_fails_with = RuntimeError("Event loop is closed")

    async def scenario() -> list:
        return [await adapter.check("k", limit=3, window_seconds=60) for _ in range(5)]

    results = asyncio.run(scenario())

    assert [r.allowed for r in results] == [True, True, True, False, False]
    assert adapter.state is BackendState.DEGRADED
    assert fake_redis.executions == 1


def test_degraded_skips_remote_until_cooldown(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = RedisConnectionError("connection refused")

    async def scenario() -> None:
        await adapter.check("k", limit=3, window_seconds=60)
        fake_redis.fail_with = None

        clock.advance(30)
        during = await adapter.check("k", limit=3, window_seconds=60)
        assert during.backend == "memory"
        assert factory.call_count == 1

        clock.advance(31)
        after = await adapter.check("k", limit=3, window_seconds=60)
        assert after.backend == "redis"
        assert factory.call_count == 2
        assert adapter.state is BackendState.CONNECTED

    asyncio.run(scenario())


def test_client_construction_failure_degrades(clock) -> None:
    factory = Mock(side_effect=ValueError("Redis URL must specify a scheme"))
    adapter = _adapter(clock, factory)

    async def scenario() -> None:
        first = await adapter.check("k", limit=3, window_seconds=60)
        second = await adapter.check("k", limit=3, window_seconds=60)
        assert first.backend == second.backend == "memory"
        assert second.remaining == 1

    asyncio.run(scenario())

    assert adapter.state is BackendState.DEGRADED
    factory.assert_called_once()


def test_auth_failures_log_at_info(clock, factory, fake_redis, caplog) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = AuthenticationError("WRONGPASS invalid username-password pair")

    with caplog.at_level(logging.DEBUG, logger="marketplace.adapters.rate_limit.redis_window"):
        asyncio.run(adapter.check("k", limit=3, window_seconds=60))

    records = [r for r in caplog.records if r.getMessage() == "rate_limit.remote_failed"]
    assert len(records) == 1
    assert records[0].levelno == logging.INFO
    assert records[0].reason == "auth"


def test_transient_failures_log_at_warning(clock, factory, fake_redis, caplog) -> None:
    adapter = _adapter(clock, factory)
    fake_redis.fail_with = RedisConnectionError("Error 111 connecting")

    with caplog.at_level(logging.DEBUG, logger="marketplace.adapters.rate_limit.redis_window"):
        asyncio.run(adapter.check("k", limit=3, window_seconds=60))

    records = [r for r in caplog.records if r.getMessage() == "rate_limit.remote_failed"]
    assert len(records) == 1
    assert records[0].levelno == logging.WARNING
    assert records[0].reason == "unavailable"


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (AuthenticationError("invalid password"), True),
        (RedisConnectionError("WRONGPASS invalid username-password pair"), True),
        (RuntimeError("invalid or missing auth token"), True),
        (RedisConnectionError("timed out"), False),
    ],
)
def test_is_auth_error(exc: Exception, expected: bool) -> None:
    assert is_auth_error(exc) is expected


def test_close_releases_client(clock, factory, fake_redis) -> None:
    adapter = _adapter(clock, factory)

    async def scenario() -> None:
        await adapter.check("k", limit=3, window_seconds=60)
        await adapter.close()
        await adapter.close()

    asyncio.run(scenario())

    assert fake_redis.closed is True


def test_rest_url_is_rejected_and_degrades(clock) -> None:
    memory = InMemoryFixedWindowRateLimiter(clock=clock)
    adapter = RedisSlidingWindowRateLimiter(
        url="https://eu1-example.upstash.io",
        token="secret-token",
        fallback=memory,
        clock=clock,
    )

    result = asyncio.run(adapter.check("k", limit=3, window_seconds=60))

    assert result.backend == "memory"
    assert adapter.state is BackendState.DEGRADED
