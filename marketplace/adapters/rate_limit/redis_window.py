"""Redis-backed sliding-window rate limiter with in-memory fallback.

The counter for each identifier is a sorted set of request timestamps, so the
window slides with time instead of resetting at fixed boundaries. Admission
decisions can therefore differ slightly from the in-memory fixed window; the
result shape is the same.

Backend lifecycle:
- UNCONFIGURED: no URL/token, every call is answered by the fallback.
- CONNECTED: client built lazily on first use and reused.
- DEGRADED: client construction or a live call failed. The fallback answers
  until ``retry_cooldown_seconds`` have elapsed, then construction is retried.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import AuthenticationError

from marketplace.adapters.rate_limit.base import (
    AbstractRateLimiter,
    BackendState,
    RateLimitResult,
)
from marketplace.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from marketplace.core.logging import hash_identifier

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str, float], Any]

_AUTH_ERROR_MARKERS = ("WRONGPASS", "invalid or missing auth token")


def default_client_factory(url: str, token: str, timeout_seconds: float) -> Redis:
    """Build an asyncio Redis client for a Redis-compatible endpoint.

    Args:
        url: Redis-protocol URL (``redis://`` or ``rediss://``). HTTP REST
            endpoints such as ``https://<db>.upstash.io`` are rejected by
            ``Redis.from_url``; use the provider's ``rediss://`` endpoint.
        token: Access token, sent as the AUTH password.
        timeout_seconds: Socket connect/read timeout.

    Returns:
        Unconnected client; the first command opens the connection.
    """
    return Redis.from_url(
        url,
        password=token,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )


def is_auth_error(exc: BaseException) -> bool:
    """Whether a backend failure is a credentials problem."""
    if isinstance(exc, AuthenticationError):
        return True
    message = str(exc)
    return any(marker in message for marker in _AUTH_ERROR_MARKERS)


class RedisSlidingWindowRateLimiter(AbstractRateLimiter):
    """Remote counter adapter that degrades to an in-memory limiter."""

    name = "redis"

    def __init__(
        self,
        *,
        url: str | None,
        token: str | None,
        fallback: InMemoryFixedWindowRateLimiter,
        client_factory: ClientFactory = default_client_factory,
        retry_cooldown_seconds: float = 60.0,
        timeout_seconds: float = 2.0,
        key_prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = url
        self._token = token
        self._fallback = fallback
        self._client_factory = client_factory
        self._retry_cooldown = retry_cooldown_seconds
        self._timeout = timeout_seconds
        self._key_prefix = key_prefix
        self._clock = clock

        self._client: Any = None
        self._degraded_until: float | None = None
        self._state = BackendState.CONNECTED if self.configured else BackendState.UNCONFIGURED

        if not self.configured:
            logger.info(
                "rate_limit.remote_unconfigured",
                extra={"fallback": fallback.name},
            )

    @property
    def configured(self) -> bool:
        return bool(self._url and self._token)

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def fallback(self) -> InMemoryFixedWindowRateLimiter:
        return self._fallback

    def _mark_degraded(self) -> None:
        self._state = BackendState.DEGRADED
        self._client = None
        self._degraded_until = self._clock() + self._retry_cooldown

    def _get_client(self) -> Any:
        """Return the remote client, or None when the fallback must answer."""

        if not self.configured:
            return None

        if self._state is BackendState.DEGRADED:
            if self._degraded_until is not None and self._clock() < self._degraded_until:
                return None
            logger.info("rate_limit.remote_retry", extra={"backend": self.name})

        if self._client is not None:
            return self._client

        try:
            self._client = self._client_factory(self._url, self._token, self._timeout)
        except Exception as exc:  # noqa: BLE001
            self._mark_degraded()
            self._log_failure("rate_limit.remote_init_failed", exc)
            return None

        self._state = BackendState.CONNECTED
        self._degraded_until = None
        return self._client

    def _log_failure(self, event: str, exc: BaseException, **extra: Any) -> None:
        payload = {
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "retry_in_s": self._retry_cooldown,
            **extra,
        }
        if is_auth_error(exc):
            logger.info(event, extra={**payload, "reason": "auth"})
        else:
            logger.warning(event, extra={**payload, "reason": "unavailable"})

    async def _sliding_window(self, client: Any, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        key = f"{self._key_prefix}:{identifier}"
        now_ms = int(self._clock() * 1000)
        window_ms = window_seconds * 1000
        member = f"{now_ms}-{uuid.uuid4().hex}"

        async with client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zcard(key)
            pipe.zadd(key, {member: now_ms})
            pipe.pexpire(key, window_ms)
            pipe.zrange(key, 0, 0, withscores=True)
            results = await pipe.execute()

        count_before = int(results[1])
        oldest = results[4]
        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        reset_at = oldest_ms + window_ms

        if count_before >= limit:
            # Rejected requests do not occupy the window.
            await client.zrem(key, member)
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                backend=self.name,
            )

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count_before - 1),
            reset_at=reset_at,
            backend=self.name,
        )

    async def check(self, identifier: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        client = self._get_client()
        if client is None:
            return await self._fallback.check(identifier, limit=limit, window_seconds=window_seconds)

        try:
            return await self._sliding_window(client, identifier, limit, window_seconds)
        except Exception as exc:  # noqa: BLE001
            # Any failure, including a client bound to another event loop,
            # must enter the cooldown before the client is released.
            self._mark_degraded()
            self._log_failure(
                "rate_limit.remote_failed",
                exc,
                key_hash=hash_identifier(identifier),
            )
            await self._discard(client)
            return await self._fallback.check(identifier, limit=limit, window_seconds=window_seconds)

    async def _discard(self, client: Any) -> None:
        try:
            await client.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "rate_limit.remote_close_failed",
                extra={"error_type": type(exc).__name__},
            )

    async def close(self) -> None:
        """Close the remote client if one was built."""

        client, self._client = self._client, None
        if client is not None:
            await self._discard(client)
