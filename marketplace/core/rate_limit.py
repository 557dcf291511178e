"""Rate limiting for FastAPI routes.

This module wires the rate limiting adapters into the HTTP layer.

- ``RateLimitService`` is the decision function. It is built once by the app
  factory and stored on ``app.state.rate_limiter``.
- ``check_rate_limit_and_respond`` is the per-handler pre-check: it returns a
  ready 429 response on deny and ``None`` when the handler may proceed.
- ``enforce_rate_limit(scope)`` does the same as a FastAPI dependency.

Every path fails open: a broken backend degrades protection, never
availability. Login and other brute-force sensitive scopes therefore lose
their protection while the limiter itself is failing.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from marketplace.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from marketplace.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from marketplace.adapters.rate_limit.redis_window import RedisSlidingWindowRateLimiter
from marketplace.core.config import Settings
from marketplace.core.errors import RateLimitExceededError
from marketplace.core.logging import hash_identifier
from marketplace.core.rate_limit_policies import get_policy
from marketplace.schemas.rate_limit import RateLimitErrorResponse

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 10
DEFAULT_MESSAGE = "Too many requests. Please try again later."
UNKNOWN_CLIENT = "unknown"


class RateLimitService:
    """Decision function over a backend with an in-memory safety net.

    Args:
        backend: Preferred backend (usually the Redis adapter).
        memory: In-process store, also the backend's fallback.
        clock: Time source returning UNIX time in seconds.
        enabled: When False every request is allowed without counting.
        default_limit: Limit used by scopes without an explicit policy.
        default_window_seconds: Window used by scopes without an explicit policy.
        include_headers: Send X-RateLimit-* and Retry-After on 429.
        message: User-facing message of the 429 body.
    """

    def __init__(
        self,
        backend: AbstractRateLimiter,
        memory: InMemoryFixedWindowRateLimiter,
        *,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
        default_limit: int = DEFAULT_LIMIT,
        default_window_seconds: int = DEFAULT_WINDOW_SECONDS,
        include_headers: bool = True,
        message: str = DEFAULT_MESSAGE,
    ) -> None:
        self.backend = backend
        self.memory = memory
        self.enabled = enabled
        self.default_limit = default_limit
        self.default_window_seconds = default_window_seconds
        self.include_headers = include_headers
        self.message = message
        self._clock = clock

    def now_ms(self) -> float:
        return self._clock() * 1000

    async def check(
        self,
        identifier: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ) -> RateLimitResult:
        """Count one request for ``identifier`` and return the decision.

        Never raises. Invalid limits are clamped to 1, backend failures are
        answered by the memory store, and if that fails too the request is
        allowed.

        Args:
            identifier: Pre-scoped key, e.g. ``"login:10.0.0.1"``.
            limit: Max requests per window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult for this request.
        """

        if limit < 1 or window_seconds < 1:
            logger.warning(
                "rate_limit.invalid_arguments",
                extra={"limit": limit, "window_s": window_seconds},
            )
            limit = max(1, limit)
            window_seconds = max(1, window_seconds)
        identifier = identifier or UNKNOWN_CLIENT

        try:
            return await self.backend.check(identifier, limit=limit, window_seconds=window_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "rate_limit.backend_error",
                extra={
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "key_hash": hash_identifier(identifier),
                },
            )

        try:
            return await self.memory.check(identifier, limit=limit, window_seconds=window_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "rate_limit.fail_open",
                extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - 1,
                reset_at=int(self.now_ms()) + window_seconds * 1000,
                backend="none",
            )

    def build_response(self, result: RateLimitResult) -> JSONResponse:
        return build_rate_limit_response(
            result,
            now_ms=self.now_ms(),
            message=self.message,
            include_headers=self.include_headers,
        )

    def status(self) -> dict[str, object]:
        """Backend snapshot for the health endpoint."""

        state = getattr(self.backend, "state", None)
        return {
            "enabled": self.enabled,
            "backend": getattr(self.backend, "name", type(self.backend).__name__),
            "state": state.value if state is not None else None,
            "memory_windows": len(self.memory),
        }

    def start(self) -> None:
        self.memory.start()

    async def aclose(self) -> None:
        await self.memory.stop()
        close: Callable[[], Awaitable[None]] | None = getattr(self.backend, "close", None)
        if close is not None:
            await close()


def build_rate_limit_service(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.time,
) -> RateLimitService:
    """Compose the memory store, Redis adapter and service from settings."""

    memory = InMemoryFixedWindowRateLimiter(
        clock=clock,
        sweep_interval_seconds=settings.app.rate_limit_sweep_interval_seconds,
    )
    remote = RedisSlidingWindowRateLimiter(
        url=settings.redis.url,
        token=settings.redis.token,
        fallback=memory,
        retry_cooldown_seconds=settings.redis.retry_cooldown_seconds,
        timeout_seconds=settings.redis.timeout_seconds,
        key_prefix=settings.redis.key_prefix,
        clock=clock,
    )
    return RateLimitService(
        remote,
        memory,
        clock=clock,
        enabled=settings.app.rate_limit_enabled,
        default_limit=settings.app.rate_limit_default_requests,
        default_window_seconds=settings.app.rate_limit_default_window_seconds,
        include_headers=settings.app.rate_limit_include_headers,
        message=settings.app.rate_limit_message,
    )


def build_rate_limit_response(
    result: RateLimitResult,
    *,
    now_ms: float,
    message: str = DEFAULT_MESSAGE,
    include_headers: bool = True,
) -> JSONResponse:
    """Render a denied decision as HTTP 429.

    Args:
        result: The denying decision.
        now_ms: Current epoch milliseconds.
        message: User-facing retry message.
        include_headers: Whether to attach X-RateLimit-* and Retry-After.

    Returns:
        JSONResponse with status 429.
    """

    retry_after = result.retry_after_seconds(now_ms)
    body = RateLimitErrorResponse(error=message, retry_after=retry_after)

    headers: dict[str, str] | None = None
    if include_headers:
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
            "Retry-After": str(retry_after),
        }

    return JSONResponse(
        status_code=429,
        content=body.model_dump(by_alias=True),
        headers=headers,
    )


def get_client_identifier(request: Request) -> str:
    """Client address as reported by the proxy chain.

    First entry of X-Forwarded-For, else X-Real-IP, else ``"unknown"``.
    """

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = (request.headers.get("x-real-ip") or "").strip()
    return real_ip or UNKNOWN_CLIENT


def get_rate_limit_service(request: Request) -> RateLimitService:
    return request.app.state.rate_limiter


def _log_decision(scope: str, identifier: str, result: RateLimitResult) -> None:
    extra = {
        "scope": scope,
        "key_hash": hash_identifier(identifier),
        "backend": result.backend,
        "limit": result.limit,
        "remaining": result.remaining,
        "reset_at_ms": result.reset_at,
    }
    if result.allowed:
        logger.debug("rate_limit.allowed", extra=extra)
    else:
        logger.warning("rate_limit.exceeded", extra=extra)


async def check_rate_limit_and_respond(
    request: Request,
    limit: int = DEFAULT_LIMIT,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
    scope_prefix: str = "api",
) -> JSONResponse | None:
    """Pre-check for a route handler.

    Usage:
        denied = await check_rate_limit_and_respond(request, 5, 60, "login")
        if denied is not None:
            return denied

    Args:
        request: Incoming request; its client address is the counted key.
        limit: Max requests per window.
        window_seconds: Window length in seconds.
        scope_prefix: Endpoint scope, isolates budgets between endpoints.

    Returns:
        A 429 JSONResponse when the request is denied, otherwise None.
    """

    try:
        service = get_rate_limit_service(request)
        if not service.enabled:
            return None

        identifier = f"{scope_prefix}:{get_client_identifier(request)}"
        result = await service.check(identifier, limit, window_seconds)
        _log_decision(scope_prefix, identifier, result)

        if result.allowed:
            return None
        return service.build_response(result)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "rate_limit.fail_open",
            extra={
                "scope": scope_prefix,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return None


def enforce_rate_limit(
    scope: str,
    limit: int | None = None,
    window_seconds: int | None = None,
) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency limiting requests under ``scope``.

    Limits come from the explicit arguments, else the scope's policy, else
    the service defaults.

    Usage:
        @router.post("/login", dependencies=[Depends(enforce_rate_limit("login"))])

    Raises (from the dependency):
        RateLimitExceededError: When the request is denied.
    """

    policy = get_policy(scope)

    async def dependency(request: Request) -> None:
        try:
            service = get_rate_limit_service(request)
            if not service.enabled:
                return

            effective_limit = limit or (policy.limit if policy else service.default_limit)
            effective_window = window_seconds or (
                policy.window_seconds if policy else service.default_window_seconds
            )

            identifier = f"{scope}:{get_client_identifier(request)}"
            result = await service.check(identifier, effective_limit, effective_window)
            _log_decision(scope, identifier, result)
            now_ms = service.now_ms()
            message = service.message
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "rate_limit.fail_open",
                extra={
                    "scope": scope,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            return

        if result.allowed:
            return

        raise RateLimitExceededError(
            code="rate_limit_exceeded",
            message=message,
            details={
                "scope": scope,
                "limit": result.limit,
                "retry_after": result.retry_after_seconds(now_ms),
            },
            result=result,
            now_ms=now_ms,
        )

    return dependency
