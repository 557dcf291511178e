"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Counters are lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from marketplace.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult

logger = logging.getLogger(__name__)


@dataclass
class _WindowRecord:
    count: int
    reset_at: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per identifier.

    A window opens on the first request seen for an identifier and lasts
    ``window_seconds`` from that moment. Requests over the cap are not
    counted, so sustained overload does not push the reset further away.

    Expired records are dropped by ``sweep()``, which ``start()`` runs
    periodically on the event loop until ``stop()`` is awaited.
    """

    name = "memory"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            clock: Time source function returning UNIX time in seconds.
            sweep_interval_seconds: Delay between two sweeps of expired records.

        Raises:
            ValueError: If sweep_interval_seconds is not positive.
        """
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")

        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._lock = threading.RLock()
        self._records: dict[str, _WindowRecord] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def consume(self, identifier: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one request for the identifier and decide.

        Args:
            identifier: Pre-scoped rate limit key.
            limit: Max requests per window.
            window_seconds: Window length in seconds.

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If identifier is empty or limit/window are invalid.
        """
        if not identifier:
            raise ValueError("identifier must be a non-empty string")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        now_ms = self._now_ms()

        with self._lock:
            record = self._records.get(identifier)

            if record is None or now_ms > record.reset_at:
                record = _WindowRecord(count=1, reset_at=now_ms + window_seconds * 1000)
                self._records[identifier] = record
                return RateLimitResult(
                    allowed=True,
                    limit=limit,
                    remaining=limit - 1,
                    reset_at=record.reset_at,
                    backend=self.name,
                )

            if record.count >= limit:
                return RateLimitResult(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=record.reset_at,
                    backend=self.name,
                )

            record.count += 1
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - record.count,
                reset_at=record.reset_at,
                backend=self.name,
            )

    async def check(self, identifier: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        return self.consume(identifier, limit=limit, window_seconds=window_seconds)

    def sweep(self) -> int:
        """Drop records whose window has passed.

        Returns:
            Number of records removed.
        """

        now_ms = self._now_ms()
        with self._lock:
            expired = [key for key, record in self._records.items() if now_ms > record.reset_at]
            for key in expired:
                del self._records[key]

        if expired:
            logger.debug(
                "rate_limit.memory_swept",
                extra={"removed": len(expired), "remaining_windows": len(self)},
            )
        return len(expired)

    def clear(self) -> None:
        """Remove all records."""

        with self._lock:
            self._records.clear()

    @property
    def sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""

        if self.sweeping:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish (idempotent)."""

        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()
