"""
Rate limiting for the signup endpoints.

Two interchangeable backends behind the `RateLimiter` protocol:

  • InMemoryRateLimiter – per-identifier fixed window kept in a dict.
    Only correct for a single process; every worker has its own table.
  • StorageRateLimiter – the `limits` fixed-window strategy over any
    `limits` storage URI (redis, memcached, ...), for multi-instance
    deployments.

Defaults: subscribe 5/min, verify 10/min, keyed on client IP.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from limits import RateLimitItemPerSecond
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


class RateLimiter(Protocol):
    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        ...

    def sweep(self) -> int:
        ...

    async def reset(self) -> None:
        ...


@dataclass
class _Entry:
    count: int
    reset_time: float


class InMemoryRateLimiter:
    """
    Fixed window counter per identifier.

    The window opens on the first request and lasts `window_ms`.  Entries
    whose window has passed are treated as absent on the next check and
    removed for good by `sweep()`.

    Kept in a plain dict rather than `limits` MemoryStorage: `limits` only
    counts whole-second windows and expires keys on its own timer, while
    this table needs millisecond windows and an explicit sweep.
    """

    def __init__(self, clock: Callable[[], float] = _now_ms) -> None:
        self._clock = clock
        self._store: dict[str, _Entry] = {}

    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        entry = self._store.get(identifier)

        if entry is None or entry.reset_time < now:
            entry = _Entry(count=1, reset_time=now + window_ms)
            self._store[identifier] = entry
            return RateLimitResult(True, max_requests - 1, int(entry.reset_time))

        if entry.count >= max_requests:
            return RateLimitResult(False, 0, int(entry.reset_time))

        entry.count += 1
        return RateLimitResult(True, max_requests - entry.count, int(entry.reset_time))

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._store.items() if entry.reset_time < now]
        for key in expired:
            del self._store[key]
        return len(expired)

    async def reset(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class StorageRateLimiter:
    """
    Shared-store limiter built on the `limits` package.

    Windows are whole seconds (`limits` granularity), so `window_ms` is
    rounded down with a floor of one second.
    """

    def __init__(self, storage_uri: str) -> None:
        if not storage_uri.startswith("async+"):
            storage_uri = f"async+{storage_uri}"
        self._storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self._storage)

    async def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        item = RateLimitItemPerSecond(max_requests, max(1, window_ms // 1000))
        allowed = await self._strategy.hit(item, identifier)
        reset_at, remaining = await self._strategy.get_window_stats(item, identifier)
        return RateLimitResult(
            allowed=allowed,
            remaining=remaining if allowed else 0,
            reset_time=int(reset_at * 1000),
        )

    def sweep(self) -> int:
        # The storage expires its own keys.
        return 0

    async def reset(self) -> None:
        await self._storage.reset()


def create_rate_limiter(storage_uri: str = "") -> RateLimiter:
    if storage_uri:
        logger.info("Using shared rate-limit storage %s", storage_uri.split("://", 1)[0])
        return StorageRateLimiter(storage_uri)
    return InMemoryRateLimiter()


class RateLimitSweeper:
    """
    Housekeeping task that calls `limiter.sweep()` every `interval` seconds
    so the in-memory table stays bounded.  Started and stopped by the app
    lifespan; a failing sweep is logged and the next one still runs.
    """

    def __init__(self, limiter: RateLimiter, *, interval: float) -> None:
        self._limiter = limiter
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-limit-sweeper")
        logger.info("Rate-limit sweeper started (every %ds)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Rate-limit sweeper stopped")

    async def run_once(self) -> int:
        removed = self._limiter.sweep()
        if removed:
            logger.debug("Swept %d expired rate-limit entries", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Rate-limit sweep failed")
