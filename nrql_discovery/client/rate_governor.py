"""Account-wide admission control for NRQL queries.

Two limits apply to every query: a rolling window of ``requests_per_window``
grants and a ceiling of ``max_concurrent`` queries in flight. A full window is
waited out, never rejected.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
import logging
import time
from typing import Any

from nrql_discovery.core.exceptions import QueryTimeoutError
from nrql_discovery.events import EventDispatcher, EventKind

logger = logging.getLogger(__name__)


class RateGovernor:
    """Sliding-window rate limit plus a concurrency ceiling.

    Window bookkeeping is only mutated while holding ``_lock``; sleeping
    happens outside the lock so other waiters can re-check the window.
    ``clock`` and ``sleep`` are injectable for deterministic tests.
    """

    def __init__(
        self,
        requests_per_window: int,
        max_concurrent: int,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        events: EventDispatcher | None = None,
    ) -> None:
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be >= 1")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.requests_per_window = requests_per_window
        self.max_concurrent = max_concurrent
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._events = events or EventDispatcher()
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._slots = asyncio.BoundedSemaphore(max_concurrent)
        self._in_flight = 0
        self._granted = 0
        self._exhausted = 0

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> RateGovernor:
        return cls(
            config.queries_per_minute,
            config.max_concurrent_queries,
            window_seconds=config.window_seconds,
            **kwargs,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def acquire(self, timeout: float | None = None) -> None:
        """Wait for a concurrency slot and a free place in the window.

        Raises:
            QueryTimeoutError: If ``timeout`` elapses first.
        """
        try:
            async with asyncio.timeout(timeout):
                await self._slots.acquire()
                try:
                    await self._reserve_window()
                except BaseException:
                    self._slots.release()
                    raise
        except TimeoutError as e:
            raise QueryTimeoutError(
                f"Timed out after {timeout}s waiting for query budget"
            ) from e
        self._in_flight += 1
        self._granted += 1

    def release(self) -> None:
        """Free the concurrency slot taken by ``acquire``."""
        if self._in_flight <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._in_flight -= 1
        self._slots.release()

    @asynccontextmanager
    async def slot(self, timeout: float | None = None) -> AsyncIterator[None]:
        await self.acquire(timeout)
        try:
            yield
        finally:
            self.release()

    async def _reserve_window(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                self._evict(now)
                if len(self._timestamps) < self.requests_per_window:
                    self._timestamps.append(now)
                    return
                wait = self._timestamps[0] + self.window_seconds - now
            self._exhausted += 1
            logger.debug("Query budget exhausted; waiting %.3fs", wait)
            self._events.emit(
                EventKind.BUDGET_EXHAUSTED,
                wait_seconds=wait,
                window_usage=self.requests_per_window,
            )
            await self._sleep(max(wait, 0.0))

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def stats(self) -> dict[str, Any]:
        self._evict(self._clock())
        return {
            "in_flight": self._in_flight,
            "window_usage": len(self._timestamps),
            "requests_per_window": self.requests_per_window,
            "max_concurrent": self.max_concurrent,
            "granted": self._granted,
            "budget_exhausted": self._exhausted,
        }
