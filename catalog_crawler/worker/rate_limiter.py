"""Per-domain admission control."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, Optional

from ..monitoring.metrics import RATE_LIMIT_WAITS_TOTAL

logger = logging.getLogger(__name__)


async def sleep_unless_stopped(
    sleep: Callable[[float], Awaitable[None]], seconds: float, stopped: Optional[asyncio.Event] = None
) -> None:
    """Sleep for ``seconds``, returning early once ``stopped`` is set."""

    if seconds <= 0 or (stopped is not None and stopped.is_set()):
        return
    if stopped is None:
        await sleep(seconds)
        return
    sleeper = asyncio.ensure_future(sleep(seconds))
    stopper = asyncio.ensure_future(stopped.wait())
    try:
        await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, stopper):
            if not task.done():
                task.cancel()


@dataclass
class RateWindow:
    admitted: Deque[float] = field(default_factory=deque)

    @property
    def count(self) -> int:
        return len(self.admitted)

    @property
    def window_start(self) -> Optional[float]:
        return self.admitted[0] if self.admitted else None

    def prune(self, now: float, window: float) -> None:
        while self.admitted and now - self.admitted[0] >= window:
            self.admitted.popleft()


class RateLimiter:
    """Sliding window limiter keyed by domain.

    A domain never sees more than ``limit`` admissions inside any window of
    ``window_seconds``. Callers over budget are delayed, not rejected. Expired
    admissions are pruned lazily on access.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        default_limit: int = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.window_seconds = window_seconds
        self.default_limit = default_limit
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, domain: str, limit: Optional[int] = None) -> float:
        """Admit one request for ``domain`` or return seconds until a slot frees."""

        budget = max(1, limit or self.default_limit)
        async with self._lock:
            now = self._clock()
            window = self._windows.setdefault(domain, RateWindow())
            window.prune(now, self.window_seconds)
            if window.count < budget:
                window.admitted.append(now)
                return 0.0
            # The slot frees when the oldest admission that keeps us at budget expires.
            oldest = window.admitted[window.count - budget]
            return max(oldest + self.window_seconds - now, 0.0) or 1e-3

    async def acquire(
        self, domain: str, limit: Optional[int] = None, stopped: Optional[asyncio.Event] = None
    ) -> float:
        """Wait until ``domain`` admits a request; returns the total time waited.

        Once ``stopped`` is set the wait ends without an admission being
        recorded, so callers must check the event before fetching.
        """

        waited = 0.0
        while True:
            if stopped is not None and stopped.is_set():
                return waited
            delay = await self.try_acquire(domain, limit)
            if delay <= 0:
                return waited
            if waited == 0.0:
                RATE_LIMIT_WAITS_TOTAL.inc()
                logger.debug("Rate limit reached", extra={"domain": domain, "delay": delay})
            waited += delay
            await sleep_unless_stopped(self._sleep, delay, stopped)

    def window(self, domain: str) -> RateWindow:
        return self._windows.setdefault(domain, RateWindow())

    def reset(self, domain: Optional[str] = None) -> None:
        if domain is None:
            self._windows.clear()
        else:
            self._windows.pop(domain, None)


__all__ = ["RateLimiter", "RateWindow", "sleep_unless_stopped"]
