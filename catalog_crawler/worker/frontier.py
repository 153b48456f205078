"""Per-job URL frontier shared by the workers of one job."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Set


@dataclass
class FrontierItem:
    url: str
    retry_count: int = 0
    proxy_waits: int = 0


class Frontier:
    """FIFO queue with in-flight accounting.

    :meth:`get` hands each item to exactly one caller. It returns ``None`` once
    the frontier is closed, or when it is empty and nothing is in flight (no
    worker can still add a retry or a pagination link).
    """

    def __init__(self, max_pages: int) -> None:
        self.max_pages = max_pages
        self.total_enqueued = 0
        self._queue: Deque[FrontierItem] = deque()
        self._seen: Set[str] = set()
        self._in_flight = 0
        self._closed = False
        self._cond = asyncio.Condition()

    def reserve(self, url: str) -> bool:
        """Claim a slot for ``url`` without queueing it yet.

        Duplicates and URLs beyond the page cap are refused. Callers follow a
        successful reservation with :meth:`put`.
        """

        if self._closed or url in self._seen or self.total_enqueued >= self.max_pages:
            return False
        self._seen.add(url)
        self.total_enqueued += 1
        return True

    async def add(self, url: str) -> bool:
        if not self.reserve(url):
            return False
        await self.put(FrontierItem(url=url))
        return True

    async def put(self, item: FrontierItem) -> None:
        """Append an item to the back of the queue."""

        async with self._cond:
            if self._closed:
                return
            self._queue.append(item)
            self._cond.notify()

    async def get(self) -> Optional[FrontierItem]:
        async with self._cond:
            while True:
                if self._closed:
                    return None
                if self._queue:
                    self._in_flight += 1
                    return self._queue.popleft()
                if self._in_flight == 0:
                    return None
                await self._cond.wait()

    async def task_done(self) -> None:
        async with self._cond:
            self._in_flight -= 1
            self._cond.notify_all()

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def __len__(self) -> int:
        return len(self._queue)


__all__ = ["Frontier", "FrontierItem"]
