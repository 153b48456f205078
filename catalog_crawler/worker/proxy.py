"""Proxy rotation and health tracking."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import NoAvailableProxyError
from ..monitoring.metrics import PROXY_DISABLED_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class ProxyRecord:
    address: str
    consecutive_failures: int = 0
    last_used: float = 0.0
    disabled: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "address": self.address,
            "consecutive_failures": self.consecutive_failures,
            "last_used": self.last_used,
            "disabled": self.disabled,
        }


@dataclass
class ProxyPool:
    """Least-recently-used rotation over enabled proxies.

    An empty pool means direct egress and :meth:`acquire` returns ``None``.
    """

    failure_threshold: int = 5
    clock: Callable[[], float] = time.monotonic
    proxies: Dict[str, ProxyRecord] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def from_addresses(cls, addresses: Iterable[str], **kwargs) -> "ProxyPool":
        pool = cls(**kwargs)
        for address in addresses:
            pool.proxies.setdefault(address, ProxyRecord(address=address))
        return pool

    def load_from_file(self, path: Path) -> int:
        lines = [line.strip() for line in path.read_text().splitlines() if line.strip()]
        for line in lines:
            self.proxies.setdefault(line, ProxyRecord(address=line))
        return len(lines)

    async def add(self, address: str) -> None:
        async with self.lock:
            self.proxies.setdefault(address, ProxyRecord(address=address))

    async def remove(self, address: str) -> bool:
        async with self.lock:
            return self.proxies.pop(address, None) is not None

    async def acquire(self) -> Optional[str]:
        async with self.lock:
            if not self.proxies:
                return None
            available = [p for p in self.proxies.values() if not p.disabled]
            if not available:
                raise NoAvailableProxyError(f"All {len(self.proxies)} proxies are disabled")
            # min() keeps insertion order for ties, which gives round-robin on a fresh pool.
            choice = min(available, key=lambda p: p.last_used)
            choice.last_used = self.clock()
            return choice.address

    async def report_outcome(self, address: Optional[str], success: bool) -> None:
        if not address:
            return
        async with self.lock:
            record = self.proxies.get(address)
            if record is None:
                return
            if success:
                record.consecutive_failures = 0
                return
            record.consecutive_failures += 1
            if not record.disabled and record.consecutive_failures >= self.failure_threshold:
                record.disabled = True
                PROXY_DISABLED_TOTAL.inc()
                logger.warning(
                    "Disabled proxy", extra={"proxy": address, "failures": record.consecutive_failures}
                )

    async def enable(self, address: str) -> bool:
        async with self.lock:
            record = self.proxies.get(address)
            if record is None:
                return False
            record.disabled = False
            record.consecutive_failures = 0
            return True

    def snapshot(self) -> List[Dict[str, object]]:
        return [record.to_dict() for record in self.proxies.values()]


__all__ = ["ProxyPool", "ProxyRecord"]
