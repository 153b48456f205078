"""Crawl allowlist of target hosts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from ..errors import DomainNotAllowedError
from ..models import AllowedDomain, domain_of, utcnow
from ..store import CrawlerStore

logger = logging.getLogger(__name__)


def normalize_domain(value: str) -> str:
    """Accept either a bare host or a full URL."""

    value = value.strip().lower()
    if "://" in value:
        return domain_of(value)
    return value.rstrip(".")


class DomainAllowlist:
    """Store-backed allowlist consulted before a job starts and before each fetch.

    When ``enforce`` is off every host passes. When it is on a host passes only
    if it has an entry with ``allowed=True``; unknown hosts are refused.
    """

    def __init__(self, store: CrawlerStore, enforce: bool = False, now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.enforce = enforce
        self._now = now

    async def is_allowed(self, url: str) -> bool:
        if not self.enforce:
            return True
        entry = await self.store.get_domain(domain_of(url))
        return bool(entry and entry.allowed)

    async def check(self, url: str) -> None:
        if not await self.is_allowed(url):
            domain = domain_of(url)
            logger.warning("Refused URL outside the allowlist", extra={"url": url, "domain": domain})
            raise DomainNotAllowedError(domain)

    async def set(self, domain: str, allowed: bool = True, notes: Optional[str] = None) -> AllowedDomain:
        domain = normalize_domain(domain)
        if not domain:
            raise ValueError("Domain must not be empty")
        entry = await self.store.get_domain(domain) or AllowedDomain(domain=domain)
        entry.allowed = allowed
        if notes is not None:
            entry.notes = notes
        entry.updated_at = self._now()
        await self.store.save_domain(entry)
        logger.info("Updated allowlist", extra={"domain": domain, "allowed": allowed})
        return entry

    async def get(self, domain: str) -> Optional[AllowedDomain]:
        return await self.store.get_domain(normalize_domain(domain))

    async def remove(self, domain: str) -> bool:
        return await self.store.delete_domain(normalize_domain(domain))

    async def list(self) -> List[AllowedDomain]:
        return await self.store.list_domains()


__all__ = ["DomainAllowlist", "normalize_domain"]
