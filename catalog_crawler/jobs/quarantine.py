"""Persistent cross-job quarantine of URLs that keep failing."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from ..models import QuarantineEntry, utcnow
from ..monitoring.metrics import QUARANTINED_URLS_TOTAL
from ..store import CrawlerStore

logger = logging.getLogger(__name__)


class QuarantineStore:
    """Quarantine entries keyed by ``(config_id, url)``.

    Entries are only ever removed by an explicit :meth:`remove` call.
    """

    def __init__(self, store: CrawlerStore, now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._now = now

    async def is_quarantined(self, config_id: str, url: str) -> bool:
        entry = await self.store.get_quarantine(config_id, url)
        return bool(entry and entry.skip)

    async def record_failure(self, config_id: str, url: str, message: str) -> QuarantineEntry:
        now = self._now()
        entry = await self.store.get_quarantine(config_id, url)
        if entry is None:
            entry = QuarantineEntry(
                config_id=config_id,
                url=url,
                failure_count=1,
                first_failure=now,
                last_failure=now,
                last_error=message,
                skip=True,
            )
            QUARANTINED_URLS_TOTAL.inc()
            logger.warning("Quarantined URL", extra={"config_id": config_id, "url": url, "error": message})
        else:
            entry.failure_count += 1
            entry.last_failure = now
            entry.last_error = message
            entry.skip = True
        await self.store.save_quarantine(entry)
        return entry

    async def set_skip(self, config_id: str, url: str, skip: bool) -> Optional[QuarantineEntry]:
        entry = await self.store.get_quarantine(config_id, url)
        if entry is None:
            if not skip:
                return None
            now = self._now()
            entry = QuarantineEntry(
                config_id=config_id,
                url=url,
                failure_count=0,
                first_failure=now,
                last_failure=now,
                last_error="quarantined by operator",
            )
        entry.skip = skip
        await self.store.save_quarantine(entry)
        return entry

    async def remove(self, config_id: str, url: str) -> bool:
        removed = await self.store.delete_quarantine(config_id, url)
        if removed:
            logger.info("Removed URL from quarantine", extra={"config_id": config_id, "url": url})
        return removed

    async def list(self, config_id: Optional[str] = None) -> List[QuarantineEntry]:
        return await self.store.list_quarantine(config_id)


__all__ = ["QuarantineStore"]
