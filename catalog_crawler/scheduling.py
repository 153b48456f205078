"""Recurrence scheduling for crawler configs."""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from apscheduler.triggers.cron import CronTrigger

from .errors import AlreadyRunningError, ConfigNotFoundError, DomainNotAllowedError
from .jobs.manager import JobManager
from .models import CrawlerConfig, CrawlerJob, Frequency, utcnow
from .store import CrawlerStore

logger = logging.getLogger(__name__)

FIXED_INTERVALS = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}


def add_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""

    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_cron_time(expression: str, after: datetime) -> Optional[datetime]:
    """Next fire time strictly after ``after`` for a five-field crontab."""

    trigger = CronTrigger.from_crontab(expression, timezone=timezone.utc)
    return trigger.get_next_fire_time(None, after + timedelta(seconds=1))


def compute_next_crawl(
    frequency: Frequency,
    last_crawled: Optional[datetime],
    cron_expression: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    now = now or utcnow()
    if frequency == Frequency.ONCE:
        return now if last_crawled is None else None

    base = last_crawled or now
    if frequency in FIXED_INTERVALS:
        return base + FIXED_INTERVALS[frequency]
    if frequency == Frequency.MONTHLY:
        return add_month(base)
    if frequency == Frequency.CUSTOM:
        if not cron_expression:
            raise ValueError("Custom frequency requires a cron expression")
        return next_cron_time(cron_expression, base)
    raise ValueError(f"Unsupported frequency {frequency!r}")


class Scheduler:
    """Starts jobs for configs whose next crawl time has passed."""

    def __init__(
        self,
        store: CrawlerStore,
        manager: JobManager,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.manager = manager
        self._now = now
        self._sleep = sleep
        self._stopped = asyncio.Event()

    async def sweep(self, now: Optional[datetime] = None) -> List[CrawlerJob]:
        now = now or self._now()
        started: List[CrawlerJob] = []
        for config in await self.store.list_due_configs(now):
            if self.manager.is_running(config.config_id):
                continue
            try:
                job = await self.manager.start_job(config.config_id)
            except (AlreadyRunningError, ConfigNotFoundError, DomainNotAllowedError) as exc:
                logger.info("Skipped scheduled crawl", extra={"config_id": config.config_id, "reason": str(exc)})
                continue
            started.append(job)
            await self._reschedule(config, now)
        if started:
            logger.info("Scheduled crawls started", extra={"count": len(started)})
        return started

    async def _reschedule(self, config: CrawlerConfig, now: datetime) -> None:
        try:
            next_crawl = compute_next_crawl(config.frequency, now, config.cron_expression, now)
        except ValueError as exc:
            logger.error(
                "Invalid schedule, deactivating config",
                extra={"config_id": config.config_id, "error": str(exc)},
            )
            next_crawl = None
        await self.store.update_schedule(config.config_id, now, next_crawl)
        if next_crawl is None:
            await self.store.deactivate_config(config.config_id)

    async def run(self, interval: float = 60.0) -> None:
        """Sweep every ``interval`` seconds until :meth:`stop` is called."""

        self._stopped.clear()
        logger.info("Scheduler started", extra={"interval": interval})
        while not self._stopped.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Scheduler sweep failed")
            sleeper = asyncio.ensure_future(self._sleep(interval))
            stopper = asyncio.ensure_future(self._stopped.wait())
            try:
                await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (sleeper, stopper):
                    if not task.done():
                        task.cancel()
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopped.set()


__all__ = ["Scheduler", "add_month", "compute_next_crawl", "next_cron_time"]
