"""Builds the crawler's collaborators from settings and wires them together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .catalog.reconciler import CatalogReconciler
from .config import Settings, get_settings
from .configs import apply_changes, locked_changes
from .db.store import SqlCrawlerStore
from .errors import ConfigLockedError, ConfigNotFoundError
from .extraction.fetcher import Extractor, HttpxPageFetcher, PlaywrightPageFetcher
from .jobs.manager import JobManager
from .jobs.quarantine import QuarantineStore
from .models import CrawlerConfig, CrawlerOptions
from .scheduling import Scheduler
from .store import CrawlerStore, MemoryCrawlerStore
from .tuning.performance import MemoryMetricsStore, MetricsStore, PerformanceTuner, RedisMetricsStore
from .worker.allowlist import DomainAllowlist
from .worker.pool import FetchWorkerPool
from .worker.proxy import ProxyPool
from .worker.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class CrawlerRuntime:
    settings: Settings
    store: CrawlerStore
    metrics_store: MetricsStore
    rate_limiter: RateLimiter
    proxy_pool: ProxyPool
    quarantine: QuarantineStore
    allowlist: DomainAllowlist
    tuner: PerformanceTuner
    extractor: Extractor
    reconciler: CatalogReconciler
    pool: FetchWorkerPool
    manager: JobManager
    scheduler: Scheduler

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[CrawlerStore] = None,
        extractor: Optional[Extractor] = None,
        metrics_store: Optional[MetricsStore] = None,
        proxy_pool: Optional[ProxyPool] = None,
    ) -> "CrawlerRuntime":
        settings = settings or get_settings()

        if store is None:
            if settings.store_backend == "memory":
                store = MemoryCrawlerStore()
            else:
                store = SqlCrawlerStore.from_url(settings.database_url, retry_attempts=settings.store_retry_attempts)

        if metrics_store is None:
            if settings.redis_url:
                metrics_store = RedisMetricsStore.from_url(settings.redis_url)
            else:
                metrics_store = MemoryMetricsStore()

        if proxy_pool is None:
            proxy_pool = ProxyPool(failure_threshold=settings.proxy_failure_threshold)
            if settings.proxy_list_path and settings.proxy_list_path.exists():
                count = proxy_pool.load_from_file(settings.proxy_list_path)
                logger.info("Loaded proxies", extra={"count": count, "path": str(settings.proxy_list_path)})

        if extractor is None:
            browser = None
            if settings.use_headless_browser:
                browser = PlaywrightPageFetcher(settings.user_agent, browser_type=settings.browser_type)
            extractor = Extractor(HttpxPageFetcher(settings.user_agent), browser)

        rate_limiter = RateLimiter(
            window_seconds=settings.rate_window_seconds,
            default_limit=settings.default_rate_limit_per_minute,
        )
        quarantine = QuarantineStore(store)
        allowlist = DomainAllowlist(store, enforce=settings.enforce_domain_allowlist)
        tuner = PerformanceTuner(
            metrics_store,
            window_seconds=settings.tuner_window_seconds,
            memory_threshold_pct=settings.memory_pressure_pct,
        )
        reconciler = CatalogReconciler(store)
        pool = FetchWorkerPool(
            store,
            rate_limiter,
            proxy_pool,
            quarantine,
            tuner,
            extractor,
            reconciler,
            allowlist=allowlist,
            retry_base_delay=settings.retry_base_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
        )
        manager = JobManager(store, pool)
        scheduler = Scheduler(store, manager)
        return cls(
            settings=settings,
            store=store,
            metrics_store=metrics_store,
            rate_limiter=rate_limiter,
            proxy_pool=proxy_pool,
            quarantine=quarantine,
            allowlist=allowlist,
            tuner=tuner,
            extractor=extractor,
            reconciler=reconciler,
            pool=pool,
            manager=manager,
            scheduler=scheduler,
        )

    def default_options(self) -> CrawlerOptions:
        """Options applied to new configs that do not set their own."""

        return CrawlerOptions(
            max_pages=self.settings.default_max_pages,
            timeout_ms=int(self.settings.request_timeout_seconds * 1000),
            retry_attempts=self.settings.max_retries,
            use_headless_browser=self.settings.use_headless_browser,
        )

    async def update_config(self, config_id: str, changes: Mapping[str, Any]) -> CrawlerConfig:
        """Edit a stored config in place, keeping its crawl history."""

        config = await self.store.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(config_id)
        if self.manager.is_running(config_id):
            locked = locked_changes(config, changes)
            if locked:
                raise ConfigLockedError(config_id, locked)
        apply_changes(config, changes)
        await self.store.save_config(config)
        logger.info("Updated config", extra={"config_id": config_id, "fields": sorted(changes)})
        return config

    async def close(self) -> None:
        self.scheduler.stop()
        await self.manager.shutdown()
        await self.extractor.close()
        await self.metrics_store.close()
        await self.store.close()


__all__ = ["CrawlerRuntime"]
