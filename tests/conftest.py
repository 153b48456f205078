import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from catalog_crawler.catalog import CatalogReconciler
from catalog_crawler.errors import PermanentFetchError
from catalog_crawler.jobs.manager import JobManager
from catalog_crawler.jobs.quarantine import QuarantineStore
from catalog_crawler.models import CrawlerConfig, CrawlerOptions, ExtractionResult
from catalog_crawler.store import MemoryCrawlerStore
from catalog_crawler.tuning import MemoryMetricsStore, PerformanceTuner
from catalog_crawler.worker import DomainAllowlist, FetchWorkerPool, ProxyPool, RateLimiter

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

SELECTORS = {
    "container": "div.product",
    "fields": {"name": ".name", "price": ".price", "sku": ".sku"},
    "next_page": "a.next@href",
}


class FakeClock:
    """Virtual time shared by the limiter, the pool and the tuner.

    ``sleep`` advances time instantly and yields once to the event loop.
    """

    def __init__(self) -> None:
        self.now = 0.0

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def utcnow(self) -> datetime:
        return EPOCH + timedelta(seconds=self.now)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)


class ScriptedExtractor:
    """Replaces the network-backed extractor.

    Each URL maps to a list of outcomes consumed in order; the last one
    repeats. An outcome is an ``ExtractionResult``, an exception instance to
    raise, or an async callable producing either. Unknown URLs 404.
    """

    def __init__(self, script=None, clock=None) -> None:
        self.script = {}
        for url, outcomes in (script or {}).items():
            self.script[url] = list(outcomes) if isinstance(outcomes, list) else [outcomes]
        self.clock = clock
        self.calls = []
        self.proxies = []
        self.call_times = []

    async def fetch_and_extract(
        self, url, strategy, proxy, timeout_ms, use_browser=False, headers=None, cookies=None
    ):
        self.calls.append(url)
        self.proxies.append(proxy)
        if self.clock is not None:
            self.call_times.append(self.clock.now)
        outcomes = self.script.get(url)
        if not outcomes:
            raise PermanentFetchError(f"{url} returned 404", 404)
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if callable(outcome):
            outcome = await outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        return None


def page(*names, next_url=None, price="$10.00"):
    records = [{"name": name, "price": price, "sku": name.lower().replace(" ", "-")} for name in names]
    return ExtractionResult(records=records, next_page_url=next_url, status_code=200, elapsed_ms=120)


def make_config(config_id="shop", target_url="https://shop.test/catalog", **overrides):
    options = overrides.pop(
        "options",
        CrawlerOptions(follow_pagination=True, max_pages=50, timeout_ms=5_000, retry_attempts=3, use_headless_browser=False),
    )
    values = dict(
        config_id=config_id,
        name=f"{config_id} catalog",
        target_url=target_url,
        selectors=dict(SELECTORS),
        rate_limit=600,
        supplier_id=f"supplier-{config_id}",
        options=options,
    )
    values.update(overrides)
    return CrawlerConfig(**values)


def build_crawler(
    extractor,
    clock,
    store=None,
    proxies=(),
    proxy_failure_threshold=5,
    memory_pct=10.0,
    enforce_allowlist=False,
    pool_sleep=None,
    limiter_sleep=None,
):
    """Wire a job engine over in-memory stores and virtual time.

    ``pool_sleep`` and ``limiter_sleep`` replace the virtual sleep for the
    worker pool or the rate limiter.
    """

    store = store or MemoryCrawlerStore()
    rate_limiter = RateLimiter(window_seconds=60.0, clock=clock.monotonic, sleep=limiter_sleep or clock.sleep)
    proxy_pool = ProxyPool.from_addresses(proxies, failure_threshold=proxy_failure_threshold, clock=clock.monotonic)
    quarantine = QuarantineStore(store, now=clock.utcnow)
    allowlist = DomainAllowlist(store, enforce=enforce_allowlist, now=clock.utcnow)
    tuner = PerformanceTuner(MemoryMetricsStore(), clock=clock.time)
    reconciler = CatalogReconciler(store, now=clock.utcnow)
    pool = FetchWorkerPool(
        store,
        rate_limiter,
        proxy_pool,
        quarantine,
        tuner,
        extractor,
        reconciler,
        allowlist=allowlist,
        clock=clock.monotonic,
        now=clock.utcnow,
        sleep=pool_sleep or clock.sleep,
        memory_sampler=lambda: memory_pct,
    )
    manager = JobManager(store, pool, now=clock.utcnow)
    return SimpleNamespace(
        store=store,
        rate_limiter=rate_limiter,
        proxy_pool=proxy_pool,
        quarantine=quarantine,
        allowlist=allowlist,
        tuner=tuner,
        reconciler=reconciler,
        pool=pool,
        manager=manager,
        extractor=extractor,
    )


def assert_counters_consistent(job):
    assert job.pages_processed <= job.total_enqueued
    assert job.failed_pages <= job.pages_processed
    assert job.skipped_pages <= job.failed_pages
    assert job.items_found <= job.pages_processed
    assert 0.0 <= job.progress <= 100.0


@pytest.fixture
def clock():
    return FakeClock()
