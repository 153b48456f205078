"""Fixed-size pool of fetch workers draining one job's frontier."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..catalog.reconciler import CatalogReconciler
from ..errors import ConfigDeletedError, DomainNotAllowedError, FatalCrawlError, NoAvailableProxyError
from ..extraction.fetcher import Extractor
from ..extraction.strategies import ExtractionStrategy, build_strategy
from ..jobs.quarantine import QuarantineStore
from ..jobs.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, Abort, Retry, backoff_delay, classify, decide
from ..jobs.state import JobEvent, PageFailed, PageSkipped, PageSucceeded, UrlsEnqueued
from ..models import CrawlerConfig, ErrorClass, JobError, PerformanceSample, domain_of, utcnow
from ..monitoring.metrics import FETCH_RETRIES_TOTAL, PAGES_FETCHED_TOTAL
from ..store import CrawlerStore
from ..tuning.performance import PerformanceTuner, memory_usage_pct
from .allowlist import DomainAllowlist
from .frontier import Frontier, FrontierItem
from .proxy import ProxyPool
from .rate_limiter import RateLimiter, sleep_unless_stopped

logger = logging.getLogger(__name__)

Emit = Callable[[JobEvent], Awaitable[Any]]

DEFAULT_MAX_PROXY_WAITS = 5


@dataclass
class JobRun:
    """Mutable execution context of one running job."""

    job_id: str
    config: CrawlerConfig
    frontier: Frontier
    emit: Emit
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    fatal: Optional[BaseException] = None
    fatal_url: Optional[str] = None
    cache: Dict[Any, Any] = field(default_factory=dict)
    attempts: int = 0
    successes: int = 0
    total_response_ms: float = 0.0
    started_at: float = field(default_factory=time.monotonic)

    async def cancel(self) -> None:
        self.cancelled = True
        self.stopped.set()
        await self.frontier.close()

    async def abort(self, exc: BaseException, url: Optional[str] = None) -> None:
        """Stop the run because of a job-wide failure; the first one wins."""

        if self.fatal is None:
            self.fatal = exc
            self.fatal_url = url
        self.stopped.set()
        await self.frontier.close()


class FetchWorkerPool:
    def __init__(
        self,
        store: CrawlerStore,
        rate_limiter: RateLimiter,
        proxy_pool: ProxyPool,
        quarantine: QuarantineStore,
        tuner: PerformanceTuner,
        extractor: Extractor,
        reconciler: CatalogReconciler,
        allowlist: Optional[DomainAllowlist] = None,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        retry_max_delay: float = DEFAULT_MAX_DELAY,
        max_proxy_waits: int = DEFAULT_MAX_PROXY_WAITS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        memory_sampler: Callable[[], float] = memory_usage_pct,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.proxy_pool = proxy_pool
        self.quarantine = quarantine
        self.tuner = tuner
        self.extractor = extractor
        self.reconciler = reconciler
        self.allowlist = allowlist or DomainAllowlist(store)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_proxy_waits = max_proxy_waits
        self._clock = clock
        self._now = now
        self._sleep = sleep
        self._memory_sampler = memory_sampler

    async def run(self, run: JobRun, size: Optional[int] = None) -> None:
        """Drain the run's frontier; returns once every worker has exited.

        A job-wide failure is recorded on ``run.fatal`` rather than raised.
        """

        try:
            strategy = build_strategy(run.config.strategy, run.config.selectors)
        except ValueError as exc:
            await run.abort(exc, run.config.target_url)
            return

        if size is None:
            size = await self.tuner.recommend_concurrency(run.job_id)
        run.started_at = self._clock()
        self.tuner.register_cache(run.job_id, run.cache.clear)
        logger.info("Starting workers", extra={"job_id": run.job_id, "workers": size})
        try:
            await asyncio.gather(*(self._worker(run, strategy, index) for index in range(size)))
        finally:
            run.cache.clear()
            try:
                await self.tuner.forget(run.job_id)
            except Exception:
                logger.warning("Could not clear performance samples", exc_info=True, extra={"job_id": run.job_id})

    async def _worker(self, run: JobRun, strategy: ExtractionStrategy, index: int) -> None:
        config_id = run.config.config_id
        item: Optional[FrontierItem] = None
        try:
            while not run.stopped.is_set():
                if not await self.store.config_exists(config_id):
                    raise ConfigDeletedError(config_id)
                item = await run.frontier.get()
                if item is None:
                    return
                try:
                    await self._process(run, strategy, item)
                finally:
                    await run.frontier.task_done()
                item = None
                if not run.stopped.is_set() and (len(run.frontier) or run.frontier.in_flight):
                    delay_ms = await self.tuner.recommend_delay_ms(run.job_id)
                    await self._pause(run, delay_ms / 1000)
        except FatalCrawlError as exc:
            logger.error("Job aborted", extra={"job_id": run.job_id, "worker": index, "error": str(exc)})
            await run.abort(exc, item.url if item is not None else None)
        except Exception as exc:
            logger.exception("Worker crashed", extra={"job_id": run.job_id, "worker": index})
            await run.abort(exc, item.url if item is not None else None)

    async def _pause(self, run: JobRun, seconds: float) -> None:
        await sleep_unless_stopped(self._sleep, seconds, run.stopped)

    async def _process(self, run: JobRun, strategy: ExtractionStrategy, item: FrontierItem) -> None:
        config = run.config
        if await self.quarantine.is_quarantined(config.config_id, item.url):
            logger.info("Skipping quarantined URL", extra={"job_id": run.job_id, "url": item.url})
            PAGES_FETCHED_TOTAL.labels(outcome="skipped").inc()
            await run.emit(PageSkipped(url=item.url))
            return

        if not await self.allowlist.is_allowed(item.url):
            await self._fail_unquarantined(run, item, DomainNotAllowedError(domain_of(item.url)), ErrorClass.PERMANENT)
            return

        await self.rate_limiter.acquire(domain_of(item.url), config.rate_limit, stopped=run.stopped)
        if run.stopped.is_set():
            return

        try:
            proxy = await self.proxy_pool.acquire()
        except NoAvailableProxyError as exc:
            await self._wait_for_proxy(run, item, exc)
            return

        started = self._clock()
        try:
            result = await self.extractor.fetch_and_extract(
                item.url,
                strategy,
                proxy,
                config.options.timeout_ms,
                use_browser=config.options.use_headless_browser,
                headers=config.headers,
                cookies=config.cookies,
            )
            summary = await self.reconciler.reconcile(config, result.records, source_url=item.url, cache=run.cache)
        except Exception as exc:
            await self._record_sample(run, False, self._elapsed_ms(started))
            await self._handle_failure(run, item, proxy, exc)
            return

        await self.proxy_pool.report_outcome(proxy, True)
        await self._record_sample(run, True, result.elapsed_ms or self._elapsed_ms(started))
        PAGES_FETCHED_TOTAL.labels(outcome="succeeded").inc()
        await run.emit(
            PageSucceeded(
                url=item.url,
                records=summary.valid,
                created=summary.created,
                updated=summary.updated,
            )
        )
        logger.debug(
            "Processed page",
            extra={"job_id": run.job_id, "url": item.url, "records": summary.valid, "invalid": summary.invalid},
        )
        if config.options.follow_pagination and result.next_page_url:
            await self._enqueue(run, result.next_page_url)

    async def _enqueue(self, run: JobRun, url: str) -> None:
        # The counter is bumped before the URL becomes visible to other workers.
        if not run.frontier.reserve(url):
            return
        await run.emit(UrlsEnqueued(count=1))
        await run.frontier.put(FrontierItem(url=url))

    async def _wait_for_proxy(self, run: JobRun, item: FrontierItem, exc: NoAvailableProxyError) -> None:
        """Requeue a URL that found every proxy disabled.

        These waits have their own budget and never quarantine the URL: the
        page was not attempted.
        """

        if item.proxy_waits >= self.max_proxy_waits:
            await self._fail_unquarantined(run, item, exc, ErrorClass.TRANSIENT)
            return
        delay = backoff_delay(item.proxy_waits, self.retry_base_delay, self.retry_max_delay)
        logger.warning(
            "No proxy available, requeueing URL",
            extra={"job_id": run.job_id, "url": item.url, "proxy_waits": item.proxy_waits + 1, "delay": delay},
        )
        await self._pause(run, delay)
        if not run.stopped.is_set():
            await run.frontier.put(replace(item, proxy_waits=item.proxy_waits + 1))

    async def _fail_unquarantined(
        self, run: JobRun, item: FrontierItem, exc: Exception, error_class: ErrorClass
    ) -> None:
        PAGES_FETCHED_TOTAL.labels(outcome="failed").inc()
        await run.emit(
            PageFailed(
                error=JobError(
                    url=item.url,
                    message=str(exc) or type(exc).__name__,
                    timestamp=self._now(),
                    retry_count=item.retry_count,
                    quarantined=False,
                    error_class=error_class,
                )
            )
        )

    async def _handle_failure(
        self, run: JobRun, item: FrontierItem, proxy: Optional[str], exc: Exception
    ) -> None:
        error_class = classify(exc)
        if error_class == ErrorClass.TRANSIENT:
            await self.proxy_pool.report_outcome(proxy, False)
        elif error_class == ErrorClass.PERMANENT:
            # The proxy delivered the page; the page itself is the problem.
            await self.proxy_pool.report_outcome(proxy, True)

        decision = decide(
            item.retry_count,
            error_class,
            max_retries=run.config.options.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )
        if isinstance(decision, Abort):
            logger.error("Aborting job", extra={"job_id": run.job_id, "url": item.url, "error": str(exc)})
            await run.abort(exc, item.url)
            return

        if isinstance(decision, Retry):
            FETCH_RETRIES_TOTAL.inc()
            logger.info(
                "Retrying URL",
                extra={
                    "job_id": run.job_id,
                    "url": item.url,
                    "retry_count": item.retry_count + 1,
                    "delay": decision.delay,
                    "error": str(exc),
                },
            )
            await self._pause(run, decision.delay)
            if not run.stopped.is_set():
                await run.frontier.put(replace(item, retry_count=item.retry_count + 1))
            return

        message = str(exc) or type(exc).__name__
        await self.quarantine.record_failure(run.config.config_id, item.url, message)
        PAGES_FETCHED_TOTAL.labels(outcome="failed").inc()
        await run.emit(
            PageFailed(
                error=JobError(
                    url=item.url,
                    message=message,
                    timestamp=self._now(),
                    retry_count=item.retry_count,
                    quarantined=True,
                    error_class=error_class,
                )
            )
        )

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000

    async def _record_sample(self, run: JobRun, success: bool, response_ms: float) -> None:
        run.attempts += 1
        run.successes += 1 if success else 0
        run.total_response_ms += response_ms
        elapsed = max(self._clock() - run.started_at, 1.0)
        sample = PerformanceSample(
            success_rate=run.successes / run.attempts,
            avg_response_time_ms=run.total_response_ms / run.attempts,
            requests_per_second=run.attempts / elapsed,
            memory_usage_pct=self._memory_sampler(),
        )
        await self.tuner.record(run.job_id, sample)
        await self.tuner.manage_memory(run.job_id)


__all__ = ["FetchWorkerPool", "JobRun"]
