"""Job lifecycle management."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import AlreadyRunningError, ConfigNotFoundError
from ..models import CrawlerJob, ErrorClass, JobError, utcnow
from ..monitoring.metrics import IN_PROGRESS_JOBS, JOBS_FINISHED_TOTAL, JOBS_STARTED_TOTAL
from ..store import CrawlerStore
from ..worker.frontier import Frontier
from ..worker.pool import FetchWorkerPool, JobRun
from .retry import classify
from .state import (
    JobCancelled,
    JobCompleted,
    JobEvent,
    JobFailed,
    JobStarted,
    PageFailed,
    UrlsEnqueued,
    transition,
)

logger = logging.getLogger(__name__)


class JobManager:
    """Owns running jobs: starts them, observes worker outcomes, finishes them.

    Every snapshot change goes through :func:`transition` under a per-job lock
    and is persisted before the lock is released. Events reaching a job after
    it turned terminal are dropped.
    """

    def __init__(
        self,
        store: CrawlerStore,
        pool: FetchWorkerPool,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.pool = pool
        self._now = now
        self._jobs: Dict[str, CrawlerJob] = {}
        self._runs: Dict[str, JobRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running_by_config: Dict[str, str] = {}
        self._job_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._start_lock = asyncio.Lock()

    async def start_job(self, config_id: str, concurrency: Optional[int] = None) -> CrawlerJob:
        async with self._start_lock:
            running = self._running_by_config.get(config_id)
            if running is not None:
                raise AlreadyRunningError(config_id, running)
            config = await self.store.get_config(config_id)
            if config is None:
                raise ConfigNotFoundError(config_id)
            await self.pool.allowlist.check(config.target_url)

            job = transition(CrawlerJob.create(config_id), JobStarted(at=self._now()))
            frontier = Frontier(max_pages=max(config.options.max_pages, 1))
            await frontier.add(config.target_url)
            job = transition(job, UrlsEnqueued(count=frontier.total_enqueued))
            await self.store.save_job(job)

            self._jobs[job.job_id] = job
            self._running_by_config[config_id] = job.job_id
            run = JobRun(job_id=job.job_id, config=config, frontier=frontier, emit=self._emitter(job.job_id))
            self._runs[job.job_id] = run

        JOBS_STARTED_TOTAL.inc()
        IN_PROGRESS_JOBS.inc()
        self._tasks[job.job_id] = asyncio.create_task(self._execute(run, concurrency))
        logger.info("Started job", extra={"job_id": job.job_id, "config_id": config_id, "url": config.target_url})
        return job

    def _emitter(self, job_id: str) -> Callable[[JobEvent], Any]:
        async def emit(event: JobEvent) -> CrawlerJob:
            return await self._apply(job_id, event)

        return emit

    async def _apply(self, job_id: str, event: JobEvent) -> CrawlerJob:
        async with self._job_locks[job_id]:
            job = self._jobs.get(job_id)
            if job is None:
                job = await self.store.get_job(job_id)
                if job is None:
                    raise KeyError(job_id)
            if job.status.is_terminal:
                logger.debug("Dropped event for finished job", extra={"job_id": job_id, "event": type(event).__name__})
                return job
            updated = transition(job, event)
            self._jobs[job_id] = updated
            await self.store.save_job(updated)
            if isinstance(event, PageFailed):
                await self.store.append_job_error(job_id, event.error)
            elif isinstance(event, JobFailed) and event.error is not None:
                await self.store.append_job_error(job_id, event.error)
            return updated

    async def _execute(self, run: JobRun, concurrency: Optional[int]) -> None:
        try:
            await self.pool.run(run, size=concurrency)
        except Exception as exc:
            logger.exception("Job task crashed", extra={"job_id": run.job_id})
            if run.fatal is None:
                run.fatal = exc

        try:
            if run.cancelled:
                await self._finish(run.job_id, JobCancelled(at=self._now()))
            elif run.fatal is not None:
                await self.fail_job(run.job_id, run.fatal, url=run.fatal_url)
            else:
                await self.complete_job(run.job_id)
        except Exception:
            logger.exception("Could not persist final job state", extra={"job_id": run.job_id})
        finally:
            self._runs.pop(run.job_id, None)
            self._tasks.pop(run.job_id, None)
            self._job_locks.pop(run.job_id, None)
            if self._running_by_config.get(run.config.config_id) == run.job_id:
                del self._running_by_config[run.config.config_id]
            IN_PROGRESS_JOBS.dec()

    async def _finish(self, job_id: str, event: JobEvent) -> CrawlerJob:
        before = self._jobs.get(job_id)
        job = await self._apply(job_id, event)
        if before is not None and not before.status.is_terminal and job.status.is_terminal:
            JOBS_FINISHED_TOTAL.labels(status=job.status.value).inc()
            logger.info(
                "Job finished",
                extra={
                    "job_id": job_id,
                    "status": job.status.value,
                    "pages_processed": job.pages_processed,
                    "failed_pages": job.failed_pages,
                    "records_found": job.records_found,
                },
            )
        return job

    async def complete_job(self, job_id: str, summary: Optional[Dict[str, Any]] = None) -> CrawlerJob:
        if summary:
            logger.info("Job summary", extra={"job_id": job_id, **summary})
        return await self._finish(job_id, JobCompleted(at=self._now()))

    async def fail_job(
        self, job_id: str, error: Union[BaseException, str], url: Optional[str] = None
    ) -> CrawlerJob:
        """Fail a job; ``url`` names the page being processed when it broke."""

        run = self._runs.get(job_id)
        if url is None:
            url = run.config.target_url if run is not None else ""
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_class = classify(error)
        else:
            message, error_class = error, ErrorClass.FATAL
        job_error = JobError(url=url, message=message, timestamp=self._now(), error_class=error_class)
        job = await self._finish(job_id, JobFailed(at=self._now(), error=job_error))
        if run is not None and not run.stopped.is_set():
            await run.abort(RuntimeError(message))
        return job

    async def stop(self, job_id: str) -> Optional[CrawlerJob]:
        """Cancel a running job and wait for its workers to exit."""

        run = self._runs.get(job_id)
        task = self._tasks.get(job_id)
        if run is None or task is None:
            return await self.get_job(job_id)
        logger.info("Stopping job", extra={"job_id": job_id})
        await run.cancel()
        await asyncio.shield(task)
        return await self.get_job(job_id)

    async def wait(self, job_id: str) -> Optional[CrawlerJob]:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_job(job_id)

    async def get_job(self, job_id: str) -> Optional[CrawlerJob]:
        job = self._jobs.get(job_id)
        if job is not None and job_id in self._runs:
            return job
        stored = await self.store.get_job(job_id)
        return stored or job

    async def list_jobs(self, config_id: Optional[str] = None) -> List[CrawlerJob]:
        jobs = {job.job_id: job for job in await self.store.list_jobs(config_id)}
        for job_id in self._runs:
            live = self._jobs.get(job_id)
            if live is not None and (config_id is None or live.config_id == config_id):
                jobs[job_id] = live
        return sorted(jobs.values(), key=lambda job: job.start_time or self._now(), reverse=True)

    def is_running(self, config_id: str) -> bool:
        return config_id in self._running_by_config

    def running_jobs(self) -> List[str]:
        return list(self._runs)

    async def shutdown(self) -> None:
        for job_id in list(self._runs):
            await self.stop(job_id)


__all__ = ["JobManager"]
