"""Pure state machine for crawler jobs.

Every change to a :class:`CrawlerJob` goes through :func:`transition`, which
returns a new snapshot and never touches I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Union

from ..errors import InvalidTransitionError
from ..models import CrawlerJob, JobError, JobStatus

LEGAL_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.IDLE: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class JobStarted:
    at: datetime


@dataclass(frozen=True)
class UrlsEnqueued:
    count: int


@dataclass(frozen=True)
class PageSucceeded:
    url: str
    records: int
    created: int = 0
    updated: int = 0


@dataclass(frozen=True)
class PageFailed:
    error: JobError


@dataclass(frozen=True)
class PageSkipped:
    url: str


@dataclass(frozen=True)
class JobCompleted:
    at: datetime


@dataclass(frozen=True)
class JobFailed:
    at: datetime
    error: Optional[JobError] = None


@dataclass(frozen=True)
class JobCancelled:
    at: datetime


JobEvent = Union[
    JobStarted,
    UrlsEnqueued,
    PageSucceeded,
    PageFailed,
    PageSkipped,
    JobCompleted,
    JobFailed,
    JobCancelled,
]


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


def _move(job: CrawlerJob, target: JobStatus) -> None:
    if not can_transition(job.status, target):
        raise InvalidTransitionError(f"Job {job.job_id}: {job.status.value} -> {target.value} is not allowed")


def _require_running(job: CrawlerJob, event: JobEvent) -> None:
    if job.status != JobStatus.RUNNING:
        raise InvalidTransitionError(
            f"Job {job.job_id} is {job.status.value}; cannot apply {type(event).__name__}"
        )


def _count_page(job: CrawlerJob) -> None:
    if job.pages_processed + 1 > job.total_enqueued:
        raise InvalidTransitionError(f"Job {job.job_id} processed more pages than were enqueued")


def transition(job: CrawlerJob, event: JobEvent) -> CrawlerJob:
    """Apply ``event`` to ``job`` and return the resulting snapshot."""

    if isinstance(event, JobStarted):
        _move(job, JobStatus.RUNNING)
        return job.evolve(status=JobStatus.RUNNING, start_time=event.at)

    if isinstance(event, UrlsEnqueued):
        _require_running(job, event)
        return job.evolve(total_enqueued=job.total_enqueued + event.count)

    if isinstance(event, PageSucceeded):
        _require_running(job, event)
        _count_page(job)
        return job.evolve(
            pages_processed=job.pages_processed + 1,
            items_found=job.items_found + (1 if event.records > 0 else 0),
            records_found=job.records_found + event.records,
            products_created=job.products_created + event.created,
            products_updated=job.products_updated + event.updated,
        )

    if isinstance(event, PageFailed):
        _require_running(job, event)
        _count_page(job)
        return job.evolve(
            pages_processed=job.pages_processed + 1,
            failed_pages=job.failed_pages + 1,
            errors=job.errors + (event.error,),
        )

    if isinstance(event, PageSkipped):
        _require_running(job, event)
        _count_page(job)
        return job.evolve(
            pages_processed=job.pages_processed + 1,
            failed_pages=job.failed_pages + 1,
            skipped_pages=job.skipped_pages + 1,
        )

    if isinstance(event, JobCompleted):
        _move(job, JobStatus.COMPLETED)
        return job.evolve(status=JobStatus.COMPLETED, end_time=event.at)

    if isinstance(event, JobFailed):
        _move(job, JobStatus.FAILED)
        errors = job.errors + (event.error,) if event.error is not None else job.errors
        return job.evolve(status=JobStatus.FAILED, end_time=event.at, errors=errors)

    if isinstance(event, JobCancelled):
        _move(job, JobStatus.CANCELLED)
        return job.evolve(status=JobStatus.CANCELLED, end_time=event.at)

    raise InvalidTransitionError(f"Unknown job event {event!r}")


__all__ = [
    "LEGAL_TRANSITIONS",
    "JobCancelled",
    "JobCompleted",
    "JobEvent",
    "JobFailed",
    "JobStarted",
    "PageFailed",
    "PageSkipped",
    "PageSucceeded",
    "UrlsEnqueued",
    "can_transition",
    "transition",
]
