from datetime import datetime, timezone

import pytest

from catalog_crawler.errors import InvalidTransitionError
from catalog_crawler.jobs.state import (
    LEGAL_TRANSITIONS,
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobStarted,
    PageFailed,
    PageSkipped,
    PageSucceeded,
    UrlsEnqueued,
    can_transition,
    transition,
)
from catalog_crawler.models import CrawlerJob, JobError, JobStatus

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def running_job(enqueued=3):
    job = transition(CrawlerJob.create("shop"), JobStarted(at=NOW))
    return transition(job, UrlsEnqueued(count=enqueued))


def failure(url="https://shop.test/p2"):
    return JobError(url=url, message="boom", timestamp=NOW, retry_count=3, quarantined=True)


def test_start_moves_idle_job_to_running():
    job = transition(CrawlerJob.create("shop"), JobStarted(at=NOW))
    assert job.status == JobStatus.RUNNING
    assert job.start_time == NOW
    assert job.end_time is None


def test_terminal_states_have_no_outgoing_transitions():
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert LEGAL_TRANSITIONS[status] == frozenset()
        assert not can_transition(status, JobStatus.RUNNING)
    assert not can_transition(JobStatus.IDLE, JobStatus.COMPLETED)


def test_idle_job_cannot_complete():
    with pytest.raises(InvalidTransitionError):
        transition(CrawlerJob.create("shop"), JobCompleted(at=NOW))


@pytest.mark.parametrize(
    "event",
    [
        JobStarted(at=NOW),
        UrlsEnqueued(count=1),
        PageSucceeded(url="https://shop.test", records=1),
        PageSkipped(url="https://shop.test"),
        JobCompleted(at=NOW),
        JobFailed(at=NOW),
        JobCancelled(at=NOW),
    ],
)
def test_completed_job_rejects_every_event(event):
    job = transition(running_job(), JobCompleted(at=NOW))
    with pytest.raises(InvalidTransitionError):
        transition(job, event)


def test_page_counters():
    job = running_job(enqueued=4)
    job = transition(job, PageSucceeded(url="https://shop.test/p1", records=3, created=2, updated=1))
    job = transition(job, PageSucceeded(url="https://shop.test/p2", records=0))
    job = transition(job, PageFailed(error=failure()))
    job = transition(job, PageSkipped(url="https://shop.test/p4"))

    assert job.pages_processed == 4
    assert job.failed_pages == 2
    assert job.skipped_pages == 1
    assert job.items_found == 1
    assert job.records_found == 3
    assert job.products_created == 2
    assert job.products_updated == 1
    assert job.errors == (failure(),)
    assert job.progress == 100.0
    assert job.success_rate == 50.0


def test_pages_cannot_outrun_enqueued_urls():
    job = transition(running_job(enqueued=1), PageSucceeded(url="https://shop.test", records=1))
    with pytest.raises(InvalidTransitionError):
        transition(job, PageSucceeded(url="https://shop.test/p2", records=1))


def test_failed_job_keeps_fatal_error_and_end_time():
    fatal = JobError(url="https://shop.test", message="browser gone", timestamp=NOW)
    job = transition(running_job(), JobFailed(at=NOW, error=fatal))
    assert job.status == JobStatus.FAILED
    assert job.end_time == NOW
    assert job.errors[-1] == fatal


def test_cancel_sets_end_time():
    job = transition(running_job(), JobCancelled(at=NOW))
    assert job.status == JobStatus.CANCELLED
    assert job.end_time == NOW


def test_transition_returns_new_snapshot():
    job = running_job()
    updated = transition(job, PageSucceeded(url="https://shop.test", records=2))
    assert job.pages_processed == 0
    assert updated.pages_processed == 1
    assert updated.to_dict()["progress"] == pytest.approx(100 / 3)
