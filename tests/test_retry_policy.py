import asyncio

import httpx
import pytest

from catalog_crawler.errors import (
    BlockedError,
    ConfigDeletedError,
    ExtractorUnavailableError,
    MalformedPageError,
    NoAvailableProxyError,
    PermanentFetchError,
    StoreUnavailableError,
    TransientFetchError,
)
from catalog_crawler.jobs import Abort, Quarantine, Retry, backoff_delay, classify, decide
from catalog_crawler.models import ErrorClass


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n) for n in range(5)] == [2.0, 4.0, 8.0, 16.0, 30.0]
    assert backoff_delay(3, base=1.0, cap=5.0) == 5.0


@pytest.mark.parametrize(
    "exc, expected",
    [
        (TransientFetchError("503"), ErrorClass.TRANSIENT),
        (httpx.ConnectError("refused"), ErrorClass.TRANSIENT),
        (asyncio.TimeoutError(), ErrorClass.TRANSIENT),
        (NoAvailableProxyError("none"), ErrorClass.TRANSIENT),
        (ValueError("unexpected"), ErrorClass.TRANSIENT),
        (PermanentFetchError("404", 404), ErrorClass.PERMANENT),
        (BlockedError("captcha"), ErrorClass.PERMANENT),
        (MalformedPageError("bad json"), ErrorClass.PERMANENT),
        (ExtractorUnavailableError("no browser"), ErrorClass.FATAL),
        (StoreUnavailableError("db down"), ErrorClass.FATAL),
        (ConfigDeletedError("shop"), ErrorClass.FATAL),
    ],
)
def test_classify(exc, expected):
    assert classify(exc) == expected


def test_transient_failures_retry_until_budget_exhausted():
    decisions = [decide(count, ErrorClass.TRANSIENT, max_retries=3) for count in range(4)]
    assert decisions[:3] == [Retry(delay=2.0), Retry(delay=4.0), Retry(delay=8.0)]
    assert isinstance(decisions[3], Quarantine)


def test_permanent_failure_is_quarantined_immediately():
    assert isinstance(decide(0, ErrorClass.PERMANENT, max_retries=3), Quarantine)


def test_fatal_failure_aborts_the_job():
    assert isinstance(decide(0, ErrorClass.FATAL), Abort)


def test_zero_retry_budget_quarantines_first_transient_failure():
    assert isinstance(decide(0, ErrorClass.TRANSIENT, max_retries=0), Quarantine)
