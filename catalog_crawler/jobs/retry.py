"""Retry and quarantine policy for per-URL failures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Union

import httpx

from ..errors import (
    FatalCrawlError,
    NoAvailableProxyError,
    PermanentFetchError,
    TransientFetchError,
)
from ..models import ErrorClass

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 30.0


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class Quarantine:
    reason: str


@dataclass(frozen=True)
class Abort:
    reason: str


Decision = Union[Retry, Quarantine, Abort]


def classify(exc: BaseException) -> ErrorClass:
    """Map an exception raised while fetching a page onto an error class."""

    if isinstance(exc, FatalCrawlError):
        return ErrorClass.FATAL
    if isinstance(exc, PermanentFetchError):
        return ErrorClass.PERMANENT
    if isinstance(exc, (TransientFetchError, NoAvailableProxyError, asyncio.TimeoutError, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    # Unknown failures get the retry budget; persistent ones end up quarantined.
    return ErrorClass.TRANSIENT


def backoff_delay(retry_count: int, base: float = DEFAULT_BASE_DELAY, cap: float = DEFAULT_MAX_DELAY) -> float:
    return min(base * (2 ** retry_count), cap)


def decide(
    retry_count: int,
    error_class: ErrorClass,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> Decision:
    """Decide what happens to a URL after a failed attempt.

    ``retry_count`` is the number of retries already spent on the URL in this
    job. A transient failure is retried while ``retry_count < max_retries``;
    the failure that arrives with the budget exhausted is quarantined.
    """

    if error_class == ErrorClass.FATAL:
        return Abort(reason="fatal error")
    if error_class == ErrorClass.PERMANENT:
        return Quarantine(reason="permanent error")
    if retry_count < max_retries:
        return Retry(delay=backoff_delay(retry_count, base_delay, max_delay))
    return Quarantine(reason=f"retry budget of {max_retries} exhausted")


__all__ = [
    "Abort",
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_DELAY",
    "DEFAULT_MAX_RETRIES",
    "Decision",
    "Quarantine",
    "Retry",
    "backoff_delay",
    "classify",
    "decide",
]
