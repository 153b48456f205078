"""Exception hierarchy for the crawler job engine.

Errors fall into three classes that drive the retry policy:

* transient: expected to succeed on retry (timeouts, 5xx, exhausted proxy pool)
* permanent: will not resolve by retrying (404, malformed or blocked pages)
* fatal: environmental, aborts the whole job (browser or database unavailable)
"""

from __future__ import annotations

from typing import Optional, Sequence


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class AlreadyRunningError(CrawlerError):
    def __init__(self, config_id: str, job_id: str) -> None:
        super().__init__(f"Config {config_id} already has running job {job_id}")
        self.config_id = config_id
        self.job_id = job_id


class ConfigNotFoundError(CrawlerError):
    def __init__(self, config_id: str) -> None:
        super().__init__(f"Crawler config {config_id} not found")
        self.config_id = config_id


class InvalidTransitionError(CrawlerError):
    """Raised when an event is applied to a job state that does not accept it."""


class InvalidConfigError(CrawlerError):
    """A config edit would leave the config unusable."""


class ConfigLockedError(CrawlerError):
    def __init__(self, config_id: str, fields: Sequence[str]) -> None:
        super().__init__(f"Config {config_id} is being crawled; cannot change {', '.join(fields)}")
        self.config_id = config_id
        self.fields = tuple(fields)


class NoAvailableProxyError(CrawlerError):
    """Every proxy in the pool is disabled."""


class FetchError(CrawlerError):
    """A single page could not be fetched or extracted."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFetchError(FetchError):
    pass


class PermanentFetchError(FetchError):
    pass


class MalformedPageError(PermanentFetchError):
    pass


class BlockedError(PermanentFetchError):
    pass


class DomainNotAllowedError(PermanentFetchError):
    def __init__(self, domain: str) -> None:
        super().__init__(f"Domain {domain or '(none)'} is not on the crawl allowlist")
        self.domain = domain


class FatalCrawlError(CrawlerError):
    """Environmental failure that aborts the whole job."""


class ExtractorUnavailableError(FatalCrawlError):
    pass


class StoreUnavailableError(FatalCrawlError):
    pass


class ConfigDeletedError(FatalCrawlError):
    def __init__(self, config_id: str) -> None:
        super().__init__(f"Crawler config {config_id} was deleted mid-run")
        self.config_id = config_id


__all__ = [
    "AlreadyRunningError",
    "BlockedError",
    "ConfigDeletedError",
    "ConfigLockedError",
    "ConfigNotFoundError",
    "CrawlerError",
    "DomainNotAllowedError",
    "ExtractorUnavailableError",
    "FatalCrawlError",
    "FetchError",
    "InvalidConfigError",
    "InvalidTransitionError",
    "MalformedPageError",
    "NoAvailableProxyError",
    "PermanentFetchError",
    "StoreUnavailableError",
    "TransientFetchError",
]
