"""Domain models for crawler configs, jobs, quarantine and catalog records."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def domain_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ConfigStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"
    ONCE = "once"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"


@dataclass
class CrawlerOptions:
    follow_pagination: bool = True
    max_pages: int = 100
    timeout_ms: int = 30_000
    retry_attempts: int = 3
    use_headless_browser: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "follow_pagination": self.follow_pagination,
            "max_pages": self.max_pages,
            "timeout_ms": self.timeout_ms,
            "retry_attempts": self.retry_attempts,
            "use_headless_browser": self.use_headless_browser,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CrawlerOptions":
        data = data or {}
        known = {key: data[key] for key in cls().to_dict() if key in data}
        return cls(**known)


@dataclass
class CrawlerConfig:
    config_id: str
    name: str
    target_url: str
    selectors: Dict[str, Any] = field(default_factory=dict)
    strategy: str = "selector"
    rate_limit: int = 60
    frequency: Frequency = Frequency.DAILY
    cron_expression: Optional[str] = None
    status: ConfigStatus = ConfigStatus.ACTIVE
    owner: Optional[str] = None
    supplier_id: Optional[str] = None
    options: CrawlerOptions = field(default_factory=CrawlerOptions)
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    last_crawled: Optional[datetime] = None
    next_crawl: Optional[datetime] = None

    @property
    def domain(self) -> str:
        return domain_of(self.target_url)

    @property
    def is_active(self) -> bool:
        return self.status == ConfigStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "name": self.name,
            "target_url": self.target_url,
            "selectors": self.selectors,
            "strategy": self.strategy,
            "rate_limit": self.rate_limit,
            "frequency": self.frequency.value,
            "cron_expression": self.cron_expression,
            "status": self.status.value,
            "owner": self.owner,
            "supplier_id": self.supplier_id,
            "options": self.options.to_dict(),
            "last_crawled": self.last_crawled,
            "next_crawl": self.next_crawl,
        }


@dataclass(frozen=True)
class JobError:
    url: str
    message: str
    timestamp: datetime
    retry_count: int = 0
    quarantined: bool = False
    error_class: ErrorClass = ErrorClass.PERMANENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "message": self.message,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "quarantined": self.quarantined,
            "error_class": self.error_class.value,
        }


@dataclass(frozen=True)
class CrawlerJob:
    """Immutable snapshot of one execution of a config.

    New snapshots are produced by :func:`catalog_crawler.jobs.state.transition`.
    """

    job_id: str
    config_id: str
    status: JobStatus = JobStatus.IDLE
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_enqueued: int = 0
    pages_processed: int = 0
    failed_pages: int = 0
    skipped_pages: int = 0
    items_found: int = 0
    records_found: int = 0
    products_created: int = 0
    products_updated: int = 0
    errors: Tuple[JobError, ...] = ()

    @classmethod
    def create(cls, config_id: str) -> "CrawlerJob":
        return cls(job_id=new_id(), config_id=config_id)

    @property
    def progress(self) -> float:
        if self.total_enqueued <= 0:
            return 0.0
        return max(0.0, min(100.0, self.pages_processed / self.total_enqueued * 100))

    @property
    def success_rate(self) -> float:
        return (self.pages_processed - self.failed_pages) / max(self.pages_processed, 1) * 100

    def evolve(self, **changes: Any) -> "CrawlerJob":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "config_id": self.config_id,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "total_enqueued": self.total_enqueued,
            "pages_processed": self.pages_processed,
            "failed_pages": self.failed_pages,
            "skipped_pages": self.skipped_pages,
            "items_found": self.items_found,
            "records_found": self.records_found,
            "products_created": self.products_created,
            "products_updated": self.products_updated,
            "progress": self.progress,
            "success_rate": self.success_rate,
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class QuarantineEntry:
    config_id: str
    url: str
    failure_count: int
    first_failure: datetime
    last_failure: datetime
    last_error: str
    skip: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "url": self.url,
            "failure_count": self.failure_count,
            "first_failure": self.first_failure,
            "last_failure": self.last_failure,
            "last_error": self.last_error,
            "skip": self.skip,
        }


@dataclass
class AllowedDomain:
    """Allowlist entry for a crawl target host."""

    domain: str
    allowed: bool = True
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "allowed": self.allowed,
            "notes": self.notes,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class PriceHistoryPoint:
    product_id: str
    price: float
    timestamp: datetime
    source: str = "crawler"


@dataclass
class Product:
    product_id: str
    supplier_id: Optional[str]
    name: str
    price: float
    sku: Optional[str] = None
    stock: Optional[int] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    source_url: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PerformanceSample:
    success_rate: float
    avg_response_time_ms: float
    requests_per_second: float = 0.0
    memory_usage_pct: float = 0.0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "success_rate": self.success_rate,
            "avg_response_time_ms": self.avg_response_time_ms,
            "requests_per_second": self.requests_per_second,
            "memory_usage_pct": self.memory_usage_pct,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceSample":
        return cls(
            success_rate=float(data.get("success_rate", 1.0)),
            avg_response_time_ms=float(data.get("avg_response_time_ms", 0.0)),
            requests_per_second=float(data.get("requests_per_second", 0.0)),
            memory_usage_pct=float(data.get("memory_usage_pct", 0.0)),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class ExtractionResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_page_url: Optional[str] = None
    status_code: Optional[int] = None
    elapsed_ms: Optional[int] = None


_PRICE_CHARS = re.compile(r"[^0-9.,]")


def parse_price(value: Any) -> Optional[float]:
    """Parse a scraped price such as ``"$1,299.00"`` or ``"12,50 EUR"``."""

    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _PRICE_CHARS.sub("", str(value))
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        cleaned = f"{head.replace(',', '')}.{tail}" if len(tail) != 3 else head.replace(",", "") + tail
    try:
        return float(cleaned)
    except ValueError:
        return None


class RawRecord(BaseModel):
    """One product listing as produced by an extraction strategy."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    sku: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    source_url: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def _parse_price(cls, value):
        parsed = parse_price(value)
        return value if parsed is None else parsed

    @field_validator("stock", mode="before")
    @classmethod
    def _parse_stock(cls, value):
        if isinstance(value, str):
            digits = re.sub(r"[^0-9]", "", value)
            return int(digits) if digits else None
        return value

    @field_validator("sku", mode="before")
    @classmethod
    def _blank_sku(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


__all__ = [
    "AllowedDomain",
    "ConfigStatus",
    "CrawlerConfig",
    "CrawlerJob",
    "CrawlerOptions",
    "ErrorClass",
    "ExtractionResult",
    "Frequency",
    "JobError",
    "JobStatus",
    "PerformanceSample",
    "PriceHistoryPoint",
    "Product",
    "QuarantineEntry",
    "RawRecord",
    "domain_of",
    "new_id",
    "parse_price",
    "utcnow",
]
