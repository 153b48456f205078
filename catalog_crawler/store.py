"""Persistence interface used by the job engine, plus an in-process implementation."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .models import (
    AllowedDomain,
    ConfigStatus,
    CrawlerConfig,
    CrawlerJob,
    JobError,
    PriceHistoryPoint,
    Product,
    QuarantineEntry,
)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


class CrawlerStore(abc.ABC):
    """Narrow persistence surface for configs, jobs, quarantine, catalog rows and
    the domain allowlist.

    Every write is idempotent with respect to retries: job snapshots are
    upserted by id, errors are appended as their own rows.
    """

    # Configs
    @abc.abstractmethod
    async def save_config(self, config: CrawlerConfig) -> CrawlerConfig: ...

    @abc.abstractmethod
    async def get_config(self, config_id: str) -> Optional[CrawlerConfig]: ...

    @abc.abstractmethod
    async def list_configs(self, active_only: bool = False) -> List[CrawlerConfig]: ...

    @abc.abstractmethod
    async def delete_config(self, config_id: str) -> bool: ...

    @abc.abstractmethod
    async def update_schedule(
        self, config_id: str, last_crawled: Optional[datetime], next_crawl: Optional[datetime]
    ) -> None: ...

    async def config_exists(self, config_id: str) -> bool:
        return await self.get_config(config_id) is not None

    async def deactivate_config(self, config_id: str) -> Optional[CrawlerConfig]:
        config = await self.get_config(config_id)
        if config is None:
            return None
        config.status = ConfigStatus.IDLE
        return await self.save_config(config)

    async def list_due_configs(self, now: datetime) -> List[CrawlerConfig]:
        return [
            config
            for config in await self.list_configs(active_only=True)
            if config.next_crawl is None or config.next_crawl <= now
        ]

    # Jobs
    @abc.abstractmethod
    async def save_job(self, job: CrawlerJob) -> None: ...

    @abc.abstractmethod
    async def append_job_error(self, job_id: str, error: JobError) -> None: ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Optional[CrawlerJob]: ...

    @abc.abstractmethod
    async def list_jobs(self, config_id: Optional[str] = None) -> List[CrawlerJob]: ...

    # Quarantine
    @abc.abstractmethod
    async def get_quarantine(self, config_id: str, url: str) -> Optional[QuarantineEntry]: ...

    @abc.abstractmethod
    async def save_quarantine(self, entry: QuarantineEntry) -> None: ...

    @abc.abstractmethod
    async def delete_quarantine(self, config_id: str, url: str) -> bool: ...

    @abc.abstractmethod
    async def list_quarantine(self, config_id: Optional[str] = None) -> List[QuarantineEntry]: ...

    # Catalog
    @abc.abstractmethod
    async def find_product(self, supplier_id: Optional[str], sku: Optional[str], name: str) -> Optional[Product]: ...

    @abc.abstractmethod
    async def save_product(self, product: Product) -> Product: ...

    @abc.abstractmethod
    async def append_price_point(self, point: PriceHistoryPoint) -> None: ...

    @abc.abstractmethod
    async def list_price_history(self, product_id: str) -> List[PriceHistoryPoint]: ...

    # Domain allowlist
    @abc.abstractmethod
    async def get_domain(self, domain: str) -> Optional[AllowedDomain]: ...

    @abc.abstractmethod
    async def save_domain(self, entry: AllowedDomain) -> AllowedDomain: ...

    @abc.abstractmethod
    async def delete_domain(self, domain: str) -> bool: ...

    @abc.abstractmethod
    async def list_domains(self) -> List[AllowedDomain]: ...

    async def close(self) -> None:
        return None


class MemoryCrawlerStore(CrawlerStore):
    """Dictionary backed store for tests and single-process dry runs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.configs: Dict[str, CrawlerConfig] = {}
        self.jobs: Dict[str, CrawlerJob] = {}
        self.job_errors: Dict[str, List[JobError]] = {}
        self.quarantine: Dict[Tuple[str, str], QuarantineEntry] = {}
        self.products: Dict[str, Product] = {}
        self.price_history: List[PriceHistoryPoint] = []
        self.domains: Dict[str, AllowedDomain] = {}

    async def save_config(self, config: CrawlerConfig) -> CrawlerConfig:
        async with self._lock:
            self.configs[config.config_id] = replace(config)
        return config

    async def get_config(self, config_id: str) -> Optional[CrawlerConfig]:
        config = self.configs.get(config_id)
        return replace(config) if config else None

    async def list_configs(self, active_only: bool = False) -> List[CrawlerConfig]:
        return [replace(c) for c in self.configs.values() if not active_only or c.is_active]

    async def delete_config(self, config_id: str) -> bool:
        async with self._lock:
            return self.configs.pop(config_id, None) is not None

    async def update_schedule(
        self, config_id: str, last_crawled: Optional[datetime], next_crawl: Optional[datetime]
    ) -> None:
        async with self._lock:
            config = self.configs.get(config_id)
            if config is None:
                return
            self.configs[config_id] = replace(config, last_crawled=last_crawled, next_crawl=next_crawl)

    async def save_job(self, job: CrawlerJob) -> None:
        async with self._lock:
            # Errors live in their own append-only list; the snapshot row carries counters.
            self.jobs[job.job_id] = job.evolve(errors=())
            self.job_errors.setdefault(job.job_id, [])

    async def append_job_error(self, job_id: str, error: JobError) -> None:
        async with self._lock:
            self.job_errors.setdefault(job_id, []).append(error)

    async def get_job(self, job_id: str) -> Optional[CrawlerJob]:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        return job.evolve(errors=tuple(self.job_errors.get(job_id, [])))

    async def list_jobs(self, config_id: Optional[str] = None) -> List[CrawlerJob]:
        jobs = [job for job in self.jobs.values() if config_id is None or job.config_id == config_id]
        jobs.sort(key=lambda job: job.start_time or _EPOCH, reverse=True)
        return [job.evolve(errors=tuple(self.job_errors.get(job.job_id, []))) for job in jobs]

    async def get_quarantine(self, config_id: str, url: str) -> Optional[QuarantineEntry]:
        entry = self.quarantine.get((config_id, url))
        return replace(entry) if entry else None

    async def save_quarantine(self, entry: QuarantineEntry) -> None:
        async with self._lock:
            self.quarantine[(entry.config_id, entry.url)] = replace(entry)

    async def delete_quarantine(self, config_id: str, url: str) -> bool:
        async with self._lock:
            return self.quarantine.pop((config_id, url), None) is not None

    async def list_quarantine(self, config_id: Optional[str] = None) -> List[QuarantineEntry]:
        return [
            replace(entry)
            for (entry_config, _), entry in self.quarantine.items()
            if config_id is None or entry_config == config_id
        ]

    async def find_product(self, supplier_id: Optional[str], sku: Optional[str], name: str) -> Optional[Product]:
        candidates = [p for p in self.products.values() if p.supplier_id == supplier_id]
        if sku:
            for product in candidates:
                if product.sku == sku:
                    return replace(product)
        wanted = normalize_name(name)
        for product in candidates:
            if normalize_name(product.name) == wanted:
                return replace(product)
        return None

    async def save_product(self, product: Product) -> Product:
        async with self._lock:
            self.products[product.product_id] = replace(product)
        return product

    async def append_price_point(self, point: PriceHistoryPoint) -> None:
        async with self._lock:
            self.price_history.append(point)

    async def list_price_history(self, product_id: str) -> List[PriceHistoryPoint]:
        return [point for point in self.price_history if point.product_id == product_id]

    async def get_domain(self, domain: str) -> Optional[AllowedDomain]:
        entry = self.domains.get(domain)
        return replace(entry) if entry else None

    async def save_domain(self, entry: AllowedDomain) -> AllowedDomain:
        async with self._lock:
            self.domains[entry.domain] = replace(entry)
        return entry

    async def delete_domain(self, domain: str) -> bool:
        async with self._lock:
            return self.domains.pop(domain, None) is not None

    async def list_domains(self) -> List[AllowedDomain]:
        return [replace(entry) for _, entry in sorted(self.domains.items())]


__all__ = ["CrawlerStore", "MemoryCrawlerStore", "normalize_name"]
