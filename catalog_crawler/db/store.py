"""SQLAlchemy implementation of :class:`~catalog_crawler.store.CrawlerStore`."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from ..errors import StoreUnavailableError
from ..models import (
    AllowedDomain,
    ConfigStatus,
    CrawlerConfig,
    CrawlerJob,
    CrawlerOptions,
    ErrorClass,
    Frequency,
    JobError,
    JobStatus,
    PriceHistoryPoint,
    Product,
    QuarantineEntry,
)
from ..store import CrawlerStore, normalize_name
from .models import (
    CrawlerConfigRow,
    CrawlerDomainRow,
    CrawlerJobRow,
    JobErrorRow,
    PriceHistoryRow,
    ProductRow,
    QuarantineRow,
)
from .session import build_engine, get_sessionmaker, session_scope

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (OperationalError, InterfaceError, OSError)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _config_from_row(row: CrawlerConfigRow) -> CrawlerConfig:
    return CrawlerConfig(
        config_id=row.config_id,
        name=row.name,
        target_url=row.target_url,
        selectors=dict(row.selectors or {}),
        strategy=row.strategy,
        rate_limit=row.rate_limit,
        frequency=Frequency(row.frequency),
        cron_expression=row.cron_expression,
        status=ConfigStatus(row.status),
        owner=row.owner,
        supplier_id=row.supplier_id,
        options=CrawlerOptions.from_dict(row.options),
        headers=dict(row.headers or {}),
        cookies=dict(row.cookies or {}),
        last_crawled=_aware(row.last_crawled),
        next_crawl=_aware(row.next_crawl),
    )


def _error_from_row(row: JobErrorRow) -> JobError:
    return JobError(
        url=row.url,
        message=row.message,
        timestamp=_aware(row.timestamp),
        retry_count=row.retry_count,
        quarantined=row.quarantined,
        error_class=ErrorClass(row.error_class),
    )


def _job_from_row(row: CrawlerJobRow, errors: List[JobErrorRow]) -> CrawlerJob:
    return CrawlerJob(
        job_id=row.job_id,
        config_id=row.config_id,
        status=JobStatus(row.status),
        start_time=_aware(row.start_time),
        end_time=_aware(row.end_time),
        total_enqueued=row.total_enqueued,
        pages_processed=row.pages_processed,
        failed_pages=row.failed_pages,
        skipped_pages=row.skipped_pages,
        items_found=row.items_found,
        records_found=row.records_found,
        products_created=row.products_created,
        products_updated=row.products_updated,
        errors=tuple(_error_from_row(error) for error in errors),
    )


def _quarantine_from_row(row: QuarantineRow) -> QuarantineEntry:
    return QuarantineEntry(
        config_id=row.config_id,
        url=row.url,
        failure_count=row.failure_count,
        first_failure=_aware(row.first_failure),
        last_failure=_aware(row.last_failure),
        last_error=row.last_error,
        skip=row.skip,
    )


def _product_from_row(row: ProductRow) -> Product:
    return Product(
        product_id=row.product_id,
        supplier_id=row.supplier_id,
        name=row.name,
        price=row.price,
        sku=row.sku,
        stock=row.stock,
        description=row.description,
        category=row.category,
        image_url=row.image_url,
        source_url=row.source_url,
        updated_at=_aware(row.updated_at),
    )


def _domain_from_row(row: CrawlerDomainRow) -> AllowedDomain:
    return AllowedDomain(
        domain=row.domain,
        allowed=row.allowed,
        notes=row.notes,
        updated_at=_aware(row.updated_at),
    )


class SqlCrawlerStore(CrawlerStore):
    """Relational store; every call runs in its own short transaction.

    Connection-level failures are retried with exponential backoff. When the
    attempts run out the call raises :class:`StoreUnavailableError`, which
    aborts the running job.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
        retry_attempts: int = 3,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.engine = engine
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)

    async def _run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async for attempt in AsyncRetrying(
                reraise=True,
                stop=stop_after_attempt(self.retry_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
            ):
                with attempt:
                    async with session_scope(self.sessionmaker) as session:
                        result = await operation(session)
        except RETRYABLE_ERRORS as exc:
            logger.error("Store unavailable", extra={"attempts": self.retry_attempts, "error": str(exc)})
            raise StoreUnavailableError(f"Database unavailable after {self.retry_attempts} attempts: {exc}") from exc
        return result

    # Configs
    async def save_config(self, config: CrawlerConfig) -> CrawlerConfig:
        async def op(session: AsyncSession) -> None:
            await session.merge(
                CrawlerConfigRow(
                    config_id=config.config_id,
                    name=config.name,
                    target_url=config.target_url,
                    selectors=config.selectors,
                    strategy=config.strategy,
                    rate_limit=config.rate_limit,
                    frequency=config.frequency.value,
                    cron_expression=config.cron_expression,
                    status=config.status.value,
                    owner=config.owner,
                    supplier_id=config.supplier_id,
                    options=config.options.to_dict(),
                    headers=config.headers,
                    cookies=config.cookies,
                    last_crawled=config.last_crawled,
                    next_crawl=config.next_crawl,
                )
            )

        await self._run(op)
        return config

    async def get_config(self, config_id: str) -> Optional[CrawlerConfig]:
        async def op(session: AsyncSession) -> Optional[CrawlerConfig]:
            row = await session.get(CrawlerConfigRow, config_id)
            return _config_from_row(row) if row else None

        return await self._run(op)

    async def list_configs(self, active_only: bool = False) -> List[CrawlerConfig]:
        async def op(session: AsyncSession) -> List[CrawlerConfig]:
            stmt = select(CrawlerConfigRow).order_by(CrawlerConfigRow.created_at)
            if active_only:
                stmt = stmt.where(CrawlerConfigRow.status == ConfigStatus.ACTIVE.value)
            result = await session.scalars(stmt)
            return [_config_from_row(row) for row in result]

        return await self._run(op)

    async def delete_config(self, config_id: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(delete(CrawlerConfigRow).where(CrawlerConfigRow.config_id == config_id))
            return result.rowcount > 0

        return await self._run(op)

    async def config_exists(self, config_id: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            found = await session.scalar(
                select(CrawlerConfigRow.config_id).where(CrawlerConfigRow.config_id == config_id)
            )
            return found is not None

        return await self._run(op)

    async def update_schedule(
        self, config_id: str, last_crawled: Optional[datetime], next_crawl: Optional[datetime]
    ) -> None:
        async def op(session: AsyncSession) -> None:
            await session.execute(
                update(CrawlerConfigRow)
                .where(CrawlerConfigRow.config_id == config_id)
                .values(last_crawled=last_crawled, next_crawl=next_crawl)
            )

        await self._run(op)

    # Jobs
    async def save_job(self, job: CrawlerJob) -> None:
        async def op(session: AsyncSession) -> None:
            await session.merge(
                CrawlerJobRow(
                    job_id=job.job_id,
                    config_id=job.config_id,
                    status=job.status.value,
                    start_time=job.start_time,
                    end_time=job.end_time,
                    total_enqueued=job.total_enqueued,
                    pages_processed=job.pages_processed,
                    failed_pages=job.failed_pages,
                    skipped_pages=job.skipped_pages,
                    items_found=job.items_found,
                    records_found=job.records_found,
                    products_created=job.products_created,
                    products_updated=job.products_updated,
                )
            )

        await self._run(op)

    async def append_job_error(self, job_id: str, error: JobError) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                JobErrorRow(
                    job_id=job_id,
                    url=error.url,
                    message=error.message[:5000],
                    timestamp=error.timestamp,
                    retry_count=error.retry_count,
                    quarantined=error.quarantined,
                    error_class=error.error_class.value,
                )
            )

        await self._run(op)

    async def _errors_for(self, session: AsyncSession, job_id: str) -> List[JobErrorRow]:
        result = await session.scalars(
            select(JobErrorRow).where(JobErrorRow.job_id == job_id).order_by(JobErrorRow.id)
        )
        return list(result)

    async def get_job(self, job_id: str) -> Optional[CrawlerJob]:
        async def op(session: AsyncSession) -> Optional[CrawlerJob]:
            row = await session.get(CrawlerJobRow, job_id)
            if row is None:
                return None
            return _job_from_row(row, await self._errors_for(session, job_id))

        return await self._run(op)

    async def list_jobs(self, config_id: Optional[str] = None) -> List[CrawlerJob]:
        async def op(session: AsyncSession) -> List[CrawlerJob]:
            stmt = select(CrawlerJobRow).order_by(CrawlerJobRow.start_time.desc())
            if config_id is not None:
                stmt = stmt.where(CrawlerJobRow.config_id == config_id)
            rows = list(await session.scalars(stmt))
            return [_job_from_row(row, await self._errors_for(session, row.job_id)) for row in rows]

        return await self._run(op)

    # Quarantine
    async def get_quarantine(self, config_id: str, url: str) -> Optional[QuarantineEntry]:
        async def op(session: AsyncSession) -> Optional[QuarantineEntry]:
            row = await session.get(QuarantineRow, (config_id, url))
            return _quarantine_from_row(row) if row else None

        return await self._run(op)

    async def save_quarantine(self, entry: QuarantineEntry) -> None:
        async def op(session: AsyncSession) -> None:
            await session.merge(
                QuarantineRow(
                    config_id=entry.config_id,
                    url=entry.url,
                    failure_count=entry.failure_count,
                    first_failure=entry.first_failure,
                    last_failure=entry.last_failure,
                    last_error=entry.last_error[:5000],
                    skip=entry.skip,
                )
            )

        await self._run(op)

    async def delete_quarantine(self, config_id: str, url: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(QuarantineRow).where(QuarantineRow.config_id == config_id, QuarantineRow.url == url)
            )
            return result.rowcount > 0

        return await self._run(op)

    async def list_quarantine(self, config_id: Optional[str] = None) -> List[QuarantineEntry]:
        async def op(session: AsyncSession) -> List[QuarantineEntry]:
            stmt = select(QuarantineRow).order_by(QuarantineRow.last_failure.desc())
            if config_id is not None:
                stmt = stmt.where(QuarantineRow.config_id == config_id)
            return [_quarantine_from_row(row) for row in await session.scalars(stmt)]

        return await self._run(op)

    # Catalog
    async def find_product(self, supplier_id: Optional[str], sku: Optional[str], name: str) -> Optional[Product]:
        async def op(session: AsyncSession) -> Optional[Product]:
            row = None
            if sku:
                row = await session.scalar(
                    select(ProductRow).where(ProductRow.supplier_id == supplier_id, ProductRow.sku == sku).limit(1)
                )
            if row is None:
                row = await session.scalar(
                    select(ProductRow)
                    .where(ProductRow.supplier_id == supplier_id, ProductRow.normalized_name == normalize_name(name))
                    .limit(1)
                )
            return _product_from_row(row) if row else None

        return await self._run(op)

    async def save_product(self, product: Product) -> Product:
        async def op(session: AsyncSession) -> None:
            await session.merge(
                ProductRow(
                    product_id=product.product_id,
                    supplier_id=product.supplier_id,
                    sku=product.sku,
                    name=product.name,
                    normalized_name=normalize_name(product.name),
                    price=product.price,
                    stock=product.stock,
                    description=product.description,
                    category=product.category,
                    image_url=product.image_url,
                    source_url=product.source_url,
                    updated_at=product.updated_at,
                )
            )

        await self._run(op)
        return product

    async def append_price_point(self, point: PriceHistoryPoint) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(
                PriceHistoryRow(
                    product_id=point.product_id,
                    price=point.price,
                    source=point.source,
                    timestamp=point.timestamp,
                )
            )

        await self._run(op)

    async def list_price_history(self, product_id: str) -> List[PriceHistoryPoint]:
        async def op(session: AsyncSession) -> List[PriceHistoryPoint]:
            result = await session.scalars(
                select(PriceHistoryRow)
                .where(PriceHistoryRow.product_id == product_id)
                .order_by(PriceHistoryRow.timestamp, PriceHistoryRow.id)
            )
            return [
                PriceHistoryPoint(
                    product_id=row.product_id,
                    price=row.price,
                    timestamp=_aware(row.timestamp),
                    source=row.source,
                )
                for row in result
            ]

        return await self._run(op)

    # Domain allowlist
    async def get_domain(self, domain: str) -> Optional[AllowedDomain]:
        async def op(session: AsyncSession) -> Optional[AllowedDomain]:
            row = await session.get(CrawlerDomainRow, domain)
            return _domain_from_row(row) if row else None

        return await self._run(op)

    async def save_domain(self, entry: AllowedDomain) -> AllowedDomain:
        async def op(session: AsyncSession) -> None:
            await session.merge(
                CrawlerDomainRow(
                    domain=entry.domain,
                    allowed=entry.allowed,
                    notes=entry.notes,
                    updated_at=entry.updated_at,
                )
            )

        await self._run(op)
        return entry

    async def delete_domain(self, domain: str) -> bool:
        async def op(session: AsyncSession) -> bool:
            result = await session.execute(delete(CrawlerDomainRow).where(CrawlerDomainRow.domain == domain))
            return result.rowcount > 0

        return await self._run(op)

    async def list_domains(self) -> List[AllowedDomain]:
        async def op(session: AsyncSession) -> List[AllowedDomain]:
            result = await session.scalars(select(CrawlerDomainRow).order_by(CrawlerDomainRow.domain))
            return [_domain_from_row(row) for row in result]

        return await self._run(op)

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "SqlCrawlerStore":
        engine = build_engine(database_url)
        return cls(get_sessionmaker(engine), engine=engine, **kwargs)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


__all__ = ["SqlCrawlerStore"]
