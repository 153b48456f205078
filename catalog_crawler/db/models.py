"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..models import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class CrawlerConfigRow(Base):
    __tablename__ = "crawler_configs"

    config_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    selectors: Mapped[dict] = mapped_column(JSONType, default=dict)
    strategy: Mapped[str] = mapped_column(String(32), default="selector")
    rate_limit: Mapped[int] = mapped_column(Integer, default=60)
    frequency: Mapped[str] = mapped_column(String(16), default="daily")
    cron_expression: Mapped[Optional[str]] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    owner: Mapped[Optional[str]] = mapped_column(String(255))
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    options: Mapped[dict] = mapped_column(JSONType, default=dict)
    headers: Mapped[dict] = mapped_column(JSONType, default=dict)
    cookies: Mapped[dict] = mapped_column(JSONType, default=dict)
    last_crawled: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_crawl: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CrawlerJobRow(Base):
    __tablename__ = "crawler_jobs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    config_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default="idle", index=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_enqueued: Mapped[int] = mapped_column(Integer, default=0)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0)
    failed_pages: Mapped[int] = mapped_column(Integer, default=0)
    skipped_pages: Mapped[int] = mapped_column(Integer, default=0)
    items_found: Mapped[int] = mapped_column(Integer, default=0)
    records_found: Mapped[int] = mapped_column(Integer, default=0)
    products_created: Mapped[int] = mapped_column(Integer, default=0)
    products_updated: Mapped[int] = mapped_column(Integer, default=0)


class JobErrorRow(Base):
    __tablename__ = "crawler_job_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("crawler_jobs.job_id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    quarantined: Mapped[bool] = mapped_column(Boolean, default=False)
    error_class: Mapped[str] = mapped_column(String(16), default="permanent")

    __table_args__ = (Index("idx_crawler_job_errors_job", "job_id"),)


class QuarantineRow(Base):
    __tablename__ = "url_quarantine"

    config_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), primary_key=True)
    failure_count: Mapped[int] = mapped_column(Integer, default=1)
    first_failure: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_failure: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str] = mapped_column(Text, default="")
    skip: Mapped[bool] = mapped_column(Boolean, default=True)


class ProductRow(Base):
    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    supplier_id: Mapped[Optional[str]] = mapped_column(String(64))
    sku: Mapped[Optional[str]] = mapped_column(String(128))
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(512), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    stock: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(255))
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    source_url: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_products_supplier_sku", "supplier_id", "sku"),
        Index("idx_products_supplier_name", "supplier_id", "normalized_name"),
    )


class CrawlerDomainRow(Base):
    __tablename__ = "crawler_domains"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    allowed: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class PriceHistoryRow(Base):
    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.product_id", ondelete="CASCADE"), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(32), default="crawler")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_price_history_product", "product_id", "timestamp"),)


__all__ = [
    "Base",
    "CrawlerDomainRow",
    "CrawlerConfigRow",
    "CrawlerJobRow",
    "JobErrorRow",
    "PriceHistoryRow",
    "ProductRow",
    "QuarantineRow",
]
