"""Reconcile extracted product listings against the catalog."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..errors import MalformedPageError
from ..models import CrawlerConfig, PriceHistoryPoint, Product, RawRecord, new_id, utcnow
from ..monitoring.metrics import PRODUCTS_RECONCILED_TOTAL
from ..store import CrawlerStore, normalize_name

logger = logging.getLogger(__name__)

ProductKey = Tuple[Optional[str], str]


@dataclass
class ReconcileSummary:
    valid: int = 0
    invalid: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    price_points: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "valid": self.valid,
            "invalid": self.invalid,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "price_points": self.price_points,
        }


def product_key(supplier_id: Optional[str], record: RawRecord) -> ProductKey:
    if record.sku:
        return supplier_id, f"sku:{record.sku}"
    return supplier_id, f"name:{normalize_name(record.name)}"


def product_keys(product: Product) -> List[ProductKey]:
    """Every key a later record could use to find ``product``."""

    keys = [(product.supplier_id, f"name:{normalize_name(product.name)}")]
    if product.sku:
        keys.append((product.supplier_id, f"sku:{product.sku}"))
    return keys


class CatalogReconciler:
    """Creates or updates catalog products and appends price history.

    Matching falls back from SKU to name, so a record with a SKU and one
    without can resolve to the same product. Lookup and write therefore run
    under one lock per supplier rather than per product key.
    """

    def __init__(self, store: CrawlerStore, now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._now = now
        self._locks: Dict[Optional[str], asyncio.Lock] = {}
        self._lock_users: Dict[Optional[str], int] = {}

    @asynccontextmanager
    async def _exclusive(self, supplier_id: Optional[str]) -> AsyncIterator[None]:
        lock = self._locks.get(supplier_id)
        if lock is None:
            lock = self._locks[supplier_id] = asyncio.Lock()
        self._lock_users[supplier_id] = self._lock_users.get(supplier_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Dropped once nobody holds or waits for it.
            self._lock_users[supplier_id] -= 1
            if not self._lock_users[supplier_id]:
                del self._lock_users[supplier_id]
                del self._locks[supplier_id]

    @staticmethod
    def validate(records: Iterable[Dict[str, Any]]) -> Tuple[List[RawRecord], int]:
        valid: List[RawRecord] = []
        invalid = 0
        for raw in records:
            try:
                valid.append(RawRecord.model_validate(raw))
            except ValidationError as exc:
                invalid += 1
                logger.debug("Dropped invalid record", extra={"errors": exc.errors(include_url=False)})
        return valid, invalid

    async def reconcile(
        self,
        config: CrawlerConfig,
        records: List[Dict[str, Any]],
        source_url: Optional[str] = None,
        cache: Optional[Dict[ProductKey, Product]] = None,
    ) -> ReconcileSummary:
        """Apply one page worth of records.

        ``cache`` holds products already seen by the running job and may
        be cleared at any time.
        """

        valid, invalid = self.validate(records)
        summary = ReconcileSummary(valid=len(valid), invalid=invalid)
        if records and not valid:
            raise MalformedPageError(f"All {invalid} records on {source_url or config.target_url} failed validation")

        for record in valid:
            async with self._exclusive(config.supplier_id):
                action, price_changed = await self._upsert(config, record, source_url, cache)
            if action == "created":
                summary.created += 1
            elif action == "updated":
                summary.updated += 1
            else:
                summary.unchanged += 1
            if price_changed:
                summary.price_points += 1
            PRODUCTS_RECONCILED_TOTAL.labels(action=action).inc()
        return summary

    async def _lookup(
        self,
        config: CrawlerConfig,
        record: RawRecord,
        cache: Optional[Dict[ProductKey, Product]],
    ) -> Optional[Product]:
        key = product_key(config.supplier_id, record)
        if cache is not None and key in cache:
            return replace(cache[key])
        return await self.store.find_product(config.supplier_id, record.sku, record.name)

    async def _upsert(
        self,
        config: CrawlerConfig,
        record: RawRecord,
        source_url: Optional[str],
        cache: Optional[Dict[ProductKey, Product]],
    ) -> Tuple[str, bool]:
        now = self._now()
        existing = await self._lookup(config, record, cache)

        if existing is None:
            product = Product(
                product_id=new_id(),
                supplier_id=config.supplier_id,
                name=record.name,
                price=record.price,
                sku=record.sku,
                stock=record.stock,
                description=record.description,
                category=record.category,
                image_url=record.image_url,
                source_url=record.source_url or source_url,
                updated_at=now,
            )
            await self.store.save_product(product)
            await self.store.append_price_point(
                PriceHistoryPoint(product_id=product.product_id, price=product.price, timestamp=now)
            )
            self._remember(cache, product)
            return "created", True

        price_changed = existing.price != record.price
        changed = price_changed
        for attr in ("name", "stock", "description", "category", "image_url"):
            value = getattr(record, attr)
            if value is not None and getattr(existing, attr) != value:
                setattr(existing, attr, value)
                changed = True
        if record.sku and existing.sku != record.sku:
            existing.sku = record.sku
            changed = True
        if not changed:
            self._remember(cache, existing)
            return "unchanged", False

        existing.price = record.price
        existing.source_url = record.source_url or source_url or existing.source_url
        existing.updated_at = now
        await self.store.save_product(existing)
        self._remember(cache, existing)
        if price_changed:
            await self.store.append_price_point(
                PriceHistoryPoint(product_id=existing.product_id, price=record.price, timestamp=now)
            )
        return "updated", price_changed

    @staticmethod
    def _remember(cache: Optional[Dict[ProductKey, Product]], product: Product) -> None:
        if cache is None:
            return
        stale = [key for key, cached in cache.items() if cached.product_id == product.product_id]
        for key in stale:
            del cache[key]
        for key in product_keys(product):
            cache[key] = replace(product)


__all__ = ["CatalogReconciler", "ReconcileSummary", "product_key", "product_keys"]
