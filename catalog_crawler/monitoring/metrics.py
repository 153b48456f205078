"""Prometheus metrics and monitoring utilities."""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

PAGES_FETCHED_TOTAL = Counter(
    "catalog_crawler_pages_total", "Pages reaching a final outcome", ["outcome"]
)
FETCH_RETRIES_TOTAL = Counter("catalog_crawler_fetch_retries_total", "Pages re-enqueued after a transient failure")
QUARANTINED_URLS_TOTAL = Counter("catalog_crawler_quarantined_urls_total", "URLs newly quarantined")
PROXY_DISABLED_TOTAL = Counter("catalog_crawler_proxy_disabled_total", "Proxies disabled after repeated failures")
RATE_LIMIT_WAITS_TOTAL = Counter("catalog_crawler_rate_limit_waits_total", "Requests delayed by the domain budget")
JOBS_STARTED_TOTAL = Counter("catalog_crawler_jobs_started_total", "Crawl jobs started")
JOBS_FINISHED_TOTAL = Counter("catalog_crawler_jobs_finished_total", "Crawl jobs finished", ["status"])
PRODUCTS_RECONCILED_TOTAL = Counter(
    "catalog_crawler_products_reconciled_total", "Catalog rows touched by the reconciler", ["action"]
)
IN_PROGRESS_JOBS = Gauge("catalog_crawler_jobs_in_progress", "Current running jobs")
FETCH_LATENCY = Histogram("catalog_crawler_fetch_latency_seconds", "Latency for page extraction")

metrics_router = APIRouter()


@metrics_router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "FETCH_LATENCY",
    "FETCH_RETRIES_TOTAL",
    "IN_PROGRESS_JOBS",
    "JOBS_FINISHED_TOTAL",
    "JOBS_STARTED_TOTAL",
    "PAGES_FETCHED_TOTAL",
    "PRODUCTS_RECONCILED_TOTAL",
    "PROXY_DISABLED_TOTAL",
    "QUARANTINED_URLS_TOTAL",
    "RATE_LIMIT_WAITS_TOTAL",
    "metrics_router",
]
