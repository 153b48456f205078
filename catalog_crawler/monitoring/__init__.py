"""Monitoring helpers."""

from .metrics import (
    FETCH_LATENCY,
    FETCH_RETRIES_TOTAL,
    IN_PROGRESS_JOBS,
    JOBS_FINISHED_TOTAL,
    JOBS_STARTED_TOTAL,
    PAGES_FETCHED_TOTAL,
    PRODUCTS_RECONCILED_TOTAL,
    PROXY_DISABLED_TOTAL,
    QUARANTINED_URLS_TOTAL,
    RATE_LIMIT_WAITS_TOTAL,
    metrics_router,
)

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
