"""Database package."""

from .models import Base, CrawlerConfigRow, CrawlerJobRow, JobErrorRow, PriceHistoryRow, ProductRow, QuarantineRow
from .session import build_engine, get_engine, get_sessionmaker, init_models, session_scope
from .store import SqlCrawlerStore

__all__ = [
    "Base",
    "CrawlerConfigRow",
    "CrawlerJobRow",
    "JobErrorRow",
    "PriceHistoryRow",
    "ProductRow",
    "QuarantineRow",
    "SqlCrawlerStore",
    "build_engine",
    "get_engine",
    "get_sessionmaker",
    "init_models",
    "session_scope",
]
