"""Database session management using SQLAlchemy."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import get_settings
from .models import Base

_engine: Optional[AsyncEngine] = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url)
    return _engine


def get_sessionmaker(engine: Optional[AsyncEngine] = None) -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if engine is not None:
        return async_sessionmaker(bind=engine, expire_on_commit=False)
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _sessionmaker


@asynccontextmanager
async def session_scope(
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    session = (sessionmaker or get_sessionmaker())()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """Create missing tables; schema migrations are managed outside this package."""

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = ["build_engine", "get_engine", "get_sessionmaker", "init_models", "session_scope"]
