"""
Engine and session lifecycle for the ledger database.

One engine per process, created lazily from settings. The API opens one
session per request; the workers open one per batch through
get_session_factory().
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payout_engine.config import Settings, get_settings
from payout_engine.database.models import Base

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine; SQLite takes no pool sizing."""
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Sessions keep attributes loaded after commit, so a payout returned by
    the orchestrator can be serialized once its session has committed.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding a request-scoped session.

    Anything the handler left uncommitted is committed on success and
    rolled back if the handler raised.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the payout, view tracking and webhook tables if missing."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
