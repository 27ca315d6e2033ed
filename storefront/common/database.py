"""Async SQLAlchemy plumbing for the shipment database."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import ServiceSettings

_ENGINES: dict[str, AsyncEngine] = {}
_SESSION_FACTORIES: dict[str, async_sessionmaker[AsyncSession]] = {}
_ASYNC_SCHEMES = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def normalize_database_url(database_url: str) -> str:
    """Swap sync driver schemes (``postgres://``, ``sqlite://``) for their async drivers."""

    scheme, separator, rest = database_url.partition("://")
    if not separator:
        return database_url
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create or reuse the cached AsyncEngine for ``database_url``."""

    url = normalize_database_url(database_url)
    engine = _ENGINES.get(url)
    if engine is not None:
        return engine

    engine = create_async_engine(url, pool_pre_ping=True, **kwargs)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    _ENGINES[url] = engine
    return engine


def get_session_factory(database_url: str) -> async_sessionmaker[AsyncSession]:
    url = normalize_database_url(database_url)
    factory = _SESSION_FACTORIES.get(url)
    if factory is None:
        factory = async_sessionmaker(create_engine(url), expire_on_commit=False)
        _SESSION_FACTORIES[url] = factory
    return factory


@asynccontextmanager
async def lifespan_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Provide an AsyncSession that commits on success and rolls back on error.

    Used both by FastAPI request dependencies and by background work (webhook
    ingestion, the periodic sync job) that runs outside a request.
    """

    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_schema(database_url: str, metadata: MetaData) -> None:
    """Create any missing tables for ``metadata`` on the cached engine."""

    async with create_engine(database_url).begin() as conn:
        await conn.run_sync(metadata.create_all)


def resolve_database_url(settings: ServiceSettings, fallback: str) -> str:
    return normalize_database_url(settings.database_url or fallback)


async def dispose_engines() -> None:
    """Dispose every cached engine; called on shutdown and between tests."""

    for engine in list(_ENGINES.values()):
        await engine.dispose()
    _ENGINES.clear()
    _SESSION_FACTORIES.clear()
