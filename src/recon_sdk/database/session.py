"""Database engine and session factory for the reconciliation store."""

import os
import logging
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./reconciliation.db"

_ASYNC_DRIVERS = {
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

# Application-wide engine, set by init_db
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """Return DATABASE_URL with an async driver, or the local SQLite default.

    Plain ``postgres://``, ``postgresql://`` and ``sqlite://`` URLs are
    rewritten to use asyncpg and aiosqlite.
    """
    db_url = os.getenv("DATABASE_URL", "").strip()
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def redact_url(database_url: str) -> str:
    """Return the URL with its password masked, for logging."""
    return make_url(database_url).render_as_string(hide_password=True)


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: Optional[int] = None,
    max_overflow: Optional[int] = None,
) -> AsyncEngine:
    """
    Create an async engine for the reconciliation store.

    SQLite engines share a single connection through StaticPool so that an
    in-memory database survives across sessions. Server databases get a
    pre-pinged connection pool sized from DB_POOL_SIZE and DB_MAX_OVERFLOW
    unless sizes are passed in.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Connections kept in the pool.
        max_overflow: Connections allowed beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size if pool_size is not None else int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=max_overflow if max_overflow is not None else int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory whose objects stay usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Get a session factory.

    Args:
        engine: Optional engine. When given, a factory bound to it is returned
            without touching the application-wide one.

    Returns:
        async_sessionmaker instance.

    Raises:
        RuntimeError: If no engine is given and init_db has not run.
    """
    if engine is not None:
        return create_session_factory(engine)

    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> AsyncEngine:
    """
    Open the application-wide engine, replacing any previous one.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        create_tables: Create missing reconciliation tables. Deployments that
            manage the schema with Alembic pass False.

    Returns:
        The new engine.
    """
    global _engine, _session_factory

    if _engine is not None:
        await close_db()

    url = database_url or get_database_url()
    logger.info(f"Opening reconciliation store at {redact_url(url)}")

    _engine = create_async_engine(url, echo=echo)
    _session_factory = create_session_factory(_engine)

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
        logger.info("Reconciliation tables are in place")

    return _engine


async def close_db() -> None:
    """Dispose of the application-wide engine if one is open."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Reconciliation store closed")
