"""
Ledger - Database Engine.

Async SQLAlchemy engine and session factory for the ledger.

- PostgreSQL via asyncpg in production
- SQLite via aiosqlite for tests and local runs
- In-memory SQLite shares one connection (StaticPool)
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ..config import DatabaseConfig
from .models import Base


logger = logging.getLogger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def create_ledger_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Create the async engine for the ledger.

    Args:
        config: Database configuration

    Returns:
        AsyncEngine
    """
    logger.info(f"Creating ledger engine for: {config.url.split('@')[-1]}")

    if _is_memory_sqlite(config.url):
        return create_async_engine(
            config.url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    if config.url.startswith("sqlite"):
        return create_async_engine(config.url, echo=config.echo)

    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=5,
        max_overflow=10,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; one session per ledger call."""
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create ledger tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger tables ready")
