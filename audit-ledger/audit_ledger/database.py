"""
Audit Ledger Database Module
============================
Async engine, session factory and schema bootstrap for the ledger and
session tables.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
import structlog

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


def create_async_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create the async database engine.

    In-memory SQLite gets a single shared connection so every session sees
    the same database.

    Args:
        database_url: Async connection string (postgresql+asyncpg://..., sqlite+aiosqlite://...)
        pool_size: Connection pool size (ignored for SQLite)
        max_overflow: Max overflow connections (ignored for SQLite)
        pool_pre_ping: Enable connection health checks
        echo: Log SQL statements
    """
    if database_url.startswith("sqlite"):
        kwargs = {"echo": echo}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        engine = sa_create_async_engine(database_url, **kwargs)
    else:
        engine = sa_create_async_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            echo=echo,
        )

    logger.info("database_engine_initialized", dialect=engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the ledger and session stores."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create tables, indexes and the ledger immutability triggers."""
    # Import for mapper registration and trigger DDL listeners
    from .audit import orm as _audit_orm  # noqa: F401
    from .sessions import orm as _session_orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_schema_ready", tables=sorted(Base.metadata.tables))


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commits on success, rolls back on exception.

    Usage:
        async with session_scope(factory) as db:
            db.add(row)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def close_engine(engine: Optional[AsyncEngine]) -> None:
    """Dispose the engine. Call during application shutdown."""
    if engine is not None:
        await engine.dispose()
        logger.info("database_engine_closed")
