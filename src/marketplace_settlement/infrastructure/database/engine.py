"""Async database engine and session management.

Provides:
    - build_engine / build_session_factory: construct an engine + sessionmaker
      for an explicit URL (tests, the sweep job, one-off scripts).
    - get_session_factory: the lazily created process-wide sessionmaker.
    - session_scope: one transaction; commits on success, rolls back on error.
    - init_db / close_db: lifecycle hooks for the hosting process.

Usage:
    async with session_scope() as session:
        service = EscrowService(session)
        await service.release_funds(milestone_id, seller_id)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

# Module-level singletons (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create an async engine for the configured database URL."""
    options: dict = {"echo": settings.db_echo_sql}
    if settings.is_sqlite:
        # Writers queue on the database lock instead of failing immediately
        options["connect_args"] = {"timeout": 15}
    else:
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
        )
    engine = create_async_engine(settings.database_url, **options)
    logger.info(
        "database.engine_created",
        dialect=engine.dialect.name,
        pool_size=None if settings.is_sqlite else settings.db_pool_size,
    )
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(_get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session bound to one transaction.

    The transaction commits when the block exits normally and rolls back
    when it raises, so a multi-row transition is all-or-nothing.
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create tables if they don't exist.

    Only runs in development/test; production schemas are managed outside
    this package.
    """
    from marketplace_settlement.infrastructure.database.orm_models import Base

    settings = get_settings()
    target = engine or _get_engine()

    if engine is not None or settings.is_development:
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created", dialect=target.dialect.name)
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
