"""
Database engine and session handling.

Services own their transactions: each operation commits or rolls back the
session it was given. The request dependency only guarantees the session
is closed and that nothing half-written survives an error.
"""

import logging
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool

from .config import get_settings
from .models.base import Base

logger = logging.getLogger(__name__)

# Process-wide engine and session factory, set up by init_database()
engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _engine_options(database_url: str) -> Dict[str, Any]:
    settings = get_settings()

    if _is_sqlite(database_url):
        # One connection per checkout; writers wait on the file lock instead of failing
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": 30},
            "echo": settings.debug,
        }

    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "echo": settings.debug,
        "connect_args": {
            "server_settings": {
                "application_name": "bus_booking_engine",
            }
        },
    }


def configure_sqlite_locking(sqlite_engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock when they begin.

    Without this two transactions can both read a seat as AVAILABLE before
    either writes, and the loser fails on lock upgrade instead of waiting.
    """

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # SQLAlchemy emits BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the engine for the configured database, or for an explicit URL."""
    database_url = database_url or get_settings().database_url

    new_engine = create_async_engine(database_url, **_engine_options(database_url))
    if _is_sqlite(database_url):
        configure_sqlite_locking(new_engine)
    return new_engine


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


async def init_database() -> None:
    """Connect and create any missing tables."""
    global engine, async_session_factory

    logger.info("Initializing database connection...")

    engine = create_database_engine()
    async_session_factory = create_session_factory(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database initialized ({engine.dialect.name})")


async def close_database() -> None:
    global engine, async_session_factory

    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_factory = None
        logger.info("Database connections closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a session for one request.

    Usage in FastAPI endpoints:
        @router.post("/orders")
        async def create_order(db: AsyncSession = Depends(get_db)):
            ...
    """
    if async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
