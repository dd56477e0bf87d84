"""
Pipeline CRM Database Configuration
SQLAlchemy async setup; PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs
"""

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from typing import Any, AsyncGenerator, Dict
import structlog

from .config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def engine_options(database_url: str) -> Dict[str, Any]:
    """Connection pool options for the configured backend"""
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        # An in-memory database only lives as long as its single connection
        if url.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        return options

    return {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }


def configure_sqlite(async_engine: AsyncEngine) -> None:
    """Enforce foreign keys and let SQLAlchemy own BEGIN so savepoints nest properly"""
    if async_engine.url.get_backend_name() != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **engine_options(settings.database_url)
)
configure_sqlite(engine)

# Create session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error("Database session error", error=str(e))
            await session.rollback()
            raise


async def init_db():
    """Create any missing tables"""
    async with engine.begin() as conn:
        # Registers every model on Base.metadata
        from .. import models  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified", backend=engine.url.get_backend_name())


async def close_db():
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")
