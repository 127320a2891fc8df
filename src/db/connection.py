"""
Database Connection Management
Async SQLAlchemy with connection pooling
Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
Verified: 2026-10-16
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.api.config import settings
from src.utils.logging import get_logger

logger = get_logger(__name__)


# Global engine instance
# Source: https://docs.sqlalchemy.org/en/20/core/pooling.html#pooling-plain
_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the global async engine.

    Returns:
        AsyncEngine instance

    Source: https://docs.sqlalchemy.org/en/20/core/connections.html#basic-usage
    """
    global _engine

    if _engine is None:
        url = settings.database_url
        logger.info(f"Creating database engine: {url.split('@')[-1]}")

        # NullPool does not accept pool_size/max_overflow/pool_timeout parameters
        # Source: https://docs.sqlalchemy.org/en/20/core/pooling.html
        if settings.is_testing or url.startswith("sqlite"):
            _engine = create_async_engine(
                url,
                echo=settings.DEBUG,
                poolclass=NullPool,
            )
        else:
            _engine = create_async_engine(
                url,
                echo=settings.DEBUG,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_pre_ping=True,  # Verify connections before using
            )

        logger.info("Database engine created successfully")

    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the global session maker.

    The correlation store opens one session per operation from this maker,
    so it stays usable from background tasks after a request has finished.

    Source: https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    """
    global _async_session_maker

    if _async_session_maker is None:
        engine = get_engine()

        _async_session_maker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
            autoflush=False,  # Manual flush control
        )

        logger.info("Session maker created successfully")

    return _async_session_maker


async def create_tables() -> None:
    """
    Create any missing workflow tables.

    Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html#synopsis-core
    """
    # Imported here so model registration happens before create_all
    from src.models import Base

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified")


async def close_db_connection() -> None:
    """
    Close database connection pool.

    Source: https://fastapi.tiangolo.com/advanced/events/#shutdown-event
    """
    global _engine, _async_session_maker

    if _engine is not None:
        logger.info("Closing database connection pool...")
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database connection pool closed")


async def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise

    Source: https://docs.sqlalchemy.org/en/20/core/connections.html#using-textual-sql
    """
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
