"""
Async engine and session management for the order store.

One engine per process, created lazily from settings. PostgreSQL (asyncpg) is
the deployment target; SQLite through aiosqlite backs the test suite. Both
give the per-row atomic ``UPDATE ... WHERE`` the order lifecycle relies on.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from src.core.config import Settings, get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

# seconds a SQLite writer waits for a competing writer to commit
SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _convert_database_url_to_async(url: str) -> str:
    """Use the asyncpg driver for plain ``postgresql://`` URLs."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _engine_options(url: str, settings: Settings) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # one connection per session checkout
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT},
        }

    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {
            "server_settings": {"application_name": settings.app_name},
            "command_timeout": 60,
            "timeout": settings.db_connect_timeout_seconds,
        },
    }


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create an async engine for ``database_url`` (default: settings).

    Args:
        database_url: Override for ``settings.database_url``
    """
    settings = get_settings()
    url = _convert_database_url_to_async(database_url or settings.database_url)

    engine = create_async_engine(url, echo=settings.debug, **_engine_options(url, settings))

    logger.info(
        "Database engine created",
        dialect=engine.dialect.name,
        environment=settings.environment,
    )
    return engine


def get_engine() -> AsyncEngine:
    """
    Return the process-wide engine, creating it on first use.

    Raises:
        RuntimeError: If the engine cannot be created from settings
    """
    global _engine

    if _engine is None:
        try:
            _engine = create_engine()
        except Exception as e:
            logger.error(
                "Failed to create database engine",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Database engine initialization failed: {e}") from e

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work around one request.

    Services commit their own writes; this commits anything left pending and
    rolls back on error. Database errors are logged here, lifecycle errors
    are expected outcomes and only rolled back.
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(
            "Database session rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Example:
        @router.get("/orders/{order_id}")
        async def read_order(order_id: UUID, db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session() as session:
        yield session


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Run ``SELECT 1`` with exponential backoff between attempts.

    Returns:
        True once a query succeeds, False when all attempts failed
    """
    for attempt in range(max_retries):
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (OperationalError, DBAPIError) as e:
            logger.warning(
                "Database health check failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay * (2**attempt))
        except SQLAlchemyError as e:
            logger.error(
                "Database health check failed - SQLAlchemy error",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    logger.error("Database health check failed after all retries", max_retries=max_retries)
    return False


async def close_database_connections() -> None:
    """Dispose of the engine at shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        try:
            await _engine.dispose()
            logger.info("Database connections closed")
        finally:
            _engine = None
            _session_factory = None
