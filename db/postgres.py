"""PostgreSQL engine, session factory and transient-failure retries.

The graph tables (content relationships, topic clusters, decisions) all live in
one database. Pool sizing comes from ``POSTGRES_POOL_MIN_SIZE``,
``POSTGRES_POOL_MAX_SIZE`` and ``POSTGRES_POOL_RECYCLE``.
"""

import asyncio
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import get_settings
from utils.logging import get_logger

logger = get_logger(__name__)

engine: AsyncEngine | None = None
async_session_maker: async_sessionmaker[AsyncSession] | None = None

T = TypeVar("T")

POSTGRES_RETRYABLE_EXCEPTIONS = (
    OperationalError,
    InterfaceError,
    DBAPIError,
    PoolTimeoutError,
    ConnectionError,
    TimeoutError,
    OSError,
)


class Base(DeclarativeBase):
    pass


def _calculate_backoff(
    attempt: int, base_delay: float = 1.0, max_delay: float = 8.0
) -> float:
    """Exponential backoff with up to one second of jitter."""
    return min(base_delay * (2**attempt), max_delay) + random.uniform(0, 1)


def _is_retryable_error(exc: Exception) -> bool:
    if not isinstance(exc, POSTGRES_RETRYABLE_EXCEPTIONS):
        return False
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    # Any other DBAPIError is a failed statement unless the connection dropped
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated
    return True


async def with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    operation_name: str = "database operation",
    **kwargs: Any,
) -> T:
    """Await ``operation(*args, **kwargs)``, retrying dropped connections.

    Statement errors (constraint violations, bad SQL) are raised immediately;
    connection-level failures are retried up to ``max_retries`` times.
    """
    attempt = 0
    while True:
        try:
            return await operation(*args, **kwargs)
        except Exception as e:
            if not _is_retryable_error(e):
                logger.error(f"{operation_name} failed: {type(e).__name__}: {e}")
                raise
            if attempt >= max_retries:
                logger.error(
                    f"{operation_name} gave up after {attempt + 1} attempts: "
                    f"{type(e).__name__}: {e}"
                )
                raise

            delay = _calculate_backoff(attempt, base_delay)
            logger.warning(
                f"{operation_name} hit {type(e).__name__}, "
                f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


async def init_postgres() -> None:
    """Create the engine and session factory, then any missing graph tables."""
    global engine, async_session_maker
    settings = get_settings()

    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.postgres_pool_min_size,
        max_overflow=settings.postgres_pool_max_size - settings.postgres_pool_min_size,
        pool_recycle=settings.postgres_pool_recycle,
    )
    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    # Registers the tables on Base.metadata
    import models.postgres  # noqa: F401

    async def create_tables() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    await with_retry(create_tables, operation_name="graph table creation")
    logger.info(
        f"PostgreSQL ready (pool {settings.postgres_pool_min_size}-"
        f"{settings.postgres_pool_max_size}, recycle {settings.postgres_pool_recycle}s)"
    )


async def close_postgres() -> None:
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
        logger.info("PostgreSQL pool closed")
    engine = None
    async_session_maker = None


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    if async_session_maker is None:
        raise RuntimeError("PostgreSQL is not initialized; call init_postgres() first")
    return async_session_maker


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session that commits on success and rolls back on error."""
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
