"""PostgreSQL pool, connection scoping and read retries for the ledger and conversation stores."""

from __future__ import annotations

import asyncio
import functools
import random

from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import asyncpg

from tokenchat.api.middleware.exception_handlers import DatabaseError
from tokenchat.core.constants import Settings
from tokenchat.utils.logger import logger

P = ParamSpec("P")
T = TypeVar("T")

#: Failures worth another attempt; anything else is a bug or a constraint violation
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (asyncpg.PostgresConnectionError, asyncpg.InterfaceError)


class ConnectionPoolExhausted(DatabaseError):
    """No connection could be opened or checked out in time."""


async def create_database_pool(settings: Settings) -> asyncpg.Pool:
    """Open the pool described by the ``db_*`` settings.

    Each connection gets server-side statement and lock timeouts equal to
    ``db_command_timeout``.
    """
    timeout_ms = int(settings.db_command_timeout * 1000)

    async def init_connection(conn: asyncpg.Connection) -> None:
        await conn.execute(f"SET statement_timeout = {timeout_ms}")
        await conn.execute(f"SET lock_timeout = {timeout_ms}")

    try:
        async with asyncio.timeout(settings.db_connection_timeout):
            pool = await asyncpg.create_pool(
                dsn=settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=settings.db_command_timeout,
                statement_cache_size=settings.db_statement_cache_size,
                max_inactive_connection_lifetime=settings.db_max_inactive_connection_lifetime,
                init=init_connection,
            )
    except (TimeoutError, OSError, asyncpg.PostgresError) as e:
        raise ConnectionPoolExhausted(f"Could not open database pool: {e!r}", cause=e) from e

    logger.info(f"Database pool open ({settings.db_pool_min_size}..{settings.db_pool_max_size} connections)")
    return pool


@asynccontextmanager
async def acquire_connection(
    pool: asyncpg.Pool, *, timeout: float | None = None
) -> AsyncGenerator[asyncpg.Connection, None]:
    try:
        async with pool.acquire(timeout=timeout) as conn:
            yield conn
    except TimeoutError as e:
        raise ConnectionPoolExhausted(f"No free database connection within {timeout}s", cause=e) from e


@asynccontextmanager
async def transaction(
    pool: asyncpg.Pool,
    *,
    timeout: float | None = None,
    isolation: str = "read_committed",
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Check out a connection and run the block inside one transaction.

    Ledger mutations lock the balance row with ``SELECT ... FOR UPDATE`` in here,
    so the debit and its transaction row commit or roll back together.
    """
    async with acquire_connection(pool, timeout=timeout) as conn, conn.transaction(isolation=isolation):
        yield conn


@asynccontextmanager
async def use_connection(
    pool: asyncpg.Pool, conn: asyncpg.Connection | None = None
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Join the caller's connection (and its transaction) if given, otherwise check one out."""
    if conn is not None:
        yield conn
    else:
        async with acquire_connection(pool) as acquired:
            yield acquired


def _backoff(attempts: int, base_delay: float, max_delay: float) -> Iterator[float]:
    """Delays before attempts 2..n: doubling from ``base_delay`` with up to half a second of jitter."""
    for retry in range(attempts - 1):
        yield min(base_delay * 2**retry + random.uniform(0, 0.5), max_delay)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry a read on connection loss or pool exhaustion.

    Only for idempotent reads (balances, history, message lists). A retried
    debit or credit could apply twice.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 1
            for delay in _backoff(max_attempts, base_delay, max_delay):
                try:
                    return await func(*args, **kwargs)
                except (*TRANSIENT_ERRORS, ConnectionPoolExhausted) as e:
                    logger.warning(
                        f"{func.__qualname__} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {e}"
                    )
                await asyncio.sleep(delay)
                attempt += 1
            # Last attempt propagates its error
            return await func(*args, **kwargs)

        return wrapper

    return decorator


async def check_pool_health(pool: asyncpg.Pool) -> dict[str, Any]:
    """``SELECT 1`` round trip plus pool occupancy, as reported by ``/health``."""
    size, idle = pool.get_size(), pool.get_idle_size()
    try:
        async with acquire_connection(pool, timeout=5.0) as conn:
            healthy = await conn.fetchval("SELECT 1") == 1
    except (*TRANSIENT_ERRORS, ConnectionPoolExhausted, asyncpg.PostgresError, OSError) as e:
        logger.warning(f"Database health check failed: {e!r}")
        healthy = False

    return {
        "healthy": healthy,
        "pool_size": size,
        "pool_min_size": pool.get_min_size(),
        "pool_max_size": pool.get_max_size(),
        "free_connections": idle,
        "used_connections": size - idle,
    }


async def graceful_pool_close(pool: asyncpg.Pool, timeout: float = 10.0) -> None:
    """Give in-flight ledger transactions up to ``timeout`` seconds to finish, then close."""
    try:
        async with asyncio.timeout(timeout):
            while pool.get_size() > pool.get_idle_size():
                await asyncio.sleep(0.1)
    except TimeoutError:
        logger.warning(f"Closing database pool with {pool.get_size() - pool.get_idle_size()} connections still busy")

    await pool.close()
    logger.info("Database pool closed")
