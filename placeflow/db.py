"""
Placeflow - Database Layer

Async PostgreSQL connection pooling via psycopg3 + psycopg_pool.

The pool is owned by AppContext; nothing here keeps module-level state.
Opening retries transient connection errors with exponential backoff and
verifies connectivity with SELECT 1 before handing the pool out.
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import psycopg
from psycopg_pool import AsyncConnectionPool
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import __version__
from .core.errors import InfrastructureError

logger = logging.getLogger(__name__)

MAX_CONNECT_ATTEMPTS = 5

TRANSIENT_EXCEPTIONS = (
    psycopg.OperationalError,
    TimeoutError,
    ConnectionError,
)


def describe_dsn(dsn: str) -> str:
    """host:port/dbname for logs, never the credentials."""
    parsed = urlparse(dsn)
    return f"{parsed.hostname or 'unknown'}:{parsed.port or 5432}{parsed.path or ''}"


async def _open_once(dsn: str, min_size: int, max_size: int) -> AsyncConnectionPool:
    app_name = "placeflow_v" + __version__.replace(".", "_")
    pool = AsyncConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"application_name": app_name},
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=10.0)
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                row = await cur.fetchone()
                if row is None or row[0] != 1:
                    raise psycopg.OperationalError("SELECT 1 did not return expected result")
    except BaseException:
        await pool.close()
        raise
    return pool


async def open_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> AsyncConnectionPool:
    """
    Open and verify a connection pool.

    Raises:
        InfrastructureError: when the database stays unreachable after retries
    """
    logger.info(f"Connecting to database {describe_dsn(dsn)}")
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_EXCEPTIONS),
            stop=stop_after_attempt(MAX_CONNECT_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                pool = await _open_once(dsn, min_size, max_size)
    except TRANSIENT_EXCEPTIONS as exc:
        raise InfrastructureError(f"Database unreachable: {type(exc).__name__}") from exc

    logger.info("Database pool initialized", extra={"count": max_size})
    return pool


async def close_pool(pool: AsyncConnectionPool | None) -> None:
    if pool is None:
        return
    await pool.close()
    logger.info("Database pool closed")
