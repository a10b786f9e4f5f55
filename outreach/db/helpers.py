# outreach/db/helpers.py
"""
Query helpers for the repository layer.

Every psycopg error surfaces as DatabaseError carrying the SQLSTATE, so
callers can tell a missing table (ledger not migrated) from a transient
failure.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any

import psycopg

from outreach.db.pool import get_db_connection
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

UNDEFINED_TABLE = "42P01"


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        recoverable: bool = True,
        sqlstate: str | None = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable
        self.sqlstate = sqlstate

    @property
    def is_missing_table(self) -> bool:
        return self.sqlstate == UNDEFINED_TABLE


def _wrap(e: psycopg.Error, operation: str) -> DatabaseError:
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        recoverable=isinstance(e, psycopg.OperationalError),
        sqlstate=getattr(e, "sqlstate", None),
    )


@asynccontextmanager
async def _cursor(
    connection: psycopg.AsyncConnection | None,
) -> AsyncIterator[psycopg.AsyncCursor]:
    """Cursor on the caller's connection (inside a transaction) or a pooled one."""
    if connection is not None:
        async with connection.cursor() as cur:
            yield cur
        return

    async with await get_db_connection() as conn:
        async with conn.cursor() as cur:
            yield cur


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return the first row as a dict, or None.

    Pass `connection` to run inside an open transaction.
    """
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchone()
    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise _wrap(e, "fetch_one") from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return await cur.fetchall()
    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise _wrap(e, "fetch_all") from e


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row (counts, EXISTS checks)."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """
    Execute a write and return the number of affected rows.

    Guarded updates (`WHERE status = ANY(...)`) rely on the row count to
    tell whether this caller won the transition.
    """
    try:
        async with _cursor(connection) as cur:
            await cur.execute(query, params)
            return cur.rowcount
    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise _wrap(e, "execute") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry reads on recoverable DatabaseError with exponential backoff.

    Only wrap idempotent reads; writes retry at the job level on the next run.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable or attempt >= max_retries:
                        logger.error(
                            "Database operation failed",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
