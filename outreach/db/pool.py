# outreach/db/pool.py
"""
PostgreSQL connection pool shared by the batch workers and the cron API.

Worker invocations are short-lived: open the pool, run one job, close it.
The API keeps the pool for its lifetime. Connections run in autocommit
mode; multi-row writes go through transaction().
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from outreach.config import settings
from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0
SATURATED_UTILIZATION_PERCENT = 90


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None

    async def initialize(self) -> None:
        """Open the pool and check one connection."""
        if self.pool is not None:
            logger.warning("Database pool already initialized")
            return

        pool_config = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await pool.open()
            await pool.wait()
            self.pool = pool
            await self._ping()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self.pool = None
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info(
            "Database pool initialized",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            timeout=pool_config["timeout"],
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"outreach-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(
                sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_SECONDS}s")
            )
        )

    async def _ping(self) -> float:
        """Run SELECT 1 and return the round trip in milliseconds."""
        start = time.time()
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Unexpected result from SELECT 1")
        return (time.time() - start) * 1000

    async def close(self) -> None:
        if self.pool is None:
            return

        pool, self.pool = self.pool, None
        try:
            await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection from the pool.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if self.pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection inside a transaction: commit on exit, roll back on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    def _pool_stats(self) -> dict[str, Any]:
        stats = self.pool.get_stats()
        pool_size = stats.get("pool_size", 0)
        pool_available = stats.get("pool_available", 0)
        utilization = (pool_size - pool_available) / pool_size * 100 if pool_size > 0 else 0
        return {
            "pool_size": pool_size,
            "pool_available": pool_available,
            "pool_utilization_percent": round(utilization, 2),
            "requests_waiting": stats.get("requests_waiting", 0),
        }

    async def health_check(self) -> dict[str, Any]:
        """
        Check the pool for /readyz.

        Returns:
            dict with healthy flag, ping latency and pool_stats, or an error
        """
        if self.pool is None:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            connection_time_ms = await self._ping()
            pool_stats = self._pool_stats()
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        health = {
            "healthy": pool_stats["pool_utilization_percent"] < SATURATED_UTILIZATION_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round(connection_time_ms, 2),
            "pool_stats": pool_stats,
        }
        if pool_stats["requests_waiting"] > 0:
            health["warnings"] = [
                f"Requests waiting for connections: {pool_stats['requests_waiting']}"
            ]
        return health


# Global pool instance
db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
