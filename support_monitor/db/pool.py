"""
PostgreSQL connection pool for the monitor.

One AsyncConnectionPool per process. Connections come out in autocommit mode
with dict rows and a UTC session timezone, so calendar-day bucketing in SQL
matches the UTC days used by the analytics service. Work that must be atomic,
such as ingesting one message, runs inside transaction().
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

from support_monitor.config import settings
from support_monitor.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Utilisation above which /readyz reports the pool as degraded
_SATURATED_PERCENT = 90
_WARN_PERCENT = 80


class DatabasePoolManager:
    """Lifecycle of the process-wide pool: open at startup, close at shutdown."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = self._pool_config()
        logger.info(
            "Opening database pool",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            environment=settings.environment,
        )

        try:
            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL, open=False, **pool_config
            )
            await self.pool.open()
            await self.pool.wait()

            # connection() refuses to hand out connections until this is set
            self._initialized = True
            await self._verify_connection()
        except Exception as e:
            logger.error("Failed to open database pool", error=str(e))
            self._initialized = False
            if self.pool is not None:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.warning("Error closing half-open pool", error=str(close_error))
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready", timeout=pool_config["timeout"])

    def _pool_config(self) -> dict[str, Any]:
        config = settings.get_db_pool_config()
        config["check"] = AsyncConnectionPool.check_connection
        config["configure"] = self._configure_connection
        return config

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Session setup for every connection the pool creates."""
        try:
            conn.row_factory = dict_row
            await conn.set_autocommit(True)
            await conn.execute(
                sql.SQL("SET application_name = {}").format(
                    sql.Literal(f"support-monitor-{settings.environment}")
                )
            )
            await conn.execute("SET timezone = 'UTC'")
            await conn.execute("SET statement_timeout = '30s'")
        except Exception:
            logger.exception("Failed to configure database connection")

    async def _verify_connection(self) -> None:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected result")

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database pool")
        try:
            if self.pool is not None:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
        finally:
            self._initialized = False
            self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Database pool is closed")
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection; each statement commits on its own."""
        self._ensure_open()
        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection wrapped in one transaction.

        Statements issued on the yielded connection commit together when the
        block exits normally and roll back together if it raises.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Round-trip a query and report pool utilisation for /readyz."""
        if self._closed:
            return {"healthy": False, "error": "Pool is closed", "service": "database_pool"}
        if not self._initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            started = time.perf_counter()
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
            connection_time_ms = (time.perf_counter() - started) * 1000

            stats = self.pool.get_stats()
            pool_size = stats.get("pool_size", 0)
            pool_available = stats.get("pool_available", 0)
            requests_waiting = stats.get("requests_waiting", 0)
            utilization = (pool_size - pool_available) / pool_size * 100 if pool_size else 0
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        health: dict[str, Any] = {
            "healthy": utilization < _SATURATED_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round(connection_time_ms, 2),
            "pool_stats": {
                "pool_size": pool_size,
                "pool_available": pool_available,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": requests_waiting,
            },
        }
        warnings = []
        if utilization > _WARN_PERCENT:
            warnings.append(f"High pool utilization: {utilization:.1f}%")
        if requests_waiting:
            warnings.append(f"Requests waiting for connections: {requests_waiting}")
        if warnings:
            health["warnings"] = warnings
        return health


db_pool = DatabasePoolManager()


def get_db_connection():
    """Autocommit connection context from the shared pool."""
    return db_pool.connection()


def get_db_transaction():
    """Transactional connection context from the shared pool."""
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
