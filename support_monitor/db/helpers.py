"""
Query helpers used by the repositories.

Every helper takes an optional ``connection``. Without one the statement runs
on a pooled autocommit connection; with one (from ``transaction()``) it joins
that connection's open transaction. psycopg errors surface as DatabaseError.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from support_monitor.db.pool import get_db_connection, get_db_transaction
from support_monitor.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """A query or transaction failed; ``operation`` names the helper."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message)
        self.operation = operation


@asynccontextmanager
async def _cursor(
    connection: psycopg.AsyncConnection | None, operation: str, query: str
) -> AsyncIterator[psycopg.AsyncCursor]:
    try:
        if connection is not None:
            async with connection.cursor() as cur:
                yield cur
        else:
            async with get_db_connection() as conn:
                async with conn.cursor() as cur:
                    yield cur
    except psycopg.Error as e:
        logger.error("Database query failed", operation=operation, query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation=operation) from e


@asynccontextmanager
async def transaction() -> AsyncIterator[psycopg.AsyncConnection]:
    """
    Run the block's statements as one unit.

    Pass the yielded connection to the helpers (or repository methods) that
    must commit together. Any exception rolls every statement back.

    Example:
        async with transaction() as conn:
            contact = await contacts.upsert(..., connection=conn)
            await messages.create(..., connection=conn)
    """
    try:
        async with get_db_transaction() as conn:
            yield conn
    except psycopg.Error as e:
        logger.error("Transaction rolled back", error=str(e))
        raise DatabaseError(f"Transaction failed: {e}", operation="transaction") from e


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    async with _cursor(connection, "fetch_one", query) as cur:
        await cur.execute(query, params)
        return await cur.fetchone()


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    async with _cursor(connection, "fetch_all", query) as cur:
        await cur.execute(query, params)
        return await cur.fetchall()


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """First column of the first row, or None when there is no row."""
    row = await fetch_one(query, params, connection=connection)
    return next(iter(row.values())) if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write and return the affected row count."""
    async with _cursor(connection, "execute", query) as cur:
        await cur.execute(query, params)
        return cur.rowcount


async def execute_transaction(queries_and_params: list[tuple[str, tuple]]) -> None:
    """Run a fixed list of statements atomically, e.g. the schema bootstrap."""
    async with transaction() as conn:
        for query, params in queries_and_params:
            await execute_query(query, params, connection=conn)
    logger.debug("Transaction committed", query_count=len(queries_and_params))
