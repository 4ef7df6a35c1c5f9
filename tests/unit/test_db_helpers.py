from contextlib import asynccontextmanager
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from support_monitor.db import helpers
from support_monitor.db.helpers import DatabaseError


class FakeCursor:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []
        self.rowcount = len(self.rows)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, query, params):
        if self.error is not None:
            raise self.error
        self.executed.append((query, params))

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor


@pytest.mark.asyncio
async def test_supplied_connection_is_used_instead_of_pool():
    cursor = FakeCursor(rows=[{"exists": True}])
    pooled = MagicMock()

    with patch.object(helpers, "get_db_connection", pooled):
        value = await helpers.fetch_val("SELECT EXISTS (...)", ("a",), connection=FakeConnection(cursor))

    assert value is True
    assert cursor.executed == [("SELECT EXISTS (...)", ("a",))]
    pooled.assert_not_called()


@pytest.mark.asyncio
async def test_query_errors_surface_as_database_error():
    cursor = FakeCursor(error=psycopg.OperationalError("server closed the connection"))

    with pytest.raises(DatabaseError) as exc_info:
        await helpers.execute_query("UPDATE contacts SET x = 1", connection=FakeConnection(cursor))

    assert exc_info.value.operation == "execute"


@pytest.mark.asyncio
async def test_execute_transaction_runs_every_statement_on_one_connection():
    cursor = FakeCursor()
    connection = FakeConnection(cursor)

    @asynccontextmanager
    async def fake_transaction():
        yield connection

    with patch.object(helpers, "get_db_transaction", fake_transaction):
        await helpers.execute_transaction([("CREATE TABLE a ()", ()), ("CREATE TABLE b ()", ())])

    assert [query for query, _ in cursor.executed] == ["CREATE TABLE a ()", "CREATE TABLE b ()"]


@pytest.mark.asyncio
async def test_transaction_wraps_driver_errors():
    @asynccontextmanager
    async def fake_transaction():
        yield FakeConnection(FakeCursor())

    with patch.object(helpers, "get_db_transaction", fake_transaction):
        with pytest.raises(DatabaseError) as exc_info:
            async with helpers.transaction():
                raise psycopg.OperationalError("could not serialize access")

    assert exc_info.value.operation == "transaction"
