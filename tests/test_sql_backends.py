import asyncio
from types import SimpleNamespace

import psycopg
import pymysql
import pytest
from psycopg import AsyncConnection

from analytics_engine.datasources.base import ConnectionConfig
from analytics_engine.datasources.mysql import MySQLBackend
from analytics_engine.datasources.postgres import PostgresBackend
from analytics_engine.errors import EngineError
from analytics_engine.schemas import QueryRequest
from analytics_engine.services.compiler import CompiledQuery, compile_query


def _compiled(dialect: str) -> CompiledQuery:
    request = QueryRequest.model_validate(
        {
            "org_id": "org-1",
            "dataset_id": "ds-1",
            "dims": [{"field": "pais"}],
            "metrics": [{"field": "vendas", "agg": "sum"}],
            "filters": [{"field": "pais", "operator": "neq", "value": "EUA"}],
        }
    )
    return compile_query(request, dataset_sql="SELECT * FROM sales", dialect=dialect)


class _FakePgCursor:
    def __init__(self) -> None:
        self.description = [SimpleNamespace(name="pais", type_code=25), SimpleNamespace(name="vendas_sum", type_code=20)]

    async def fetchall(self):
        return [("Alemanha", 2900), ("Brasil", 2000)]


class _FakePgConnection:
    def __init__(self) -> None:
        self.read_only = False
        self.closed = False
        self.executed: list[tuple[str, list[object]]] = []

    async def set_read_only(self, value: bool) -> None:
        self.read_only = value

    async def execute(self, sql: str, params: list[object]):
        self.executed.append((sql, params))
        return _FakePgCursor()

    async def close(self) -> None:
        self.closed = True


def test_postgres_runs_read_only_with_bound_params(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _FakePgConnection()
    seen: dict[str, object] = {}

    async def fake_connect(**kwargs):
        seen.update(kwargs)
        return conn

    monkeypatch.setattr(AsyncConnection, "connect", fake_connect)
    backend = PostgresBackend(
        ConnectionConfig(connection_type="postgresql", host="db", database="bi", user="bi", password="pw"),
        statement_timeout_seconds=15,
    )

    columns, rows = asyncio.run(backend.run(_compiled("postgresql")))

    assert columns == ["pais", "vendas_sum"]
    assert rows == [["Alemanha", 2900], ["Brasil", 2000]]
    assert conn.read_only is True
    assert conn.closed is True
    assert conn.executed[0][1] == ["EUA"]
    assert seen["options"] == "-c statement_timeout=15000"
    assert seen["port"] == 5432


@pytest.mark.parametrize(
    ("message", "code"),
    [
        ("connection refused", "CONNECTION_FAILED"),
        ('could not translate host name "nope" to address', "DNS_ERROR"),
        ('password authentication failed for user "bi"', "AUTH_FAILED"),
        ("SSL error: certificate verify failed", "TLS_HANDSHAKE"),
        ("something odd happened", "CONNECTION_FAILED"),
    ],
)
def test_postgres_connect_failures_are_classified(monkeypatch: pytest.MonkeyPatch, message: str, code: str) -> None:
    async def fake_connect(**kwargs):
        _ = kwargs
        raise psycopg.OperationalError(message)

    monkeypatch.setattr(AsyncConnection, "connect", fake_connect)
    backend = PostgresBackend(ConnectionConfig(connection_type="postgresql", host="db", password="pw"))

    with pytest.raises(EngineError) as exc_info:
        asyncio.run(backend.run(_compiled("postgresql")))
    assert exc_info.value.code == code
    assert "pw" not in exc_info.value.message


def test_postgres_statement_errors_become_query_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _FakePgConnection()

    async def failing_execute(sql: str, params: list[object]):
        _ = sql
        _ = params
        raise psycopg.errors.UndefinedColumn('column "vendas" does not exist')

    conn.execute = failing_execute  # type: ignore[method-assign]

    async def fake_connect(**kwargs):
        _ = kwargs
        return conn

    monkeypatch.setattr(AsyncConnection, "connect", fake_connect)
    backend = PostgresBackend(ConnectionConfig(connection_type="postgresql", host="db"))

    with pytest.raises(EngineError) as exc_info:
        asyncio.run(backend.run(_compiled("postgresql")))
    assert exc_info.value.code == "QUERY_FAILED"
    assert exc_info.value.message == 'column "vendas" does not exist'
    assert conn.closed is True


def test_postgres_connection_is_closed_when_session_setup_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _FakePgConnection()

    async def failing_set_read_only(value: bool) -> None:
        _ = value
        raise psycopg.InterfaceError("connection lost during setup")

    conn.set_read_only = failing_set_read_only  # type: ignore[method-assign]

    async def fake_connect(**kwargs):
        _ = kwargs
        return conn

    monkeypatch.setattr(AsyncConnection, "connect", fake_connect)
    backend = PostgresBackend(ConnectionConfig(connection_type="postgresql", host="db"))

    with pytest.raises(EngineError) as exc_info:
        asyncio.run(backend.run(_compiled("postgresql")))
    assert exc_info.value.code == "QUERY_FAILED"
    assert conn.closed is True
    assert conn.executed == []


class _FakeMyCursor:
    def __init__(self, statements: list[tuple[str, object]]) -> None:
        self._statements = statements
        self.description = [("pais", 253), ("vendas_sum", 246)]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql: str, params: object = None) -> None:
        self._statements.append((sql, params))

    def fetchall(self):
        return (("Alemanha", 2900), ("Brasil", 2000))


class _FakeMyConnection:
    def __init__(self) -> None:
        self.statements: list[tuple[str, object]] = []
        self.closed = False

    def cursor(self):
        return _FakeMyCursor(self.statements)

    def close(self) -> None:
        self.closed = True


def test_mysql_switches_session_to_ansi_quotes(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _FakeMyConnection()
    monkeypatch.setattr(pymysql, "connect", lambda **kwargs: conn)
    backend = MySQLBackend(ConnectionConfig(connection_type="mysql", host="db", user="bi", password="pw"))

    columns, rows = asyncio.run(backend.run(_compiled("mysql")))

    assert columns == ["pais", "vendas_sum"]
    assert rows == [["Alemanha", 2900], ["Brasil", 2000]]
    assert "ANSI_QUOTES" in conn.statements[0][0]
    assert conn.statements[1][0] == "SET SESSION TRANSACTION READ ONLY"
    assert conn.statements[2][1] == ["EUA"]
    assert conn.closed is True


@pytest.mark.parametrize(
    ("errno", "code"),
    [(1045, "AUTH_FAILED"), (2003, "CONNECTION_FAILED"), (2005, "DNS_ERROR"), (2026, "TLS_HANDSHAKE")],
)
def test_mysql_connect_errors_are_classified(monkeypatch: pytest.MonkeyPatch, errno: int, code: str) -> None:
    def fake_connect(**kwargs):
        _ = kwargs
        raise pymysql.err.OperationalError(errno, "server said no")

    monkeypatch.setattr(pymysql, "connect", fake_connect)
    backend = MySQLBackend(ConnectionConfig(connection_type="mysql", host="db"))

    with pytest.raises(EngineError) as exc_info:
        asyncio.run(backend.run(_compiled("mysql")))
    assert exc_info.value.code == code


def test_mysql_describe_maps_field_types(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _FakeMyConnection()
    monkeypatch.setattr(pymysql, "connect", lambda **kwargs: conn)
    backend = MySQLBackend(ConnectionConfig(connection_type="mysql", host="db"))

    described = asyncio.run(backend.describe(dataset_sql="SELECT * FROM sales;", source_table=None))

    assert described == [("pais", "var_string"), ("vendas_sum", "newdecimal")]
    assert conn.statements[-1][0] == "SELECT * FROM (SELECT * FROM sales) AS source LIMIT 0"
