from __future__ import annotations

import asyncio
from typing import Any

import pymysql
from pymysql.constants import FIELD_TYPE

from analytics_engine.datasources.base import (
    ConnectionConfig,
    Rows,
    classify_connection_message,
    connectivity_error,
    query_failed,
)
from analytics_engine.errors import ErrorCode
from analytics_engine.services.compiler import CompiledQuery, describe_sql

# Client error numbers raised before a session exists.
_CONNECT_ERRNO: dict[int, ErrorCode] = {
    1044: "AUTH_FAILED",
    1045: "AUTH_FAILED",
    2003: "CONNECTION_FAILED",
    2005: "DNS_ERROR",
    2006: "CONNECTION_FAILED",
    2013: "CONNECTION_FAILED",
    2026: "TLS_HANDSHAKE",
}

# CHAR and INTERVAL are aliases of TINY and ENUM.
_FIELD_TYPE_NAMES = {
    getattr(FIELD_TYPE, name): name.lower()
    for name in dir(FIELD_TYPE)
    if name.isupper() and name not in {"CHAR", "INTERVAL"}
}

_SESSION_SETUP = (
    "SET SESSION sql_mode = CONCAT_WS(',', NULLIF(@@SESSION.sql_mode, ''), 'ANSI_QUOTES')",
    "SET SESSION TRANSACTION READ ONLY",
)


class MySQLBackend:
    """PyMySQL is blocking, so every call runs in a worker thread.

    A timed-out call is abandoned by the executor; the thread still closes its
    own connection when the server eventually answers.
    """

    dialect = "mysql"

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        connect_timeout_seconds: int = 10,
        statement_timeout_seconds: int | None = None,
    ) -> None:
        self._config = config
        self._connect_timeout_seconds = connect_timeout_seconds
        self._statement_timeout_seconds = statement_timeout_seconds

    def _connect(self) -> pymysql.connections.Connection:
        kwargs: dict[str, Any] = {
            "host": self._config.host,
            "port": self._config.port or 3306,
            "user": self._config.user,
            "password": self._config.password or "",
            "database": self._config.database,
            "connect_timeout": self._connect_timeout_seconds,
            "charset": "utf8mb4",
        }
        if self._statement_timeout_seconds:
            kwargs["read_timeout"] = self._statement_timeout_seconds
        if (self._config.ssl_mode or "").lower() in {"require", "verify-ca", "verify-full"}:
            kwargs["ssl"] = {"check_hostname": self._config.ssl_mode.lower() == "verify-full"}
        return pymysql.connect(**kwargs)

    def _fetch_sync(self, sql: str, params: list[Any]) -> tuple[list[tuple[Any, ...]], Rows]:
        conn = None
        try:
            conn = self._connect()
            with conn.cursor() as cursor:
                for statement in _SESSION_SETUP:
                    cursor.execute(statement)
                cursor.execute(sql, params)
                rows = cursor.fetchall()
                description = list(cursor.description or [])
            return description, [list(row) for row in rows]
        except pymysql.err.OperationalError as exc:
            errno = exc.args[0] if exc.args and isinstance(exc.args[0], int) else None
            code = _CONNECT_ERRNO.get(errno) if errno is not None else None
            if code is None:
                code = classify_connection_message(str(exc))
            if code is not None:
                raise connectivity_error(code) from exc
            raise query_failed(exc) from exc
        except pymysql.err.MySQLError as exc:
            raise query_failed(exc) from exc
        finally:
            if conn is not None:
                conn.close()

    async def run(self, query: CompiledQuery) -> tuple[list[str], Rows]:
        description, rows = await asyncio.to_thread(self._fetch_sync, query.sql, query.params)
        return [str(column[0]) for column in description], rows

    async def describe(self, *, dataset_sql: str | None, source_table: str | None) -> list[tuple[str, str]]:
        sql = describe_sql(dataset_sql, source_table)
        description, _rows = await asyncio.to_thread(self._fetch_sync, sql, [])
        return [(str(column[0]), _FIELD_TYPE_NAMES.get(column[1], "unknown")) for column in description]
