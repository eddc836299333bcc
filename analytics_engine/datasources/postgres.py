from __future__ import annotations

from typing import Any

import psycopg
from psycopg import AsyncConnection

from analytics_engine.datasources.base import (
    ConnectionConfig,
    Rows,
    classify_connection_message,
    connectivity_error,
    query_failed,
)
from analytics_engine.errors import EngineError
from analytics_engine.services.compiler import CompiledQuery, describe_sql


def _type_name(type_code: Any) -> str:
    info = psycopg.postgres.types.get(type_code)
    return info.name if info is not None else "unknown"


class PostgresBackend:
    dialect = "postgresql"

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

    async def _connect(self) -> AsyncConnection[Any]:
        kwargs: dict[str, Any] = {
            "host": self._config.host,
            "port": self._config.port or 5432,
            "dbname": self._config.database,
            "user": self._config.user,
            "password": self._config.password,
            "sslmode": self._config.ssl_mode or "prefer",
            "connect_timeout": self._connect_timeout_seconds,
        }
        if self._statement_timeout_seconds:
            kwargs["options"] = f"-c statement_timeout={int(self._statement_timeout_seconds * 1000)}"
        try:
            conn = await AsyncConnection.connect(**kwargs)
        except psycopg.OperationalError as exc:
            raise connectivity_error(classify_connection_message(str(exc)) or "CONNECTION_FAILED") from exc
        try:
            await conn.set_read_only(True)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def _fetch(self, sql: str, params: list[Any]) -> tuple[list[Any], Rows]:
        conn: AsyncConnection[Any] | None = None
        try:
            conn = await self._connect()
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            description = list(cursor.description or [])
            return description, [list(row) for row in rows]
        except EngineError:
            raise
        except psycopg.OperationalError as exc:
            code = classify_connection_message(str(exc))
            if code is not None:
                raise connectivity_error(code) from exc
            raise query_failed(exc) from exc
        except psycopg.Error as exc:
            raise query_failed(exc) from exc
        finally:
            if conn is not None:
                await conn.close()

    async def run(self, query: CompiledQuery) -> tuple[list[str], Rows]:
        description, rows = await self._fetch(query.sql, query.params)
        return [column.name for column in description], rows

    async def describe(self, *, dataset_sql: str | None, source_table: str | None) -> list[tuple[str, str]]:
        sql = describe_sql(dataset_sql, source_table)
        description, _rows = await self._fetch(sql, [])
        return [(column.name, _type_name(column.type_code)) for column in description]
