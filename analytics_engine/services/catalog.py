"""Dataset and connection lookups the engine depends on.

The engine never owns this data: it only asks for a dataset definition by id
and for a connection scoped to an org. Credentials are decrypted on every
``resolve`` call and handed straight to the backend.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row

from analytics_engine.datasources.base import ConnectionConfig
from analytics_engine.errors import EngineError
from analytics_engine.security import SecretsVault


@dataclass(slots=True)
class DatasetDefinition:
    id: str
    org_id: str
    connection_id: str | None
    sql: str | None
    source_table: str | None = None
    name: str | None = None


@dataclass(slots=True)
class StoredConnection:
    id: str
    org_id: str
    connection_type: str
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    encrypted_password: str | None = field(default=None, repr=False)
    ssl_mode: str = "prefer"
    api_url: str | None = None
    encrypted_api_key: str | None = field(default=None, repr=False)
    # Keys kept in connection_config are stored in plain text.
    api_key: str | None = field(default=None, repr=False)
    schema: str = "public"
    is_active: bool = True


class DatasetResolver(Protocol):
    async def get_dataset(self, dataset_id: str) -> DatasetDefinition | None: ...


class ConnectionResolver(Protocol):
    async def resolve(self, connection_id: str, org_id: str) -> ConnectionConfig: ...


def _connection_unavailable() -> EngineError:
    return EngineError(code="CONNECTION_FAILED", message="Connection not found or inactive")


def _decrypt_connection(stored: StoredConnection, vault: SecretsVault) -> ConnectionConfig:
    return ConnectionConfig(
        connection_type=stored.connection_type,
        host=stored.host,
        port=stored.port,
        database=stored.database,
        user=stored.user,
        password=vault.decrypt(stored.encrypted_password) if stored.encrypted_password else None,
        ssl_mode=stored.ssl_mode,
        api_url=stored.api_url,
        api_key=stored.api_key or (vault.decrypt(stored.encrypted_api_key) if stored.encrypted_api_key else None),
        schema=stored.schema,
    )


class InMemoryCatalog:
    def __init__(self, vault: SecretsVault) -> None:
        self._vault = vault
        self._datasets: dict[str, DatasetDefinition] = {}
        self._connections: dict[str, StoredConnection] = {}

    def add_dataset(self, dataset: DatasetDefinition) -> None:
        self._datasets[dataset.id] = dataset

    def add_connection(self, connection: StoredConnection) -> None:
        self._connections[connection.id] = connection

    async def get_dataset(self, dataset_id: str) -> DatasetDefinition | None:
        return self._datasets.get(dataset_id)

    async def resolve(self, connection_id: str, org_id: str) -> ConnectionConfig:
        stored = self._connections.get(connection_id)
        if stored is None or stored.org_id != org_id or not stored.is_active:
            raise _connection_unavailable()
        return _decrypt_connection(stored, self._vault)


def _stored_connection_from_row(row: dict[str, Any]) -> StoredConnection:
    extra = row.get("connection_config") or {}
    if isinstance(extra, str):
        extra = json.loads(extra)
    ssl_mode = extra.get("ssl_mode") or ("require" if row.get("ssl_enabled") else "prefer")
    return StoredConnection(
        id=str(row["id"]),
        org_id=str(row["account_id"]),
        connection_type=str(row.get("connection_type") or "postgresql"),
        host=row.get("host"),
        port=row.get("port"),
        database=row.get("database_name"),
        user=row.get("username"),
        encrypted_password=row.get("encrypted_password"),
        ssl_mode=ssl_mode,
        api_url=extra.get("api_url") or extra.get("supabase_url") or row.get("host"),
        encrypted_api_key=row.get("encrypted_password"),
        api_key=extra.get("supabase_key") or extra.get("api_key"),
        schema=extra.get("schema_default") or "public",
        is_active=bool(row.get("is_active", True)),
    )


class PostgresCatalog:
    """Reads datasets and connections from the platform catalog database."""

    _DATASET_SOURCES = (
        "SELECT id, org_id, connection_id, sql_query, source_table, name FROM datasets WHERE id = %s",
        "SELECT id, org_id, connection_id, sql_query, NULL AS source_table, name FROM saved_queries WHERE id = %s",
    )
    _CONNECTION_SQL = (
        "SELECT id, account_id, connection_type, host, port, database_name, username, encrypted_password, "
        "ssl_enabled, connection_config, is_active FROM data_connections WHERE id = %s AND account_id = %s"
    )

    def __init__(self, database_url: str, vault: SecretsVault) -> None:
        self._database_url = database_url
        self._vault = vault

    async def _fetch_one(self, sql: str, params: list[Any]) -> dict[str, Any] | None:
        conn: AsyncConnection[Any] | None = None
        try:
            conn = await AsyncConnection.connect(self._database_url, row_factory=dict_row)
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()
        except psycopg.Error as exc:
            raise EngineError(code="INTERNAL_ERROR", message="Catalog lookup failed") from exc
        finally:
            if conn is not None:
                await conn.close()

    async def get_dataset(self, dataset_id: str) -> DatasetDefinition | None:
        for sql in self._DATASET_SOURCES:
            row = await self._fetch_one(sql, [dataset_id])
            if row is not None:
                return DatasetDefinition(
                    id=str(row["id"]),
                    org_id=str(row["org_id"]),
                    connection_id=str(row["connection_id"]) if row.get("connection_id") else None,
                    sql=row.get("sql_query"),
                    source_table=row.get("source_table"),
                    name=row.get("name"),
                )
        return None

    async def resolve(self, connection_id: str, org_id: str) -> ConnectionConfig:
        row = await self._fetch_one(self._CONNECTION_SQL, [connection_id, org_id])
        if row is None:
            raise _connection_unavailable()
        stored = _stored_connection_from_row(row)
        if not stored.is_active:
            raise _connection_unavailable()
        return _decrypt_connection(stored, self._vault)
