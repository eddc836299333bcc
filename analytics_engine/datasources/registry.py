from __future__ import annotations

from collections.abc import Callable

import httpx

from analytics_engine.datasources.base import ConnectionConfig, DatasourceBackend
from analytics_engine.datasources.mysql import MySQLBackend
from analytics_engine.datasources.postgres import PostgresBackend
from analytics_engine.datasources.postgrest import PostgrestBackend
from analytics_engine.errors import EngineError
from analytics_engine.settings import Settings

BackendFactory = Callable[[ConnectionConfig], DatasourceBackend]

_TYPE_ALIASES: dict[str, str] = {
    "postgresql": "postgresql",
    "postgres": "postgresql",
    "supabase": "postgresql",
    "supabase_postgres": "postgresql",
    "supabase (postgres db)": "postgresql",
    "mysql": "mysql",
    "mariadb": "mysql",
    "rest": "rest",
    "rest_api": "rest",
    "postgrest": "rest",
    "supabase_api": "rest",
}


def normalize_connection_type(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    return _TYPE_ALIASES.get(normalized, normalized)


class BackendRegistry:
    def __init__(self, settings: Settings, *, rest_transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._factories: dict[str, BackendFactory] = {
            "postgresql": lambda config: PostgresBackend(
                config,
                connect_timeout_seconds=settings.connect_timeout_seconds,
                statement_timeout_seconds=settings.query_timeout_seconds,
            ),
            "mysql": lambda config: MySQLBackend(
                config,
                connect_timeout_seconds=settings.connect_timeout_seconds,
                statement_timeout_seconds=settings.query_timeout_seconds,
            ),
            "rest": lambda config: PostgrestBackend(
                config,
                timeout_seconds=settings.query_timeout_seconds,
                scan_rows_max=settings.rest_scan_rows_max,
                transport=rest_transport,
            ),
        }

    def register(self, connection_type: str, factory: BackendFactory) -> None:
        self._factories[normalize_connection_type(connection_type)] = factory

    def create(self, config: ConnectionConfig) -> DatasourceBackend:
        connection_type = normalize_connection_type(config.connection_type)
        factory = self._factories.get(connection_type)
        if factory is None:
            raise EngineError(
                code="QUERY_FAILED",
                message=f"Unsupported connection type '{config.connection_type}'",
            )
        return factory(config)

    def dialect_for(self, config: ConnectionConfig) -> str:
        return self.create(config).dialect
