from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Protocol

from analytics_engine.errors import EngineError, ErrorCode
from analytics_engine.services.compiler import CompiledQuery

Rows = list[list[Any]]


@dataclass(slots=True)
class ConnectionConfig:
    connection_type: str
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    ssl_mode: str = "prefer"
    api_url: str | None = None
    api_key: str | None = field(default=None, repr=False)
    schema: str = "public"


class DatasourceBackend(Protocol):
    dialect: str

    async def run(self, query: CompiledQuery) -> tuple[list[str], Rows]: ...

    async def describe(self, *, dataset_sql: str | None, source_table: str | None) -> list[tuple[str, str]]: ...


_DNS_MARKERS = (
    "could not translate host name",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "getaddrinfo failed",
    "unknown mysql server host",
    "name resolution",
)
_AUTH_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "access denied for user",
    "no pg_hba.conf entry",
    "invalid password",
    "scram",
    "role \"",
)
_TLS_MARKERS = ("ssl", "tls", "certificate", "handshake")
_CONNECT_MARKERS = (
    "connection refused",
    "could not connect",
    "can't connect",
    "connection timed out",
    "timeout expired",
    "network is unreachable",
    "no route to host",
    "connection reset",
    "server closed the connection",
)

_FRIENDLY_MESSAGES: dict[str, str] = {
    "DNS_ERROR": "Database host could not be resolved (check the host name)",
    "AUTH_FAILED": "Authentication failed (check user and password)",
    "TLS_HANDSHAKE": "SSL/TLS negotiation failed (check the SSL mode)",
    "CONNECTION_FAILED": "Database unreachable (check host, port and firewall)",
}


def classify_connection_message(message: str) -> ErrorCode | None:
    lowered = message.lower()
    if any(marker in lowered for marker in _DNS_MARKERS):
        return "DNS_ERROR"
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return "AUTH_FAILED"
    if any(marker in lowered for marker in _TLS_MARKERS):
        return "TLS_HANDSHAKE"
    if any(marker in lowered for marker in _CONNECT_MARKERS):
        return "CONNECTION_FAILED"
    return None


def connectivity_error(code: ErrorCode) -> EngineError:
    return EngineError(code=code, message=_FRIENDLY_MESSAGES.get(code, "Datasource connection failed"))


def sanitize_error_message(message: str) -> str:
    lowered = message.lower()
    if "password" in lowered or "://" in lowered or "apikey" in lowered:
        return "Datasource execution failed"
    return " ".join(message.split())[:500] or "Datasource execution failed"


def query_failed(exc: BaseException) -> EngineError:
    return EngineError(code="QUERY_FAILED", message=sanitize_error_message(str(exc)))


def normalize_scalar(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, dict)):
        return value
    return str(value)
