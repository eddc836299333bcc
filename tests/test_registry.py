import pytest

from analytics_engine.datasources.base import ConnectionConfig, classify_connection_message, sanitize_error_message
from analytics_engine.datasources.mysql import MySQLBackend
from analytics_engine.datasources.postgres import PostgresBackend
from analytics_engine.datasources.postgrest import PostgrestBackend
from analytics_engine.datasources.registry import BackendRegistry, normalize_connection_type
from analytics_engine.settings import Settings


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("supabase", "postgresql"),
        ("Postgres", "postgresql"),
        ("postgresql", "postgresql"),
        ("rest_api", "rest"),
        ("REST", "rest"),
        ("mariadb", "mysql"),
        (None, ""),
    ],
)
def test_connection_type_aliases(raw: str | None, expected: str) -> None:
    assert normalize_connection_type(raw) == expected


def test_registry_picks_backend_by_type() -> None:
    registry = BackendRegistry(Settings(environment="test"))
    assert isinstance(registry.create(ConnectionConfig(connection_type="supabase", host="db")), PostgresBackend)
    assert isinstance(registry.create(ConnectionConfig(connection_type="mysql", host="db")), MySQLBackend)
    rest = registry.create(ConnectionConfig(connection_type="rest_api", api_url="https://x.supabase.co"))
    assert isinstance(rest, PostgrestBackend)
    assert registry.dialect_for(ConnectionConfig(connection_type="mysql")) == "mysql"


@pytest.mark.parametrize(
    ("message", "code"),
    [
        ('could not translate host name "db.invalid" to address', "DNS_ERROR"),
        ('password authentication failed for user "bi"', "AUTH_FAILED"),
        ("SCRAM exchange: wrong proof", "AUTH_FAILED"),
        ("SSL SYSCALL error: EOF detected", "TLS_HANDSHAKE"),
        ("connect ECONNREFUSED: connection refused", "CONNECTION_FAILED"),
        ('relation "sales" does not exist', None),
    ],
)
def test_connection_messages_are_classified(message: str, code: str | None) -> None:
    assert classify_connection_message(message) == code


def test_error_messages_never_leak_credentials() -> None:
    assert sanitize_error_message("failed for postgresql://bi:secret@db/x") == "Datasource execution failed"
    assert sanitize_error_message("bad password for user") == "Datasource execution failed"
    assert sanitize_error_message('column  "x"\n does not exist') == 'column "x" does not exist'


def test_connection_config_repr_hides_secrets() -> None:
    config = ConnectionConfig(connection_type="postgresql", password="hunter2", api_key="key-123")
    assert "hunter2" not in repr(config)
    assert "key-123" not in repr(config)
