from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from analytics_engine.datasources.base import (
    ConnectionConfig,
    Rows,
    classify_connection_message,
    connectivity_error,
    query_failed,
    sanitize_error_message,
)
from analytics_engine.errors import EngineError
from analytics_engine.schemas import FilterSpec
from analytics_engine.services.aggregation import AggregationError, aggregate, sort_rows
from analytics_engine.services.compiler import CompiledQuery

logger = logging.getLogger("uvicorn.error")

_RESERVED_CHARS_RE = re.compile(r"[,.:()\"\s]")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if _RESERVED_CHARS_RE.search(text):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


def _filter_params(filters: list[FilterSpec]) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for item in filters:
        op = item.operator.lower()
        value = item.value
        if op in {"eq", "neq", "gt", "gte", "lt", "lte"}:
            params.append((item.field, f"{op}.{_literal(value)}"))
        elif op == "contains":
            params.append((item.field, f"ilike.*{value}*"))
        elif op in {"in", "not_in"}:
            values = value if isinstance(value, list) else [value]
            if not values:
                raise EngineError(code="INVALID_FILTER", message=f"{op} filter requires at least one value")
            listed = ",".join(_literal(v) for v in values)
            params.append((item.field, f"in.({listed})" if op == "in" else f"not.in.({listed})"))
        elif op == "between":
            if not isinstance(value, list) or len(value) != 2:
                raise EngineError(code="INVALID_FILTER", message="between filter requires [start, end]")
            params.append((item.field, f"gte.{_literal(value[0])}"))
            params.append((item.field, f"lte.{_literal(value[1])}"))
        elif op == "is_null":
            params.append((item.field, "is.null"))
        elif op == "not_null":
            params.append((item.field, "not.is.null"))
        else:
            raise EngineError(code="INVALID_FILTER", message=f"Unsupported filter operator '{op}'")
    return params


def _infer_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "numeric"
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        return "timestamp" if "T" in value or " " in value else "date"
    if isinstance(value, (dict, list)):
        return "json"
    return "text"


class PostgrestBackend:
    """Meta-API source: PostgREST cannot GROUP BY, so rows are aggregated here."""

    dialect = "rest"

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        timeout_seconds: float = 15,
        scan_rows_max: int = 50000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.api_url:
            raise EngineError(code="CONNECTION_FAILED", message="REST connection has no API URL")
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._scan_rows_max = scan_rows_max
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Accept-Profile": self._config.schema or "public"}
        if self._config.api_key:
            headers["apikey"] = self._config.api_key
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def _get_rows(self, table: str, params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        base_url = self._config.api_url.rstrip("/")
        try:
            async with httpx.AsyncClient(
                base_url=base_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(f"/rest/v1/{table}", params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise EngineError(code="TIMEOUT", message="REST source did not answer in time") from exc
        except httpx.ConnectError as exc:
            raise connectivity_error(classify_connection_message(str(exc)) or "CONNECTION_FAILED") from exc
        except httpx.HTTPError as exc:
            raise query_failed(exc) from exc

        if response.status_code in {401, 403}:
            raise connectivity_error("AUTH_FAILED")
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = (body.get("message") if isinstance(body, dict) else None) or response.text
            raise EngineError(code="QUERY_FAILED", message=sanitize_error_message(str(detail or "REST query failed")))

        payload = response.json()
        if not isinstance(payload, list):
            raise EngineError(code="QUERY_FAILED", message="REST source returned an unexpected payload")
        return payload

    async def run(self, query: CompiledQuery) -> tuple[list[str], Rows]:
        if not query.source_table:
            raise EngineError(code="INVALID_DATASET", message="REST datasets require a source table")

        fields: list[str] = []
        for name in [d.field for d in query.dimensions] + [m.field for m in query.metrics]:
            if name not in fields:
                fields.append(name)
        params = [("select", ",".join(fields)), ("limit", str(self._scan_rows_max + 1)), ("offset", "0")]
        params.extend(_filter_params(query.filters))

        records = await self._get_rows(query.source_table, params)
        if len(records) > self._scan_rows_max:
            logger.warning(
                "engine.rest.scan_capped | %s",
                {"source_table": query.source_table, "scan_rows_max": self._scan_rows_max},
            )
            raise EngineError(
                code="QUERY_FAILED",
                message=f"REST source exceeds the scan ceiling of {self._scan_rows_max} rows; narrow it with filters",
            )

        try:
            rows = aggregate(
                records,
                dimensions=[d.field for d in query.dimensions],
                metrics=[(m.field, m.agg) for m in query.metrics],
            )
        except AggregationError as exc:
            raise EngineError(code="QUERY_FAILED", message=str(exc)) from exc

        rows = sort_rows(rows, query.order)
        return list(query.columns), rows[query.offset : query.offset + query.limit]

    async def describe(self, *, dataset_sql: str | None, source_table: str | None) -> list[tuple[str, str]]:
        _ = dataset_sql
        if not source_table:
            raise EngineError(code="INVALID_DATASET", message="REST datasets require a source table")
        records = await self._get_rows(source_table, [("select", "*"), ("limit", "1")])
        if not records:
            return []
        return [(str(name), _infer_type(value)) for name, value in records[0].items()]
