from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from analytics_engine.errors import EngineError
from analytics_engine.schemas import DimensionSpec, FilterSpec, MetricSpec, QueryRequest

SOURCE_ALIAS = "source"
MAX_LIMIT = 5000


@dataclass(slots=True)
class CompiledQuery:
    sql: str
    params: list[Any]
    limit: int
    offset: int
    columns: list[str]
    dimensions: list[DimensionSpec] = field(default_factory=list)
    metrics: list[MetricSpec] = field(default_factory=list)
    filters: list[FilterSpec] = field(default_factory=list)
    order: list[tuple[int, str]] = field(default_factory=list)
    source_table: str | None = None


def quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def clamp_limit(requested: Any, *, max_rows: int = MAX_LIMIT) -> int:
    try:
        value = int(requested)
    except (TypeError, ValueError):
        value = 1
    return min(max(1, value), max_rows)


def clamp_offset(requested: Any) -> int:
    try:
        value = int(requested)
    except (TypeError, ValueError):
        value = 0
    return max(0, value)


def qualified_name(name: str) -> str:
    parts = [part for part in name.split(".") if part]
    return ".".join(quote_ident(part) for part in parts)


def _base_sql(dataset_sql: str | None, source_table: str | None) -> str:
    stripped = (dataset_sql or "").strip()
    if not stripped and source_table:
        return f"SELECT * FROM {qualified_name(source_table)}"
    while stripped.endswith(";"):
        stripped = stripped[:-1].rstrip()
    if not stripped:
        raise EngineError(code="INVALID_DATASET", message="Dataset has no SQL definition")
    # Drivers always receive a parameter list, so literal percent signs must be escaped.
    return stripped.replace("%", "%%")


def describe_sql(dataset_sql: str | None, source_table: str | None) -> str:
    return f"SELECT * FROM ({_base_sql(dataset_sql, source_table)}) AS {SOURCE_ALIAS} LIMIT 0"


def _metric_sql(agg: str, column: str) -> str:
    agg = agg.lower()
    if agg == "count_distinct":
        return f"COUNT(DISTINCT {quote_ident(column)})"
    return f"{agg.upper()}({quote_ident(column)})"


def _apply_filter(filters: list[FilterSpec], *, dialect: str) -> tuple[list[str], list[Any]]:
    where_parts: list[str] = []
    params: list[Any] = []
    like = "ILIKE" if dialect == "postgresql" else "LIKE"

    for item in filters:
        column = f"{SOURCE_ALIAS}.{quote_ident(item.field)}"
        op = item.operator.lower()
        value = item.value

        if op == "eq":
            where_parts.append(f"{column} = %s")
            params.append(value)
        elif op == "neq":
            where_parts.append(f"{column} <> %s")
            params.append(value)
        elif op == "gt":
            where_parts.append(f"{column} > %s")
            params.append(value)
        elif op == "gte":
            where_parts.append(f"{column} >= %s")
            params.append(value)
        elif op == "lt":
            where_parts.append(f"{column} < %s")
            params.append(value)
        elif op == "lte":
            where_parts.append(f"{column} <= %s")
            params.append(value)
        elif op == "contains":
            where_parts.append(f"CAST({column} AS TEXT) {like} %s" if dialect == "postgresql" else f"{column} {like} %s")
            params.append(f"%{value}%")
        elif op in {"in", "not_in"}:
            values = value if isinstance(value, list) else [value]
            if not values:
                raise EngineError(code="INVALID_FILTER", message=f"{op} filter requires at least one value")
            placeholders = ", ".join(["%s"] * len(values))
            operator = "IN" if op == "in" else "NOT IN"
            where_parts.append(f"{column} {operator} ({placeholders})")
            params.extend(values)
        elif op == "between":
            if not isinstance(value, list) or len(value) != 2:
                raise EngineError(code="INVALID_FILTER", message="between filter requires [start, end]")
            where_parts.append(f"{column} BETWEEN %s AND %s")
            params.extend(value)
        elif op == "is_null":
            where_parts.append(f"{column} IS NULL")
        elif op == "not_null":
            where_parts.append(f"{column} IS NOT NULL")
        else:
            raise EngineError(code="INVALID_FILTER", message=f"Unsupported filter operator '{op}'")

    return where_parts, params


def resolve_order(request: QueryRequest) -> list[tuple[int, str]]:
    positions: dict[str, int] = {}
    for index, dimension in enumerate(request.dims, start=1):
        positions.setdefault(dimension.output_alias, index)
        positions.setdefault(dimension.field, index)
    for index, metric in enumerate(request.metrics, start=len(request.dims) + 1):
        positions.setdefault(metric.output_alias, index)
        positions.setdefault(metric.field, index)

    resolved: list[tuple[int, str]] = []
    for item in request.order:
        position = positions.get(item.field)
        if position is None:
            raise EngineError(code="INVALID_IDENTIFIER", message=f"Order field '{item.field}' is not selected")
        direction = "DESC" if str(item.direction).lower() == "desc" else "ASC"
        resolved.append((position, direction))
    return resolved or [(1, "ASC")]


def compile_query(
    request: QueryRequest,
    *,
    dataset_sql: str | None,
    dialect: str = "postgresql",
    max_rows: int = MAX_LIMIT,
    source_table: str | None = None,
) -> CompiledQuery:
    """Wrap the dataset SQL as a derived table and aggregate over it.

    Expects a request that already passed ``validate_request``.
    """
    base_sql = _base_sql(dataset_sql, source_table)

    select_parts: list[str] = []
    columns: list[str] = []
    for dimension in request.dims:
        alias = dimension.output_alias
        select_parts.append(f"{SOURCE_ALIAS}.{quote_ident(dimension.field)} AS {quote_ident(alias)}")
        columns.append(alias)
    for metric in request.metrics:
        alias = metric.output_alias
        select_parts.append(f"{_metric_sql(metric.agg, metric.field)} AS {quote_ident(alias)}")
        columns.append(alias)

    if not select_parts:
        raise EngineError(code="NO_FIELDS", message="At least one dimension or metric is required")

    query_parts = [
        f"SELECT {', '.join(select_parts)}",
        f"FROM ({base_sql}) AS {SOURCE_ALIAS}",
    ]

    where_parts, params = _apply_filter(request.filters, dialect=dialect)
    if where_parts:
        query_parts.append("WHERE " + " AND ".join(where_parts))

    # Positional on purpose: engines disagree on whether GROUP BY sees aliases.
    if request.dims:
        query_parts.append("GROUP BY " + ", ".join(str(index) for index in range(1, len(request.dims) + 1)))

    order = resolve_order(request)
    order_sql = ", ".join(str(position) if direction == "ASC" else f"{position} DESC" for position, direction in order)
    query_parts.append(f"ORDER BY {order_sql}")

    safe_limit = clamp_limit(request.limit, max_rows=max_rows)
    safe_offset = clamp_offset(request.offset)
    query_parts.append(f"LIMIT {safe_limit}")
    query_parts.append(f"OFFSET {safe_offset}")

    return CompiledQuery(
        sql=" ".join(query_parts),
        params=params,
        limit=safe_limit,
        offset=safe_offset,
        columns=columns,
        dimensions=list(request.dims),
        metrics=list(request.metrics),
        filters=list(request.filters),
        order=order,
        source_table=source_table,
    )
