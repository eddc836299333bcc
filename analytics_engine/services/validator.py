"""Allow-list checks that every request passes before any SQL is assembled.

Column names and aliases cannot be bound as parameters, so they are only ever
accepted when they match a plain identifier pattern. Values never go through
here: the compiler always binds them.
"""

from __future__ import annotations

import re
from typing import Any

from analytics_engine.errors import EngineError
from analytics_engine.schemas import QueryRequest

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

AGGREGATIONS = frozenset({"sum", "avg", "min", "max", "count", "count_distinct"})
FILTER_OPERATORS = frozenset(
    {"eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "between", "is_null", "not_null"}
)


def validate_identifier(name: Any) -> bool:
    if not isinstance(name, str):
        return False
    return _IDENTIFIER_RE.fullmatch(name) is not None


def validate_aggregation(agg: Any) -> bool:
    if not isinstance(agg, str):
        return False
    return agg.lower() in AGGREGATIONS


def _require_identifier(value: Any, *, role: str) -> None:
    if not validate_identifier(value):
        raise EngineError(code="INVALID_IDENTIFIER", message=f"Invalid {role} identifier: {value!r}")


def validate_request(request: QueryRequest) -> None:
    """Reject the whole request on the first unsafe identifier or aggregation."""
    if not request.org_id or not request.dataset_id:
        raise EngineError(code="MISSING_PARAMS", message="org_id and dataset_id are required")

    for dimension in request.dims:
        _require_identifier(dimension.field, role="dimension field")
        _require_identifier(dimension.output_alias, role="dimension alias")

    for metric in request.metrics:
        _require_identifier(metric.field, role="metric field")
        if metric.alias is not None:
            _require_identifier(metric.alias, role="metric alias")
        if not validate_aggregation(metric.agg):
            raise EngineError(code="INVALID_AGGREGATION", message=f"Invalid aggregation: {metric.agg!r}")

    for item in request.filters:
        _require_identifier(item.field, role="filter field")
        if str(item.operator).lower() not in FILTER_OPERATORS:
            raise EngineError(code="INVALID_FILTER", message=f"Unsupported filter operator {item.operator!r}")

    for item in request.order:
        _require_identifier(item.field, role="order field")

    if not request.dims and not request.metrics:
        raise EngineError(code="NO_FIELDS", message="At least one dimension or metric is required")
