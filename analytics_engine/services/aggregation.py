"""In-process grouping with the same semantics as the generated SQL.

Used wherever the backend cannot aggregate for us: PostgREST sources and the
demo dataset that widgets fall back to when no connection is bound. NULLs are
skipped exactly like SQL aggregate functions skip them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal
from typing import Any

from analytics_engine.schemas import QueryResult


class AggregationError(ValueError):
    pass


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _numbers(values: list[Any], agg: str) -> list[Any]:
    for value in values:
        if not _is_number(value):
            raise AggregationError(f"Cannot apply {agg} to non-numeric value {value!r}")
    return values


def _group_key(value: Any) -> Any:
    # JSON columns can hold objects and arrays.
    if isinstance(value, (dict, list)):
        return (type(value).__name__, repr(value))
    return value


def aggregate_values(values: Iterable[Any], agg: str) -> Any:
    agg = agg.lower()
    present = [value for value in values if value is not None]
    if agg == "count":
        return len(present)
    if agg == "count_distinct":
        return len({_group_key(value) for value in present})
    if not present:
        return None
    if agg == "sum":
        return sum(_numbers(present, agg))
    if agg == "avg":
        numbers = _numbers(present, agg)
        return sum(numbers) / len(numbers)
    try:
        if agg == "min":
            return min(present)
        if agg == "max":
            return max(present)
    except TypeError as exc:
        raise AggregationError(f"Cannot compare values for {agg}") from exc
    raise AggregationError(f"Unsupported aggregation '{agg}'")


def aggregate(
    records: Iterable[Mapping[str, Any]],
    *,
    dimensions: Sequence[str],
    metrics: Sequence[tuple[str, str]],
) -> list[list[Any]]:
    """Group ``records`` by ``dimensions`` and reduce each ``(field, agg)`` metric.

    Rows come back positional, dimensions first, in first-seen group order.
    Without dimensions there is always exactly one row, as with an
    ungrouped ``SELECT SUM(...)``.
    """
    groups: dict[tuple[Any, ...], tuple[list[Any], list[list[Any]]]] = {}
    for record in records:
        values = [record.get(dimension) for dimension in dimensions]
        key = tuple(_group_key(value) for value in values)
        group = groups.get(key)
        if group is None:
            group = (values, [[] for _ in metrics])
            groups[key] = group
        for index, (field, _agg) in enumerate(metrics):
            group[1][index].append(record.get(field))

    if not dimensions and not groups:
        groups[()] = ([], [[] for _ in metrics])

    rows: list[list[Any]] = []
    for dimension_values, buckets in groups.values():
        row = list(dimension_values)
        for (_field, agg), values in zip(metrics, buckets):
            row.append(aggregate_values(values, agg))
        rows.append(row)
    return rows


def aggregate_series(
    records: Iterable[Mapping[str, Any]] | QueryResult,
    *,
    dimension: str,
    metric: str,
    agg: str,
) -> dict[Any, Any]:
    if isinstance(records, QueryResult):
        records = records_from_result(records)
    rows = aggregate(records, dimensions=[dimension], metrics=[(metric, agg)])
    return {row[0]: row[1] for row in rows}


def records_from_result(result: QueryResult) -> list[dict[str, Any]]:
    return [dict(zip(result.columns, row)) for row in result.rows]


def _sort_key(value: Any) -> tuple[bool, int, Any]:
    if value is None:
        return (True, 0, 0)
    if _is_number(value):
        return (False, 0, value)
    return (False, 1, str(value))


def sort_rows(rows: list[list[Any]], order: Sequence[tuple[int, str]]) -> list[list[Any]]:
    """Sort positional rows by 1-based column ordinals, NULLs last when ascending."""
    ordered = list(rows)
    for position, direction in reversed(order):
        ordered.sort(key=lambda row: _sort_key(row[position - 1]), reverse=direction.upper() == "DESC")
    return ordered
