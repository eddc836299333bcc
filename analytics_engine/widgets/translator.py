"""Turns dashboard widgets into engine requests and engine results into chart data.

A widget bound to a dataset goes through the shared result cache to a
``QueryService`` (the in-process engine or ``EngineClient``). An unbound widget
is answered from the demo records with the same grouping, ordering and
reshaping, so switching a widget between the two never changes its shape.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Any

from analytics_engine.errors import EngineError
from analytics_engine.schemas import DataField, DimensionSpec, FilterSpec, MetricSpec, QueryRequest, QueryResult
from analytics_engine.services.aggregation import AggregationError, aggregate, records_from_result, sort_rows
from analytics_engine.services.cache import CachedQueryService, ResultCache
from analytics_engine.services.compiler import clamp_limit, clamp_offset, resolve_order
from analytics_engine.services.pipeline import QueryService
from analytics_engine.services.validator import validate_request
from analytics_engine.settings import Settings, get_settings
from analytics_engine.widgets.mock_data import DEMO_DATASET_ID, DEMO_DATE_FIELD, DEMO_RECORDS, records_in_range
from analytics_engine.widgets.models import (
    SCORECARD_PLACEHOLDER_LABEL,
    TABLE_PREVIEW_ROWS,
    DataBinding,
    DateRange,
    ScorecardData,
    SeriesData,
    TableData,
    Widget,
    WidgetData,
)

logger = logging.getLogger(__name__)

DEMO_ORG_ID = "demo"


class GenerationTracker:
    """Monotonic request counter per widget; only the newest result may land."""

    def __init__(self) -> None:
        self._latest: dict[str, int] = {}
        self._lock = threading.Lock()

    def advance(self, widget_id: str) -> int:
        with self._lock:
            generation = self._latest.get(widget_id, 0) + 1
            self._latest[widget_id] = generation
            return generation

    def is_current(self, widget_id: str, generation: int) -> bool:
        with self._lock:
            return self._latest.get(widget_id) == generation


def placeholder(widget: Widget) -> WidgetData:
    if widget.type == "scorecard":
        return ScorecardData(value=0, label=SCORECARD_PLACEHOLDER_LABEL)
    if widget.type == "table":
        return TableData()
    return SeriesData()


def _date_filters(time_field: str, date_range: DateRange | None) -> list[FilterSpec]:
    if date_range is None or date_range.is_empty:
        return []
    if date_range.start is not None and date_range.end is not None:
        return [
            FilterSpec(
                field=time_field,
                operator="between",
                value=[date_range.start.isoformat(), date_range.end.isoformat()],
            )
        ]
    if date_range.start is not None:
        return [FilterSpec(field=time_field, operator="gte", value=date_range.start.isoformat())]
    return [FilterSpec(field=time_field, operator="lte", value=date_range.end.isoformat())]


def build_request(
    widget: Widget,
    binding: DataBinding,
    date_range: DateRange | None = None,
    *,
    limit: int = 1000,
) -> QueryRequest | None:
    """One request per widget, or ``None`` when the widget is not configured enough to query."""
    config = widget.config
    agg = (config.aggregation or "sum").lower()

    if widget.type == "scorecard":
        if not config.metrics:
            return None
        dimensions: list[str] = []
        metrics = config.metrics[:1]
    elif widget.type == "table":
        if not config.dimensions and not config.metrics:
            return None
        dimensions = list(config.dimensions)
        metrics = list(config.metrics)
    else:
        if not config.dimensions or not config.metrics:
            return None
        dimensions = config.dimensions[:1]
        metrics = config.metrics[:1]

    # Demo records are filtered in memory; see ``run_demo_query``.
    filters = [] if binding.is_mock or not config.time_dimension else _date_filters(config.time_dimension, date_range)

    return QueryRequest(
        org_id=binding.org_id or (DEMO_ORG_ID if binding.is_mock else None),
        dataset_id=binding.dataset_id or DEMO_DATASET_ID,
        dims=[DimensionSpec(field=field, alias=field) for field in dimensions],
        metrics=[MetricSpec(field=field, agg=agg) for field in metrics],
        filters=filters,
        limit=limit,
    )


def run_demo_query(
    request: QueryRequest,
    records: Sequence[dict[str, Any]] = DEMO_RECORDS,
    *,
    time_field: str = DEMO_DATE_FIELD,
    date_range: DateRange | None = None,
) -> QueryResult:
    validate_request(request)
    selected = records_in_range(
        list(records),
        field=time_field,
        start=date_range.start if date_range else None,
        end=date_range.end if date_range else None,
    )
    rows = aggregate(
        selected,
        dimensions=[item.field for item in request.dims],
        metrics=[(item.field, item.agg) for item in request.metrics],
    )
    rows = sort_rows(rows, resolve_order(request))
    limit = clamp_limit(request.limit)
    offset = clamp_offset(request.offset)
    page = rows[offset : offset + limit]
    return QueryResult(
        columns=[item.output_alias for item in request.dims] + [item.output_alias for item in request.metrics],
        rows=page,
        truncated=len(page) == limit,
    )


def _as_number(value: Any) -> float | int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _field_label(field_id: str, fields: Sequence[DataField] | None) -> str:
    for field in fields or ():
        if field_id in (field.id, field.name):
            return field.name
    return field_id


def shape_result(
    widget: Widget,
    request: QueryRequest,
    result: QueryResult,
    fields: Sequence[DataField] | None = None,
) -> WidgetData:
    if widget.type == "table":
        return TableData(columns=list(result.columns), rows=[list(row) for row in result.rows[:TABLE_PREVIEW_ROWS]])

    metric = request.metrics[0]
    label = _field_label(metric.field, fields)
    records = records_from_result(result)

    if widget.type == "scorecard":
        value = records[0].get(metric.output_alias) if records else None
        return ScorecardData(label=label, value=round(_as_number(value), 2))

    dimension = request.dims[0].output_alias
    return SeriesData(
        label=label,
        labels=[record.get(dimension) if record.get(dimension) is not None else "N/A" for record in records],
        values=[_as_number(record.get(metric.output_alias)) for record in records],
    )


class WidgetTranslator:
    def __init__(
        self,
        service: QueryService | None = None,
        *,
        cache: ResultCache | None = None,
        settings: Settings | None = None,
        demo_records: Sequence[dict[str, Any]] = DEMO_RECORDS,
    ) -> None:
        settings = settings or get_settings()
        self._limit = settings.query_limit_default
        self._cache = (
            cache
            if cache is not None
            else ResultCache(
                ttl_seconds=settings.result_cache_ttl_seconds,
                max_entries=settings.result_cache_max_entries,
            )
        )
        self._service = (
            CachedQueryService(service, self._cache, singleflight_ttl_seconds=settings.singleflight_ttl_seconds)
            if service is not None
            else None
        )
        self._demo_records = demo_records
        self._generations = GenerationTracker()

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def render(
        self,
        widget: Widget,
        binding: DataBinding | None = None,
        *,
        date_range: DateRange | None = None,
        fields: Sequence[DataField] | None = None,
    ) -> WidgetData | None:
        """Widget data for the newest request, or ``None`` if a newer one superseded it."""
        binding = binding or DataBinding()
        generation = self._generations.advance(widget.id)
        try:
            data = await self._render(widget, binding, date_range, fields)
        except EngineError:
            if not self._generations.is_current(widget.id, generation):
                logger.debug("widget.render.stale_error | %s", {"widget_id": widget.id, "generation": generation})
                return None
            raise

        if not self._generations.is_current(widget.id, generation):
            logger.debug("widget.render.stale | %s", {"widget_id": widget.id, "generation": generation})
            return None
        return data

    async def _render(
        self,
        widget: Widget,
        binding: DataBinding,
        date_range: DateRange | None,
        fields: Sequence[DataField] | None,
    ) -> WidgetData:
        request = build_request(widget, binding, date_range, limit=self._limit)
        if request is None:
            return placeholder(widget)

        if binding.is_mock:
            try:
                result = run_demo_query(
                    request,
                    self._demo_records,
                    time_field=widget.config.time_dimension or DEMO_DATE_FIELD,
                    date_range=date_range,
                )
            except AggregationError as exc:
                logger.warning("widget.demo.aggregation_failed | %s", {"widget_id": widget.id, "reason": str(exc)})
                return placeholder(widget)
        else:
            if self._service is None:
                raise EngineError(code="CONNECTION_FAILED", message="No query service configured for bound widgets")
            result = await self._service.execute(request)

        return shape_result(widget, request, result, fields)
