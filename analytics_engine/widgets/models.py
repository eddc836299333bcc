from __future__ import annotations

from datetime import date
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

WidgetType = Literal["scorecard", "bar", "line", "pie", "table"]

SCORECARD_PLACEHOLDER_LABEL = "select a metric"
TABLE_PREVIEW_ROWS = 10


class WidgetConfig(BaseModel):
    dimensions: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    aggregation: str = "sum"
    time_dimension: str | None = None


class Widget(BaseModel):
    id: str
    type: WidgetType
    config: WidgetConfig = Field(default_factory=WidgetConfig)


class DataBinding(BaseModel):
    """Where a widget reads from; without a dataset the demo records are used."""

    org_id: str | None = None
    dataset_id: str | None = None

    @property
    def is_mock(self) -> bool:
        return not self.dataset_id


class DateRange(BaseModel):
    start: date | None = None
    end: date | None = None

    @property
    def is_empty(self) -> bool:
        return self.start is None and self.end is None


class ScorecardData(BaseModel):
    label: str
    value: float | int = 0


class SeriesData(BaseModel):
    label: str = ""
    labels: list[Any] = Field(default_factory=list)
    values: list[float | int] = Field(default_factory=list)


class TableData(BaseModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)


WidgetData = Union[ScorecardData, SeriesData, TableData]
