from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

FieldRole = Literal["dimension", "metric", "time_dimension"]


class DimensionSpec(BaseModel):
    field: str
    alias: str | None = None

    @property
    def output_alias(self) -> str:
        return self.alias if self.alias is not None else self.field


class MetricSpec(BaseModel):
    field: str
    agg: str = "sum"
    alias: str | None = None

    @property
    def output_alias(self) -> str:
        # "<metric>_<aggregation>" is what widgets look the value up by.
        if self.alias is not None:
            return self.alias
        return f"{self.field}_{str(self.agg).lower()}"


class FilterSpec(BaseModel):
    field: str
    operator: str = "eq"
    value: Any | None = None


class OrderSpec(BaseModel):
    field: str
    direction: str = "asc"


class QueryRequest(BaseModel):
    org_id: str | None = None
    dataset_id: str | None = None
    dims: list[DimensionSpec] = Field(default_factory=list)
    metrics: list[MetricSpec] = Field(default_factory=list)
    filters: list[FilterSpec] = Field(default_factory=list)
    order: list[OrderSpec] = Field(default_factory=list)
    limit: int = 1000
    offset: int = 0


class QueryResult(BaseModel):
    columns: list[str] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)
    truncated: bool = False
    elapsed_ms: int = 0


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    elapsed_ms: int = 0
    error_id: str | None = None


class DataField(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source_table: str
    name: str
    data_type: str
    role: FieldRole = "dimension"

    def with_role(self, role: FieldRole) -> DataField:
        return self.model_copy(update={"role": role})


class DatasetFields(BaseModel):
    dataset_id: str
    fields: list[DataField] = Field(default_factory=list)
