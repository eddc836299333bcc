from __future__ import annotations

import logging
from typing import Protocol

from analytics_engine.datasources.registry import BackendRegistry
from analytics_engine.errors import EngineError
from analytics_engine.schemas import DataField, DatasetFields, FieldRole, QueryRequest, QueryResult
from analytics_engine.services.catalog import ConnectionResolver, DatasetDefinition, DatasetResolver
from analytics_engine.services.compiler import compile_query
from analytics_engine.services.executor import ExecutionLimits, QueryExecutor
from analytics_engine.services.validator import validate_request
from analytics_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")

_NUMERIC_TYPES = frozenset(
    {
        "int2", "int4", "int8", "smallint", "integer", "bigint", "numeric", "decimal", "newdecimal",
        "float4", "float8", "real", "double", "double precision", "float", "money",
        "tiny", "short", "long", "longlong", "int24", "interval",
    }
)
_TEMPORAL_TYPES = frozenset(
    {"date", "newdate", "time", "timetz", "timestamp", "timestamptz", "datetime", "year"}
)


class QueryService(Protocol):
    async def execute(self, request: QueryRequest) -> QueryResult: ...


def infer_field_role(data_type: str) -> FieldRole:
    lowered = (data_type or "").strip().lower()
    if lowered in _TEMPORAL_TYPES:
        return "time_dimension"
    if lowered in _NUMERIC_TYPES:
        return "metric"
    return "dimension"


class QueryEngine:
    """Validate, resolve, compile and execute one analytics request.

    Nothing reaches the generator until validation passed, and nothing reaches
    a datasource until the dataset was found inside the caller's org.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        datasets: DatasetResolver,
        connections: ConnectionResolver,
        registry: BackendRegistry | None = None,
        executor: QueryExecutor | None = None,
    ) -> None:
        self._settings = settings
        self._datasets = datasets
        self._connections = connections
        self._registry = registry or BackendRegistry(settings)
        self._executor = executor or QueryExecutor(self._registry)

    async def _load_dataset(self, dataset_id: str, org_id: str) -> DatasetDefinition:
        dataset = await self._datasets.get_dataset(dataset_id)
        # Another org's dataset is reported exactly like a missing one.
        if dataset is None or dataset.org_id != org_id:
            raise EngineError(code="DATASET_NOT_FOUND", message=f"Dataset '{dataset_id}' not found")
        if not dataset.connection_id:
            raise EngineError(code="DATASET_NOT_FOUND", message=f"Dataset '{dataset_id}' has no connection")
        if not dataset.sql and not dataset.source_table:
            raise EngineError(code="INVALID_DATASET", message=f"Dataset '{dataset_id}' has no SQL definition")
        return dataset

    async def execute(self, request: QueryRequest, *, correlation_id: str | None = None) -> QueryResult:
        validate_request(request)
        org_id = str(request.org_id)
        dataset = await self._load_dataset(str(request.dataset_id), org_id)
        config = await self._connections.resolve(str(dataset.connection_id), org_id)
        compiled = compile_query(
            request,
            dataset_sql=dataset.sql,
            dialect=self._registry.dialect_for(config),
            max_rows=self._settings.query_limit_max,
            source_table=dataset.source_table,
        )
        result = await self._executor.execute(
            compiled,
            config,
            ExecutionLimits(
                timeout_seconds=self._settings.query_timeout_seconds,
                max_rows=self._settings.query_limit_max,
            ),
        )
        logger.info(
            "engine.query.execute | %s",
            {
                "correlation_id": correlation_id,
                "org_id": request.org_id,
                "dataset_id": request.dataset_id,
                "connection_type": config.connection_type,
                "execution_time_ms": result.elapsed_ms,
                "row_count": len(result.rows),
                "truncated": result.truncated,
            },
        )
        return result

    async def describe_dataset(self, dataset_id: str, org_id: str | None) -> DatasetFields:
        if not dataset_id or not org_id:
            raise EngineError(code="MISSING_PARAMS", message="org_id and dataset_id are required")
        dataset = await self._load_dataset(dataset_id, org_id)
        config = await self._connections.resolve(str(dataset.connection_id), org_id)
        columns = await self._executor.describe(
            config,
            dataset_sql=dataset.sql,
            source_table=dataset.source_table,
            timeout_seconds=self._settings.query_timeout_seconds,
        )
        source = dataset.source_table or dataset.name or dataset.id
        return DatasetFields(
            dataset_id=dataset.id,
            fields=[
                DataField(
                    id=f"{dataset.id}.{name}",
                    source_table=source,
                    name=name,
                    data_type=data_type,
                    role=infer_field_role(data_type),
                )
                for name, data_type in columns
            ],
        )
