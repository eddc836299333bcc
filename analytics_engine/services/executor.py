from __future__ import annotations

import asyncio
from dataclasses import dataclass
from time import perf_counter

from analytics_engine.datasources.base import ConnectionConfig, normalize_scalar
from analytics_engine.datasources.registry import BackendRegistry
from analytics_engine.errors import EngineError
from analytics_engine.schemas import QueryResult
from analytics_engine.services.compiler import CompiledQuery


@dataclass(slots=True)
class ExecutionLimits:
    timeout_seconds: float = 15
    max_rows: int = 5000


class QueryExecutor:
    """Runs compiled queries on whichever backend the connection type selects.

    The timeout is wall-clock around the whole backend call, connect included.
    Backends release their connection in ``finally``, so cancellation by the
    timeout closes it as well.
    """

    def __init__(self, registry: BackendRegistry) -> None:
        self._registry = registry

    async def execute(self, query: CompiledQuery, config: ConnectionConfig, limits: ExecutionLimits) -> QueryResult:
        started = perf_counter()
        backend = self._registry.create(config)
        try:
            columns, rows = await asyncio.wait_for(backend.run(query), timeout=limits.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise EngineError(
                code="TIMEOUT",
                message=f"Query did not finish within {limits.timeout_seconds:g}s",
            ) from exc

        effective_limit = min(query.limit, limits.max_rows)
        normalized = [[normalize_scalar(value) for value in row] for row in rows[:effective_limit]]
        for row in normalized:
            if len(row) != len(columns):
                raise EngineError(code="QUERY_FAILED", message="Backend returned rows that do not match the column header")

        elapsed_ms = max(0, int((perf_counter() - started) * 1000))
        return QueryResult(
            columns=list(columns),
            rows=normalized,
            truncated=len(normalized) == effective_limit,
            elapsed_ms=elapsed_ms,
        )

    async def describe(
        self,
        config: ConnectionConfig,
        *,
        dataset_sql: str | None,
        source_table: str | None,
        timeout_seconds: float,
    ) -> list[tuple[str, str]]:
        backend = self._registry.create(config)
        try:
            return await asyncio.wait_for(
                backend.describe(dataset_sql=dataset_sql, source_table=source_table),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise EngineError(code="TIMEOUT", message="Schema introspection timed out") from exc
