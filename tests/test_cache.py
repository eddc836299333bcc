import asyncio

import pytest

from analytics_engine.errors import EngineError
from analytics_engine.schemas import QueryRequest, QueryResult
from analytics_engine.services.cache import CachedQueryService, ResultCache, build_cache_key


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _CountingService:
    def __init__(self, *, delay: float = 0.0, fail: bool = False) -> None:
        self.calls = 0
        self._delay = delay
        self._fail = fail

    async def execute(self, request: QueryRequest) -> QueryResult:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._fail:
            raise EngineError(code="QUERY_FAILED", message="boom")
        return QueryResult(columns=["pais", "vendas_sum"], rows=[["Brasil", self.calls]])


def _request(**overrides: object) -> QueryRequest:
    payload: dict[str, object] = {
        "org_id": "org-1",
        "dataset_id": "ds-1",
        "dims": [{"field": "pais"}, {"field": "categoria"}],
        "metrics": [{"field": "vendas", "agg": "sum"}, {"field": "lucro", "agg": "avg"}],
        "filters": [
            {"field": "pais", "operator": "in", "value": ["EUA", "Brasil"]},
            {"field": "vendas", "operator": "gt", "value": 10},
        ],
    }
    payload.update(overrides)
    return QueryRequest.model_validate(payload)


def test_key_ignores_field_selection_order() -> None:
    order = [{"field": "pais", "direction": "asc"}]
    reordered = _request(
        dims=[{"field": "categoria"}, {"field": "pais"}],
        metrics=[{"field": "lucro", "agg": "AVG"}, {"field": "vendas", "agg": "sum"}],
        filters=[
            {"field": "vendas", "operator": "gt", "value": 10},
            {"field": "pais", "operator": "in", "value": ["Brasil", "EUA"]},
        ],
        order=order,
    )
    assert build_cache_key(_request(order=order)) == build_cache_key(reordered)
    assert build_cache_key(_request()) == build_cache_key(
        _request(metrics=[{"field": "lucro", "agg": "avg"}, {"field": "vendas", "agg": "sum"}])
    )
    assert build_cache_key(_request()).startswith("cache:")


def test_key_separates_tenants_datasets_and_shapes() -> None:
    base = build_cache_key(_request())
    assert build_cache_key(_request(org_id="org-2")) != base
    assert build_cache_key(_request(dataset_id="ds-2")) != base
    assert build_cache_key(_request(metrics=[{"field": "vendas", "agg": "max"}])) != base
    assert build_cache_key(_request(offset=100)) != base
    assert build_cache_key(_request(order=[{"field": "pais", "direction": "desc"}])) != base


def test_key_tracks_the_default_sort_column() -> None:
    swapped = _request(dims=[{"field": "categoria"}, {"field": "pais"}])
    assert build_cache_key(_request()) != build_cache_key(swapped)
    assert build_cache_key(_request()) == build_cache_key(_request(order=[{"field": "pais"}]))


def test_key_keeps_between_bounds_in_order() -> None:
    forward = _request(filters=[{"field": "data", "operator": "between", "value": ["2024-01-01", "2024-02-01"]}])
    backward = _request(filters=[{"field": "data", "operator": "between", "value": ["2024-02-01", "2024-01-01"]}])
    assert build_cache_key(forward) != build_cache_key(backward)


def test_equivalent_requests_execute_once() -> None:
    service = _CountingService()
    cached = CachedQueryService(service, ResultCache())
    reordered = _request(
        dims=[{"field": "categoria"}, {"field": "pais"}],
        metrics=[{"field": "lucro", "agg": "avg"}, {"field": "vendas", "agg": "sum"}],
    )

    first = asyncio.run(cached.execute(_request()))
    second = asyncio.run(cached.execute(reordered))

    assert service.calls == 1
    assert first == second


def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    service = _CountingService()
    cached = CachedQueryService(service, ResultCache(ttl_seconds=300, clock=clock), clock=clock)

    asyncio.run(cached.execute(_request()))
    clock.now += 299
    asyncio.run(cached.execute(_request()))
    assert service.calls == 1

    clock.now += 2
    result = asyncio.run(cached.execute(_request()))
    assert service.calls == 2
    assert result.rows == [["Brasil", 2]]


def test_concurrent_misses_share_one_execution() -> None:
    service = _CountingService(delay=0.05)
    cached = CachedQueryService(service, ResultCache())

    async def _run() -> list[QueryResult]:
        return list(await asyncio.gather(*(cached.execute(_request()) for _ in range(5))))

    results = asyncio.run(_run())
    assert service.calls == 1
    assert all(result.rows == [["Brasil", 1]] for result in results)


def test_cancelled_leader_releases_waiting_callers() -> None:
    service = _CountingService(delay=1.0)
    cached = CachedQueryService(service, ResultCache())

    async def _run() -> EngineError:
        leader = asyncio.create_task(cached.execute(_request()))
        await asyncio.sleep(0)
        follower = asyncio.create_task(cached.execute(_request()))
        await asyncio.sleep(0.01)
        leader.cancel()
        with pytest.raises(EngineError) as exc_info:
            await asyncio.wait_for(follower, timeout=1)
        with pytest.raises(asyncio.CancelledError):
            await leader
        return exc_info.value

    error = asyncio.run(_run())
    assert error.code == "INTERNAL_ERROR"
    assert service.calls == 1


def test_failures_are_not_cached() -> None:
    service = _CountingService(fail=True)
    cache = ResultCache()
    cached = CachedQueryService(service, cache)

    for _ in range(2):
        with pytest.raises(EngineError):
            asyncio.run(cached.execute(_request()))

    assert service.calls == 2
    assert len(cache) == 0


def test_lru_capacity_and_sweep() -> None:
    clock = _Clock()
    cache = ResultCache(ttl_seconds=300, max_entries=2, clock=clock)
    result = QueryResult(columns=["x"], rows=[[1]])

    cache.set("a", result)
    cache.set("b", result)
    assert cache.get("a") is not None
    cache.set("c", result)
    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert len(cache) == 2

    clock.now += 301
    assert cache.stats() == {"total": 2, "valid": 0, "expired": 2}
    assert cache.sweep() == 2
    assert len(cache) == 0


def test_cached_results_are_isolated_copies() -> None:
    cache = ResultCache()
    cache.set("k", QueryResult(columns=["x"], rows=[[1]]))
    first = cache.get("k")
    assert first is not None
    first.rows.append([2])
    assert cache.get("k") == QueryResult(columns=["x"], rows=[[1]])
