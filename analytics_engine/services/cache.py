from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from time import monotonic
from typing import TYPE_CHECKING, Any

from analytics_engine.errors import EngineError
from analytics_engine.schemas import QueryRequest, QueryResult
from analytics_engine.services.compiler import clamp_limit, clamp_offset

if TYPE_CHECKING:
    from analytics_engine.services.pipeline import QueryService

logger = logging.getLogger("uvicorn.error")

DEFAULT_TTL_SECONDS = 300


def _normalize_scalar(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def _normalize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalize_value(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, list):
        return [_normalize_value(item) for item in value]
    return _normalize_scalar(value)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _order_payload(request: QueryRequest) -> list[dict[str, str]]:
    if request.order:
        return [{"field": item.field, "dir": str(item.direction).lower()} for item in request.order]
    # Unordered requests sort by the first selected column.
    selected = [item.output_alias for item in request.dims] + [item.output_alias for item in request.metrics]
    return [{"field": selected[0], "dir": "asc"}] if selected else []


def canonicalize_request(request: QueryRequest) -> dict[str, Any]:
    """Structural shape of a request, independent of UI interaction order."""
    dims = sorted(
        ({"field": item.field, "alias": item.output_alias} for item in request.dims),
        key=_canonical_json,
    )
    metrics = sorted(
        ({"field": item.field, "agg": str(item.agg).lower(), "alias": item.output_alias} for item in request.metrics),
        key=_canonical_json,
    )
    filters: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in request.filters:
        op = str(item.operator).strip().lower()
        value = _normalize_value(item.value)
        if op in {"in", "not_in"} and isinstance(value, list):
            value = sorted(value, key=_canonical_json)
        payload: dict[str, Any] = {"field": item.field, "op": op}
        if op not in {"is_null", "not_null"}:
            payload["value"] = value
        key = _canonical_json(payload)
        if key not in seen:
            seen.add(key)
            filters.append(payload)

    return {
        "org_id": request.org_id,
        "dataset_id": request.dataset_id,
        "dims": dims,
        "metrics": metrics,
        "filters": sorted(filters, key=_canonical_json),
        "order": _order_payload(request),
        "limit": clamp_limit(request.limit),
        "offset": clamp_offset(request.offset),
    }


def build_cache_key(request: QueryRequest) -> str:
    digest = hashlib.sha256(_canonical_json(canonicalize_request(request)).encode("utf-8")).hexdigest()
    return f"cache:{digest}"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    data: QueryResult
    stored_at: float
    expires_at: float


class ResultCache:
    """TTL cache shared by every widget, bounded by LRU capacity.

    Expiry is checked on read; ``sweep`` drops expired entries in bulk and
    runs automatically before any LRU eviction.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = 1000,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> QueryResult | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            self._entries.move_to_end(key)
            return entry.data.model_copy(deep=True)

    def set(self, key: str, result: QueryResult) -> None:
        now = self._clock()
        entry = CacheEntry(
            key=key,
            data=result.model_copy(deep=True),
            stored_at=now,
            expires_at=now + self._ttl_seconds,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            if len(self._entries) > self._max_entries:
                self._sweep_locked(now)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            valid = sum(1 for entry in self._entries.values() if entry.expires_at > now)
        return {"total": total, "valid": valid, "expired": total - valid}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(slots=True)
class _Inflight:
    future: asyncio.Future[QueryResult]
    expires_at: float


class CachedQueryService:
    """Memoizes any ``QueryService``; concurrent identical misses share one execution."""

    def __init__(
        self,
        service: QueryService,
        cache: ResultCache,
        *,
        singleflight_ttl_seconds: float = 30,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._service = service
        self._cache = cache
        self._singleflight_ttl_seconds = singleflight_ttl_seconds
        self._clock = clock
        self._inflight: dict[str, _Inflight] = {}
        self._inflight_lock = asyncio.Lock()

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def execute(self, request: QueryRequest) -> QueryResult:
        key = build_cache_key(request)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("engine.cache.hit | %s", {"key": key[:18], "dataset_id": request.dataset_id})
            return cached

        result, deduped = await self._singleflight(key, lambda: self._service.execute(request))
        if not deduped:
            self._cache.set(key, result)
        return result.model_copy(deep=True)

    async def _singleflight(
        self,
        key: str,
        producer: Callable[[], Awaitable[QueryResult]],
    ) -> tuple[QueryResult, bool]:
        now = self._clock()
        loop = asyncio.get_running_loop()

        async with self._inflight_lock:
            inflight = self._inflight.get(key)
            if inflight and inflight.expires_at > now and not inflight.future.done():
                future = inflight.future
                deduped = True
            else:
                future = loop.create_future()
                self._inflight[key] = _Inflight(future=future, expires_at=now + self._singleflight_ttl_seconds)
                deduped = False

        if deduped:
            return await future, True

        try:
            result = await producer()
            if not future.done():
                future.set_result(result)
            return result, False
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
                _ = future.exception()
            raise
        finally:
            # A cancelled leader must not strand its followers.
            if not future.done():
                future.set_exception(
                    EngineError(code="INTERNAL_ERROR", message="Shared query execution was cancelled")
                )
                _ = future.exception()
            async with self._inflight_lock:
                current = self._inflight.get(key)
                if current and current.future is future:
                    self._inflight.pop(key, None)
