from __future__ import annotations

import logging
import uuid
from time import perf_counter

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from analytics_engine.errors import EngineError
from analytics_engine.schemas import DatasetFields, ErrorResponse, QueryRequest, QueryResult
from analytics_engine.security import FernetSecretsVault, PlaintextVault, SecretsVault
from analytics_engine.services.catalog import PostgresCatalog
from analytics_engine.services.pipeline import QueryEngine
from analytics_engine.services.rate_limiter import SlidingWindowRateLimiter
from analytics_engine.settings import Settings, get_settings

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _build_vault(settings: Settings) -> SecretsVault:
    if settings.encryption_key:
        return FernetSecretsVault(settings.encryption_key)
    if settings.environment == "production":
        raise ValueError("ENCRYPTION_KEY must be set in production")
    logger.warning("engine.vault.plaintext | %s", {"environment": settings.environment})
    return PlaintextVault()


def build_engine(settings: Settings) -> QueryEngine:
    catalog = PostgresCatalog(settings.catalog_db_url, _build_vault(settings))
    return QueryEngine(settings, datasets=catalog, connections=catalog)


_settings = get_settings()
_engine = build_engine(_settings)
_rate_limiter = SlidingWindowRateLimiter(max_requests_per_minute=_settings.rate_limit_requests_per_minute)


def _elapsed_ms(started: float) -> int:
    return max(0, int((perf_counter() - started) * 1000))


def _error_response(exc: EngineError, started: float) -> JSONResponse:
    body = ErrorResponse(
        error_code=exc.code,
        message=exc.message,
        elapsed_ms=_elapsed_ms(started),
        error_id=exc.error_id,
    )
    return JSONResponse(status_code=200, content=body.model_dump())


def _audit_log(
    *,
    org_id: str | None,
    dataset_id: str | None,
    operation: str,
    status: str,
    duration_ms: int,
    error_code: str | None = None,
    error_id: str | None = None,
    correlation_id: str | None = None,
) -> None:
    logger.info(
        "engine.audit.execution | %s",
        {
            "org_id": org_id,
            "dataset_id": dataset_id,
            "operation": operation,
            "status": status,
            "duration_ms": duration_ms,
            "error_code": error_code,
            "error_id": error_id,
            "correlation_id": correlation_id,
        },
    )


def _unexpected(exc: Exception, operation: str) -> EngineError:
    error = EngineError(code="INTERNAL_ERROR", message="Unexpected internal error")
    logger.error(
        "engine.unhandled_error | %s",
        {"error_id": error.error_id, "operation": operation},
        exc_info=exc,
    )
    return error


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "analytics-engine"}


@router.post("/query/execute", response_model=None)
async def query_execute(
    payload: QueryRequest,
    x_correlation_id: str | None = Header(default=None),
) -> QueryResult | JSONResponse:
    started = perf_counter()
    correlation_id = x_correlation_id or str(uuid.uuid4())
    try:
        await _rate_limiter.check(payload.org_id or "anonymous")
        result = await _engine.execute(payload, correlation_id=correlation_id)
    except EngineError as exc:
        _audit_log(
            org_id=payload.org_id,
            dataset_id=payload.dataset_id,
            operation="query.execute",
            status="error",
            duration_ms=_elapsed_ms(started),
            error_code=exc.code,
            error_id=exc.error_id,
            correlation_id=correlation_id,
        )
        return _error_response(exc, started)
    except Exception as exc:
        error = _unexpected(exc, "query.execute")
        _audit_log(
            org_id=payload.org_id,
            dataset_id=payload.dataset_id,
            operation="query.execute",
            status="error",
            duration_ms=_elapsed_ms(started),
            error_code=error.code,
            error_id=error.error_id,
            correlation_id=correlation_id,
        )
        return _error_response(error, started)

    result.elapsed_ms = _elapsed_ms(started)
    _audit_log(
        org_id=payload.org_id,
        dataset_id=payload.dataset_id,
        operation="query.execute",
        status="ok",
        duration_ms=result.elapsed_ms,
        correlation_id=correlation_id,
    )
    return result


@router.get("/datasets/{dataset_id}/fields", response_model=None)
async def dataset_fields(
    dataset_id: str,
    org_id: str | None = None,
    x_correlation_id: str | None = Header(default=None),
) -> DatasetFields | JSONResponse:
    started = perf_counter()
    try:
        await _rate_limiter.check(org_id or "anonymous")
        fields = await _engine.describe_dataset(dataset_id, org_id)
    except EngineError as exc:
        _audit_log(
            org_id=org_id,
            dataset_id=dataset_id,
            operation="dataset.fields",
            status="error",
            duration_ms=_elapsed_ms(started),
            error_code=exc.code,
            error_id=exc.error_id,
            correlation_id=x_correlation_id,
        )
        return _error_response(exc, started)
    except Exception as exc:
        return _error_response(_unexpected(exc, "dataset.fields"), started)
    return fields
