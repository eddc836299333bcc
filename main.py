import asyncio
import logging
from time import perf_counter

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from analytics_engine.api.routes import router
from analytics_engine.errors import EngineError
from analytics_engine.schemas import ErrorResponse
from analytics_engine.settings import get_settings

settings = get_settings()
logger = logging.getLogger("uvicorn.error")


def _envelope(exc: EngineError, elapsed_ms: int = 0) -> JSONResponse:
    body = ErrorResponse(error_code=exc.code, message=exc.message, elapsed_ms=elapsed_ms, error_id=exc.error_id)
    return JSONResponse(status_code=200, content=body.model_dump())


def create_app() -> FastAPI:
    docs_enabled = settings.environment != "production"
    app = FastAPI(
        title="Analytics Engine",
        description="Validated, tenant-scoped aggregate queries for dashboard widgets",
        version="0.1.0",
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )

    @app.exception_handler(EngineError)
    async def handle_engine_error(_request: Request, exc: EngineError) -> JSONResponse:
        logger.warning("engine.handled_error | %s", {"error_id": exc.error_id, "code": exc.code})
        return _envelope(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "body"
            for error in exc.errors()
        ]
        error = EngineError(code="INVALID_REQUEST", message=f"Malformed request: {', '.join(problems)}")
        logger.warning("engine.invalid_request | %s", {"error_id": error.error_id, "fields": problems})
        return _envelope(error)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
        error = EngineError(code="INTERNAL_ERROR", message="Unexpected internal error")
        logger.error("engine.unhandled_error | %s", {"error_id": error.error_id}, exc_info=exc)
        return _envelope(error)

    @app.middleware("http")
    async def request_timeout_middleware(request: Request, call_next):  # type: ignore[override]
        started = perf_counter()
        try:
            return await asyncio.wait_for(call_next(request), timeout=settings.execution_timeout_seconds + 2)
        except asyncio.TimeoutError:
            error = EngineError(code="TIMEOUT", message="Request timed out")
            logger.warning("engine.request_timeout | %s", {"error_id": error.error_id, "path": request.url.path})
            return _envelope(error, max(0, int((perf_counter() - started) * 1000)))

    app.include_router(router)
    return app


app = create_app()
