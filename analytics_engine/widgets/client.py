from __future__ import annotations

from typing import Any

import httpx

from analytics_engine.errors import EngineError
from analytics_engine.schemas import DatasetFields, QueryRequest, QueryResult
from analytics_engine.settings import Settings, get_settings


class EngineClient:
    """``QueryService`` over the engine's HTTP endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._correlation_id = correlation_id

    async def execute(self, request: QueryRequest) -> QueryResult:
        payload = await self._request(method="POST", path="/query/execute", json_payload=request.model_dump())
        return QueryResult.model_validate(payload)

    async def dataset_fields(self, dataset_id: str, *, org_id: str) -> DatasetFields:
        payload = await self._request(
            method="GET",
            path=f"/datasets/{dataset_id}/fields",
            query_params={"org_id": org_id},
        )
        return DatasetFields.model_validate(payload)

    async def _request(
        self,
        *,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
        query_params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        if self._correlation_id:
            headers["x-correlation-id"] = self._correlation_id

        try:
            async with httpx.AsyncClient(
                base_url=self._settings.engine_base_url,
                timeout=float(self._settings.engine_timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=method,
                    url=path,
                    json=json_payload,
                    params=query_params,
                    headers=headers,
                )
        except httpx.TimeoutException as exc:
            raise EngineError(code="TIMEOUT", message="Engine service did not answer in time") from exc
        except httpx.RequestError as exc:
            raise EngineError(code="CONNECTION_FAILED", message="Engine service unavailable") from exc

        if response.status_code >= 400:
            raise EngineError(
                code="INTERNAL_ERROR",
                message=f"Engine request failed with HTTP {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EngineError(code="INTERNAL_ERROR", message="Engine returned a non-JSON body") from exc

        if isinstance(payload, dict) and payload.get("error_code"):
            raise EngineError(
                code=payload["error_code"],
                message=str(payload.get("message") or "Engine request failed"),
                error_id=payload.get("error_id"),
            )
        return payload
