from __future__ import annotations

import uuid
from typing import Literal

ErrorCode = Literal[
    "MISSING_PARAMS",
    "INVALID_REQUEST",
    "INVALID_IDENTIFIER",
    "INVALID_AGGREGATION",
    "INVALID_FILTER",
    "NO_FIELDS",
    "DATASET_NOT_FOUND",
    "INVALID_DATASET",
    "CONNECTION_FAILED",
    "DNS_ERROR",
    "TLS_HANDSHAKE",
    "AUTH_FAILED",
    "TIMEOUT",
    "RATE_LIMITED",
    "QUERY_FAILED",
    "INTERNAL_ERROR",
]


class EngineError(Exception):
    def __init__(self, *, code: ErrorCode, message: str, error_id: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())

    def __repr__(self) -> str:
        return f"EngineError(code={self.code!r}, message={self.message!r})"
