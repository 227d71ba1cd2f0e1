"""
Application-level exceptions.

Every domain error carries a stable error code and the HTTP status the API
layer maps it to. RPC errors are split into protocol failures (the node answered
with a well-formed error; never retried) and transport failures (network, HTTP,
rate limiting; retried with backoff before being raised).
"""

from __future__ import annotations

from typing import Any


class RelgraphError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.code, "message": self.message}


class ValidationError(RelgraphError):
    """Malformed or missing input (empty ids, unknown enum values, bad ranges)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidRelation(RelgraphError):
    """Relation cannot exist, e.g. an entity related to itself."""

    code = "INVALID_RELATION"
    status_code = 400


class NotFoundError(RelgraphError):
    code = "NOT_FOUND"
    status_code = 404


class RpcError(RelgraphError):
    """Base for ingestion client failures."""

    code = "RPC_ERROR"
    status_code = 502


class RpcProtocolError(RpcError):
    """Node returned a JSON-RPC error object."""

    code = "RPC_PROTOCOL_ERROR"

    def __init__(self, message: str, rpc_code: int | None = None, **details: Any) -> None:
        super().__init__(message, rpc_code=rpc_code, **details)
        self.rpc_code = rpc_code


class RpcTransportError(RpcError):
    """Network or HTTP failure that persisted after the retry budget was spent."""

    code = "RPC_TRANSPORT_ERROR"

    def __init__(self, message: str, status_code: int | None = None, attempts: int = 0, **details: Any) -> None:
        super().__init__(message, http_status=status_code, attempts=attempts, **details)
        self.http_status = status_code
        self.attempts = attempts
