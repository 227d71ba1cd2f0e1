"""
Core utilities: domain exceptions and shared concurrency helpers.

Used across the ingestion client, relation service, scheduler, and API server.
"""

from backend_relgraph.core.exceptions import (
    InvalidRelation,
    NotFoundError,
    RelgraphError,
    RpcError,
    RpcProtocolError,
    RpcTransportError,
    ValidationError,
)
from backend_relgraph.core.locks import KeyedLock

__all__ = [
    "InvalidRelation",
    "KeyedLock",
    "NotFoundError",
    "RelgraphError",
    "RpcError",
    "RpcProtocolError",
    "RpcTransportError",
    "ValidationError",
]
