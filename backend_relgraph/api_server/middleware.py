"""
HTTP middleware and error handlers.

- Request logging with timing (structlog, one event per request).
- Domain errors -> {ok: false, error, message} with the error's status code.
- Request validation failures -> 400 VALIDATION_ERROR in the same envelope.
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend_relgraph.core.exceptions import RelgraphError, ValidationError
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


async def relgraph_error_handler(request: Request, exc: RelgraphError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("api_upstream_error", path=request.url.path, error=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = ValidationError(_validation_message(exc))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


async def log_requests(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    logger.info(
        "api_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.monotonic() - start) * 1000, 1),
    )
    return response


def install(app: FastAPI) -> None:
    app.add_exception_handler(RelgraphError, relgraph_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.middleware("http")(log_requests)
