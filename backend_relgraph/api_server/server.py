"""
FastAPI server: relations API plus health and pipeline status.

The lifespan builds the pipeline (settings, database, store, service, RPC
client, scheduler) once and keeps it on app.state. When PIPELINE_IN_API is on,
the default jobs start with the app and drain on shutdown.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend_relgraph import __version__
from backend_relgraph.agent_worker.jobs import (
    Pipeline,
    create_pipeline,
    get_indexer_status,
    register_default_jobs,
)
from backend_relgraph.api_server import middleware
from backend_relgraph.api_server.routes import router as relations_router
from backend_relgraph.config import get_settings
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
def health(request: Request):
    return {
        "ok": True,
        "ts": int(time.time() * 1000),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
    }


@health_router.get("/health/detailed")
def health_detailed(request: Request):
    pipeline: Pipeline = request.app.state.pipeline
    try:
        with pipeline.db.session() as session:
            session.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as e:
        logger.warning("health_db_check_failed", error=str(e))
        db_status = "disconnected"
    return {
        "ok": db_status == "connected",
        "ts": int(time.time() * 1000),
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "services": {"database": db_status},
    }


@health_router.get("/pipeline/status")
async def pipeline_status(request: Request):
    return {"ok": True, "data": await get_indexer_status(request.app.state.pipeline)}


def create_app(pipeline: Pipeline | None = None, *, start_pipeline: bool | None = None) -> FastAPI:
    """
    Build the ASGI app. Pass a prebuilt pipeline to share one (tests do);
    otherwise it is created from get_settings() at startup. start_pipeline
    defaults to settings.pipeline_in_api.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pl = pipeline or create_pipeline(get_settings())
        app.state.pipeline = pl
        app.state.started_at = time.monotonic()
        run_jobs = pl.settings.pipeline_in_api if start_pipeline is None else start_pipeline
        if run_jobs:
            register_default_jobs(pl)
            pl.scheduler.start_all()
            logger.info("api_pipeline_started", stages=pl.scheduler.names())
        yield
        if run_jobs:
            drained = await pl.scheduler.stop_all(drain=True, drain_timeout_sec=pl.settings.shutdown_drain_sec)
            logger.info("api_pipeline_stopped", drained=drained)
        if pipeline is None:
            await pl.aclose()

    app = FastAPI(
        title="Relation Graph API",
        description="Aggregated on-chain relations: corridors, influence graphs, queries.",
        version=__version__,
        lifespan=lifespan,
    )
    middleware.install(app)
    app.include_router(health_router, prefix="/api")
    app.include_router(relations_router, prefix="/api")
    return app


app = create_app()
