"""
Main entrypoint: FastAPI server with the relation pipeline in its lifespan.

The scheduler (ERC-20 indexer, transfer and relation builders, density
recalculation, cleanup) runs on the server's event loop when PIPELINE_IN_API
is on; on SIGINT/SIGTERM uvicorn shuts the app down and in-flight stages drain.

Env: DATABASE_URL or DB_PATH, ETH_RPC_URL, INDEXER_ENABLED, API_HOST, API_PORT, LOG_LEVEL, etc.

Pipeline only (no API): python -m backend_relgraph.agent_worker.runtime
API only: PIPELINE_IN_API=false uvicorn backend_relgraph.api_server.app:app --port 8001
"""

# Configure structured JSON logging before other imports that may log
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Run the FastAPI server (and the pipeline, via the app lifespan) in the main thread."""
    import uvicorn

    from backend_relgraph.api_server.app import app
    from backend_relgraph.config import get_settings
    from backend_relgraph.config.env import mask_url

    settings = get_settings()
    logger.info(
        "main_server_starting",
        host=settings.api_host,
        port=settings.api_port,
        database=mask_url(settings.database_url),
        pipeline_in_api=settings.pipeline_in_api,
        indexer_active=settings.indexer_active,
    )
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
