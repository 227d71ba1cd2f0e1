"""Pipeline runtime: default job wiring, status surface and process entrypoint."""

from backend_relgraph.agent_worker.jobs import (
    Pipeline,
    create_pipeline,
    get_indexer_status,
    register_default_jobs,
)

__all__ = ["Pipeline", "create_pipeline", "get_indexer_status", "register_default_jobs"]
