"""
Default pipeline jobs.

Wires the indexer stages, density recalculation and relation cleanup onto a
Scheduler. The indexer chain is staggered: build-transfers runs one stage
offset after erc20-indexer, build-relations two offsets after, so each stage
usually finds the rows the previous one just wrote.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from backend_relgraph.config.settings import Settings
from backend_relgraph.core.exceptions import RelgraphError
from backend_relgraph.database.connection import Database, get_database
from backend_relgraph.database.relation_store import RelationStore
from backend_relgraph.ethereum.rpc import EthereumRpc
from backend_relgraph.indexer.build_relations import build_relations, get_build_relations_status
from backend_relgraph.indexer.build_transfers import build_transfers_from_erc20, get_build_status
from backend_relgraph.indexer.erc20_sync import get_sync_status, sync_erc20_transfers
from backend_relgraph.relations.service import RelationsService
from backend_relgraph.relgraph_logging import get_logger
from backend_relgraph.scheduler.engine import Scheduler

logger = get_logger(__name__)

ERC20_INDEXER = "erc20-indexer"
BUILD_TRANSFERS = "build-transfers"
BUILD_RELATIONS = "build-relations"
RECALCULATE_DENSITIES = "recalculate-densities"
CLEANUP_RELATIONS = "cleanup-relations"


@dataclass
class Pipeline:
    """Everything the pipeline and the API share, built once per process."""

    settings: Settings
    db: Database
    service: RelationsService
    scheduler: Scheduler = field(default_factory=Scheduler)
    rpc: EthereumRpc | None = None

    async def aclose(self) -> None:
        if self.rpc is not None:
            await self.rpc.aclose()
        self.db.dispose()


def create_pipeline(
    settings: Settings,
    *,
    db: Database | None = None,
    rpc: EthereumRpc | None = None,
) -> Pipeline:
    """Build db / store / service, plus an RPC client when the indexer is active."""
    db = db or get_database(settings.database_url)
    service = RelationsService(RelationStore(db))
    if rpc is None and settings.indexer_active:
        rpc = EthereumRpc.from_settings(settings)
    return Pipeline(settings=settings, db=db, service=service, rpc=rpc)


def register_default_jobs(pipeline: Pipeline) -> list[str]:
    """Register the default stages on pipeline.scheduler. Returns the registered names."""
    settings = pipeline.settings
    scheduler = pipeline.scheduler
    db = pipeline.db
    service = pipeline.service
    rpc = pipeline.rpc
    interval = settings.indexer_interval_sec
    offset = settings.indexer_stage_offset_sec
    existing = set(scheduler.names())

    def add(name: str, interval_sec: float, handler: Any, **kwargs: Any) -> None:
        # a restarted app lifespan may hand us a scheduler that already has the stage
        if name in existing:
            logger.debug("default_job_already_registered", stage=name)
            return
        scheduler.register(name, interval_sec, handler, **kwargs)

    if settings.indexer_enabled and rpc is not None:
        async def erc20_indexer() -> None:
            await sync_erc20_transfers(rpc, db, settings)

        async def transfers() -> None:
            await build_transfers_from_erc20(rpc, db, settings)

        add(ERC20_INDEXER, interval, erc20_indexer)
        add(BUILD_TRANSFERS, interval + offset, transfers, start_delay_sec=offset)
    else:
        logger.info(
            "indexer_disabled",
            indexer_enabled=settings.indexer_enabled,
            rpc_configured=bool(settings.eth_rpc_url),
        )

    if settings.indexer_enabled:
        add(
            BUILD_RELATIONS,
            interval + 2 * offset,
            lambda: build_relations(service, db, settings),
            start_delay_sec=2 * offset,
        )

    add(RECALCULATE_DENSITIES, settings.recalc_interval_sec, service.recalculate_all_densities)
    add(
        CLEANUP_RELATIONS,
        settings.cleanup_interval_sec,
        lambda: service.cleanup(settings.relation_retention_days),
    )
    names = scheduler.names()
    logger.info("default_jobs_registered", jobs=names)
    return names


async def get_indexer_status(pipeline: Pipeline) -> dict[str, Any]:
    """Per-layer counters plus scheduler status. Counter failures degrade to None."""
    enabled = pipeline.settings.indexer_enabled and pipeline.rpc is not None
    status: dict[str, Any] = {
        "enabled": enabled,
        "rpcUrl": "[configured]" if pipeline.settings.eth_rpc_url else None,
        "syncStatus": None,
        "buildStatus": None,
        "relationsStatus": None,
        "scheduler": pipeline.scheduler.get_status(),
    }
    try:
        status["relationsStatus"] = await asyncio.to_thread(get_build_relations_status, pipeline.service, pipeline.db)
        if enabled:
            status["syncStatus"] = await get_sync_status(pipeline.db, pipeline.rpc)
            status["buildStatus"] = await asyncio.to_thread(get_build_status, pipeline.db)
    except (RelgraphError, SQLAlchemyError) as e:
        logger.warning("indexer_status_failed", error=str(e))
    return status
