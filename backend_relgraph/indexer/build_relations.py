"""
Build relations (layer 2 -> relations).

Folds pending transfers into wallet -> wallet relations through the relations
service, so every transfer goes through the same upsert / merge path as API
writes. Each transfer is marked processed right after its upsert; a crash
between the two can fold that one transfer twice.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from sqlalchemy import func, select, update

from backend_relgraph.config.settings import Settings
from backend_relgraph.database.connection import Database
from backend_relgraph.database.models import Direction, EntityType
from backend_relgraph.database.tables import TransferRow
from backend_relgraph.relations.service import RelationsService
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

TRANSFER_TAG = "fund-flow"


@dataclass
class BuildRelationsResult:
    processed: int
    upserted: int
    skipped_self: int
    duration_ms: int


def _fetch_pending(db: Database, limit: int) -> list[TransferRow]:
    stmt = (
        select(TransferRow)
        .where(TransferRow.processed.is_(False))
        .order_by(TransferRow.block_number.asc(), TransferRow.log_index.asc())
        .limit(limit)
    )
    with db.session() as session:
        return list(session.execute(stmt).scalars())


def _mark_processed(db: Database, transfer_id: int) -> None:
    with db.session() as session:
        session.execute(update(TransferRow).where(TransferRow.id == transfer_id).values(processed=True))


def build_relations(service: RelationsService, db: Database, settings: Settings) -> BuildRelationsResult:
    started = time.monotonic()
    pending = _fetch_pending(db, settings.relation_batch_size)
    upserted = 0
    skipped_self = 0
    for t in pending:
        if t.from_address == t.to_address:
            skipped_self += 1
        else:
            service.upsert(
                from_id=t.from_address,
                to_id=t.to_address,
                from_type=EntityType.WALLET.value,
                to_type=EntityType.WALLET.value,
                direction=Direction.OUT.value,
                volume_usd=t.amount_usd,
                timestamp=t.block_timestamp,
                tags=[TRANSFER_TAG],
            )
            upserted += 1
        _mark_processed(db, t.id)
    result = BuildRelationsResult(
        processed=len(pending),
        upserted=upserted,
        skipped_self=skipped_self,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    if pending:
        logger.info(
            "relations_built",
            processed=result.processed,
            upserted=upserted,
            skipped_self=skipped_self,
            duration_ms=result.duration_ms,
        )
    return result


def get_build_relations_status(service: RelationsService, db: Database) -> dict[str, int]:
    with db.session() as session:
        pending = session.execute(
            select(func.count(TransferRow.id)).where(TransferRow.processed.is_(False))
        ).scalar_one()
    return {"pendingTransfers": int(pending), "totalRelations": service.store.count()}
