"""
ERC-20 log sync (layer 1).

Each run reads the block cursor, asks the node for the chain head, pulls
Transfer(address,address,uint256) logs for at most indexer_block_batch blocks
behind the confirmation depth, stores the new ones and advances the cursor.
Re-fetching a range is harmless: logs are unique on (tx_hash, log_index).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from backend_relgraph.config.settings import ERC20_TRANSFER_TOPIC, Settings
from backend_relgraph.core.exceptions import RpcError
from backend_relgraph.database.connection import Database
from backend_relgraph.database.tables import Erc20LogRow, SyncStateRow
from backend_relgraph.ethereum.models import EthLog
from backend_relgraph.ethereum.rpc import EthereumRpc
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

CURSOR_KEY = "erc20_last_block"
TRANSFER_TOPIC_COUNT = 3  # signature + indexed from + indexed to; ERC-721 has 4


@dataclass
class SyncResult:
    from_block: int
    to_block: int
    logs_count: int
    new_logs_count: int
    duration_ms: int


def read_cursor(session: Session, key: str = CURSOR_KEY) -> int | None:
    row = session.get(SyncStateRow, key)
    return int(row.value) if row is not None else None


def write_cursor(session: Session, value: int, key: str = CURSOR_KEY) -> None:
    row = session.get(SyncStateRow, key)
    if row is None:
        session.add(SyncStateRow(key=key, value=str(value)))
    else:
        row.value = str(value)


def _load_cursor(db: Database) -> int | None:
    with db.session() as session:
        return read_cursor(session)


def is_erc20_transfer(log: EthLog) -> bool:
    return (
        not log.removed
        and len(log.topics) == TRANSFER_TOPIC_COUNT
        and log.topics[0] == ERC20_TRANSFER_TOPIC
    )


def store_logs(db: Database, logs: list[EthLog], from_block: int, to_block: int) -> int:
    """Insert logs not yet stored and move the cursor to to_block in one transaction. Returns new count."""
    with db.session() as session:
        seen = set(
            session.execute(
                select(Erc20LogRow.tx_hash, Erc20LogRow.log_index).where(
                    and_(Erc20LogRow.block_number >= from_block, Erc20LogRow.block_number <= to_block)
                )
            ).tuples()
        )
        new = 0
        for log in logs:
            ident = (log.transaction_hash, log.log_index)
            if ident in seen:
                continue
            seen.add(ident)
            session.add(Erc20LogRow(
                token_address=log.address,
                block_number=log.block_number,
                block_hash=log.block_hash or None,
                tx_hash=log.transaction_hash,
                log_index=log.log_index,
                topics=list(log.topics),
                data=log.data,
                processed=False,
            ))
            new += 1
        write_cursor(session, to_block)
        return new


def _start_block(settings: Settings, safe_head: int) -> int:
    if settings.indexer_start_block is not None:
        return settings.indexer_start_block
    # no cursor and no configured start: begin one batch behind the head
    return max(0, safe_head - settings.indexer_block_batch + 1)


async def sync_erc20_transfers(rpc: EthereumRpc, db: Database, settings: Settings) -> SyncResult:
    """Fetch and store one batch of Transfer logs. RPC errors propagate; the cursor stays put."""
    started = time.monotonic()
    latest = await rpc.get_block_number()
    safe_head = latest - settings.indexer_confirmations
    cursor = await asyncio.to_thread(_load_cursor, db)
    from_block = cursor + 1 if cursor is not None else _start_block(settings, safe_head)
    if from_block > safe_head:
        return SyncResult(from_block, from_block - 1, 0, 0, int((time.monotonic() - started) * 1000))

    to_block = min(from_block + settings.indexer_block_batch - 1, safe_head)
    address: list[str] | None = list(settings.indexer_token_addresses) or None
    raw_logs = await rpc.get_logs(from_block, to_block, address=address, topics=[ERC20_TRANSFER_TOPIC])
    logs = [log for log in raw_logs if is_erc20_transfer(log)]
    new_count = await asyncio.to_thread(store_logs, db, logs, from_block, to_block)
    result = SyncResult(
        from_block=from_block,
        to_block=to_block,
        logs_count=len(logs),
        new_logs_count=new_count,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    if result.logs_count:
        logger.info(
            "erc20_sync_batch",
            from_block=from_block,
            to_block=to_block,
            logs=result.logs_count,
            new_logs=new_count,
            duration_ms=result.duration_ms,
        )
    else:
        logger.debug("erc20_sync_empty", from_block=from_block, to_block=to_block)
    return result


def _local_sync_counts(db: Database) -> tuple[int | None, int]:
    with db.session() as session:
        cursor = read_cursor(session)
        total = session.execute(select(func.count(Erc20LogRow.id))).scalar_one()
    return cursor, int(total)


async def get_sync_status(db: Database, rpc: EthereumRpc | None = None) -> dict[str, Any]:
    """{syncedBlock, latestBlock, blocksBehind, totalLogs}; latestBlock is None if the node is unreachable."""
    cursor, total = await asyncio.to_thread(_local_sync_counts, db)
    latest: int | None = None
    if rpc is not None:
        try:
            latest = await rpc.get_block_number()
        except RpcError as e:
            logger.warning("erc20_sync_status_rpc_failed", error=str(e))
    synced = cursor or 0
    return {
        "syncedBlock": synced,
        "latestBlock": latest,
        "blocksBehind": max(0, latest - synced) if latest is not None else None,
        "totalLogs": total,
    }
