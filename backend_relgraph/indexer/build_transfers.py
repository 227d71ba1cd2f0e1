"""
Build transfers (layer 1 -> layer 2).

Decodes unprocessed ERC-20 logs into normalized transfers: indexed topics give
the from / to addresses, data holds the uint256 amount. Block timestamps come
from the node, cached per run. USD values use the configured token prices;
unpriced tokens get 0.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update

from backend_relgraph.config.settings import Settings
from backend_relgraph.database.connection import Database
from backend_relgraph.database.tables import Erc20LogRow, TransferRow
from backend_relgraph.ethereum.rpc import EthereumRpc
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)


@dataclass
class BuildTransfersResult:
    processed: int
    created: int
    malformed: int
    duration_ms: int


@dataclass(frozen=True)
class DecodedTransfer:
    from_address: str
    to_address: str
    amount_raw: int


def topic_to_address(topic: str) -> str:
    """32-byte indexed topic -> 0x-prefixed 20-byte address (lowercase)."""
    body = topic[2:] if topic.startswith("0x") else topic
    if len(body) != 64:
        raise ValueError(f"topic is not 32 bytes: {topic!r}")
    return "0x" + body[-40:].lower()


def decode_amount(data: str) -> int:
    body = data[2:] if data.startswith("0x") else data
    if not body:
        return 0
    return int(body[:64], 16)


def decode_transfer_log(topics: list[str], data: str) -> DecodedTransfer:
    if len(topics) < 3:
        raise ValueError("Transfer log needs 3 topics")
    return DecodedTransfer(
        from_address=topic_to_address(topics[1]),
        to_address=topic_to_address(topics[2]),
        amount_raw=decode_amount(data),
    )


def amount_usd(settings: Settings, token_address: str, amount_raw: int) -> float:
    price = settings.price_for(token_address)
    if price is None:
        return 0.0
    decimals, usd = price
    return amount_raw / (10 ** decimals) * usd


def _fetch_pending(db: Database, limit: int) -> list[dict[str, Any]]:
    stmt = (
        select(Erc20LogRow)
        .where(Erc20LogRow.processed.is_(False))
        .order_by(Erc20LogRow.block_number.asc(), Erc20LogRow.log_index.asc())
        .limit(limit)
    )
    with db.session() as session:
        return [
            {
                "id": row.id,
                "token_address": row.token_address,
                "block_number": row.block_number,
                "tx_hash": row.tx_hash,
                "log_index": row.log_index,
                "topics": list(row.topics or []),
                "data": row.data,
            }
            for row in session.execute(stmt).scalars()
        ]


def _persist(db: Database, transfers: list[dict[str, Any]], log_ids: list[int]) -> int:
    """Insert transfers not already present and mark the source logs processed, atomically."""
    with db.session() as session:
        created = 0
        for t in transfers:
            exists = session.execute(
                select(TransferRow.id).where(
                    TransferRow.tx_hash == t["tx_hash"], TransferRow.log_index == t["log_index"]
                )
            ).first()
            if exists:
                continue
            session.add(TransferRow(**t))
            created += 1
        if log_ids:
            session.execute(update(Erc20LogRow).where(Erc20LogRow.id.in_(log_ids)).values(processed=True))
        return created


async def build_transfers_from_erc20(rpc: EthereumRpc, db: Database, settings: Settings) -> BuildTransfersResult:
    """
    Convert up to transfer_batch_size pending logs. Malformed logs are marked
    processed and skipped. If a block timestamp lookup fails the whole batch
    stays pending and the error propagates.
    """
    started = time.monotonic()
    pending = await asyncio.to_thread(_fetch_pending, db, settings.transfer_batch_size)
    if not pending:
        return BuildTransfersResult(0, 0, 0, int((time.monotonic() - started) * 1000))

    timestamps: dict[int, int] = {}
    transfers: list[dict[str, Any]] = []
    malformed = 0
    for log in pending:
        try:
            decoded = decode_transfer_log(log["topics"], log["data"])
        except ValueError as e:
            malformed += 1
            logger.warning("transfer_log_malformed", tx_hash=log["tx_hash"], log_index=log["log_index"], error=str(e))
            continue
        block = log["block_number"]
        if block not in timestamps:
            timestamps[block] = int((await rpc.get_block_timestamp(block)).timestamp())
        transfers.append({
            "from_address": decoded.from_address,
            "to_address": decoded.to_address,
            "token_address": log["token_address"],
            "amount_raw": str(decoded.amount_raw),
            "amount_usd": amount_usd(settings, log["token_address"], decoded.amount_raw),
            "block_number": block,
            "block_timestamp": timestamps[block],
            "tx_hash": log["tx_hash"],
            "log_index": log["log_index"],
            "processed": False,
        })

    created = await asyncio.to_thread(_persist, db, transfers, [log["id"] for log in pending])
    result = BuildTransfersResult(
        processed=len(pending),
        created=created,
        malformed=malformed,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(
        "transfers_built",
        processed=result.processed,
        created=created,
        malformed=malformed,
        blocks=len(timestamps),
        duration_ms=result.duration_ms,
    )
    return result


def get_build_status(db: Database) -> dict[str, Any]:
    with db.session() as session:
        last_block = session.execute(
            select(func.max(Erc20LogRow.block_number)).where(Erc20LogRow.processed.is_(True))
        ).scalar_one()
        pending = session.execute(
            select(func.count(Erc20LogRow.id)).where(Erc20LogRow.processed.is_(False))
        ).scalar_one()
        total = session.execute(select(func.count(TransferRow.id))).scalar_one()
    return {
        "lastProcessedBlock": int(last_block or 0),
        "pendingLogs": int(pending),
        "totalTransfers": int(total),
    }
