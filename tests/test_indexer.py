"""
Tests for the indexer stages: ERC-20 log sync -> transfers -> relations.

RPC is an httpx.MockTransport fake node; DB is a temporary SQLite file.
"""

from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from backend_relgraph.config.settings import ERC20_TRANSFER_TOPIC
from backend_relgraph.database.tables import Erc20LogRow, TransferRow
from backend_relgraph.indexer import (
    build_relations,
    build_transfers_from_erc20,
    get_build_relations_status,
    get_build_status,
    get_sync_status,
    sync_erc20_transfers,
)
from backend_relgraph.indexer.build_transfers import decode_transfer_log, topic_to_address

TOKEN = "0x" + "aa" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
BLOCK_TS = 1_700_000_000


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def _log(block: int, index: int, sender: str, receiver: str, amount: int, topics=None) -> dict:
    return {
        "address": TOKEN,
        "topics": topics or [ERC20_TRANSFER_TOPIC, _topic(sender), _topic(receiver)],
        "data": "0x" + format(amount, "064x"),
        "blockNumber": hex(block),
        "transactionHash": "0x" + format(block * 1000 + index, "064x"),
        "transactionIndex": "0x0",
        "blockHash": "0x" + format(block, "064x"),
        "logIndex": hex(index),
    }


class FakeNode:
    """Minimal eth_blockNumber / eth_getLogs / eth_getBlockByNumber responder."""

    def __init__(self, head: int, logs: list[dict]):
        self.head = head
        self.logs = logs
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        method = body["method"]
        if method == "eth_blockNumber":
            result = hex(self.head)
        elif method == "eth_getLogs":
            flt = body["params"][0]
            lo, hi = int(flt["fromBlock"], 16), int(flt["toBlock"], 16)
            result = [item for item in self.logs if lo <= int(item["blockNumber"], 16) <= hi]
        elif method == "eth_getBlockByNumber":
            number = int(body["params"][0], 16)
            result = {"number": hex(number), "hash": "0x0", "timestamp": hex(BLOCK_TS + number * 12)}
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "nope"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def test_decode_transfer_log():
    decoded = decode_transfer_log([ERC20_TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)], "0x" + format(5, "064x"))
    assert decoded.from_address == ALICE
    assert decoded.to_address == BOB
    assert decoded.amount_raw == 5
    with pytest.raises(ValueError):
        topic_to_address("0x1234")


@pytest.mark.asyncio
async def test_sync_advances_cursor_in_batches(settings, db, rpc_factory):
    node = FakeNode(head=125, logs=[_log(101, 0, ALICE, BOB, 1), _log(105, 1, ALICE, BOB, 2), _log(115, 0, BOB, ALICE, 3)])
    rpc = rpc_factory(node)
    cfg = settings.model_copy(update={"indexer_start_block": 100, "indexer_block_batch": 10})

    first = await sync_erc20_transfers(rpc, db, cfg)
    assert (first.from_block, first.to_block) == (100, 109)
    assert first.new_logs_count == 2

    second = await sync_erc20_transfers(rpc, db, cfg)
    assert (second.from_block, second.to_block) == (110, 119)
    assert second.new_logs_count == 1

    status = await get_sync_status(db, rpc)
    assert status == {"syncedBlock": 119, "latestBlock": 125, "blocksBehind": 6, "totalLogs": 3}


@pytest.mark.asyncio
async def test_sync_respects_confirmations_and_skips_non_erc20(settings, db, rpc_factory):
    nft = _log(100, 5, ALICE, BOB, 1, topics=[ERC20_TRANSFER_TOPIC, _topic(ALICE), _topic(BOB), "0x" + "0" * 64])
    node = FakeNode(head=103, logs=[_log(100, 0, ALICE, BOB, 1), nft])
    rpc = rpc_factory(node)
    cfg = settings.model_copy(update={"indexer_start_block": 100, "indexer_confirmations": 3})

    result = await sync_erc20_transfers(rpc, db, cfg)
    assert (result.from_block, result.to_block) == (100, 100)
    assert result.logs_count == 1
    # caught up with the confirmed head: nothing to do
    idle = await sync_erc20_transfers(rpc, db, cfg)
    assert idle.logs_count == 0
    assert idle.to_block < idle.from_block


@pytest.mark.asyncio
async def test_full_pipeline_builds_wallet_relations(settings, db, service, rpc_factory):
    node = FakeNode(head=110, logs=[
        _log(101, 0, ALICE, BOB, 2_000_000),
        _log(102, 0, ALICE, BOB, 3_000_000),
        _log(103, 0, BOB, BOB, 1_000_000),
    ])
    rpc = rpc_factory(node)
    cfg = settings.model_copy(update={"indexer_start_block": 100})

    await sync_erc20_transfers(rpc, db, cfg)
    built = await build_transfers_from_erc20(rpc, db, cfg)
    assert built.processed == 3
    assert built.created == 3
    assert get_build_status(db) == {"lastProcessedBlock": 103, "pendingLogs": 0, "totalTransfers": 3}

    with db.session() as session:
        amounts = sorted(t.amount_usd for t in session.execute(select(TransferRow)).scalars())
    assert amounts == pytest.approx([1.0, 2.0, 3.0])  # 6 decimals at $1

    result = build_relations(service, db, cfg)
    assert result.processed == 3
    assert result.upserted == 2
    assert result.skipped_self == 1

    relations, summary = service.get_corridor(ALICE, BOB)
    assert len(relations) == 1
    rel = relations[0]
    assert (rel.from_type, rel.to_type, rel.direction) == ("wallet", "wallet", "out")
    assert rel.interaction_count == 2
    assert rel.volume_usd == pytest.approx(5.0)
    assert rel.tags == ["fund-flow"]
    assert rel.first_seen_at == BLOCK_TS + 101 * 12
    assert rel.last_seen_at == BLOCK_TS + 102 * 12

    assert get_build_relations_status(service, db) == {"pendingTransfers": 0, "totalRelations": 1}
    # nothing left: a second pass is a no-op
    assert build_relations(service, db, cfg).processed == 0


@pytest.mark.asyncio
async def test_unpriced_token_is_zero_usd_and_malformed_logs_are_consumed(settings, db, rpc_factory):
    node = FakeNode(head=101, logs=[_log(101, 0, ALICE, BOB, 10**18)])
    rpc = rpc_factory(node)
    cfg = settings.model_copy(update={"indexer_start_block": 101, "token_prices": {}})
    await sync_erc20_transfers(rpc, db, cfg)
    with db.session() as session:
        session.add(Erc20LogRow(token_address=TOKEN, block_number=101, tx_hash="0xbad", log_index=9,
                                topics=[ERC20_TRANSFER_TOPIC, "0x12"], data="0x"))

    built = await build_transfers_from_erc20(rpc, db, cfg)
    assert built.processed == 2
    assert built.created == 1
    assert built.malformed == 1
    with db.session() as session:
        transfer = session.execute(select(TransferRow)).scalar_one()
    assert transfer.amount_usd == 0.0
    assert transfer.amount_raw == str(10**18)
    assert get_build_status(db)["pendingLogs"] == 0
