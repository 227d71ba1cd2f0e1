"""
Tests for the Ethereum JSON-RPC client. Uses httpx.MockTransport; no network.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from backend_relgraph.core.exceptions import NotFoundError, RpcProtocolError, RpcTransportError
from backend_relgraph.ethereum.rpc import EthereumRpc, from_hex, to_hex


def _result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def test_hex_helpers():
    assert to_hex(255) == "0xff"
    assert from_hex("0x10") == 16


def test_constructor_requires_url():
    with pytest.raises(ValueError):
        EthereumRpc("  ")


@pytest.mark.asyncio
async def test_call_posts_envelope_with_increasing_ids(rpc_factory):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return _result(request, "0x10")

    rpc = rpc_factory(handler)
    assert await rpc.get_block_number() == 16
    assert await rpc.call("eth_chainId") == "0x10"
    assert [b["id"] for b in seen] == [1, 2]
    assert seen[0] == {"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}
    assert rpc.last_request_id == 2


@pytest.mark.asyncio
async def test_protocol_error_is_not_retried(rpc_factory):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "bad"}})

    rpc = rpc_factory(handler)
    with pytest.raises(RpcProtocolError) as exc:
        await rpc.call("eth_getLogs", [{}])
    assert exc.value.rpc_code == -32000
    assert calls == 1


@pytest.mark.asyncio
async def test_transport_failures_retry_then_give_up(rpc_factory):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    rpc = rpc_factory(handler, max_retries=2)
    with pytest.raises(RpcTransportError) as exc:
        await rpc.get_block_number()
    assert calls == 3
    assert exc.value.http_status == 503
    assert exc.value.attempts == 3


@pytest.mark.asyncio
async def test_network_error_then_success(rpc_factory):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("refused", request=request)
        return _result(request, "0x1")

    rpc = rpc_factory(handler)
    assert await rpc.get_block_number() == 1
    assert calls == 2


@pytest.mark.asyncio
async def test_rate_limit_uses_separate_budget(rpc_factory):
    """Two 429s and two 500s succeed with max_retries=2; 429s never eat the transport budget."""
    script = [429, 500, 429, 500, 200]

    def handler(request):
        status = script.pop(0)
        if status == 200:
            return _result(request, "0x2a")
        return httpx.Response(status, headers={"Retry-After": "0"} if status == 429 else {})

    rpc = rpc_factory(handler, max_retries=2, max_rate_limit_retries=2)
    assert await rpc.get_block_number() == 42
    assert script == []


@pytest.mark.asyncio
async def test_rate_limit_budget_exhausted(rpc_factory):
    calls = 0

    def handler(request):
        nonlocal calls
        calls += 1
        return httpx.Response(429)

    rpc = rpc_factory(handler, max_rate_limit_retries=3)
    with pytest.raises(RpcTransportError) as exc:
        await rpc.get_block_number()
    assert exc.value.http_status == 429
    assert calls == 4


def test_backoff_delay_grows_and_caps():
    rpc = EthereumRpc("http://node.test", backoff_base_sec=1.0, max_backoff_sec=5.0)
    assert [rpc.backoff_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 5.0]
    assert rpc.backoff_delay(0, retry_after="3") == 3.0
    assert rpc.backoff_delay(1, retry_after="soon") == 2.0


@pytest.mark.asyncio
async def test_get_logs_and_block_timestamp(rpc_factory):
    log = {
        "address": "0xAAAA000000000000000000000000000000000000",
        "topics": ["0xDDF2", "0x01"],
        "data": "0x",
        "blockNumber": "0x10",
        "transactionHash": "0xABC",
        "transactionIndex": "0x0",
        "blockHash": "0xdef",
        "logIndex": "0x2",
    }
    captured = []

    def handler(request):
        body = json.loads(request.content)
        captured.append(body)
        if body["method"] == "eth_getLogs":
            return _result(request, [log])
        if body["params"][0] == "0x10":
            return _result(request, {"number": "0x10", "hash": "0xdef", "timestamp": "0x6553f100"})
        return _result(request, None)

    rpc = rpc_factory(handler)
    logs = await rpc.get_logs(16, 20, address="0xaaaa000000000000000000000000000000000000", topics=["0xddf2"])
    assert captured[0]["params"][0] == {
        "fromBlock": "0x10",
        "toBlock": "0x14",
        "address": "0xaaaa000000000000000000000000000000000000",
        "topics": ["0xddf2"],
    }
    assert logs[0].address == "0xaaaa000000000000000000000000000000000000"
    assert logs[0].topics == ("0xddf2", "0x01")
    assert logs[0].block_number == 16
    assert logs[0].log_index == 2
    assert logs[0].transaction_hash == "0xabc"

    ts = await rpc.get_block_timestamp(16)
    assert ts == datetime.fromtimestamp(0x6553F100, tz=timezone.utc)
    assert await rpc.get_block(99) is None
    with pytest.raises(NotFoundError):
        await rpc.get_block_timestamp(99)
