"""
Data models for Ethereum JSON-RPC results.

Blocks and logs arrive hex-encoded; these dataclasses hold the decoded values
used by the indexer stages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def _int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


@dataclass(frozen=True)
class EthBlock:
    """Block header subset from eth_getBlockByNumber."""

    number: int
    hash: str
    timestamp: int  # Unix seconds
    transactions: tuple[Any, ...] = ()

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "EthBlock":
        return cls(
            number=_int(item["number"]),
            hash=item.get("hash") or "",
            timestamp=_int(item["timestamp"]),
            transactions=tuple(item.get("transactions") or ()),
        )


@dataclass(frozen=True)
class EthLog:
    """Single event log from eth_getLogs."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    transaction_index: int
    block_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "EthLog":
        return cls(
            address=str(item["address"]).lower(),
            topics=tuple(str(t).lower() for t in item.get("topics") or ()),
            data=item.get("data") or "0x",
            block_number=_int(item["blockNumber"]),
            transaction_hash=str(item["transactionHash"]).lower(),
            transaction_index=_int(item.get("transactionIndex") or 0),
            block_hash=item.get("blockHash") or "",
            log_index=_int(item["logIndex"]),
            removed=bool(item.get("removed", False)),
        )
