"""
Ethereum ingestion package.

Resilient JSON-RPC gateway to an Ethereum node (Infura, Alchemy, self-hosted)
plus the typed block and log records it returns.
"""

from backend_relgraph.ethereum.models import EthBlock, EthLog
from backend_relgraph.ethereum.rpc import EthereumRpc, from_hex, to_hex

__all__ = [
    "EthBlock",
    "EthLog",
    "EthereumRpc",
    "from_hex",
    "to_hex",
]
