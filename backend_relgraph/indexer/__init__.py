"""
Indexer stages: ERC-20 log sync, transfer normalization, relation build.

Each stage reads its own pending work from the database, so stages only
depend on each other through stored rows, never on run order.
"""

from backend_relgraph.indexer.build_relations import (
    BuildRelationsResult,
    build_relations,
    get_build_relations_status,
)
from backend_relgraph.indexer.build_transfers import (
    BuildTransfersResult,
    build_transfers_from_erc20,
    get_build_status,
)
from backend_relgraph.indexer.erc20_sync import SyncResult, get_sync_status, sync_erc20_transfers

__all__ = [
    "BuildRelationsResult",
    "BuildTransfersResult",
    "SyncResult",
    "build_relations",
    "build_transfers_from_erc20",
    "get_build_relations_status",
    "get_build_status",
    "get_sync_status",
    "sync_erc20_transfers",
]
