"""
Backend Relgraph: on-chain relation aggregation backend.

Indexes ERC-20 transfer events from an Ethereum JSON-RPC node, folds repeated
pairwise interactions into scored relations, and serves corridor and graph
views over them. Modular layout: ingestion client, relation store, relation
service, stage scheduler, indexer stages, API server.
"""

__version__ = "0.1.0"
