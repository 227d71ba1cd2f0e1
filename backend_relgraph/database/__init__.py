"""
Database layer: relations, indexer logs and transfers, sync cursors.

SQLAlchemy over SQLite by default; set DATABASE_URL for PostgreSQL.
"""

from backend_relgraph.database.connection import Database, get_database
from backend_relgraph.database.models import (
    Direction,
    EntityType,
    Pagination,
    Relation,
    RelationFilter,
    RelationKey,
    RelationSort,
)
from backend_relgraph.database.relation_store import RelationStore

__all__ = [
    "Database",
    "Direction",
    "EntityType",
    "Pagination",
    "Relation",
    "RelationFilter",
    "RelationKey",
    "RelationSort",
    "RelationStore",
    "get_database",
]
