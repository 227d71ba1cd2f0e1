"""
SQLAlchemy table definitions.

relations holds the aggregated graph; erc20_logs, transfers and sync_state back
the indexer stages. Unix-second integer timestamps throughout.
"""

from __future__ import annotations

import time

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _now() -> int:
    return int(time.time())


class RelationRow(Base):
    """One row per unique (from_id, to_id, from_type, to_type)."""

    __tablename__ = "relations"
    __table_args__ = (
        UniqueConstraint("from_id", "to_id", "from_type", "to_type", name="uq_relations_pair"),
        Index("ix_relations_from_density", "from_id", "density_score"),
        Index("ix_relations_to_density", "to_id", "density_score"),
        Index("ix_relations_types", "from_type", "to_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_id = Column(String(128), nullable=False)
    to_id = Column(String(128), nullable=False)
    from_type = Column(String(16), nullable=False)
    to_type = Column(String(16), nullable=False)
    direction = Column(String(16), nullable=False)
    interaction_count = Column(Integer, nullable=False, default=1)
    volume_usd = Column(Float, nullable=False, default=0.0, index=True)
    density_score = Column(Float, nullable=False, default=1.0, index=True)
    influence_weight = Column(Float, nullable=False, default=1.0, index=True)
    first_seen_at = Column(BigInteger, nullable=False)
    last_seen_at = Column(BigInteger, nullable=False, index=True)
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(BigInteger, nullable=False, default=_now)
    updated_at = Column(BigInteger, nullable=False, default=_now, onupdate=_now)


class Erc20LogRow(Base):
    """Raw ERC-20 Transfer log (layer 1)."""

    __tablename__ = "erc20_logs"
    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_erc20_logs_tx_log"),
        Index("ix_erc20_logs_processed_block", "processed", "block_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String(42), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=False, index=True)
    block_hash = Column(String(66), nullable=True)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    topics = Column(JSON, nullable=False, default=list)
    data = Column(Text, nullable=False, default="0x")
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False, default=_now)


class TransferRow(Base):
    """Normalized token transfer (layer 2)."""

    __tablename__ = "transfers"
    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
        Index("ix_transfers_processed_block", "processed", "block_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_address = Column(String(42), nullable=False, index=True)
    to_address = Column(String(42), nullable=False, index=True)
    token_address = Column(String(42), nullable=False, index=True)
    amount_raw = Column(String(80), nullable=False)  # uint256 as decimal string
    amount_usd = Column(Float, nullable=False, default=0.0)
    block_number = Column(BigInteger, nullable=False)
    block_timestamp = Column(BigInteger, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(BigInteger, nullable=False, default=_now)


class SyncStateRow(Base):
    """Key/value cursors (e.g. last synced block)."""

    __tablename__ = "sync_state"

    key = Column(String(64), primary_key=True)
    value = Column(String(256), nullable=False)
    updated_at = Column(BigInteger, nullable=False, default=_now, onupdate=_now)
