"""
Relation store: persistence for aggregated relations.

Capability surface used by the relation service: point lookup by id and by
unique pair key, corridor and per-entity lookups, filtered / sorted / paginated
queries with total count, field updates, set-union tag updates, a single-session
read-modify-write upsert, grouped aggregation, and bulk delete by age.

Every public method runs in its own session, so each single-row write is atomic.
No multi-row transactions are offered.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from typing import Any

from sqlalchemy import String, and_, cast, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend_relgraph.database.connection import Database
from backend_relgraph.database.models import (
    Pagination,
    Relation,
    RelationFilter,
    RelationKey,
    RelationSort,
)
from backend_relgraph.database.tables import RelationRow
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

SORT_COLUMNS = {
    "densityScore": RelationRow.density_score,
    "volumeUSD": RelationRow.volume_usd,
    "interactionCount": RelationRow.interaction_count,
    "lastSeenAt": RelationRow.last_seen_at,
    "influenceWeight": RelationRow.influence_weight,
}

# Columns the service may set through update()
UPDATABLE_FIELDS = frozenset({
    "direction",
    "interaction_count",
    "volume_usd",
    "density_score",
    "influence_weight",
    "last_seen_at",
    "tags",
})


def _to_relation(row: RelationRow) -> Relation:
    return Relation(
        id=row.id,
        from_id=row.from_id,
        to_id=row.to_id,
        from_type=row.from_type,
        to_type=row.to_type,
        direction=row.direction,
        interaction_count=row.interaction_count,
        volume_usd=row.volume_usd,
        density_score=row.density_score,
        influence_weight=row.influence_weight,
        first_seen_at=row.first_seen_at,
        last_seen_at=row.last_seen_at,
        tags=list(row.tags or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _tag_clause(tags: list[str]):
    """Match-any tag membership against the JSON array text; quotes anchor whole elements."""
    text_col = cast(RelationRow.tags, String)
    return or_(*[
        text_col.like(f"%{_like_escape(json.dumps(tag))}%", escape="\\")
        for tag in tags
    ])


def build_conditions(flt: RelationFilter) -> list[Any]:
    """Translate a RelationFilter into SQLAlchemy WHERE clauses (ANDed by the caller)."""
    conds: list[Any] = []
    if flt.from_id:
        conds.append(RelationRow.from_id == flt.from_id)
    if flt.to_id:
        conds.append(RelationRow.to_id == flt.to_id)
    if flt.from_type:
        conds.append(RelationRow.from_type == flt.from_type)
    if flt.to_type:
        conds.append(RelationRow.to_type == flt.to_type)
    if flt.direction:
        conds.append(RelationRow.direction == flt.direction)
    if flt.min_density is not None:
        conds.append(RelationRow.density_score >= flt.min_density)
    if flt.max_density is not None:
        conds.append(RelationRow.density_score <= flt.max_density)
    if flt.min_volume is not None:
        conds.append(RelationRow.volume_usd >= flt.min_volume)
    if flt.max_volume is not None:
        conds.append(RelationRow.volume_usd <= flt.max_volume)
    if flt.min_interactions is not None:
        conds.append(RelationRow.interaction_count >= flt.min_interactions)
    if flt.tags:
        conds.append(_tag_clause(flt.tags))
    if flt.since is not None:
        conds.append(RelationRow.last_seen_at >= flt.since)
    if flt.until is not None:
        conds.append(RelationRow.last_seen_at <= flt.until)
    return conds


def _key_clause(key: RelationKey):
    return and_(
        RelationRow.from_id == key.from_id,
        RelationRow.to_id == key.to_id,
        RelationRow.from_type == key.from_type,
        RelationRow.to_type == key.to_type,
    )


class RelationStore:
    """SQLAlchemy-backed relation persistence."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def find_by_id(self, relation_id: int) -> Relation | None:
        with self._db.session() as session:
            row = session.get(RelationRow, relation_id)
            return _to_relation(row) if row else None

    def find_by_pair(self, key: RelationKey) -> Relation | None:
        with self._db.session() as session:
            row = session.execute(select(RelationRow).where(_key_clause(key))).scalar_one_or_none()
            return _to_relation(row) if row else None

    def find_corridor(self, a: str, b: str) -> list[Relation]:
        """All relations between a and b in either orientation, density descending."""
        stmt = (
            select(RelationRow)
            .where(or_(
                and_(RelationRow.from_id == a, RelationRow.to_id == b),
                and_(RelationRow.from_id == b, RelationRow.to_id == a),
            ))
            .order_by(RelationRow.density_score.desc(), RelationRow.id.asc())
        )
        with self._db.session() as session:
            return [_to_relation(r) for r in session.execute(stmt).scalars()]

    def find_for_entity(
        self,
        entity_id: str,
        *,
        min_density: float | None = None,
        limit: int = 50,
    ) -> list[Relation]:
        """Relations touching entity_id (either endpoint), density descending, capped at limit."""
        stmt = select(RelationRow).where(
            or_(RelationRow.from_id == entity_id, RelationRow.to_id == entity_id)
        )
        if min_density is not None:
            stmt = stmt.where(RelationRow.density_score >= min_density)
        stmt = stmt.order_by(RelationRow.density_score.desc(), RelationRow.id.asc()).limit(limit)
        with self._db.session() as session:
            return [_to_relation(r) for r in session.execute(stmt).scalars()]

    def find_many(
        self,
        flt: RelationFilter,
        sort: RelationSort,
        pagination: Pagination,
    ) -> tuple[list[Relation], int]:
        """Return (page, total matching count)."""
        conds = build_conditions(flt)
        column = SORT_COLUMNS[sort.field]
        order = column.asc() if sort.order == "asc" else column.desc()
        stmt = (
            select(RelationRow)
            .where(*conds)
            .order_by(order, RelationRow.id.asc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        count_stmt = select(func.count(RelationRow.id)).where(*conds)
        with self._db.session() as session:
            rows = [_to_relation(r) for r in session.execute(stmt).scalars()]
            total = session.execute(count_stmt).scalar_one()
        return rows, int(total)

    def find_top(self, field: str, limit: int) -> list[Relation]:
        column = SORT_COLUMNS[field]
        stmt = select(RelationRow).order_by(column.desc(), RelationRow.id.asc()).limit(limit)
        with self._db.session() as session:
            return [_to_relation(r) for r in session.execute(stmt).scalars()]

    def iter_batches(self, batch_size: int = 1000) -> Iterator[list[Relation]]:
        """Yield every relation in id order, batch_size rows at a time (keyset pagination)."""
        last_id = 0
        while True:
            stmt = (
                select(RelationRow)
                .where(RelationRow.id > last_id)
                .order_by(RelationRow.id.asc())
                .limit(batch_size)
            )
            with self._db.session() as session:
                batch = [_to_relation(r) for r in session.execute(stmt).scalars()]
            if not batch:
                return
            yield batch
            last_id = batch[-1].id

    def count(self) -> int:
        with self._db.session() as session:
            return int(session.execute(select(func.count(RelationRow.id))).scalar_one())

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, relation: Relation) -> Relation:
        """Insert a new relation; raises IntegrityError if its key already exists."""
        with self._db.session() as session:
            row = RelationRow(
                from_id=relation.from_id,
                to_id=relation.to_id,
                from_type=relation.from_type,
                to_type=relation.to_type,
                direction=relation.direction,
                interaction_count=relation.interaction_count,
                volume_usd=relation.volume_usd,
                density_score=relation.density_score,
                influence_weight=relation.influence_weight,
                first_seen_at=relation.first_seen_at,
                last_seen_at=relation.last_seen_at,
                tags=list(relation.tags),
            )
            session.add(row)
            session.flush()
            session.refresh(row)
            return _to_relation(row)

    def upsert(
        self,
        key: RelationKey,
        *,
        on_create: Callable[[], dict[str, Any]],
        on_merge: Callable[[Relation], dict[str, Any]],
    ) -> tuple[Relation, bool]:
        """
        Read-modify-write in one session. Locks the row (SELECT ... FOR UPDATE) on
        backends that support it. Returns (relation, created).

        A concurrent first insert for the same key loses on the unique constraint;
        the loser retries once and lands on the merge path.
        """
        try:
            return self._upsert_once(key, on_create, on_merge)
        except IntegrityError:
            logger.info(
                "relation_upsert_conflict_retry",
                from_id=key.from_id,
                to_id=key.to_id,
                from_type=key.from_type,
                to_type=key.to_type,
            )
            return self._upsert_once(key, on_create, on_merge)

    def _upsert_once(
        self,
        key: RelationKey,
        on_create: Callable[[], dict[str, Any]],
        on_merge: Callable[[Relation], dict[str, Any]],
    ) -> tuple[Relation, bool]:
        with self._db.session() as session:
            row = session.execute(
                select(RelationRow).where(_key_clause(key)).with_for_update()
            ).scalar_one_or_none()
            created = row is None
            if created:
                values = on_create()
                row = RelationRow(
                    from_id=key.from_id,
                    to_id=key.to_id,
                    from_type=key.from_type,
                    to_type=key.to_type,
                    **values,
                )
                session.add(row)
            else:
                for name, value in on_merge(_to_relation(row)).items():
                    setattr(row, name, value)
            session.flush()
            session.refresh(row)
            return _to_relation(row), created

    def update(self, relation_id: int, values: dict[str, Any]) -> Relation | None:
        unknown = set(values) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update fields: {sorted(unknown)}")
        with self._db.session() as session:
            row = session.get(RelationRow, relation_id, with_for_update=True)
            if row is None:
                return None
            for name, value in values.items():
                setattr(row, name, value)
            session.flush()
            session.refresh(row)
            return _to_relation(row)

    def add_tags(self, relation_id: int, tags: list[str]) -> Relation | None:
        """Set-union tags into the relation's tag array; None if the relation is absent."""
        with self._db.session() as session:
            row = session.get(RelationRow, relation_id, with_for_update=True)
            if row is None:
                return None
            row.tags = merge_tags(row.tags or [], tags)
            session.flush()
            session.refresh(row)
            return _to_relation(row)

    def delete(self, relation_id: int) -> bool:
        with self._db.session() as session:
            result = session.execute(delete(RelationRow).where(RelationRow.id == relation_id))
            return (result.rowcount or 0) > 0

    def delete_older_than(self, cutoff_ts: int) -> int:
        """Delete relations with last_seen_at < cutoff_ts; return the count removed."""
        with self._db.session() as session:
            result = session.execute(
                delete(RelationRow).where(RelationRow.last_seen_at < cutoff_ts)
            )
            removed = int(result.rowcount or 0)
        logger.info("relations_deleted_older_than", cutoff_ts=cutoff_ts, removed=removed)
        return removed

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def aggregate_stats(self) -> dict[str, Any]:
        """Totals plus a count breakdown keyed by (from_type, to_type)."""
        with self._db.session() as session:
            return _aggregate(session)


def _aggregate(session: Session) -> dict[str, Any]:
    total, volume, avg_density = session.execute(
        select(
            func.count(RelationRow.id),
            func.coalesce(func.sum(RelationRow.volume_usd), 0.0),
            func.coalesce(func.avg(RelationRow.density_score), 0.0),
        )
    ).one()
    by_type_rows = session.execute(
        select(RelationRow.from_type, RelationRow.to_type, func.count(RelationRow.id))
        .group_by(RelationRow.from_type, RelationRow.to_type)
    ).all()
    return {
        "total_relations": int(total or 0),
        "total_volume": float(volume or 0.0),
        "avg_density": float(avg_density or 0.0),
        "by_type": {(f, t): int(c) for f, t, c in by_type_rows},
    }


def merge_tags(existing: list[str], incoming: list[str] | None) -> list[str]:
    """Set union preserving first-seen order."""
    out = list(dict.fromkeys(existing))
    for tag in incoming or []:
        if tag not in out:
            out.append(tag)
    return out
