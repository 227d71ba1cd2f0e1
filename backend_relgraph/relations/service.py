"""
Relations service: business logic for aggregated relations.

A relation is an aggregated connection, not a transaction: "between A and B
there were N interactions over period T, with this direction, volume and
density". Upserts fold each new interaction into the existing relation and
recompute its scores; corridor and graph views read the folded result.

Instances are built once per process with an injected RelationStore.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from backend_relgraph.core.exceptions import InvalidRelation, NotFoundError, ValidationError
from backend_relgraph.core.locks import KeyedLock
from backend_relgraph.database.models import (
    Direction,
    EntityType,
    Pagination,
    Relation,
    RelationFilter,
    RelationKey,
    RelationSort,
    iso,
)
from backend_relgraph.database.relation_store import RelationStore, merge_tags
from backend_relgraph.relations.scoring import (
    SECONDS_PER_DAY,
    calculate_density_score,
    calculate_influence_weight,
)
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

ENTITY_TYPES = frozenset(t.value for t in EntityType)
DIRECTIONS = frozenset(d.value for d in Direction)

# Graph expansion beyond level 1: frontier nodes expanded per level, relations
# fetched per expanded node, and threshold multiplier applied per level.
GRAPH_FANOUT_NODES = 10
GRAPH_FANOUT_LIMIT = 10
GRAPH_THRESHOLD_STEP = 1.5
MAX_GRAPH_DEPTH = 3

# recalculate_all_densities writes back only when a metric moves more than this
RECALC_EPSILON = 0.01
RECALC_BATCH_SIZE = 1000
DEFAULT_RETENTION_DAYS = 90


def to_unix(ts: datetime | int | float) -> int:
    """datetime (naive = UTC) or Unix seconds -> int Unix seconds."""
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return int(ts.timestamp())
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        raise ValidationError(f"timestamp must be a datetime or Unix seconds, got {type(ts).__name__}")
    return int(ts)


def _require_id(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _require_choice(name: str, value: Any, choices: frozenset[str]) -> str:
    raw = value.value if isinstance(value, (EntityType, Direction)) else value
    if raw not in choices:
        raise ValidationError(f"{name} must be one of {sorted(choices)}, got {raw!r}")
    return raw


def _clean_tags(tags: list[str] | None) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings")
    return [t.strip() for t in tags if t.strip()]


def _rescore(rel: Relation) -> tuple[float, float] | None:
    """Fresh (density, influence) for rel, or None when the stored scores are within RECALC_EPSILON."""
    density = calculate_density_score(rel.interaction_count, rel.volume_usd, rel.first_seen_at, rel.last_seen_at)
    influence = calculate_influence_weight(density, rel.from_type, rel.to_type)
    if abs(density - rel.density_score) > RECALC_EPSILON or abs(influence - rel.influence_weight) > RECALC_EPSILON:
        return density, influence
    return None


@dataclass
class CorridorSummary:
    total_interactions: int = 0
    total_volume_usd: float = 0.0
    max_density: float = 0.0
    directions: list[str] = field(default_factory=list)
    all_tags: list[str] = field(default_factory=list)
    first_seen: int | None = None
    last_seen: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalInteractions": self.total_interactions,
            "totalVolumeUSD": self.total_volume_usd,
            "maxDensity": self.max_density,
            "directions": list(self.directions),
            "allTags": list(self.all_tags),
            "firstSeen": iso(self.first_seen),
            "lastSeen": iso(self.last_seen),
        }


@dataclass
class RelationPage:
    relations: list[Relation]
    total: int
    page: int
    total_pages: int
    limit: int


def summarize_corridor(relations: list[Relation]) -> CorridorSummary:
    """Reduce a corridor's relations to totals, extremes, and unions. Empty input -> zeroed summary."""
    summary = CorridorSummary()
    for rel in relations:
        summary.total_interactions += rel.interaction_count
        summary.total_volume_usd += rel.volume_usd
        summary.max_density = max(summary.max_density, rel.density_score)
        if rel.direction not in summary.directions:
            summary.directions.append(rel.direction)
        summary.all_tags = merge_tags(summary.all_tags, rel.tags)
        if summary.first_seen is None or rel.first_seen_at < summary.first_seen:
            summary.first_seen = rel.first_seen_at
        if summary.last_seen is None or rel.last_seen_at > summary.last_seen:
            summary.last_seen = rel.last_seen_at
    return summary


class RelationsService:
    """Scoring, upsert/merge, corridor, graph, query and admin operations over a RelationStore."""

    def __init__(self, store: RelationStore, *, lock: KeyedLock | None = None) -> None:
        self._store = store
        self._lock = lock or KeyedLock()

    @property
    def store(self) -> RelationStore:
        return self._store

    # -------------------------------------------------------------------------
    # Upsert
    # -------------------------------------------------------------------------

    def upsert(
        self,
        from_id: str,
        to_id: str,
        from_type: str,
        to_type: str,
        direction: str,
        volume_usd: float,
        timestamp: datetime | int | float,
        tags: list[str] | None = None,
    ) -> Relation:
        """
        Create the relation on first interaction, otherwise fold this interaction in:
        count + 1, volume added, density / influence recomputed against the time since
        first seen, tags unioned, last_seen_at and direction set to the submitted values.
        """
        from_id = _require_id("from", from_id)
        to_id = _require_id("to", to_id)
        if from_id == to_id:
            raise InvalidRelation("Cannot create self-relation", entity_id=from_id)
        from_type = _require_choice("fromType", from_type, ENTITY_TYPES)
        to_type = _require_choice("toType", to_type, ENTITY_TYPES)
        direction = _require_choice("direction", direction, DIRECTIONS)
        try:
            volume = float(volume_usd)
        except (TypeError, ValueError) as e:
            raise ValidationError("volumeUSD must be a number") from e
        if math.isnan(volume) or math.isinf(volume) or volume < 0:
            raise ValidationError("volumeUSD must be a finite number >= 0")
        ts = to_unix(timestamp)
        new_tags = _clean_tags(tags)
        key = RelationKey(from_id, to_id, from_type, to_type)

        def on_create() -> dict[str, Any]:
            return {
                "direction": direction,
                "interaction_count": 1,
                "volume_usd": volume,
                "density_score": 1.0,
                "influence_weight": 1.0,
                "first_seen_at": ts,
                "last_seen_at": ts,
                "tags": merge_tags([], new_tags),
            }

        def on_merge(existing: Relation) -> dict[str, Any]:
            count = existing.interaction_count + 1
            total_volume = existing.volume_usd + volume
            density = calculate_density_score(count, total_volume, existing.first_seen_at, ts)
            return {
                "direction": direction,
                "interaction_count": count,
                "volume_usd": total_volume,
                "density_score": density,
                "influence_weight": calculate_influence_weight(density, from_type, to_type),
                "last_seen_at": ts,
                "tags": merge_tags(existing.tags, new_tags),
            }

        with self._lock.hold(key):
            relation, created = self._store.upsert(key, on_create=on_create, on_merge=on_merge)
        logger.debug(
            "relation_upserted",
            relation_id=relation.id,
            created=created,
            interaction_count=relation.interaction_count,
            density_score=round(relation.density_score, 4),
        )
        return relation

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_id(self, relation_id: int) -> Relation:
        relation = self._store.find_by_id(relation_id)
        if relation is None:
            raise NotFoundError("Relation not found", relation_id=relation_id)
        return relation

    def get_corridor(self, from_id: str, to_id: str) -> tuple[list[Relation], CorridorSummary]:
        """All relations between the two entities in either orientation, density descending, plus summary."""
        a = _require_id("fromId", from_id)
        b = _require_id("toId", to_id)
        relations = self._store.find_corridor(a, b)
        return relations, summarize_corridor(relations)

    def get_graph(
        self,
        entity_id: str,
        *,
        entity_type: str | None = None,
        depth: int = 1,
        min_density: float = 0.0,
        limit: int = 50,
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Influence graph around entity_id.

        Level 1: relations touching the entity with density >= min_density, at most
        limit. Each further level (depth 2..3) expands up to GRAPH_FANOUT_NODES nodes
        discovered by the previous level, fetching GRAPH_FANOUT_LIMIT relations each at
        a threshold raised by GRAPH_THRESHOLD_STEP per level. Edges are unique per
        unordered endpoint pair; the densest relation for a pair wins.
        """
        entity_id = _require_id("entityId", entity_id)
        if entity_type is not None:
            entity_type = _require_choice("entityType", entity_type, ENTITY_TYPES)
        if isinstance(depth, bool) or not isinstance(depth, int) or not (1 <= depth <= MAX_GRAPH_DEPTH):
            raise ValidationError(f"depth must be an integer between 1 and {MAX_GRAPH_DEPTH}")
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        min_density = float(min_density or 0.0)

        nodes: dict[str, str] = {entity_id: entity_type or EntityType.ENTITY.value}
        edges: list[dict[str, Any]] = []
        pairs: set[frozenset[str]] = set()

        def add(relations: list[Relation]) -> list[str]:
            discovered: list[str] = []
            for rel in relations:
                for node_id, node_type in ((rel.from_id, rel.from_type), (rel.to_id, rel.to_type)):
                    if node_id not in nodes:
                        discovered.append(node_id)
                    nodes[node_id] = node_type
                pair = frozenset((rel.from_id, rel.to_id))
                if pair in pairs:
                    continue
                pairs.add(pair)
                edges.append({
                    "from": rel.from_id,
                    "to": rel.to_id,
                    "density": rel.density_score,
                    "influence": rel.influence_weight,
                    "direction": rel.direction,
                })
            return discovered

        frontier = add(self._store.find_for_entity(entity_id, min_density=min_density, limit=limit))
        expanded = {entity_id}
        threshold = min_density
        for level in range(2, depth + 1):
            threshold *= GRAPH_THRESHOLD_STEP
            next_frontier: list[str] = []
            for node_id in [n for n in frontier if n not in expanded][:GRAPH_FANOUT_NODES]:
                expanded.add(node_id)
                next_frontier.extend(
                    add(self._store.find_for_entity(node_id, min_density=threshold, limit=GRAPH_FANOUT_LIMIT))
                )
            logger.debug("relation_graph_level", entity_id=entity_id, level=level, new_nodes=len(next_frontier))
            frontier = next_frontier
            if not frontier:
                break

        return {
            "nodes": [{"id": node_id, "type": node_type} for node_id, node_type in nodes.items()],
            "edges": edges,
        }

    def query(
        self,
        flt: RelationFilter | None = None,
        sort: RelationSort | None = None,
        pagination: Pagination | None = None,
    ) -> RelationPage:
        flt = flt or RelationFilter()
        sort = sort or RelationSort()
        pagination = pagination or Pagination()
        relations, total = self._store.find_many(flt, sort, pagination)
        return RelationPage(
            relations=relations,
            total=total,
            page=pagination.offset // pagination.limit + 1,
            total_pages=math.ceil(total / pagination.limit),
            limit=pagination.limit,
        )

    def get_top_corridors(self, limit: int = 50) -> list[Relation]:
        """Hottest corridors: highest density first."""
        return self._store.find_top("densityScore", max(1, limit))

    def get_top_influencers(self, limit: int = 50) -> list[Relation]:
        return self._store.find_top("influenceWeight", max(1, limit))

    def get_stats(self) -> dict[str, Any]:
        stats = self._store.aggregate_stats()
        return {
            "totalRelations": stats["total_relations"],
            "totalVolume": stats["total_volume"],
            "avgDensity": stats["avg_density"],
            "byType": {f"{f}->{t}": count for (f, t), count in sorted(stats["by_type"].items())},
        }

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    def add_tags(self, relation_id: int, tags: list[str]) -> Relation:
        clean = _clean_tags(tags)
        if not clean:
            raise ValidationError("tags must contain at least one non-empty string")
        relation = self._store.add_tags(relation_id, clean)
        if relation is None:
            raise NotFoundError("Relation not found", relation_id=relation_id)
        return relation

    def delete(self, relation_id: int) -> None:
        if not self._store.delete(relation_id):
            raise NotFoundError("Relation not found", relation_id=relation_id)
        logger.info("relation_deleted", relation_id=relation_id)

    def delete_older_than(self, cutoff: datetime | int | float) -> int:
        """Remove every relation whose last_seen_at is strictly before cutoff; return the count."""
        return self._store.delete_older_than(to_unix(cutoff))

    def cleanup(self, older_than_days: int = DEFAULT_RETENTION_DAYS, *, now: float | None = None) -> int:
        if older_than_days < 0:
            raise ValidationError("older_than_days must be >= 0")
        now_ts = time.time() if now is None else now
        return self.delete_older_than(int(now_ts - older_than_days * SECONDS_PER_DAY))

    def recalculate_all_densities(self, *, batch_size: int = RECALC_BATCH_SIZE) -> int:
        """
        Recompute density and influence for every stored relation from its counters
        and window bounds. Writes only when either metric moves by more than
        RECALC_EPSILON, so a second pass over unchanged data writes nothing.
        Returns the number of relations updated.

        The batch snapshot only picks candidates. Each candidate is re-read and
        rescored under its key lock, so a merge that lands after the batch read
        is never overwritten with scores from stale counters.
        """
        updated = 0
        scanned = 0
        for batch in self._store.iter_batches(batch_size):
            for rel in batch:
                scanned += 1
                if _rescore(rel) is None:
                    continue
                with self._lock.hold(rel.key):
                    current = self._store.find_by_id(rel.id)
                    scores = _rescore(current) if current is not None else None
                    if scores is None:
                        continue
                    density, influence = scores
                    self._store.update(rel.id, {"density_score": density, "influence_weight": influence})
                updated += 1
        logger.info("relations_densities_recalculated", scanned=scanned, updated=updated)
        return updated
