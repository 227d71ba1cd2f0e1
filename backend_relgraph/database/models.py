"""
Domain models for stored entities.

Relations plus the filter / sort / pagination value objects used to query
them. Plain dataclasses with no ORM coupling; the store converts table rows to
these before handing them to the service. Timestamps are Unix seconds (UTC).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EntityType(str, Enum):
    ACTOR = "actor"
    ENTITY = "entity"
    WALLET = "wallet"
    TOKEN = "token"


class Direction(str, Enum):
    IN = "in"
    OUT = "out"
    BIDIRECTIONAL = "bidirectional"


# Common relation tags; informational, any string is accepted.
RELATION_TAGS = (
    "fund-flow",
    "lp",
    "bridge",
    "cex",
    "dex",
    "smart-money",
    "whale",
    "mev",
    "wash-trading",
    "accumulation",
    "distribution",
    "rotation",
)

SORT_FIELDS = ("densityScore", "volumeUSD", "interactionCount", "lastSeenAt", "influenceWeight")
SORT_ORDERS = ("asc", "desc")
DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000


def iso(ts: int | None) -> str | None:
    """Unix seconds -> ISO 8601 (UTC); None passes through."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class RelationKey:
    """Unique identity of a relation: (from, to, fromType, toType)."""

    from_id: str
    to_id: str
    from_type: str
    to_type: str


@dataclass
class Relation:
    """Aggregated connection between two entities."""

    id: int | None
    from_id: str
    to_id: str
    from_type: str
    to_type: str
    direction: str
    interaction_count: int
    volume_usd: float
    density_score: float
    influence_weight: float
    first_seen_at: int
    """Unix timestamp (seconds) of the first observed interaction."""
    last_seen_at: int
    """Unix timestamp (seconds) of the most recently submitted interaction."""
    tags: list[str] = field(default_factory=list)
    created_at: int | None = None
    updated_at: int | None = None

    @property
    def key(self) -> RelationKey:
        return RelationKey(self.from_id, self.to_id, self.from_type, self.to_type)

    def to_dict(self, *, round_scores: bool = False) -> dict[str, Any]:
        density = round(self.density_score, 2) if round_scores else self.density_score
        influence = round(self.influence_weight, 2) if round_scores else self.influence_weight
        return {
            "id": str(self.id) if self.id is not None else None,
            "from": self.from_id,
            "to": self.to_id,
            "fromType": self.from_type,
            "toType": self.to_type,
            "direction": self.direction,
            "interactionCount": self.interaction_count,
            "volumeUSD": self.volume_usd,
            "densityScore": density,
            "influenceWeight": influence,
            "firstSeenAt": iso(self.first_seen_at),
            "lastSeenAt": iso(self.last_seen_at),
            "tags": list(self.tags),
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


@dataclass
class RelationFilter:
    """Optional predicates, ANDed. Tags match any; since/until bound lastSeenAt (inclusive)."""

    from_id: str | None = None
    to_id: str | None = None
    from_type: str | None = None
    to_type: str | None = None
    direction: str | None = None
    min_density: float | None = None
    max_density: float | None = None
    min_volume: float | None = None
    max_volume: float | None = None
    min_interactions: int | None = None
    tags: list[str] | None = None
    since: int | None = None
    until: int | None = None


@dataclass
class RelationSort:
    field: str = "densityScore"
    order: str = "desc"

    def __post_init__(self) -> None:
        if self.field not in SORT_FIELDS:
            raise ValueError(f"sort field must be one of {SORT_FIELDS}, got {self.field!r}")
        if self.order not in SORT_ORDERS:
            raise ValueError(f"sort order must be 'asc' or 'desc', got {self.order!r}")


@dataclass
class Pagination:
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0

    def __post_init__(self) -> None:
        if not (1 <= self.limit <= MAX_PAGE_LIMIT):
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
