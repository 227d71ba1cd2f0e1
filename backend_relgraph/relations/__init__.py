"""Relation aggregation: scoring and the relations service."""

from backend_relgraph.relations.scoring import (
    calculate_density_score,
    calculate_influence_weight,
)
from backend_relgraph.relations.service import (
    CorridorSummary,
    RelationPage,
    RelationsService,
    summarize_corridor,
)

__all__ = [
    "CorridorSummary",
    "RelationPage",
    "RelationsService",
    "calculate_density_score",
    "calculate_influence_weight",
    "summarize_corridor",
]
