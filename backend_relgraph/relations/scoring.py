"""
Relation scoring: density score and influence weight.

We never draw N lines between two entities; we draw one corridor whose
thickness is its density:

    densityScore = ln(interactions + 1) * ln(volumeUSD + 1) / max(days, 1)

Logs bound growth so a few huge transfers or a burst of tiny ones cannot
dominate; dividing by the age of the relation in days measures concentration
of activity rather than raw cumulative volume.
"""

from __future__ import annotations

import math

SECONDS_PER_DAY = 86400.0
MIN_DAYS = 1.0
DEFAULT_BOOST = 1.0

# (from_type, to_type) -> multiplier applied to density
INFLUENCE_BOOST: dict[tuple[str, str], float] = {
    ("actor", "actor"): 1.5,
    ("actor", "entity"): 1.3,
    ("entity", "entity"): 1.2,
    ("wallet", "actor"): 1.1,
    ("token", "entity"): 1.0,
}


def days_between(first_seen_at: float, last_seen_at: float) -> float:
    """Elapsed days between two Unix timestamps, floored at MIN_DAYS."""
    return max((last_seen_at - first_seen_at) / SECONDS_PER_DAY, MIN_DAYS)


def calculate_density_score(
    interaction_count: int,
    volume_usd: float,
    first_seen_at: float,
    last_seen_at: float,
) -> float:
    return (
        math.log(interaction_count + 1) * math.log(volume_usd + 1)
    ) / days_between(first_seen_at, last_seen_at)


def influence_boost(from_type: str, to_type: str) -> float:
    return INFLUENCE_BOOST.get((from_type, to_type), DEFAULT_BOOST)


def calculate_influence_weight(density_score: float, from_type: str, to_type: str) -> float:
    return density_score * influence_boost(from_type, to_type)
