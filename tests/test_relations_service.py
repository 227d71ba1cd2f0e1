"""
Tests for RelationsService: upsert / merge, corridor, graph, query, admin.

Uses a temporary SQLite DB via conftest fixtures.
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from backend_relgraph.core.exceptions import InvalidRelation, NotFoundError, ValidationError
from backend_relgraph.database.models import Pagination, Relation, RelationFilter, RelationSort

DAY = 86400
T0 = 1_700_000_000


def _rel(from_id, to_id, *, density=1.0, volume=10.0, count=1, influence=None,
         from_type="wallet", to_type="wallet", tags=None, first=T0, last=T0, direction="out") -> Relation:
    return Relation(
        id=None,
        from_id=from_id,
        to_id=to_id,
        from_type=from_type,
        to_type=to_type,
        direction=direction,
        interaction_count=count,
        volume_usd=volume,
        density_score=density,
        influence_weight=density if influence is None else influence,
        first_seen_at=first,
        last_seen_at=last,
        tags=list(tags or []),
    )


# -----------------------------------------------------------------------------
# Upsert
# -----------------------------------------------------------------------------

def test_first_interaction_creates_relation(service):
    rel = service.upsert("A", "B", "actor", "actor", "out", 100.0, T0, tags=["whale"])
    assert rel.id is not None
    assert rel.interaction_count == 1
    assert rel.volume_usd == 100.0
    assert rel.density_score == 1.0
    assert rel.influence_weight == 1.0
    assert rel.first_seen_at == T0
    assert rel.last_seen_at == T0
    assert rel.tags == ["whale"]


def test_second_interaction_merges_and_rescores(service):
    service.upsert("A", "B", "actor", "actor", "out", 100.0, T0)
    rel = service.upsert("A", "B", "actor", "actor", "out", 50.0, T0 + 2 * DAY)
    expected = math.log(3) * math.log(151) / 2
    assert rel.interaction_count == 2
    assert rel.volume_usd == pytest.approx(150.0)
    assert rel.density_score == pytest.approx(expected)
    assert rel.influence_weight == pytest.approx(expected * 1.5)
    assert rel.first_seen_at == T0
    assert rel.last_seen_at == T0 + 2 * DAY
    assert service.store.count() == 1


def test_upsert_accepts_datetime(service):
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    rel = service.upsert("A", "B", "wallet", "wallet", "out", 1.0, ts)
    assert rel.first_seen_at == int(ts.timestamp())
    naive = service.upsert("C", "D", "wallet", "wallet", "out", 1.0, datetime(2024, 1, 1))
    assert naive.first_seen_at == int(ts.timestamp())


def test_last_seen_is_overwritten_even_when_older(service):
    service.upsert("A", "B", "wallet", "wallet", "out", 10.0, T0 + 5 * DAY)
    rel = service.upsert("A", "B", "wallet", "wallet", "out", 10.0, T0 + DAY)
    assert rel.first_seen_at == T0 + 5 * DAY
    assert rel.last_seen_at == T0 + DAY
    # negative span floors at one day
    assert rel.density_score == pytest.approx(math.log(3) * math.log(21))


def test_direction_is_overwritten_and_tags_unioned(service):
    service.upsert("A", "B", "wallet", "wallet", "out", 10.0, T0, tags=["dex", "lp"])
    rel = service.upsert("A", "B", "wallet", "wallet", "bidirectional", 10.0, T0, tags=["lp", "whale"])
    assert rel.direction == "bidirectional"
    assert rel.tags == ["dex", "lp", "whale"]


def test_types_are_part_of_the_key(service):
    service.upsert("A", "B", "actor", "actor", "out", 10.0, T0)
    service.upsert("A", "B", "wallet", "wallet", "out", 10.0, T0)
    service.upsert("B", "A", "actor", "actor", "in", 10.0, T0)
    assert service.store.count() == 3


def test_self_relation_rejected(service):
    with pytest.raises(InvalidRelation):
        service.upsert("A", "A", "actor", "actor", "out", 1.0, T0)
    assert service.store.count() == 0


@pytest.mark.parametrize(
    "args",
    [
        ("", "B", "actor", "actor", "out", 1.0, T0),
        ("A", "  ", "actor", "actor", "out", 1.0, T0),
        ("A", "B", "person", "actor", "out", 1.0, T0),
        ("A", "B", "actor", "actor", "sideways", 1.0, T0),
        ("A", "B", "actor", "actor", "out", -1.0, T0),
        ("A", "B", "actor", "actor", "out", float("nan"), T0),
        ("A", "B", "actor", "actor", "out", 1.0, "yesterday"),
    ],
)
def test_invalid_input_rejected(service, args):
    with pytest.raises(ValidationError):
        service.upsert(*args)
    assert service.store.count() == 0


def test_concurrent_upserts_same_key_lose_nothing(service):
    n = 40

    def hit(i):
        return service.upsert("A", "B", "wallet", "wallet", "out", 1.0, T0 + i)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(hit, range(n)))
    rel = service.store.find_by_pair(service.store.find_corridor("A", "B")[0].key)
    assert rel.interaction_count == n
    assert rel.volume_usd == pytest.approx(float(n))


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------

def test_get_by_id(service):
    rel = service.upsert("A", "B", "wallet", "wallet", "out", 1.0, T0)
    assert service.get_by_id(rel.id).from_id == "A"
    with pytest.raises(NotFoundError):
        service.get_by_id(rel.id + 100)


def test_corridor_both_orientations_sorted_by_density(service):
    service.store.insert(_rel("A", "B", density=2.0, count=3, volume=30.0, tags=["dex"], direction="out"))
    service.store.insert(_rel("B", "A", density=5.0, count=2, volume=20.0, tags=["lp", "dex"],
                              first=T0 - DAY, last=T0 + DAY, direction="in"))
    service.store.insert(_rel("A", "C", density=9.0))
    relations, summary = service.get_corridor("A", "B")
    assert [r.density_score for r in relations] == [5.0, 2.0]
    assert summary.total_interactions == 5
    assert summary.total_volume_usd == pytest.approx(50.0)
    assert summary.max_density == 5.0
    assert sorted(summary.directions) == ["in", "out"]
    assert sorted(summary.all_tags) == ["dex", "lp"]
    assert summary.first_seen == T0 - DAY
    assert summary.last_seen == T0 + DAY


def test_corridor_empty_summary(service):
    relations, summary = service.get_corridor("X", "Y")
    assert relations == []
    data = summary.to_dict()
    assert data == {
        "totalInteractions": 0,
        "totalVolumeUSD": 0.0,
        "maxDensity": 0.0,
        "directions": [],
        "allTags": [],
        "firstSeen": None,
        "lastSeen": None,
    }


def test_graph_depth_one(service):
    service.store.insert(_rel("A", "B", density=3.0))
    service.store.insert(_rel("C", "A", density=1.0, from_type="actor"))
    service.store.insert(_rel("B", "D", density=4.0))
    graph = service.get_graph("A", entity_type="wallet")
    assert {n["id"] for n in graph["nodes"]} == {"A", "B", "C"}
    assert {(e["from"], e["to"]) for e in graph["edges"]} == {("A", "B"), ("C", "A")}
    assert {"id": "C", "type": "actor"} in graph["nodes"]

    dense = service.get_graph("A", min_density=2.0)
    assert [(e["from"], e["to"]) for e in dense["edges"]] == [("A", "B")]


def test_graph_depth_two_expands_and_raises_threshold(service):
    service.store.insert(_rel("A", "B", density=3.0))
    service.store.insert(_rel("B", "D", density=4.0))
    service.store.insert(_rel("B", "E", density=2.5))  # below 2.0 * 1.5
    graph = service.get_graph("A", depth=2, min_density=2.0)
    assert {n["id"] for n in graph["nodes"]} == {"A", "B", "D"}
    assert len(graph["edges"]) == 2


def test_graph_dedupes_unordered_pairs(service):
    service.store.insert(_rel("A", "B", density=3.0))
    service.store.insert(_rel("B", "A", density=2.0))
    service.store.insert(_rel("B", "C", density=2.0))
    graph = service.get_graph("A", depth=3)
    pairs = [frozenset((e["from"], e["to"])) for e in graph["edges"]]
    assert len(pairs) == len(set(pairs))
    ab = [e for e in graph["edges"] if frozenset((e["from"], e["to"])) == frozenset(("A", "B"))]
    assert ab[0]["density"] == 3.0


def test_graph_level_one_is_capped_at_limit_keeping_the_densest(service):
    for i in range(8):
        if i % 2:
            service.store.insert(_rel("hub", f"n{i}", density=float(i + 1)))
        else:
            service.store.insert(_rel(f"n{i}", "hub", density=float(i + 1)))
    graph = service.get_graph("hub", limit=3)
    assert len(graph["edges"]) == 3
    assert [e["density"] for e in graph["edges"]] == [8.0, 7.0, 6.0]
    assert len(graph["nodes"]) == 4


@pytest.mark.parametrize("depth", [0, 4])
def test_graph_rejects_depth_out_of_range(service, depth):
    with pytest.raises(ValidationError):
        service.get_graph("A", depth=depth)


def test_query_min_density_sorted_by_volume_ascending(service):
    for i in range(15):
        service.store.insert(_rel(f"w{i}", f"x{i}", density=float(i), volume=1000.0 - i * 10))
    page = service.query(
        RelationFilter(min_density=5.0),
        RelationSort(field="volumeUSD", order="asc"),
        Pagination(limit=10, offset=0),
    )
    assert page.total == 10
    assert len(page.relations) == 10
    assert all(r.density_score >= 5.0 for r in page.relations)
    volumes = [r.volume_usd for r in page.relations]
    assert volumes == sorted(volumes)
    assert page.page == 1
    assert page.total_pages == 1


def test_query_pagination_numbers(service):
    for i in range(25):
        service.store.insert(_rel(f"p{i}", f"q{i}", density=float(i)))
    page = service.query(pagination=Pagination(limit=10, offset=20))
    assert page.total == 25
    assert page.page == 3
    assert page.total_pages == 3
    assert len(page.relations) == 5
    # default sort: density descending
    first = service.query(pagination=Pagination(limit=3))
    assert [r.density_score for r in first.relations] == [24.0, 23.0, 22.0]


def test_query_tags_match_any_with_exact_total(service):
    service.store.insert(_rel("a", "b", tags=["dex"]))
    service.store.insert(_rel("c", "d", tags=["cex", "whale"]))
    service.store.insert(_rel("e", "f", tags=["dex-aggregator"]))
    service.store.insert(_rel("g", "h", tags=[]))
    page = service.query(RelationFilter(tags=["dex", "whale"]), pagination=Pagination(limit=1))
    assert page.total == 2
    assert page.total_pages == 2


def test_query_time_window_on_last_seen(service):
    service.store.insert(_rel("a", "b", last=T0))
    service.store.insert(_rel("c", "d", last=T0 + DAY))
    service.store.insert(_rel("e", "f", last=T0 + 2 * DAY))
    page = service.query(RelationFilter(since=T0 + DAY, until=T0 + 2 * DAY))
    assert {r.from_id for r in page.relations} == {"c", "e"}


def test_top_corridors_and_influencers(service):
    service.store.insert(_rel("a", "b", density=1.0, influence=9.0))
    service.store.insert(_rel("c", "d", density=5.0, influence=5.0))
    service.store.insert(_rel("e", "f", density=3.0, influence=1.0))
    assert [r.from_id for r in service.get_top_corridors(2)] == ["c", "e"]
    assert [r.from_id for r in service.get_top_influencers(1)] == ["a"]


def test_stats(service):
    assert service.get_stats() == {"totalRelations": 0, "totalVolume": 0.0, "avgDensity": 0.0, "byType": {}}
    service.store.insert(_rel("a", "b", density=2.0, volume=10.0, from_type="actor", to_type="actor"))
    service.store.insert(_rel("c", "d", density=4.0, volume=30.0))
    stats = service.get_stats()
    assert stats["totalRelations"] == 2
    assert stats["totalVolume"] == pytest.approx(40.0)
    assert stats["avgDensity"] == pytest.approx(3.0)
    assert stats["byType"] == {"actor->actor": 1, "wallet->wallet": 1}


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------

def test_add_tags_unions(service):
    rel = service.store.insert(_rel("a", "b", tags=["dex"]))
    updated = service.add_tags(rel.id, ["whale", "dex"])
    assert updated.tags == ["dex", "whale"]
    with pytest.raises(NotFoundError):
        service.add_tags(rel.id + 1, ["x"])
    with pytest.raises(ValidationError):
        service.add_tags(rel.id, [])


def test_delete(service):
    rel = service.store.insert(_rel("a", "b"))
    service.delete(rel.id)
    assert service.store.count() == 0
    with pytest.raises(NotFoundError):
        service.delete(rel.id)


def test_delete_older_than_is_strict(service):
    service.store.insert(_rel("a", "b", last=T0 - 1))
    service.store.insert(_rel("c", "d", last=T0))
    assert service.delete_older_than(T0) == 1
    assert service.store.count() == 1


def test_cleanup_uses_retention_days(service):
    now = T0 + 100 * DAY
    service.store.insert(_rel("old", "x", last=T0))
    service.store.insert(_rel("new", "x", last=T0 + 50 * DAY))
    assert service.cleanup(90, now=now) == 1
    assert service.store.count() == 1


def test_recalculate_all_densities_is_idempotent(service):
    stale = service.store.insert(_rel("a", "b", density=99.0, count=2, volume=150.0,
                                      from_type="actor", to_type="actor", first=T0, last=T0 + 2 * DAY))
    expected = math.log(3) * math.log(151) / 2
    service.store.insert(_rel("c", "d", density=math.log(2) * math.log(11), count=1, volume=10.0))
    assert service.recalculate_all_densities(batch_size=1) == 1
    fixed = service.get_by_id(stale.id)
    assert fixed.density_score == pytest.approx(expected)
    assert fixed.influence_weight == pytest.approx(expected * 1.5)
    assert service.recalculate_all_densities() == 0


def test_recalculate_keeps_a_merge_that_lands_after_the_batch_read(service, monkeypatch):
    service.upsert("A", "B", "actor", "actor", "out", 100.0, T0)
    read_batches = service.store.iter_batches

    def merge_after_read(batch_size):
        for batch in read_batches(batch_size):
            service.upsert("A", "B", "actor", "actor", "out", 1000.0, T0 + 2 * DAY)
            yield batch

    monkeypatch.setattr(service.store, "iter_batches", merge_after_read)
    assert service.recalculate_all_densities() == 0

    rel, = service.get_corridor("A", "B")[0]
    expected = math.log(3) * math.log(1101) / 2
    assert rel.interaction_count == 2
    assert rel.density_score == pytest.approx(expected)
    assert rel.influence_weight == pytest.approx(expected * 1.5)
