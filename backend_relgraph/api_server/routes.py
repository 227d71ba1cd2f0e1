"""
FastAPI router: /api/relations.

Thin layer: validates input, calls the relations service, formats output in
the {ok, data} envelope. Scores are rounded to 2 decimals in responses.

Endpoints:
- GET    /                    query relations with filters
- GET    /stats               aggregate statistics
- GET    /top/corridors       densest relations
- GET    /top/influencers     highest influence relations
- GET    /corridor/{a}/{b}    corridor between two entities
- GET    /graph/{entity_id}   influence graph around an entity
- GET    /{id}                relation by id
- POST   /                    upsert one interaction
- POST   /{id}/tags           add tags
- DELETE /{id}                delete
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from backend_relgraph.core.exceptions import ValidationError
from backend_relgraph.database.models import (
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
    RELATION_TAGS,
    Direction,
    EntityType,
    Pagination,
    Relation,
    RelationFilter,
    RelationSort,
)
from backend_relgraph.relations.service import RelationsService, to_unix
from backend_relgraph.relgraph_logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/relations", tags=["relations"])

TOP_DEFAULT_LIMIT = 50
TOP_MAX_LIMIT = 200
GRAPH_MAX_LIMIT = 500
TAGS_DESCRIPTION = "Free-form tags; common ones: " + ", ".join(RELATION_TAGS)


def get_service(request: Request) -> RelationsService:
    """Dependency: the process-wide service built in the app lifespan."""
    return request.app.state.pipeline.service


def format_relation(relation: Relation) -> dict[str, Any]:
    return relation.to_dict(round_scores=True)


def ok(data: Any) -> dict[str, Any]:
    return {"ok": True, "data": data}


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------

class UpsertRelationRequest(BaseModel):
    """POST / body: one observed interaction between two entities."""

    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(..., alias="from", min_length=1)
    to_id: str = Field(..., alias="to", min_length=1)
    from_type: EntityType = Field(..., alias="fromType")
    to_type: EntityType = Field(..., alias="toType")
    direction: Direction
    volume_usd: float = Field(..., alias="volumeUSD", ge=0)
    timestamp: datetime
    tags: list[str] = Field(default_factory=list, description=TAGS_DESCRIPTION)


class AddTagsRequest(BaseModel):
    tags: list[str] = Field(..., min_length=1, description=TAGS_DESCRIPTION)


def _split_tags(tags: list[str] | None) -> list[str] | None:
    if not tags:
        return None
    out = [t.strip() for raw in tags for t in raw.split(",") if t.strip()]
    return out or None


# -----------------------------------------------------------------------------
# Routes (static paths before /{relation_id})
# -----------------------------------------------------------------------------

@router.get("")
def query_relations(
    service: RelationsService = Depends(get_service),
    from_id: str | None = Query(None, alias="from"),
    to_id: str | None = Query(None, alias="to"),
    from_type: EntityType | None = Query(None, alias="fromType"),
    to_type: EntityType | None = Query(None, alias="toType"),
    direction: Direction | None = None,
    min_density: float | None = Query(None, alias="minDensity", ge=0),
    max_density: float | None = Query(None, alias="maxDensity"),
    min_volume: float | None = Query(None, alias="minVolume", ge=0),
    max_volume: float | None = Query(None, alias="maxVolume"),
    min_interactions: int | None = Query(None, alias="minInteractions", ge=0),
    tags: list[str] | None = Query(None),
    since: datetime | None = None,
    until: datetime | None = None,
    sort_by: str = Query("densityScore", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
):
    try:
        sort = RelationSort(field=sort_by, order=sort_order)
        pagination = Pagination(limit=limit, offset=offset)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    flt = RelationFilter(
        from_id=from_id,
        to_id=to_id,
        from_type=from_type.value if from_type else None,
        to_type=to_type.value if to_type else None,
        direction=direction.value if direction else None,
        min_density=min_density,
        max_density=max_density,
        min_volume=min_volume,
        max_volume=max_volume,
        min_interactions=min_interactions,
        tags=_split_tags(tags),
        since=to_unix(since) if since else None,
        until=to_unix(until) if until else None,
    )
    page = service.query(flt, sort, pagination)
    return ok({
        "relations": [format_relation(r) for r in page.relations],
        "pagination": {
            "total": page.total,
            "page": page.page,
            "totalPages": page.total_pages,
            "limit": page.limit,
        },
    })


@router.get("/stats")
def relation_stats(service: RelationsService = Depends(get_service)):
    return ok(service.get_stats())


@router.get("/top/corridors")
def top_corridors(
    service: RelationsService = Depends(get_service),
    limit: int = Query(TOP_DEFAULT_LIMIT, ge=1),
):
    relations = service.get_top_corridors(min(limit, TOP_MAX_LIMIT))
    return ok([format_relation(r) for r in relations])


@router.get("/top/influencers")
def top_influencers(
    service: RelationsService = Depends(get_service),
    limit: int = Query(TOP_DEFAULT_LIMIT, ge=1),
):
    relations = service.get_top_influencers(min(limit, TOP_MAX_LIMIT))
    return ok([format_relation(r) for r in relations])


@router.get("/corridor/{from_id}/{to_id}")
def corridor(from_id: str, to_id: str, service: RelationsService = Depends(get_service)):
    """Everything between two entities, both orientations; what a click on a corridor loads."""
    relations, summary = service.get_corridor(from_id, to_id)
    return ok({
        "relations": [format_relation(r) for r in relations],
        "summary": summary.to_dict(),
    })


@router.get("/graph/{entity_id}")
def graph(
    entity_id: str,
    service: RelationsService = Depends(get_service),
    entity_type: EntityType | None = Query(None, alias="entityType"),
    depth: int = Query(1, ge=1, le=3),
    min_density: float | None = Query(None, alias="minDensity", ge=0),
    limit: int = Query(50, ge=1, le=GRAPH_MAX_LIMIT),
):
    return ok(service.get_graph(
        entity_id,
        entity_type=entity_type.value if entity_type else None,
        depth=depth,
        min_density=min_density or 0.0,
        limit=limit,
    ))


@router.get("/{relation_id}")
def get_relation(relation_id: int, service: RelationsService = Depends(get_service)):
    return ok(format_relation(service.get_by_id(relation_id)))


@router.post("", status_code=201)
def upsert_relation(body: UpsertRelationRequest, service: RelationsService = Depends(get_service)):
    relation = service.upsert(
        from_id=body.from_id,
        to_id=body.to_id,
        from_type=body.from_type.value,
        to_type=body.to_type.value,
        direction=body.direction.value,
        volume_usd=body.volume_usd,
        timestamp=body.timestamp,
        tags=body.tags,
    )
    return ok(format_relation(relation))


@router.post("/{relation_id}/tags")
def add_tags(relation_id: int, body: AddTagsRequest, service: RelationsService = Depends(get_service)):
    return ok(format_relation(service.add_tags(relation_id, body.tags)))


@router.delete("/{relation_id}")
def delete_relation(relation_id: int, service: RelationsService = Depends(get_service)):
    service.delete(relation_id)
    return JSONResponse({"ok": True, "message": "Relation deleted"})
