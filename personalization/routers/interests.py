"""
Interest taxonomy admin endpoints:
  POST  /interests                      — create an interest
  PATCH /interests/{id}                 — partial update / re-parent
  POST  /interests/{id}/deactivate      — soft delete
  GET   /interests/tree?full=           — roots, or every active node
  GET   /interests/{id}[/children|/path|/related]
  GET   /interests/search?q=            — name/keyword/synonym search
  GET   /interests/trending             — by posts, followers and growth
  POST  /interests/seed                 — create the base taxonomy
  POST  /interests/recalculate          — recompute stats for every node
  POST  /interests/{id}/recalculate     — recompute stats for one node
"""
import logging

from fastapi import APIRouter, Depends, Query, status

from personalization.dependencies import get_taxonomy, http_error
from personalization.errors import PersonalizationError
from personalization.schemas import (
    Interest,
    InterestCreate,
    InterestUpdate,
    RecalculateAllResult,
    StatsResult,
    TrendingInterest,
)
from personalization.services.seed import seed_base_taxonomy
from personalization.services.taxonomy import InterestTaxonomy

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=Interest, status_code=status.HTTP_201_CREATED)
async def create_interest(
    body: InterestCreate, taxonomy: InterestTaxonomy = Depends(get_taxonomy)
):
    try:
        return await taxonomy.create_interest(
            name=body.name,
            display_name=body.display_name,
            parent_id=body.parent_id,
            description=body.description,
            cover_image_url=body.cover_image_url,
            keywords=body.keywords,
            synonyms=body.synonyms,
            related_interest_ids=body.related_interest_ids,
            interest_id=body.id,
        )
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.get("/tree", response_model=list[Interest])
async def get_tree(
    full: bool = Query(False, description="Every active node instead of roots only"),
    taxonomy: InterestTaxonomy = Depends(get_taxonomy),
):
    return await taxonomy.get_tree(full=full)


@router.get("/search", response_model=list[Interest])
async def search_interests(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    taxonomy: InterestTaxonomy = Depends(get_taxonomy),
):
    return await taxonomy.search(q, limit)


@router.get("/trending", response_model=list[TrendingInterest])
async def trending_interests(
    limit: int = Query(10, ge=1, le=100),
    taxonomy: InterestTaxonomy = Depends(get_taxonomy),
):
    return await taxonomy.trending(limit)


@router.post("/seed")
async def seed(taxonomy: InterestTaxonomy = Depends(get_taxonomy)):
    created = await seed_base_taxonomy(taxonomy)
    return {"created": created}


@router.post("/recalculate", response_model=RecalculateAllResult)
async def recalculate_all(taxonomy: InterestTaxonomy = Depends(get_taxonomy)):
    return await taxonomy.recalculate_all()


@router.get("/{interest_id}", response_model=Interest)
async def get_interest(interest_id: str, taxonomy: InterestTaxonomy = Depends(get_taxonomy)):
    try:
        return await taxonomy.get_interest(interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.patch("/{interest_id}", response_model=Interest)
async def update_interest(
    interest_id: str,
    body: InterestUpdate,
    taxonomy: InterestTaxonomy = Depends(get_taxonomy),
):
    # Only fields present in the body; an explicit null parentId means "make root"
    changes = body.model_dump(exclude_unset=True)
    try:
        return await taxonomy.update_interest(interest_id, **changes)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.post("/{interest_id}/deactivate", response_model=Interest)
async def deactivate_interest(
    interest_id: str, taxonomy: InterestTaxonomy = Depends(get_taxonomy)
):
    try:
        return await taxonomy.deactivate(interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.get("/{interest_id}/children", response_model=list[Interest])
async def get_children(interest_id: str, taxonomy: InterestTaxonomy = Depends(get_taxonomy)):
    try:
        return await taxonomy.get_children(interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.get("/{interest_id}/path", response_model=list[Interest])
async def get_path(interest_id: str, taxonomy: InterestTaxonomy = Depends(get_taxonomy)):
    try:
        return await taxonomy.get_path(interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.get("/{interest_id}/related", response_model=list[Interest])
async def get_related(
    interest_id: str,
    limit: int = Query(10, ge=1, le=100),
    taxonomy: InterestTaxonomy = Depends(get_taxonomy),
):
    try:
        return await taxonomy.get_related(interest_id, limit)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.post("/{interest_id}/recalculate", response_model=StatsResult)
async def recalculate_stats(
    interest_id: str, taxonomy: InterestTaxonomy = Depends(get_taxonomy)
):
    try:
        return await taxonomy.recalculate_stats(interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc
