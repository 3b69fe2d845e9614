"""
Taste graph endpoints:
  GET  /taste-graph/{user_id}              — full graph (empty for unknown users)
  POST /taste-graph/{user_id}/engagements  — fold one engagement into the graph
  DELETE /taste-graph/{user_id}/follows/{interest_id} — unfollow, keeping the affinity
  GET  /taste-graph/{user_id}/top          — top-N by decayed score at as_of
  GET  /taste-graph/{user_id}/suggestions  — related interests not yet held
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from opentelemetry import trace

from personalization.dependencies import get_taste_graph, http_error
from personalization.errors import PersonalizationError
from personalization.schemas import (
    ID_PATTERN,
    EngagementCreate,
    Interest,
    InterestAffinity,
    ScoredAffinity,
    TasteGraph,
    as_utc,
    utcnow,
)
from personalization.services.taste_graph import TasteGraphService, decayed_score

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

UserId = Path(..., pattern=ID_PATTERN)


@router.get("/{user_id}", response_model=TasteGraph)
async def get_graph(
    user_id: str = UserId, service: TasteGraphService = Depends(get_taste_graph)
):
    try:
        return await service.get_taste_graph(user_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.post("/{user_id}/engagements", response_model=InterestAffinity)
async def record_engagement(
    body: EngagementCreate,
    user_id: str = UserId,
    service: TasteGraphService = Depends(get_taste_graph),
):
    try:
        return await service.record_engagement(user_id, body.interest_id, body.source, body.weight)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.delete("/{user_id}/follows/{interest_id}", response_model=InterestAffinity)
async def unfollow(
    user_id: str = UserId,
    interest_id: str = Path(..., pattern=ID_PATTERN),
    service: TasteGraphService = Depends(get_taste_graph),
):
    try:
        return await service.unfollow(user_id, interest_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.get("/{user_id}/top", response_model=list[ScoredAffinity])
async def top_interests(
    user_id: str = UserId,
    count: int = Query(20, ge=1, le=200),
    as_of: Optional[datetime] = Query(None, description="Defaults to now"),
    service: TasteGraphService = Depends(get_taste_graph),
):
    with tracer.start_as_current_span("taste_graph.top") as span:
        span.set_attribute("user.id", user_id)
        as_of = as_utc(as_of) if as_of else utcnow()
        try:
            top = await service.top_interests(user_id, count, as_of=as_of)
        except PersonalizationError as exc:
            raise http_error(exc) from exc
        return [ScoredAffinity(affinity=a, decayed_score=decayed_score(a, as_of)) for a in top]


@router.get("/{user_id}/suggestions", response_model=list[Interest])
async def suggestions(
    user_id: str = UserId,
    limit: int = Query(10, ge=1, le=100),
    service: TasteGraphService = Depends(get_taste_graph),
):
    try:
        return await service.suggested_interests(user_id, limit)
    except PersonalizationError as exc:
        raise http_error(exc) from exc
