"""
Ranking endpoint — POST /rank

Orders a caller-supplied candidate set for one user. Personalisation
failures never surface as errors: the response falls back to recency order
with `personalized: false`. Only malformed input (e.g. a user id outside the
id format) is rejected, by request validation.
"""
import logging
import time

from fastapi import APIRouter, Depends
from opentelemetry import trace

from personalization.dependencies import get_ranking
from personalization.schemas import RankedPost, RankRequest, RankResponse
from personalization.services.ranking import RankingEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=RankResponse)
async def rank(body: RankRequest, engine: RankingEngine = Depends(get_ranking)):
    start_time = time.time()

    result = await engine.rank_with_scores(
        body.posts,
        body.user_id,
        as_of=body.as_of,
        timeout=body.timeout_seconds,
    )

    latency_ms = (time.time() - start_time) * 1000
    trace.get_current_span().set_attribute("rank.latency_ms", latency_ms)
    logger.debug(
        "Ranked %d posts for %s in %.1fms (personalized=%s)",
        len(result.posts), body.user_id, latency_ms, result.personalized,
    )
    return RankResponse(
        user_id=body.user_id,
        personalized=result.personalized,
        latency_ms=latency_ms,
        posts=[
            RankedPost(
                post_id=item.post.post_id,
                primary_interest_id=item.post.primary_interest_id,
                score=item.score,
                interest_relevance=item.interest_relevance,
                content_quality=item.content_quality,
                creator_quality=item.creator_quality,
                freshness=item.freshness,
            )
            for item in result.posts
        ],
    )
