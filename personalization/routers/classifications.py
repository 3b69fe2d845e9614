"""
Post snapshot and classification endpoints:
  PUT  /posts/{post_id}                         — upsert a post and classify it
  GET  /classifications/{post_id}               — stored classification
  POST /classifications/{post_id}/reclassify    — classify again, full replace
  POST /classifications/batch                   — resumable batch run
  POST /classifications/suggest                 — classify draft content
  GET  /classifications/analytics               — histogram, signals, volume
"""
import logging

from fastapi import APIRouter, Depends, Path, Query

from personalization.dependencies import get_classifier, get_posts, http_error
from personalization.errors import PersonalizationError
from personalization.schemas import (
    BatchRequest,
    BatchResult,
    Classification,
    ClassificationAnalytics,
    ID_PATTERN,
    Post,
    PostInterestClassification,
    SuggestRequest,
)
from personalization.services.classification import PostClassificationEngine
from personalization.services.posts import PostStore

logger = logging.getLogger(__name__)
posts_router = APIRouter()
router = APIRouter()


@posts_router.put("/{post_id}", response_model=Post)
async def upsert_post(
    body: Post,
    post_id: str = Path(..., pattern=ID_PATTERN),
    classify: bool = Query(True, description="Reclassify after storing"),
    posts: PostStore = Depends(get_posts),
    classifier: PostClassificationEngine = Depends(get_classifier),
):
    post = body.model_copy(update={"post_id": post_id})
    try:
        stored = await posts.upsert(post)
        if classify:
            await classifier.reclassify(post_id)
            stored = await posts.get(post_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc
    return stored


@router.post("/batch", response_model=BatchResult)
async def classify_batch(
    body: BatchRequest, classifier: PostClassificationEngine = Depends(get_classifier)
):
    return await classifier.classify_batch(body.limit, filter=body.filter, after=body.after)


@router.post("/suggest", response_model=list[Classification])
async def suggest(
    body: SuggestRequest, classifier: PostClassificationEngine = Depends(get_classifier)
):
    return await classifier.suggest_interests(body)


@router.get("/analytics", response_model=ClassificationAnalytics)
async def analytics(
    bins: int = Query(10, ge=1, le=100),
    top: int = Query(10, ge=1, le=100),
    classifier: PostClassificationEngine = Depends(get_classifier),
):
    return await classifier.analytics(bins=bins, top=top)


@router.get("/{post_id}", response_model=PostInterestClassification)
async def get_classification(
    post_id: str, classifier: PostClassificationEngine = Depends(get_classifier)
):
    try:
        return await classifier.get_classification(post_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc


@router.post("/{post_id}/reclassify", response_model=PostInterestClassification)
async def reclassify(
    post_id: str, classifier: PostClassificationEngine = Depends(get_classifier)
):
    try:
        return await classifier.reclassify(post_id)
    except PersonalizationError as exc:
        raise http_error(exc) from exc
