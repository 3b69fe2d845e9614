"""
FastAPI dependencies.

Services are built once in the app lifespan and kept on app.state; routes
receive them through these getters instead of importing globals.
"""
from fastapi import HTTPException, Request, status

from personalization.errors import (
    DuplicateInterestError,
    NotFoundError,
    PersonalizationError,
    TasteGraphUnavailable,
)
from personalization.services.classification import PostClassificationEngine
from personalization.services.posts import PostStore
from personalization.services.ranking import RankingEngine
from personalization.services.taste_graph import TasteGraphService
from personalization.services.taxonomy import InterestTaxonomy


def get_taxonomy(request: Request) -> InterestTaxonomy:
    return request.app.state.taxonomy


def get_taste_graph(request: Request) -> TasteGraphService:
    return request.app.state.taste_graph


def get_posts(request: Request) -> PostStore:
    return request.app.state.posts


def get_classifier(request: Request) -> PostClassificationEngine:
    return request.app.state.classifier


def get_ranking(request: Request) -> RankingEngine:
    return request.app.state.ranking


def http_error(exc: PersonalizationError) -> HTTPException:
    """Translate a domain error into a structured {field, message} response."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, DuplicateInterestError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TasteGraphUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=code, detail=exc.to_detail())
