"""Shared fixtures: a throwaway SQLite database, a frozen clock and wired services."""
from datetime import datetime, timedelta, timezone

import pytest

from personalization.config import Settings
from personalization.database import create_engine, create_session_factory, init_db
from personalization.locks import KeyedLocks
from personalization.schemas import Post, PostClassificationRef
from personalization.services.classification import (
    PostClassificationEngine,
    build_generators,
)
from personalization.services.posts import PostStore
from personalization.services.ranking import RankingEngine
from personalization.services.seed import seed_base_taxonomy
from personalization.services.taste_graph import TasteGraphService
from personalization.services.taxonomy import InterestTaxonomy

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_post(post_id: str, hours_old: float = 1.0, classifications=(), **fields) -> Post:
    return Post(
        post_id=post_id,
        user_id=fields.pop("user_id", "author"),
        created_at=NOW - timedelta(hours=hours_old),
        classifications=[
            PostClassificationRef(interest_id=iid, confidence=conf) for iid, conf in classifications
        ],
        **fields,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        use_redis_locks=False,
        qdrant_enabled=False,
        # SQLite has a single writer
        classify_concurrency=1,
        taste_graph_timeout_seconds=5.0,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def taxonomy(session_factory, locks, settings, clock):
    return InterestTaxonomy(session_factory, locks, settings, clock=clock)


@pytest.fixture
async def seeded_taxonomy(taxonomy):
    await seed_base_taxonomy(taxonomy)
    return taxonomy


@pytest.fixture
def taste_graph(session_factory, locks, settings, taxonomy, clock):
    return TasteGraphService(session_factory, locks, settings, taxonomy=taxonomy, clock=clock)


@pytest.fixture
def posts(session_factory, clock):
    return PostStore(session_factory, clock=clock)


@pytest.fixture
def classifier(session_factory, locks, seeded_taxonomy, posts, taste_graph, settings, clock):
    return PostClassificationEngine(
        session_factory,
        locks,
        seeded_taxonomy,
        posts,
        build_generators(settings, posts, taste_graph, clock=clock),
        settings,
        clock=clock,
    )


@pytest.fixture
def ranking(taste_graph, settings, clock):
    engine = RankingEngine(taste_graph, settings, clock=clock)
    yield engine
    engine.close()
