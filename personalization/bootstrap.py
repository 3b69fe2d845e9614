"""
Service wiring shared by the API and the worker.

Startup sequence:
  1. Create the DB engine and tables
  2. Choose keyed locks (in-process or Redis)
  3. Connect to Qdrant if the similar-posts signal is enabled
  4. Build taxonomy → taste graph → posts → classifier → ranking
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from personalization.clients.qdrant_client import QdrantSimilarPostFinder
from personalization.config import Settings
from personalization.database import create_engine, create_session_factory, init_db
from personalization.locks import KeyedLocks, RedisKeyedLocks, create_locks
from personalization.services.classification import (
    PostClassificationEngine,
    build_generators,
)
from personalization.services.posts import PostStore
from personalization.services.ranking import RankingEngine
from personalization.services.taste_graph import TasteGraphService
from personalization.services.taxonomy import InterestTaxonomy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: AsyncEngine
    locks: KeyedLocks | RedisKeyedLocks
    taxonomy: InterestTaxonomy
    taste_graph: TasteGraphService
    posts: PostStore
    classifier: PostClassificationEngine
    ranking: RankingEngine
    finder: Optional[QdrantSimilarPostFinder] = None

    async def close(self) -> None:
        self.ranking.close()
        if self.finder is not None:
            await self.finder.stop()
        await self.locks.close()
        await self.engine.dispose()


async def build_services(settings: Settings) -> Services:
    engine = create_engine(settings)
    await init_db(engine)
    session_factory = create_session_factory(engine)
    locks = await create_locks(settings)

    finder: Optional[QdrantSimilarPostFinder] = None
    if settings.qdrant_enabled:
        finder = QdrantSimilarPostFinder(settings)
        try:
            await finder.start()
        except Exception as exc:
            logger.warning("Qdrant unavailable (%s) — similar-posts signal disabled", exc)
            finder = None

    taxonomy = InterestTaxonomy(session_factory, locks, settings)
    taste_graph = TasteGraphService(session_factory, locks, settings, taxonomy=taxonomy)
    posts = PostStore(session_factory)
    classifier = PostClassificationEngine(
        session_factory,
        locks,
        taxonomy,
        posts,
        build_generators(settings, posts, taste_graph, finder),
        settings,
    )
    ranking = RankingEngine(taste_graph, settings)

    return Services(
        engine=engine,
        locks=locks,
        taxonomy=taxonomy,
        taste_graph=taste_graph,
        posts=posts,
        classifier=classifier,
        ranking=ranking,
        finder=finder,
    )
