"""
Qdrant vector database client.

Collection layout (written by the embedding pipeline):
  name    : posts  (settings.qdrant_collection)
  id      : post_id (UUID string)
  vector  : post embedding, cosine distance

Used by the similar-posts classification signal: the stored post's own
vector is the query, so no embedding model runs in this service.
"""
import logging
from typing import Optional

from qdrant_client import AsyncQdrantClient

from personalization.config import Settings

logger = logging.getLogger(__name__)


class QdrantSimilarPostFinder:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: Optional[AsyncQdrantClient] = None

    async def start(self) -> None:
        self._client = AsyncQdrantClient(
            host=self._settings.qdrant_host,
            port=self._settings.qdrant_port,
        )
        existing = await self._client.get_collections()
        names = [c.name for c in existing.collections]
        if self._settings.qdrant_collection not in names:
            logger.warning(
                "Qdrant collection '%s' not found — similar-post signal will find nothing",
                self._settings.qdrant_collection,
            )
        else:
            logger.info("Qdrant collection '%s' ready", self._settings.qdrant_collection)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _get_client(self) -> AsyncQdrantClient:
        if self._client is None:
            raise RuntimeError("Qdrant not initialised — call start() at startup")
        return self._client

    async def similar(self, post_id: str, limit: int) -> list[tuple[str, float]]:
        """
        Nearest neighbours of an already-indexed post, as (post_id, similarity)
        pairs above similar_posts_min_score. Cosine scores are clamped to [0, 1].
        """
        response = await self._get_client().query_points(
            collection_name=self._settings.qdrant_collection,
            query=post_id,
            limit=limit,
            score_threshold=self._settings.similar_posts_min_score,
            with_payload=False,
        )
        return [
            (str(point.id), max(0.0, min(1.0, point.score)))
            for point in response.points
            if str(point.id) != post_id
        ]
