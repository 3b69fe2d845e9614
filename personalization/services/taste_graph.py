"""
Taste graph service.

Each user owns one document of interest affinities. Scores are never decayed
in storage: decay is applied at read time from last_engagement, so reads are
pure functions of (stored graph, as_of).

Blending on repeated engagement:
    new = old + reinforcement_rate * weight * (1 - old)
which never decreases the base score and approaches 1 asymptotically; only
time lowers the effective (decayed) score.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from personalization.config import Settings
from personalization.errors import NotFoundError, TasteGraphUnavailable
from personalization.locks import KeyedLocks
from personalization.models import TasteGraphRow
from personalization.schemas import (
    AffinitySource,
    Interest,
    InterestAffinity,
    Post,
    TasteGraph,
    clamp01,
    utcnow,
)
from personalization.services.taxonomy import InterestTaxonomy
from personalization.telemetry import ENGAGEMENTS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def decayed_score(affinity: InterestAffinity, as_of: datetime) -> float:
    return affinity.current_score(as_of)


def blend(old: float, weight: float, rate: float) -> float:
    return clamp01(old + rate * clamp01(weight) * (1.0 - old))


class TasteGraphService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks,
        settings: Settings,
        taxonomy: Optional[InterestTaxonomy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._settings = settings
        self._taxonomy = taxonomy
        self._clock = clock

    def decay_factor_for(self, source: AffinitySource) -> float:
        if source is AffinitySource.EXPLICIT_FOLLOW:
            return self._settings.follow_decay_factor
        return self._settings.default_decay_factor

    # ─────────────────────── Reads ────────────────────────────────────────

    async def get_taste_graph(
        self, user_id: str, timeout: Optional[float] = None
    ) -> TasteGraph:
        """
        Load a user's graph. Unknown users get an empty graph; storage errors
        and timeouts raise TasteGraphUnavailable.
        """
        try:
            return await asyncio.wait_for(self._load(user_id), timeout)
        except asyncio.TimeoutError as exc:
            raise TasteGraphUnavailable(
                f"taste graph for '{user_id}' not loaded within {timeout}s"
            ) from exc
        except SQLAlchemyError as exc:
            raise TasteGraphUnavailable(f"taste graph storage error: {exc}") from exc

    async def _load(self, user_id: str) -> TasteGraph:
        async with self._session_factory() as session:
            row = await session.get(TasteGraphRow, user_id)
        if row is None:
            return TasteGraph(user_id=user_id, last_updated=self._clock())
        return self._to_graph(row)

    @staticmethod
    def _to_graph(row: TasteGraphRow) -> TasteGraph:
        return TasteGraph(
            user_id=row.user_id,
            interests=[InterestAffinity.model_validate(a) for a in row.interests or []],
            last_updated=row.last_updated,
            version=row.version,
        )

    async def top_interests(
        self,
        user_id: str,
        count: int,
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> list[InterestAffinity]:
        graph = await self.get_taste_graph(user_id, timeout=timeout)
        return graph.top_interests(count, as_of or self._clock())

    async def suggested_interests(self, user_id: str, limit: int = 10) -> list[Interest]:
        """Interests related to the user's strongest ones that they don't hold yet."""
        if self._taxonomy is None:
            return []
        graph = await self.get_taste_graph(user_id)
        if not graph.interests:
            return [t.interest for t in await self._taxonomy.trending(limit)]

        held = {a.interest_id for a in graph.interests}
        suggestions: list[Interest] = []
        for affinity in graph.top_interests(self._settings.taste_graph_top_n, self._clock()):
            try:
                related = await self._taxonomy.get_related(affinity.interest_id, limit)
            except NotFoundError:
                continue
            for interest in related:
                if interest.id not in held:
                    held.add(interest.id)
                    suggestions.append(interest)
                if len(suggestions) >= limit:
                    return suggestions
        return suggestions

    # ─────────────────────── Writes ───────────────────────────────────────

    async def record_engagement(
        self,
        user_id: str,
        interest_id: str,
        source: AffinitySource,
        weight: float,
    ) -> InterestAffinity:
        updated = await self._apply(user_id, [(interest_id, weight)], source)
        return updated[0]

    async def _apply(
        self,
        user_id: str,
        updates: Iterable[tuple[str, float]],
        source: AffinitySource,
    ) -> list[InterestAffinity]:
        updates = list(updates)
        if not updates:
            return []
        if self._taxonomy is not None:
            for interest_id, _ in updates:
                interest = await self._taxonomy.get_interest(interest_id)
                if not interest.is_active:
                    raise NotFoundError(f"interest '{interest_id}' is inactive", "interest_id")

        with tracer.start_as_current_span("taste_graph.record_engagement") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("engagement.source", source.value)

            async with self._locks.hold(f"user:{user_id}"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await session.get(TasteGraphRow, user_id)
                        graph = (
                            self._to_graph(row) if row is not None
                            else TasteGraph(user_id=user_id)
                        )
                        now = self._clock()
                        touched = [
                            self._fold(graph, interest_id, source, weight, now)
                            for interest_id, weight in updates
                        ]

                        self._store(session, row, graph, now)

        ENGAGEMENTS_TOTAL.labels(source=source.value).inc(len(touched))
        logger.debug(
            "Recorded %d %s engagement(s) for user %s", len(touched), source.value, user_id
        )
        return touched

    @staticmethod
    def _store(
        session: AsyncSession,
        row: Optional[TasteGraphRow],
        graph: TasteGraph,
        now: datetime,
    ) -> None:
        payload = [a.model_dump(mode="json", by_alias=True) for a in graph.interests]
        if row is None:
            session.add(
                TasteGraphRow(
                    user_id=graph.user_id,
                    interests=payload,
                    last_updated=now,
                    version=graph.version,
                )
            )
        else:
            row.interests = payload
            row.last_updated = now

    def _fold(
        self,
        graph: TasteGraph,
        interest_id: str,
        source: AffinitySource,
        weight: float,
        now: datetime,
    ) -> InterestAffinity:
        weight = clamp01(weight)
        existing = graph.affinity(interest_id)
        if existing is None:
            affinity = InterestAffinity(
                interest_id=interest_id,
                score=weight * self._settings.initial_score_factor,
                source=source,
                engagement_count=1,
                first_engagement=now,
                last_engagement=now,
                decay_factor=self.decay_factor_for(source),
                followed=source is AffinitySource.EXPLICIT_FOLLOW,
            )
            graph.interests.append(affinity)
            return affinity

        existing.score = blend(existing.score, weight, self._settings.reinforcement_rate)
        existing.engagement_count += 1
        existing.last_engagement = max(existing.last_engagement, now)
        existing.source = source
        if source is AffinitySource.EXPLICIT_FOLLOW:
            existing.followed = True
        # An affinity never starts fading faster because of a weaker signal
        existing.decay_factor = min(existing.decay_factor, self.decay_factor_for(source))
        return existing

    # ─────────────────────── Convenience recorders ────────────────────────

    async def record_follow(self, user_id: str, interest_id: str) -> InterestAffinity:
        return await self.record_engagement(
            user_id, interest_id, AffinitySource.EXPLICIT_FOLLOW, self._settings.follow_weight
        )

    async def unfollow(self, user_id: str, interest_id: str) -> InterestAffinity:
        """
        Clear the follow flag and drop the follow's slower decay. The affinity
        itself stays: past engagement still counts until it fades.
        """
        async with self._locks.hold(f"user:{user_id}"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(TasteGraphRow, user_id)
                    graph = self._to_graph(row) if row is not None else TasteGraph(user_id=user_id)
                    affinity = graph.affinity(interest_id)
                    if affinity is None:
                        raise NotFoundError(
                            f"user '{user_id}' holds no affinity for '{interest_id}'", "interest_id"
                        )
                    if affinity.followed:
                        affinity.followed = False
                        affinity.decay_factor = self._settings.default_decay_factor
                        self._store(session, row, graph, self._clock())

        logger.info("User %s unfollowed %s", user_id, interest_id)
        return affinity

    async def record_search(self, user_id: str, interest_id: str) -> InterestAffinity:
        return await self.record_engagement(
            user_id, interest_id, AffinitySource.INFERRED_FROM_SEARCH, self._settings.search_weight
        )

    async def record_save(self, user_id: str, post: Post) -> list[InterestAffinity]:
        return await self._apply(
            user_id,
            [(c.interest_id, self._settings.save_weight * c.confidence) for c in post.classifications],
            AffinitySource.INFERRED_FROM_SAVES,
        )

    async def record_create(self, user_id: str, post: Post) -> list[InterestAffinity]:
        return await self._apply(
            user_id,
            [(c.interest_id, self._settings.create_weight * c.confidence) for c in post.classifications],
            AffinitySource.INFERRED_FROM_CREATES,
        )

    async def record_view(
        self, user_id: str, post: Post, duration_seconds: float
    ) -> list[InterestAffinity]:
        """Views shorter than view_min_seconds are scroll-bys and are ignored."""
        if duration_seconds <= self._settings.view_min_seconds:
            return []
        full = self._settings.view_full_seconds
        engagement = min(duration_seconds, full) / full
        return await self._apply(
            user_id,
            [
                (c.interest_id, self._settings.view_weight * engagement * c.confidence)
                for c in post.classifications
            ],
            AffinitySource.INFERRED_FROM_VIEWS,
        )
