"""
Taste-based feed ranking.

Pipeline over one request's candidate posts:

  1. Guard      — no user or no posts → recency order
  2. Fetch      — user's top-N decayed affinities, bounded by a timeout;
                  any failure → recency order (logged + counted)
  3. Score      — four [0, 1] sub-scores per post, blended by the configured
                  weights; chunks of posts are scored on a thread pool and
                  joined before sorting
  4. Sort       — score desc, then created_at desc, then post id
  5. Diversity  — a post whose primary interest is among the last W distinct
                  primary interests emitted is deferred to the tail

The output is always a permutation of the input and deterministic for fixed
inputs and as_of.
"""
import asyncio
import functools
import logging
import math
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from opentelemetry import trace

from personalization.config import Settings
from personalization.errors import TasteGraphUnavailable
from personalization.schemas import Post, ScoredPost, as_utc, clamp01, utcnow
from personalization.services.taste_graph import TasteGraphService
from personalization.telemetry import RANKING_FALLBACK_TOTAL, RANKING_LATENCY

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MEAN_RELEVANCE_FACTOR = 0.8
CREATOR_BASELINE = 0.5
CREATOR_PHOTO_BOOST = 0.1
CREATOR_USERNAME_BOOST = 0.1
MIN_USERNAME_LENGTH = 3


@dataclass(frozen=True)
class ScoringParams:
    weight_interest: float
    weight_content: float
    weight_creator: float
    weight_freshness: float
    max_engagement_rate: float
    freshness_decay_per_hour: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringParams":
        return cls(
            weight_interest=settings.weight_interest,
            weight_content=settings.weight_content,
            weight_creator=settings.weight_creator,
            weight_freshness=settings.weight_freshness,
            max_engagement_rate=settings.max_engagement_rate,
            freshness_decay_per_hour=settings.freshness_decay_per_hour,
        )


@dataclass
class RankingResult:
    posts: list[ScoredPost]
    personalized: bool


# ─────────────────────────── Sub-scores ───────────────────────────────────

def interest_relevance(post: Post, affinities: dict[str, float]) -> float:
    matches = [
        affinities[c.interest_id] * c.confidence
        for c in post.classifications
        if c.interest_id in affinities
    ]
    if not matches:
        return 0.0
    mean = sum(matches) / len(matches)
    return clamp01(max(max(matches), MEAN_RELEVANCE_FACTOR * mean))


def content_quality(post: Post, max_engagement_rate: float) -> float:
    weighted = (
        post.like_count
        + 2 * post.comment_count
        + 3 * post.save_count
        + 3 * post.share_count
    )
    rate = weighted / max(post.view_count, 1)
    return clamp01(min(rate, max_engagement_rate) / max_engagement_rate)


def creator_quality(post: Post) -> float:
    # Placeholder until creator reputation exists
    score = CREATOR_BASELINE
    if post.profile_photo_url:
        score += CREATOR_PHOTO_BOOST
    if post.username and len(post.username.strip()) >= MIN_USERNAME_LENGTH:
        score += CREATOR_USERNAME_BOOST
    return clamp01(score)


def freshness(post: Post, as_of: datetime, decay_per_hour: float) -> float:
    age_hours = max(0.0, (as_of - post.created_at).total_seconds() / 3600.0)
    return clamp01(math.exp(-decay_per_hour * age_hours))


def score_post(
    post: Post, affinities: dict[str, float], as_of: datetime, params: ScoringParams
) -> ScoredPost:
    relevance = interest_relevance(post, affinities)
    content = content_quality(post, params.max_engagement_rate)
    creator = creator_quality(post)
    fresh = freshness(post, as_of, params.freshness_decay_per_hour)
    return ScoredPost(
        post=post,
        score=(
            params.weight_interest * relevance
            + params.weight_content * content
            + params.weight_creator * creator
            + params.weight_freshness * fresh
        ),
        interest_relevance=relevance,
        content_quality=content,
        creator_quality=creator,
        freshness=fresh,
    )


def score_chunk(
    posts: list[Post], affinities: dict[str, float], as_of: datetime, params: ScoringParams
) -> list[ScoredPost]:
    return [score_post(p, affinities, as_of, params) for p in posts]


# ─────────────────────────── Ordering ─────────────────────────────────────

def recency_key(post: Post) -> tuple:
    return (-post.created_at.timestamp(), post.post_id)


def score_key(item: ScoredPost) -> tuple:
    return (-item.score, -item.post.created_at.timestamp(), item.post.post_id)


def diversify(ranked: list[ScoredPost], window: int) -> list[ScoredPost]:
    """
    Single sequential pass. Unclassified posts never enter or consult the
    window; deferred posts keep their relative order at the tail.
    """
    if window <= 0:
        return list(ranked)
    recent: deque[str] = deque(maxlen=window)
    emitted: list[ScoredPost] = []
    deferred: list[ScoredPost] = []
    for item in ranked:
        primary = item.post.primary_interest_id
        if primary is None:
            emitted.append(item)
        elif primary in recent:
            deferred.append(item)
        else:
            emitted.append(item)
            recent.append(primary)
    return emitted + deferred


# ─────────────────────────── Engine ───────────────────────────────────────

class RankingEngine:
    def __init__(
        self,
        taste_graph: TasteGraphService,
        settings: Settings,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._taste_graph = taste_graph
        self._settings = settings
        self._params = ScoringParams.from_settings(settings)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.ranking_workers, thread_name_prefix="ranking"
        )
        self._clock = clock

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    async def rank(
        self,
        posts: list[Post],
        user_id: Optional[str],
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> list[Post]:
        result = await self.rank_with_scores(posts, user_id, as_of=as_of, timeout=timeout)
        return [item.post for item in result.posts]

    async def rank_with_scores(
        self,
        posts: list[Post],
        user_id: Optional[str],
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> RankingResult:
        start = time.perf_counter()
        as_of = as_utc(as_of) if as_of else self._clock()
        timeout = self._settings.taste_graph_timeout_seconds if timeout is None else timeout

        with tracer.start_as_current_span("ranking.rank") as span:
            span.set_attribute("ranking.candidates", len(posts))
            if user_id:
                span.set_attribute("user.id", user_id)

            # ── Guard ─────────────────────────────────────────────────────
            if not posts or not user_id:
                RANKING_FALLBACK_TOTAL.labels(reason="no_posts" if not posts else "no_user").inc()
                return await self._recency(posts, as_of, start)

            # ── Fetch ─────────────────────────────────────────────────────
            try:
                top = await self._taste_graph.top_interests(
                    user_id, self._settings.taste_graph_top_n, as_of=as_of, timeout=timeout
                )
            except TasteGraphUnavailable as exc:
                logger.warning("Taste graph unavailable for %s (%s) — falling back to recency", user_id, exc)
                RANKING_FALLBACK_TOTAL.labels(reason="unavailable").inc()
                span.set_attribute("ranking.fallback", "unavailable")
                return await self._recency(posts, as_of, start)
            except Exception as exc:
                logger.warning("Taste graph fetch failed for %s (%s) — falling back to recency", user_id, exc)
                RANKING_FALLBACK_TOTAL.labels(reason="error").inc()
                span.set_attribute("ranking.fallback", "error")
                return await self._recency(posts, as_of, start)

            affinities = {a.interest_id: a.current_score(as_of) for a in top}
            span.set_attribute("ranking.affinities", len(affinities))

            # ── Score / sort / diversify ──────────────────────────────────
            scored = await self._score_all(posts, affinities, as_of)
            scored.sort(key=score_key)
            ordered = diversify(scored, self._settings.diversity_window)

        RANKING_LATENCY.observe(time.perf_counter() - start)
        return RankingResult(posts=ordered, personalized=bool(affinities))

    async def _score_all(
        self, posts: list[Post], affinities: dict[str, float], as_of: datetime
    ) -> list[ScoredPost]:
        loop = asyncio.get_running_loop()
        size = max(1, self._settings.ranking_chunk_size)
        futures = [
            loop.run_in_executor(
                self._executor,
                functools.partial(score_chunk, posts[i:i + size], affinities, as_of, self._params),
            )
            for i in range(0, len(posts), size)
        ]
        chunks = await asyncio.gather(*futures)
        return [item for chunk in chunks for item in chunk]

    async def _recency(self, posts: list[Post], as_of: datetime, start: float) -> RankingResult:
        # Sub-scores are still reported; only the ordering ignores them
        scored = await self._score_all(posts, {}, as_of)
        scored.sort(key=lambda item: recency_key(item.post))
        RANKING_LATENCY.observe(time.perf_counter() - start)
        return RankingResult(posts=scored, personalized=False)
