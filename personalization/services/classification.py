"""
Post → interest classification.

Two stages:

  Stage 1 │ Candidate generation
  ────────┼──────────────────────────────────────────────────────────────
          │  Each signal generator emits InterestCandidates for one kind of
          │  evidence (user-selected interests, tags, caption, board name,
          │  similar posts, engagers' taste graphs). Generators run
          │  concurrently; one raising is logged and skipped.

  Stage 2 │ Confidence aggregation
  ────────┼──────────────────────────────────────────────────────────────
          │  evidence   = match_score × reliability[signal]
          │  per signal : max evidence
          │  combined   = 1 - Π(1 - evidence_signal) + level_boost × level
          │  clamp to [0, 1], drop below min_confidence, keep the top
          │  max_classifications (ties broken by interest id).

Reclassification replaces the stored document and its post→interest link
rows in one transaction, under a per-post lock.
"""
import asyncio
import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol, get_args

import numpy as np
from opentelemetry import trace
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from personalization.config import Settings
from personalization.errors import (
    ClassificationPartialFailure,
    NotFoundError,
    PersonalizationError,
)
from personalization.locks import KeyedLocks
from personalization.models import PostClassificationRow, PostInterestLinkRow, PostRow
from personalization.schemas import (
    BatchFilter,
    BatchResult,
    Classification,
    ClassificationAnalytics,
    ClassificationSignal,
    HistogramBin,
    Interest,
    InterestVolume,
    Post,
    PostInterestClassification,
    SuggestRequest,
    clamp01,
    utcnow,
)
from personalization.services.posts import PostStore
from personalization.services.taste_graph import TasteGraphService
from personalization.services.taxonomy import InterestTaxonomy
from personalization.telemetry import CLASSIFICATION_TOTAL, SIGNAL_FAILURES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SIGNAL_ORDER = {s: i for i, s in enumerate(ClassificationSignal)}
MIN_TOKEN_LENGTH = 3
_PUNCTUATION = re.compile(r"^[\W_]+|[\W_]+$")


@dataclass(frozen=True)
class InterestCandidate:
    interest_id: str
    interest_name: str
    interest_level: int
    match_score: float
    signal: ClassificationSignal


def _candidate(interest: Interest, score: float, signal: ClassificationSignal) -> InterestCandidate:
    return InterestCandidate(
        interest_id=interest.id,
        interest_name=interest.display_name,
        interest_level=interest.level,
        match_score=clamp01(score),
        signal=signal,
    )


def _norm(text: str) -> str:
    return text.strip().lower()


def caption_tokens(caption: Optional[str]) -> list[str]:
    """Lowercased words with surrounding punctuation stripped, longer than 2 chars."""
    if not caption:
        return []
    tokens = (_PUNCTUATION.sub("", w) for w in caption.lower().split())
    return sorted({t for t in tokens if len(t) >= MIN_TOKEN_LENGTH})


# ─────────────────────────── Signal generators ────────────────────────────

class SignalGenerator(Protocol):
    signal: ClassificationSignal
    # False when the generator only looks at the post's own fields
    requires_stored_post: bool

    async def candidates(
        self, post: Post, interests: dict[str, Interest]
    ) -> list[InterestCandidate]:
        ...


class UserTaggedSignal:
    signal = ClassificationSignal.USER_TAGGED
    requires_stored_post = False

    async def candidates(self, post, interests):
        return [
            _candidate(interests[iid], 1.0, self.signal)
            for iid in dict.fromkeys(post.selected_interest_ids)
            if iid in interests
        ]


class TagMatchSignal:
    """Exact (case/whitespace-insensitive) tag match: name 1.0, keyword 0.9, synonym 0.85."""
    signal = ClassificationSignal.TAG_MATCH
    requires_stored_post = False

    NAME_SCORE = 1.0
    KEYWORD_SCORE = 0.9
    SYNONYM_SCORE = 0.85

    async def candidates(self, post, interests):
        tags = {_norm(t) for t in post.tags if t.strip()}
        if not tags:
            return []
        out = []
        for interest in interests.values():
            if _norm(interest.name) in tags:
                score = self.NAME_SCORE
            elif any(_norm(k) in tags for k in interest.keywords):
                score = self.KEYWORD_SCORE
            elif any(_norm(s) in tags for s in interest.synonyms):
                score = self.SYNONYM_SCORE
            else:
                continue
            out.append(_candidate(interest, score, self.signal))
        return out


class CaptionMatchSignal:
    signal = ClassificationSignal.CAPTION_MATCH
    requires_stored_post = False

    SCORE = 0.7

    async def candidates(self, post, interests):
        tokens = caption_tokens(post.caption)
        if not tokens:
            return []
        out = []
        for interest in interests.values():
            terms = [_norm(interest.name)] + [_norm(t) for t in interest.keywords + interest.synonyms]
            if any(token in term for token in tokens for term in terms):
                out.append(_candidate(interest, self.SCORE, self.signal))
        return out


class BoardNameSignal:
    signal = ClassificationSignal.BOARD_NAME
    requires_stored_post = False

    NAME_SCORE = 0.8
    TERM_SCORE = 0.7

    async def candidates(self, post, interests):
        if not post.board_name or not post.board_name.strip():
            return []
        board = _norm(post.board_name)
        out = []
        for interest in interests.values():
            if board in (_norm(interest.name), _norm(interest.display_name)):
                out.append(_candidate(interest, self.NAME_SCORE, self.signal))
            elif board in {_norm(t) for t in interest.keywords + interest.synonyms}:
                out.append(_candidate(interest, self.TERM_SCORE, self.signal))
        return out


class SimilarPostFinder(Protocol):
    async def similar(self, post_id: str, limit: int) -> list[tuple[str, float]]:
        """Nearest stored posts as (post_id, similarity in [0, 1])."""
        ...


class SimilarPostsSignal:
    """Neighbours' stored classifications, weighted by similarity."""
    signal = ClassificationSignal.SIMILAR_POSTS
    requires_stored_post = True

    def __init__(self, finder: SimilarPostFinder, posts: PostStore, limit: int) -> None:
        self._finder = finder
        self._posts = posts
        self._limit = limit

    async def candidates(self, post, interests):
        neighbours = [
            (pid, sim)
            for pid, sim in await self._finder.similar(post.post_id, self._limit)
            if pid != post.post_id
        ]
        if not neighbours:
            return []
        stored = await self._posts.stored_classifications(pid for pid, _ in neighbours)

        best: dict[str, float] = {}
        for pid, similarity in neighbours:
            for c in stored.get(pid, []):
                if c.interest_id in interests:
                    best[c.interest_id] = max(best.get(c.interest_id, 0.0), similarity * c.confidence)
        return [_candidate(interests[iid], score, self.signal) for iid, score in best.items()]


class UserBehaviorSignal:
    """Mean decayed affinity of the users who engaged with the post."""
    signal = ClassificationSignal.USER_BEHAVIOR
    requires_stored_post = True

    def __init__(
        self,
        posts: PostStore,
        taste_graph: TasteGraphService,
        min_engagers: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._posts = posts
        self._taste_graph = taste_graph
        self._min_engagers = min_engagers
        self._clock = clock

    async def candidates(self, post, interests):
        engagers = await self._posts.engagers(post.post_id)
        if len(engagers) < self._min_engagers:
            return []

        now = self._clock()
        graphs = await asyncio.gather(*(self._taste_graph.get_taste_graph(u) for u in engagers))
        totals: dict[str, float] = defaultdict(float)
        for graph in graphs:
            for affinity in graph.interests:
                totals[affinity.interest_id] += affinity.current_score(now)

        return [
            _candidate(interests[iid], total / len(engagers), self.signal)
            for iid, total in totals.items()
            if iid in interests and total > 0
        ]


class NoOpSignal:
    """Declared signal kind without an implementation; contributes nothing."""
    requires_stored_post = False

    def __init__(self, signal: ClassificationSignal) -> None:
        self.signal = signal

    async def candidates(self, post, interests):
        return []


def build_generators(
    settings: Settings,
    posts: PostStore,
    taste_graph: TasteGraphService,
    finder: Optional[SimilarPostFinder] = None,
    clock: Callable[[], datetime] = utcnow,
) -> list[SignalGenerator]:
    generators: list[SignalGenerator] = [
        UserTaggedSignal(),
        TagMatchSignal(),
        CaptionMatchSignal(),
        BoardNameSignal(),
        UserBehaviorSignal(posts, taste_graph, settings.behavior_min_engagers, clock),
        NoOpSignal(ClassificationSignal.VISUAL_SIMILARITY),
        NoOpSignal(ClassificationSignal.TF_IDF),
    ]
    if finder is not None:
        generators.append(SimilarPostsSignal(finder, posts, settings.similar_posts_limit))
    else:
        generators.append(NoOpSignal(ClassificationSignal.SIMILAR_POSTS))
    return generators


# ─────────────────────────── Aggregation ──────────────────────────────────

def aggregate_candidates(
    candidates: Iterable[InterestCandidate],
    reliability: dict[str, float],
    level_boost: float,
    min_confidence: float,
    max_results: int,
) -> list[Classification]:
    evidence: dict[str, dict[ClassificationSignal, float]] = defaultdict(dict)
    meta: dict[str, InterestCandidate] = {}
    for c in candidates:
        score = clamp01(c.match_score * reliability.get(c.signal.value, 1.0))
        per_signal = evidence[c.interest_id]
        per_signal[c.signal] = max(per_signal.get(c.signal, 0.0), score)
        meta.setdefault(c.interest_id, c)

    results = []
    for interest_id, per_signal in evidence.items():
        miss = 1.0
        for score in per_signal.values():
            miss *= 1.0 - score
        info = meta[interest_id]
        confidence = clamp01(1.0 - miss + level_boost * info.interest_level)
        if confidence < min_confidence:
            continue
        results.append(
            Classification(
                interest_id=interest_id,
                interest_name=info.interest_name,
                interest_level=info.interest_level,
                confidence=confidence,
                signals=sorted(per_signal, key=SIGNAL_ORDER.__getitem__),
            )
        )

    results.sort(key=lambda c: (-c.confidence, c.interest_id))
    return results[:max_results]


@dataclass
class ClassificationReport:
    classification: PostInterestClassification
    failures: list[ClassificationPartialFailure] = field(default_factory=list)


# ─────────────────────────── Engine ───────────────────────────────────────

class PostClassificationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks,
        taxonomy: InterestTaxonomy,
        posts: PostStore,
        generators: list[SignalGenerator],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._taxonomy = taxonomy
        self._posts = posts
        self._generators = generators
        self._settings = settings
        self._clock = clock

    async def classify(self, post: Post) -> PostInterestClassification:
        """Classify without writing anything."""
        return (await self.classify_with_report(post)).classification

    async def classify_with_report(
        self, post: Post, generators: Optional[list[SignalGenerator]] = None
    ) -> ClassificationReport:
        generators = self._generators if generators is None else generators
        interests = {i.id: i for i in await self._taxonomy.active_interests()}

        with tracer.start_as_current_span("classification.classify") as span:
            span.set_attribute("post.id", post.post_id)
            outputs = await asyncio.gather(
                *(g.candidates(post, interests) for g in generators),
                return_exceptions=True,
            )

            candidates: list[InterestCandidate] = []
            failures: list[ClassificationPartialFailure] = []
            for generator, output in zip(generators, outputs):
                if isinstance(output, Exception):
                    failure = ClassificationPartialFailure(generator.signal.value, output)
                    logger.warning("Post %s: %s", post.post_id, failure.message)
                    SIGNAL_FAILURES_TOTAL.labels(signal=generator.signal.value).inc()
                    failures.append(failure)
                    continue
                if isinstance(output, BaseException):
                    raise output
                candidates.extend(output[: self._settings.candidate_limit])

            classifications = aggregate_candidates(
                candidates,
                self._settings.signal_reliability,
                self._settings.level_boost,
                self._settings.min_confidence,
                self._settings.max_classifications,
            )
            span.set_attribute("classification.count", len(classifications))
            span.set_attribute("classification.failed_signals", len(failures))

        CLASSIFICATION_TOTAL.labels(outcome="partial" if failures else "ok").inc()
        return ClassificationReport(
            classification=PostInterestClassification(
                post_id=post.post_id,
                classifications=classifications,
                classified_at=self._clock(),
                version=self._settings.classifier_version,
            ),
            failures=failures,
        )

    async def reclassify(self, post_id: str) -> PostInterestClassification:
        async with self._locks.hold(f"post:{post_id}"):
            post = await self._posts.get(post_id)
            report = await self.classify_with_report(post)
            await self._store(post, report.classification)

        logger.info(
            "Post %s classified: %s",
            post_id,
            ", ".join(f"{c.interest_id}={c.confidence:.2f}" for c in report.classification.classifications) or "none",
        )
        return report.classification

    async def _store(self, post: Post, result: PostInterestClassification) -> None:
        """Full replace of the document and its link rows, atomically."""
        documents = [c.model_dump(mode="json", by_alias=True) for c in result.classifications]
        primary = result.primary_interest

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(PostClassificationRow, post.post_id)
                if row is None:
                    row = PostClassificationRow(post_id=post.post_id)
                    session.add(row)
                row.classifications = documents
                row.primary_interest_id = primary.interest_id if primary else None
                row.classified_at = result.classified_at
                row.version = result.version

                await session.execute(
                    delete(PostInterestLinkRow).where(PostInterestLinkRow.post_id == post.post_id)
                )
                session.add_all(
                    PostInterestLinkRow(
                        post_id=post.post_id,
                        interest_id=c.interest_id,
                        confidence=c.confidence,
                        post_created_at=post.created_at,
                    )
                    for c in result.classifications
                )

    async def classify_batch(
        self,
        limit: Optional[int] = None,
        filter: BatchFilter = "unclassified",
        after: Optional[str] = None,
    ) -> BatchResult:
        """
        Reclassify up to `limit` posts (default classify_batch_size) in post id
        order after the `after` cursor. Every post commits on its own, so
        re-running from the returned last_post_id after a crash never rewrites
        finished work.
        """
        if filter not in get_args(BatchFilter):
            raise PersonalizationError(f"unknown batch filter '{filter}'", "filter")
        if limit is None:
            limit = self._settings.classify_batch_size
        if limit < 1:
            raise PersonalizationError("limit must be at least 1", "limit")
        stmt = select(PostRow.post_id).order_by(PostRow.post_id).limit(limit)
        if after is not None:
            stmt = stmt.where(PostRow.post_id > after)
        if filter == "unclassified":
            stmt = stmt.where(PostRow.post_id.not_in(select(PostClassificationRow.post_id)))

        async with self._session_factory() as session:
            post_ids = list((await session.execute(stmt)).scalars().all())

        semaphore = asyncio.Semaphore(self._settings.classify_concurrency)

        async def run(post_id: str) -> Optional[Exception]:
            async with semaphore:
                try:
                    await self.reclassify(post_id)
                except Exception as exc:
                    logger.warning("Batch classification failed for %s: %s", post_id, exc)
                    CLASSIFICATION_TOTAL.labels(outcome="failed").inc()
                    return exc
                return None

        with tracer.start_as_current_span("classification.batch") as span:
            span.set_attribute("batch.size", len(post_ids))
            errors = await asyncio.gather(*(run(pid) for pid in post_ids))

        failed = [pid for pid, err in zip(post_ids, errors) if err is not None]
        result = BatchResult(
            processed=len(post_ids),
            succeeded=len(post_ids) - len(failed),
            failed=len(failed),
            last_post_id=post_ids[-1] if post_ids else after,
            failed_post_ids=failed,
        )
        logger.info(
            "Batch classified %d posts (%d failed), cursor=%s",
            result.processed, result.failed, result.last_post_id,
        )
        return result

    async def get_classification(self, post_id: str) -> PostInterestClassification:
        async with self._session_factory() as session:
            row = await session.get(PostClassificationRow, post_id)
        if row is None:
            raise NotFoundError(f"no classification for post '{post_id}'", "post_id")
        return PostInterestClassification(
            post_id=row.post_id,
            classifications=[Classification.model_validate(c) for c in row.classifications or []],
            classified_at=row.classified_at,
            version=row.version,
        )

    async def suggest_interests(self, request: SuggestRequest) -> list[Classification]:
        """Classify unsaved post content, e.g. while the author is still composing."""
        draft = Post(
            post_id="draft",
            created_at=self._clock(),
            caption=request.caption,
            tags=request.tags,
            board_name=request.board_name,
            selected_interest_ids=request.selected_interest_ids,
        )
        generators = [g for g in self._generators if not g.requires_stored_post]
        report = await self.classify_with_report(draft, generators)
        return report.classification.classifications

    async def analytics(self, bins: int = 10, top: int = 10) -> ClassificationAnalytics:
        async with self._session_factory() as session:
            rows = (await session.execute(select(PostClassificationRow.classifications))).scalars().all()
            volume = (
                await session.execute(
                    select(PostInterestLinkRow.interest_id, func.count(PostInterestLinkRow.post_id))
                    .group_by(PostInterestLinkRow.interest_id)
                    .order_by(func.count(PostInterestLinkRow.post_id).desc(), PostInterestLinkRow.interest_id)
                    .limit(top)
                )
            ).all()

        confidences: list[float] = []
        signals: Counter = Counter()
        for document in rows:
            for c in document or []:
                confidences.append(float(c["confidence"]))
                signals.update(c.get("signals", []))

        counts, edges = np.histogram(np.asarray(confidences, dtype=float), bins=bins, range=(0.0, 1.0))
        histogram = [
            HistogramBin(lower=float(edges[i]), upper=float(edges[i + 1]), count=int(counts[i]))
            for i in range(len(counts))
        ]

        names = {i.id: i.display_name for i in await self._taxonomy.active_interests()}
        return ClassificationAnalytics(
            classified_posts=len(rows),
            confidence_histogram=histogram,
            signal_distribution={s.value: signals.get(s.value, 0) for s in ClassificationSignal},
            top_interests=[
                InterestVolume(interest_id=iid, interest_name=names.get(iid, iid), post_count=int(n))
                for iid, n in volume
            ],
        )
