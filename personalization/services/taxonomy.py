"""
Interest taxonomy store.

Nodes live in a flat `interests` table keyed by id with a parent_id link;
level and path are denormalised onto every row and recomputed for the whole
subtree when a node is re-parented. Parent assignments are validated by
walking the ancestor chain (bounded by taxonomy_max_depth) so no node can
become its own ancestor.

Reads go through an in-process snapshot of all interests refreshed every
taxonomy_cache_ttl_seconds; every mutation drops the snapshot.
"""
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from personalization.config import Settings
from personalization.errors import (
    DuplicateInterestError,
    InvalidParentError,
    NotFoundError,
    PersonalizationError,
)
from personalization.locks import KeyedLocks
from personalization.models import InterestRow, PostInterestLinkRow, TasteGraphRow
from personalization.schemas import (
    Interest,
    RecalculateAllResult,
    StatsResult,
    TrendingInterest,
    utcnow,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
# Held by every write that changes the tree's shape or a node's activation
# Every change to the shape of the tree (create, move, activation) holds this lock
STRUCTURE_LOCK = "taxonomy:structure"

TREND_POST_WEIGHT = 0.4
TREND_FOLLOWER_WEIGHT = 0.3
TREND_GROWTH_WEIGHT = 0.3

UPDATABLE_FIELDS = (
    "display_name",
    "description",
    "cover_image_url",
    "keywords",
    "synonyms",
    "related_interest_ids",
    "is_active",
)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def _growth(current: int, previous: int) -> float:
    if previous == 0:
        return 1.0 if current > 0 else 0.0
    return (current - previous) / previous


class InterestTaxonomy:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLocks,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._settings = settings
        self._clock = clock
        self._snapshot: Optional[dict[str, Interest]] = None
        self._snapshot_at = 0.0

    # ─────────────────────── Cache ────────────────────────────────────────

    def invalidate(self) -> None:
        self._snapshot = None

    async def _all(self) -> dict[str, Interest]:
        age = time.monotonic() - self._snapshot_at
        if self._snapshot is not None and age < self._settings.taxonomy_cache_ttl_seconds:
            return self._snapshot

        async with self._session_factory() as session:
            rows = (await session.execute(select(InterestRow))).scalars().all()
        self._snapshot = {row.id: Interest.model_validate(row) for row in rows}
        self._snapshot_at = time.monotonic()
        logger.debug("Taxonomy snapshot refreshed (%d interests)", len(self._snapshot))
        return self._snapshot

    async def active_interests(self) -> list[Interest]:
        return [i for i in (await self._all()).values() if i.is_active]

    # ─────────────────────── Mutations ────────────────────────────────────

    async def create_interest(
        self,
        name: str,
        display_name: str,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        cover_image_url: Optional[str] = None,
        keywords: tuple[str, ...] | list[str] = (),
        synonyms: tuple[str, ...] | list[str] = (),
        related_interest_ids: tuple[str, ...] | list[str] = (),
        interest_id: Optional[str] = None,
    ) -> Interest:
        name = name.strip()
        if not name:
            raise PersonalizationError("name must not be empty", "name")
        if interest_id is None:
            interest_id = slugify(name) if parent_id is None else f"{parent_id}_{slugify(name)}"
        if interest_id == parent_id:
            raise InvalidParentError("an interest cannot be its own parent")

        with tracer.start_as_current_span("taxonomy.create_interest") as span:
            span.set_attribute("interest.id", interest_id)
            async with self._locks.hold(STRUCTURE_LOCK):
                async with self._session_factory() as session:
                    async with session.begin():
                        level, path = 0, [name]
                        if parent_id is not None:
                            parent = await session.get(InterestRow, parent_id)
                            if parent is None:
                                raise InvalidParentError(f"parent '{parent_id}' does not exist")
                            if not parent.is_active:
                                raise InvalidParentError(f"parent '{parent_id}' is inactive")
                            level, path = parent.level + 1, list(parent.path) + [name]
                            if level >= self._settings.taxonomy_max_depth:
                                raise InvalidParentError(
                                    f"taxonomy depth limit {self._settings.taxonomy_max_depth} reached"
                                )

                        if await session.get(InterestRow, interest_id) is not None:
                            raise DuplicateInterestError(
                                f"interest '{interest_id}' already exists", field="id"
                            )
                        await self._check_sibling_name(session, parent_id, name)

                        now = self._clock()
                        row = InterestRow(
                            id=interest_id,
                            name=name,
                            display_name=display_name,
                            parent_id=parent_id,
                            level=level,
                            path=path,
                            description=description,
                            cover_image_url=cover_image_url,
                            is_active=True,
                            created_at=now,
                            updated_at=now,
                            related_interest_ids=list(related_interest_ids),
                            keywords=list(keywords),
                            synonyms=list(synonyms),
                        )
                        session.add(row)
                        await session.flush()
                        created = Interest.model_validate(row)

        self.invalidate()
        logger.info("Interest created: %s (level %d)", interest_id, level)
        return created

    async def update_interest(self, interest_id: str, **changes) -> Interest:
        """
        Apply a partial update. Passing `parent_id` (None for root) moves the
        node; its level/path and those of its whole subtree are recomputed in
        the same transaction.
        """
        reparent = "parent_id" in changes
        structural = reparent or changes.get("is_active") is not None
        lock_key = STRUCTURE_LOCK if structural else f"interest:{interest_id}"

        with tracer.start_as_current_span("taxonomy.update_interest") as span:
            span.set_attribute("interest.id", interest_id)
            async with self._locks.hold(lock_key):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await session.get(InterestRow, interest_id)
                        if row is None:
                            raise NotFoundError(f"interest '{interest_id}' not found", "id")

                        for field in UPDATABLE_FIELDS:
                            if field in changes and changes[field] is not None:
                                value = changes[field]
                                setattr(row, field, list(value) if isinstance(value, (list, tuple)) else value)

                        new_parent = changes.get("parent_id")
                        if reparent and new_parent != row.parent_id:
                            await self._reparent(session, row, new_parent)

                        row.updated_at = self._clock()
                        await session.flush()
                        updated = Interest.model_validate(row)

        self.invalidate()
        logger.info("Interest updated: %s (%s)", interest_id, ", ".join(sorted(changes)))
        return updated

    async def _reparent(
        self, session: AsyncSession, row: InterestRow, new_parent_id: Optional[str]
    ) -> None:
        rows = {r.id: r for r in (await session.execute(select(InterestRow))).scalars().all()}

        if new_parent_id is not None:
            if new_parent_id == row.id:
                raise InvalidParentError("an interest cannot be its own parent")
            parent = rows.get(new_parent_id)
            if parent is None:
                raise InvalidParentError(f"parent '{new_parent_id}' does not exist")
            if not parent.is_active:
                raise InvalidParentError(f"parent '{new_parent_id}' is inactive")

            # Walk up from the new parent; meeting the node itself means a cycle
            cursor: Optional[InterestRow] = parent
            depth = 0
            while cursor is not None:
                if cursor.id == row.id:
                    raise InvalidParentError(
                        f"'{new_parent_id}' is a descendant of '{row.id}'"
                    )
                depth += 1
                if depth > self._settings.taxonomy_max_depth:
                    raise InvalidParentError("ancestor chain exceeds taxonomy depth limit")
                cursor = rows.get(cursor.parent_id) if cursor.parent_id else None

        await self._check_sibling_name(session, new_parent_id, row.name, exclude_id=row.id)
        row.parent_id = new_parent_id

        children: dict[str, list[InterestRow]] = defaultdict(list)
        for r in rows.values():
            if r.parent_id is not None and r.id != row.id:
                children[r.parent_id].append(r)

        base = rows[new_parent_id] if new_parent_id else None
        row.level = base.level + 1 if base else 0
        row.path = (list(base.path) if base else []) + [row.name]

        now = self._clock()
        stack = [row]
        while stack:
            node = stack.pop()
            if node.level >= self._settings.taxonomy_max_depth:
                raise InvalidParentError("move would exceed taxonomy depth limit")
            for child in children.get(node.id, []):
                child.level = node.level + 1
                child.path = list(node.path) + [child.name]
                child.updated_at = now
                stack.append(child)

    async def _check_sibling_name(
        self,
        session: AsyncSession,
        parent_id: Optional[str],
        name: str,
        exclude_id: Optional[str] = None,
    ) -> None:
        stmt = select(InterestRow.id).where(func.lower(InterestRow.name) == name.lower())
        if parent_id is None:
            stmt = stmt.where(InterestRow.parent_id.is_(None))
        else:
            stmt = stmt.where(InterestRow.parent_id == parent_id)
        if exclude_id is not None:
            stmt = stmt.where(InterestRow.id != exclude_id)
        clash = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        if clash is not None:
            raise DuplicateInterestError(
                f"'{name}' already exists under {parent_id or 'the root'} (id '{clash}')"
            )

    async def deactivate(self, interest_id: str) -> Interest:
        async with self._locks.hold(STRUCTURE_LOCK):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(InterestRow, interest_id)
                    if row is None:
                        raise NotFoundError(f"interest '{interest_id}' not found", "id")
                    row.is_active = False
                    row.updated_at = self._clock()
                    await session.flush()
                    result = Interest.model_validate(row)

        self.invalidate()
        logger.info("Interest deactivated: %s", interest_id)
        return result

    # ─────────────────────── Queries ──────────────────────────────────────

    async def get_interest(self, interest_id: str) -> Interest:
        interest = (await self._all()).get(interest_id)
        if interest is None:
            raise NotFoundError(f"interest '{interest_id}' not found", "id")
        return interest

    async def get_tree(self, full: bool = False) -> list[Interest]:
        """Active roots, or every active node ordered by path when `full`."""
        active = await self.active_interests()
        if full:
            return sorted(active, key=lambda i: [p.lower() for p in i.path])
        return sorted((i for i in active if i.level == 0), key=lambda i: i.name.lower())

    async def get_children(self, parent_id: str) -> list[Interest]:
        await self.get_interest(parent_id)
        active = await self.active_interests()
        return sorted(
            (i for i in active if i.parent_id == parent_id),
            key=lambda i: i.display_name.lower(),
        )

    async def get_path(self, interest_id: str) -> list[Interest]:
        """Breadcrumbs root→self."""
        everything = await self._all()
        node = everything.get(interest_id)
        if node is None:
            raise NotFoundError(f"interest '{interest_id}' not found", "id")
        chain = [node]
        while node.parent_id and len(chain) <= self._settings.taxonomy_max_depth:
            node = everything[node.parent_id]
            chain.append(node)
        return list(reversed(chain))

    async def search(self, query: str, limit: int = 20) -> list[Interest]:
        q = query.strip().lower()
        if not q:
            return []

        def rank(interest: Interest) -> Optional[int]:
            name = interest.name.lower()
            if name == q:
                return 0
            if name.startswith(q) or interest.display_name.lower().startswith(q):
                return 1
            if q in name or q in interest.display_name.lower():
                return 2
            terms = [t.lower() for t in interest.keywords + interest.synonyms]
            if q in terms:
                return 3
            if any(q in t for t in terms):
                return 4
            return None

        hits = []
        for interest in await self.active_interests():
            r = rank(interest)
            if r is not None:
                hits.append((r, interest.level, interest.name.lower(), interest))
        hits.sort(key=lambda h: h[:3])
        return [h[3] for h in hits[:limit]]

    async def get_related(self, interest_id: str, limit: int = 10) -> list[Interest]:
        """Explicitly related interests first, then siblings."""
        everything = await self._all()
        interest = await self.get_interest(interest_id)
        related: list[Interest] = []
        seen = {interest_id}

        for rid in interest.related_interest_ids:
            other = everything.get(rid)
            if other is not None and other.is_active and rid not in seen:
                related.append(other)
                seen.add(rid)

        siblings = sorted(
            (
                i for i in everything.values()
                if i.parent_id == interest.parent_id and i.is_active and i.id not in seen
            ),
            key=lambda i: (-i.post_count, i.name.lower()),
        )
        related.extend(siblings)
        return related[:limit]

    async def trending(self, limit: int = 10) -> list[TrendingInterest]:
        scored = [
            TrendingInterest(
                interest=i,
                trend_score=(
                    i.post_count * TREND_POST_WEIGHT
                    + i.follower_count * TREND_FOLLOWER_WEIGHT
                    + i.monthly_growth * 100 * TREND_GROWTH_WEIGHT
                ),
            )
            for i in await self.active_interests()
        ]
        scored.sort(key=lambda t: (-t.trend_score, t.interest.id))
        return scored[:limit]

    # ─────────────────────── Stats ────────────────────────────────────────

    async def recalculate_stats(self, interest_id: str) -> StatsResult:
        """
        Recount classified posts for one interest and refresh its growth
        rates. Idempotent; the per-node lock keeps two recomputes of the same
        node from interleaving while readers continue to see the old values.
        """
        with tracer.start_as_current_span("taxonomy.recalculate_stats") as span:
            span.set_attribute("interest.id", interest_id)
            async with self._locks.hold(f"stats:{interest_id}"):
                async with self._session_factory() as session:
                    async with session.begin():
                        row = await session.get(InterestRow, interest_id)
                        if row is None:
                            raise NotFoundError(f"interest '{interest_id}' not found", "id")

                        now = self._clock()
                        new_count = await self._count_links(session, interest_id)
                        weekly = await self._window_growth(session, interest_id, now, days=7)
                        monthly = await self._window_growth(session, interest_id, now, days=30)

                        old_count = row.post_count
                        row.post_count = new_count
                        row.weekly_growth = weekly
                        row.monthly_growth = monthly
                        row.updated_at = now

        self.invalidate()
        logger.info("Stats for %s: %d → %d posts", interest_id, old_count, new_count)
        return StatsResult(
            interest_id=interest_id,
            old_count=old_count,
            new_count=new_count,
            updated=old_count != new_count,
            weekly_growth=weekly,
            monthly_growth=monthly,
        )

    async def _count_links(
        self,
        session: AsyncSession,
        interest_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count(func.distinct(PostInterestLinkRow.post_id))).where(
            PostInterestLinkRow.interest_id == interest_id
        )
        if since is not None:
            stmt = stmt.where(PostInterestLinkRow.post_created_at >= since)
        if until is not None:
            stmt = stmt.where(PostInterestLinkRow.post_created_at < until)
        return int((await session.execute(stmt)).scalar_one())

    async def _window_growth(
        self, session: AsyncSession, interest_id: str, now: datetime, days: int
    ) -> float:
        window = timedelta(days=days)
        current = await self._count_links(session, interest_id, since=now - window, until=now)
        previous = await self._count_links(
            session, interest_id, since=now - 2 * window, until=now - window
        )
        return _growth(current, previous)

    async def recalculate_all(self) -> RecalculateAllResult:
        """Recompute stats for every interest; one failing node never stops the rest."""
        async with self._session_factory() as session:
            ids = (await session.execute(select(InterestRow.id).order_by(InterestRow.id))).scalars().all()

        result = RecalculateAllResult(processed=0, updated=0)
        for interest_id in ids:
            try:
                stats = await self.recalculate_stats(interest_id)
            except Exception as exc:
                logger.warning("Stat recalculation failed for %s: %s", interest_id, exc)
                result.errors[interest_id] = str(exc)
                continue
            result.processed += 1
            result.updated += int(stats.updated)
            result.results.append(stats)

        await self._refresh_follower_counts()
        logger.info(
            "Recalculated %d interests (%d changed, %d errors)",
            result.processed, result.updated, len(result.errors),
        )
        return result

    async def _refresh_follower_counts(self) -> None:
        # Followers are users whose affinity on the interest is flagged followed
        counts: dict[str, int] = defaultdict(int)
        async with self._session_factory() as session:
            async with session.begin():
                graphs = (await session.execute(select(TasteGraphRow))).scalars().all()
                for graph in graphs:
                    for affinity in graph.interests or []:
                        if affinity.get("followed"):
                            counts[affinity.get("interestId")] += 1

                rows = (await session.execute(select(InterestRow))).scalars().all()
                for row in rows:
                    row.follower_count = counts.get(row.id, 0)
        self.invalidate()
