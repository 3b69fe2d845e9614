"""
Post snapshots pushed by the content pipeline, plus the engagement log the
user-behavior signal reads. Posts come back with their stored classification
attached as `classifications: [{interestId, confidence}]`.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from personalization.errors import NotFoundError, PersonalizationError
from personalization.models import PostClassificationRow, PostEngagementRow, PostRow
from personalization.schemas import (
    Classification,
    Post,
    PostClassificationRef,
    utcnow,
)

logger = logging.getLogger(__name__)

COUNT_FIELDS = ("like_count", "comment_count", "save_count", "share_count", "view_count")


def _row_to_post(row: PostRow, stored: list[dict] | None) -> Post:
    refs = [
        PostClassificationRef(interest_id=c["interestId"], confidence=c["confidence"])
        for c in stored or []
    ]
    return Post(
        post_id=row.post_id,
        user_id=row.user_id,
        created_at=row.created_at,
        username=row.username,
        profile_photo_url=row.profile_photo_url,
        caption=row.caption,
        tags=list(row.tags or []),
        board_name=row.board_name,
        selected_interest_ids=list(row.selected_interest_ids or []),
        classifications=refs,
        metadata=dict(row.extra or {}),
        **{f: getattr(row, f) for f in COUNT_FIELDS},
    )


class PostStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def upsert(self, post: Post) -> Post:
        if not post.user_id:
            raise PersonalizationError("post author is required", "user_id")

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(PostRow, post.post_id)
                if row is None:
                    row = PostRow(post_id=post.post_id)
                    session.add(row)
                row.user_id = post.user_id
                row.username = post.username
                row.profile_photo_url = post.profile_photo_url
                row.caption = post.caption
                row.tags = list(post.tags)
                row.board_name = post.board_name
                row.selected_interest_ids = list(post.selected_interest_ids)
                row.extra = dict(post.metadata)
                row.created_at = post.created_at
                for field in COUNT_FIELDS:
                    setattr(row, field, getattr(post, field))

        logger.info("Post snapshot stored: %s", post.post_id)
        return await self.get(post.post_id)

    async def get(self, post_id: str) -> Post:
        async with self._session_factory() as session:
            row = await session.get(PostRow, post_id)
            if row is None:
                raise NotFoundError(f"post '{post_id}' not found", "post_id")
            stored = await session.get(PostClassificationRow, post_id)
        return _row_to_post(row, stored.classifications if stored else None)

    async def record_engagement(self, post_id: str, user_id: str, kind: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    PostEngagementRow(
                        post_id=post_id, user_id=user_id, kind=kind, created_at=self._clock()
                    )
                )

    async def engagers(self, post_id: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PostEngagementRow.user_id)
                .where(PostEngagementRow.post_id == post_id)
                .distinct()
                .order_by(PostEngagementRow.user_id)
            )
            return list(result.scalars().all())

    async def stored_classifications(
        self, post_ids: Iterable[str]
    ) -> dict[str, list[Classification]]:
        ids = list(post_ids)
        if not ids:
            return {}
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(PostClassificationRow).where(PostClassificationRow.post_id.in_(ids))
                )
            ).scalars().all()
        return {
            row.post_id: [Classification.model_validate(c) for c in row.classifications or []]
            for row in rows
        }
