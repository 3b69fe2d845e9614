"""
SQLAlchemy ORM models.

Tables:
  interests              — taxonomy nodes, flat, keyed by id with a parent_id link
  user_taste_graphs      — one JSON document of affinities per user
  posts                  — post snapshots written by the content pipeline
  post_classifications   — one JSON classification document per post
  post_interest_links    — (post, interest) rows mirroring the classification,
                           aggregated by stat recalculation
  post_engagements       — who engaged with which post (user-behavior signal)
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from personalization.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InterestRow(Base):
    __tablename__ = "interests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("interests.id")
    )
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Names root→self
    path: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    cover_image_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    post_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    follower_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    weekly_growth: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    monthly_growth: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    related_interest_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    keywords: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    synonyms: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    __table_args__ = (
        Index("idx_interests_parent", "parent_id"),
    )


class TasteGraphRow(Base):
    __tablename__ = "user_taste_graphs"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Serialised list of InterestAffinity dicts (camelCase wire format)
    interests: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class PostRow(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(100))
    profile_photo_url: Mapped[Optional[str]] = mapped_column(String(500))
    caption: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    board_name: Mapped[Optional[str]] = mapped_column(String(255))
    selected_interest_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    save_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    share_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # "metadata" is reserved on declarative classes
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at"),
    )


class PostClassificationRow(Base):
    __tablename__ = "post_classifications"

    post_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Serialised list of Classification dicts (camelCase wire format)
    classifications: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    primary_interest_id: Mapped[Optional[str]] = mapped_column(String(64))
    classified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    version: Mapped[str] = mapped_column(String(20), default="1.0", nullable=False)

    __table_args__ = (
        Index("idx_classifications_primary", "primary_interest_id"),
    )


class PostInterestLinkRow(Base):
    __tablename__ = "post_interest_links"

    post_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    interest_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    post_created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        # Stat recalculation counts by interest
        Index("idx_links_interest", "interest_id"),
    )


class PostEngagementRow(Base):
    __tablename__ = "post_engagements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_engagements_post", "post_id"),
    )
