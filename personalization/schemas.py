"""
Pydantic schemas shared by the services and the HTTP layer.
Kept separate from ORM models to avoid coupling transport to storage.

Wire format is camelCase (postId, interestId, classifiedAt, …); Python code
uses the snake_case attribute names. Both are accepted on input.
"""
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
)
from pydantic.alias_generators import to_camel

SECONDS_PER_DAY = 86400.0
ID_PATTERN = r"^[A-Za-z0-9_\-:.]{1,128}$"


def as_utc(value: datetime) -> datetime:
    # Naive timestamps (e.g. read back from SQLite) are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp01(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

# Free-form metadata is a closed set of scalar variants, never "any"
MetadataValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
Metadata = dict[str, MetadataValue]


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ──────────────────────────── Taxonomy ────────────────────────────────────

class Interest(CamelModel):
    id: str
    name: str
    display_name: str
    parent_id: Optional[str] = None
    level: int = 0
    path: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    is_active: bool = True
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    post_count: int = 0
    follower_count: int = 0
    weekly_growth: float = 0.0
    monthly_growth: float = 0.0

    related_interest_ids: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    synonyms: list[str] = Field(default_factory=list)


class InterestCreate(CamelModel):
    id: Optional[str] = Field(None, pattern=ID_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    parent_id: Optional[str] = None
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    synonyms: list[str] = Field(default_factory=list)
    related_interest_ids: list[str] = Field(default_factory=list)


class InterestUpdate(CamelModel):
    """Partial update; only fields present in the request body are applied."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    keywords: Optional[list[str]] = None
    synonyms: Optional[list[str]] = None
    related_interest_ids: Optional[list[str]] = None
    is_active: Optional[bool] = None
    # Explicit null moves the node to the root
    parent_id: Optional[str] = None


class StatsResult(CamelModel):
    interest_id: str
    old_count: int
    new_count: int
    updated: bool
    weekly_growth: float = 0.0
    monthly_growth: float = 0.0


class RecalculateAllResult(CamelModel):
    processed: int
    updated: int
    results: list[StatsResult] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class TrendingInterest(CamelModel):
    interest: Interest
    trend_score: float


# ──────────────────────────── Taste graph ─────────────────────────────────

class AffinitySource(str, Enum):
    EXPLICIT_FOLLOW = "explicitFollow"
    INFERRED_FROM_SAVES = "inferredFromSaves"
    INFERRED_FROM_VIEWS = "inferredFromViews"
    INFERRED_FROM_SEARCH = "inferredFromSearch"
    INFERRED_FROM_CREATES = "inferredFromCreates"


class InterestAffinity(CamelModel):
    interest_id: str
    score: float
    source: AffinitySource
    engagement_count: int = 1
    first_engagement: UtcDatetime
    last_engagement: UtcDatetime
    decay_factor: float = 0.01
    # Follow state is independent of the latest engagement source
    followed: bool = False

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, v: float) -> float:
        return clamp01(v)

    def current_score(self, as_of: Optional[datetime] = None) -> float:
        """Base score decayed by days since the last engagement, in [0, 1]."""
        now = as_utc(as_of) if as_of else utcnow()
        days = max(0.0, (now - self.last_engagement).total_seconds() / SECONDS_PER_DAY)
        return clamp01(self.score * math.exp(-self.decay_factor * days))


class TasteGraph(CamelModel):
    user_id: str
    interests: list[InterestAffinity] = Field(default_factory=list)
    last_updated: UtcDatetime = Field(default_factory=utcnow)
    version: int = 1

    def affinity(self, interest_id: str) -> Optional[InterestAffinity]:
        for item in self.interests:
            if item.interest_id == interest_id:
                return item
        return None

    def top_interests(
        self, count: int, as_of: Optional[datetime] = None
    ) -> list[InterestAffinity]:
        now = as_utc(as_of) if as_of else utcnow()
        ranked = sorted(
            self.interests,
            key=lambda a: (-a.current_score(now), a.interest_id),
        )
        return ranked[: max(count, 0)]


class EngagementCreate(CamelModel):
    interest_id: str
    source: AffinitySource
    weight: float = Field(1.0, ge=0.0, le=1.0)


class ScoredAffinity(CamelModel):
    affinity: InterestAffinity
    decayed_score: float


# ──────────────────────────── Classification ──────────────────────────────

class ClassificationSignal(str, Enum):
    USER_TAGGED = "userTagged"
    CAPTION_MATCH = "captionMatch"
    TAG_MATCH = "tagMatch"
    BOARD_NAME = "boardName"
    SIMILAR_POSTS = "similarPosts"
    USER_BEHAVIOR = "userBehavior"
    VISUAL_SIMILARITY = "visualSimilarity"
    TF_IDF = "tfIdf"


class Classification(CamelModel):
    interest_id: str
    interest_name: str
    interest_level: int
    confidence: float
    signals: list[ClassificationSignal] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return clamp01(v)


class PostInterestClassification(CamelModel):
    post_id: str
    classifications: list[Classification] = Field(default_factory=list)
    classified_at: UtcDatetime = Field(default_factory=utcnow)
    version: str = "1.0"

    @property
    def primary_interest(self) -> Optional[Classification]:
        top = self.top_interests(limit=1)
        return top[0] if top else None

    def top_interests(self, limit: int = 3) -> list[Classification]:
        ranked = sorted(
            self.classifications, key=lambda c: (-c.confidence, c.interest_id)
        )
        return ranked[:limit]

    def high_confidence_interests(self, threshold: float = 0.7) -> list[Classification]:
        return [c for c in self.classifications if c.confidence >= threshold]


class HistogramBin(CamelModel):
    lower: float
    upper: float
    count: int


class InterestVolume(CamelModel):
    interest_id: str
    interest_name: str
    post_count: int


class ClassificationAnalytics(CamelModel):
    classified_posts: int
    confidence_histogram: list[HistogramBin]
    signal_distribution: dict[str, int]
    top_interests: list[InterestVolume]


BatchFilter = Literal["unclassified", "all"]


class BatchRequest(CamelModel):
    # Defaults to settings.classify_batch_size
    limit: Optional[int] = Field(None, ge=1, le=10_000)
    filter: BatchFilter = "unclassified"
    after: Optional[str] = None


class BatchResult(CamelModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    last_post_id: Optional[str] = None
    failed_post_ids: list[str] = Field(default_factory=list)


class SuggestRequest(CamelModel):
    caption: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    board_name: Optional[str] = None
    selected_interest_ids: list[str] = Field(default_factory=list)


# ──────────────────────────── Posts / ranking ─────────────────────────────

class PostClassificationRef(CamelModel):
    interest_id: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class Post(CamelModel):
    """A candidate post as seen by classification and ranking."""
    post_id: str = Field(..., pattern=ID_PATTERN)
    user_id: Optional[str] = None
    created_at: UtcDatetime
    like_count: int = Field(0, ge=0)
    comment_count: int = Field(0, ge=0)
    save_count: int = Field(0, ge=0)
    share_count: int = Field(0, ge=0)
    view_count: int = Field(0, ge=0)
    username: Optional[str] = None
    profile_photo_url: Optional[str] = None
    caption: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    board_name: Optional[str] = None
    selected_interest_ids: list[str] = Field(default_factory=list)
    classifications: list[PostClassificationRef] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)

    @property
    def primary_interest_id(self) -> Optional[str]:
        """Highest-confidence classification (ties broken by interest id)."""
        if not self.classifications:
            return None
        best = min(self.classifications, key=lambda c: (-c.confidence, c.interest_id))
        return best.interest_id


class ScoredPost(CamelModel):
    post: Post
    score: float
    interest_relevance: float
    content_quality: float
    creator_quality: float
    freshness: float


class RankRequest(CamelModel):
    user_id: Optional[str] = Field(None, pattern=ID_PATTERN)
    posts: list[Post] = Field(default_factory=list)
    as_of: Optional[UtcDatetime] = None
    timeout_seconds: Optional[float] = Field(None, gt=0.0, le=30.0)


class RankedPost(CamelModel):
    post_id: str
    primary_interest_id: Optional[str]
    score: float
    interest_relevance: float
    content_quality: float
    creator_quality: float
    freshness: float


class RankResponse(CamelModel):
    user_id: Optional[str]
    posts: list[RankedPost]
    personalized: bool
    latency_ms: float


# ──────────────────────────── Events ──────────────────────────────────────

class EngagementKind(str, Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    SAVE = "save"
    VIEW = "view"
    SEARCH = "search"
    CREATE = "create"
    LIKE = "like"


class EngagementEvent(CamelModel):
    user_id: str
    kind: EngagementKind
    post_id: Optional[str] = None
    interest_id: Optional[str] = None
    duration_seconds: float = 0.0
