"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic import model_validator
from pydantic_settings import BaseSettings

WEIGHT_TOLERANCE = 1e-6


class Settings(BaseSettings):
    # ── Database (MySQL-protocol; any async SQLAlchemy URL works) ──────────
    db_host: str = "tidb"
    db_port: int = 4000
    db_user: str = "root"
    db_password: str = ""
    db_name: str = "personalization"
    database_url_override: str = ""

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+aiomysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # ── Redis (distributed per-key locks) ──────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    use_redis_locks: bool = False
    lock_timeout_seconds: float = 30.0

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_new_posts: str = "new-posts"
    kafka_topic_engagements: str = "engagements"
    kafka_consumer_group: str = "personalization-worker"

    # ── Qdrant (similar-post lookup for classification) ────────────────────
    qdrant_enabled: bool = False
    qdrant_host: str = "qdrant"
    qdrant_port: int = 6333
    qdrant_collection: str = "posts"
    similar_posts_limit: int = 10
    similar_posts_min_score: float = 0.75

    # ── Taxonomy ───────────────────────────────────────────────────────────
    taxonomy_cache_ttl_seconds: float = 3600.0
    taxonomy_max_depth: int = 16

    # ── Taste graph ────────────────────────────────────────────────────────
    taste_graph_top_n: int = 20
    default_decay_factor: float = 0.01       # ~37% after 100 days
    follow_decay_factor: float = 0.005       # explicit follows fade slower
    initial_score_factor: float = 0.5
    reinforcement_rate: float = 0.1
    taste_graph_timeout_seconds: float = 0.5
    # Engagement weight per recorder (scaled by classification confidence)
    follow_weight: float = 1.0
    save_weight: float = 0.8
    view_weight: float = 0.4
    search_weight: float = 0.6
    create_weight: float = 0.7
    view_min_seconds: float = 3.0
    view_full_seconds: float = 30.0

    # ── Classification ─────────────────────────────────────────────────────
    classifier_version: str = "1.0"
    candidate_limit: int = 50
    min_confidence: float = 0.5
    max_classifications: int = 5
    level_boost: float = 0.05
    behavior_min_engagers: int = 3
    # Evidence = match score x reliability of the signal kind
    signal_reliability: dict[str, float] = {
        "userTagged": 1.0,
        "tagMatch": 1.0,
        "boardName": 0.9,
        "captionMatch": 0.8,
        "similarPosts": 0.8,
        "userBehavior": 0.7,
        "visualSimilarity": 0.5,
        "tfIdf": 0.5,
    }
    classify_batch_size: int = 100
    classify_concurrency: int = 8

    # ── Ranking ────────────────────────────────────────────────────────────
    weight_interest: float = 0.40
    weight_content: float = 0.30
    weight_creator: float = 0.15
    weight_freshness: float = 0.15
    max_engagement_rate: float = 0.1
    freshness_decay_per_hour: float = 0.03   # half-life ≈ 23h
    diversity_window: int = 3
    ranking_workers: int = 4
    ranking_chunk_size: int = 64

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "personalization-service"
    environment: str = "development"

    @model_validator(mode="after")
    def _weights_sum_to_one(self):
        total = (
            self.weight_interest
            + self.weight_content
            + self.weight_creator
            + self.weight_freshness
        )
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ValueError(
                "weight_interest + weight_content + weight_creator + "
                f"weight_freshness must sum to 1.0 (got {total:.6f})"
            )
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
