"""SQLModel table definitions for posts, sessions, results and jobs."""


from datetime import UTC, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

# JSON locally, native pgvector column on PostgreSQL.
EmbeddingColumnType = JSON(none_as_null=True).with_variant(Vector(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _tz_column(*, nullable: bool = True, index: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable, index=index)


class Post(SQLModel, table=True):
    """A collected social post, carrying its embedding cache fields."""

    __tablename__ = "posts"
    __table_args__ = (
        Index("ix_posts_zone_posted_at", "zone_id", "posted_at"),
        UniqueConstraint("zone_id", "external_id", name="uq_posts_zone_external"),
    )

    id: int | None = Field(default=None, primary_key=True)
    zone_id: str = Field(max_length=64)
    external_id: str = Field(max_length=64)
    text: str = Field(sa_column=Column(Text, nullable=False))
    author_name: str | None = None
    author_username: str | None = None
    hashtags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    engagement: int = 0
    posted_at: datetime = Field(sa_column=_tz_column(nullable=False))

    embedding: list[float] | None = Field(
        default=None,
        sa_column=Column(EmbeddingColumnType, nullable=True),
    )
    embedding_model: str | None = Field(default=None, max_length=100)
    embedding_created_at: datetime | None = Field(default=None, sa_column=_tz_column())


class OpinionSession(SQLModel, table=True):
    """One end-to-end run of the pipeline for a zone and date range."""

    __tablename__ = "opinion_sessions"
    __table_args__ = (Index("ix_opinion_sessions_zone_status", "zone_id", "status"),)

    id: str = Field(primary_key=True, max_length=32)
    zone_id: str = Field(max_length=64)
    status: str = Field(default="pending", max_length=20)
    progress: int = 0
    current_phase: str = Field(default="pending", max_length=40)
    phase_message: str = ""
    config: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    stats: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    total_posts: int = 0
    vectorized_posts: int = 0
    total_clusters: int = 0
    outlier_count: int = 0
    phase_attempts: int = 0
    execution_time_ms: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_stack: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime | None = Field(default=None, sa_column=_tz_column())
    completed_at: datetime | None = Field(default=None, sa_column=_tz_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))
    created_by: str | None = Field(default=None, max_length=100)


class PostProjection(SQLModel, table=True):
    """A post's 3D coordinate and cluster assignment within one session."""

    __tablename__ = "post_projections"
    __table_args__ = (
        UniqueConstraint("post_id", "session_id", name="uq_projection_post_session"),
        Index("ix_post_projections_session_cluster", "session_id", "cluster_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="opinion_sessions.id", max_length=32)
    zone_id: str = Field(max_length=64)
    post_id: int = Field(foreign_key="posts.id")
    x: float
    y: float
    z: float
    cluster_id: int
    cluster_confidence: float | None = None
    is_outlier: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))


class OpinionCluster(SQLModel, table=True):
    """Labeled opinion cluster summary for one session."""

    __tablename__ = "opinion_clusters"
    __table_args__ = (
        UniqueConstraint("session_id", "cluster_id", name="uq_cluster_session_cluster"),
    )

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="opinion_sessions.id", max_length=32, index=True)
    zone_id: str = Field(max_length=64)
    cluster_id: int
    label: str
    keywords: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    reasoning: str = Field(sa_column=Column(Text, nullable=False))
    tweet_count: int
    centroid_x: float
    centroid_y: float
    centroid_z: float
    avg_sentiment: float
    coherence_score: float
    labeling_fallback_used: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))


class SessionArtifact(SQLModel, table=True):
    """Intermediate phase output that a later phase of the same session resumes from."""

    __tablename__ = "session_artifacts"

    session_id: str = Field(primary_key=True, foreign_key="opinion_sessions.id", max_length=32)
    phase: str = Field(primary_key=True, max_length=40)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))


class Job(SQLModel, table=True):
    """Background job with at-least-once delivery and bounded retries."""

    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_claim", "status", "available_at"),)

    id: int | None = Field(default=None, primary_key=True)
    kind: str = Field(max_length=50)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: str = Field(default="pending", max_length=20)
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    available_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column(nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=_tz_column())
    completed_at: datetime | None = Field(default=None, sa_column=_tz_column())
