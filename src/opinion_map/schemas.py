"""Core data schemas for the Opinion Map pipeline."""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

SessionStatus = Literal[
    "pending",
    "vectorizing",
    "reducing",
    "clustering",
    "labeling",
    "completed",
    "failed",
    "cancelled",
]

ACTIVE_STATUSES: tuple[str, ...] = ("pending", "vectorizing", "reducing", "clustering", "labeling")
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed", "cancelled")
NEXT_STATUS: dict[str, str] = {
    "pending": "vectorizing",
    "vectorizing": "reducing",
    "reducing": "clustering",
    "clustering": "labeling",
    "labeling": "completed",
}

SamplingPolicy = Literal["stratified_engagement", "uniform", "most_recent"]
TimeGranularity = Literal["hour", "6hours", "day"]


class DateRange(BaseModel):
    """Inclusive calendar date range for a session sample."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}.")
        return self


class SessionConfig(BaseModel):
    """Configuration snapshot persisted on the session row."""

    date_range: DateRange
    sample_size: int = Field(gt=0)
    sampling_policy: SamplingPolicy
    sampling_seed: int | None = None
    operational_context: str | None = None
    language: str = "English"
    embedding_model: str
    sampled_post_ids: list[int] = Field(default_factory=list)


class SessionView(BaseModel):
    """User-visible projection of a session row. Never carries the error stack."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    zone_id: str
    status: SessionStatus
    progress: int = Field(ge=0, le=100)
    current_phase: str
    phase_message: str
    total_posts: int
    vectorized_posts: int
    total_clusters: int
    outlier_count: int
    execution_time_ms: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    created_by: str | None = None


class CreatedSession(BaseModel):
    """Result of the create-session entry point."""

    session_id: str
    status: SessionStatus
    reused: bool = False
    total_posts: int = 0
    total_available: int = 0
    cached_posts: int = 0
    cache_hit_ratio: float = 0.0
    estimated_seconds: int = 0


class ClusterRecord(BaseModel):
    """Validated cluster summary, checked before it is persisted."""

    cluster_id: int = Field(ge=0)
    label: str = Field(min_length=1, max_length=120)
    keywords: list[str] = Field(default_factory=list)
    reasoning: str
    tweet_count: int = Field(gt=0)
    centroid_x: float
    centroid_y: float
    centroid_z: float
    avg_sentiment: float = Field(ge=-1.0, le=1.0)
    coherence_score: float = Field(ge=0.0, le=1.0)
    labeling_fallback_used: bool = False


class ProjectionRecord(BaseModel):
    """Validated per-post coordinate and cluster assignment.

    Outliers keep the id of their nearest cluster; `is_outlier` excludes them from
    that cluster's member count.
    """

    post_id: int
    x: float = Field(ge=0.0, le=100.0)
    y: float = Field(ge=0.0, le=100.0)
    z: float = Field(ge=0.0, le=100.0)
    cluster_id: int = Field(ge=0)
    cluster_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    is_outlier: bool


class TimeSeriesPoint(BaseModel):
    """Post counts per cluster within one time bucket."""

    bucket_start: datetime
    label: str
    counts: dict[int, int]


class ClusterTimeSeries(BaseModel):
    """How each cluster's volume evolves over a session's date range."""

    session_id: str
    granularity: TimeGranularity
    cluster_ids: list[int]
    points: list[TimeSeriesPoint]
