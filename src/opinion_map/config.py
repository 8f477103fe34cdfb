"""Configuration management for the Opinion Map pipeline."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store
    database_url: str = "sqlite:///data/opinion_map.db"
    fetch_batch_size: int = Field(default=500, gt=0)

    # API keys
    openai_api_key: str = ""
    jina_api_key: str = ""

    # Model config
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = ""
    openai_temperature: float = 0.0
    client_max_retries: int = 4
    client_backoff_seconds: float = 1.0
    embedding_provider: Literal["openai", "jina"] = "openai"
    embedding_model: str = "text-embedding-3-small"

    # Embedding batching
    embedding_batch_size: int = Field(default=100, gt=0)
    embedding_max_batch_tokens: int = Field(default=250_000, gt=0)
    embedding_max_concurrency: int = Field(default=2, gt=0)
    embedding_batch_delay_seconds: float = Field(default=2.0, ge=0.0)
    max_content_length: int = Field(default=8000, gt=0)

    # Sampling
    default_sample_size: int = Field(default=2000, gt=0)
    max_sample_size: int = Field(default=5000, gt=0)
    min_posts_for_map: int = Field(default=20, gt=0)
    sampling_policy: Literal["stratified_engagement", "uniform", "most_recent"] = (
        "stratified_engagement"
    )
    sampling_seed_mode: Literal["random", "deterministic"] = "random"

    # Reduction
    min_coverage_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    pca_components: int = Field(default=20, gt=2)
    umap_n_neighbors: int = Field(default=15, gt=1)
    umap_min_dist: float = 0.1
    umap_spread: float = 1.0
    random_seed: int | None = 42

    # Clustering
    clustering_strategy: Literal["hdbscan", "kmeans"] = "hdbscan"
    clustering_space: Literal["projection", "intermediate"] = "projection"
    hdbscan_min_cluster_size: int = Field(default=15, gt=1)
    hdbscan_min_samples: int = Field(default=5, gt=0)
    kmeans_k: int | None = None
    outlier_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_cluster_size: int = Field(default=10, gt=0)

    # Labeling
    label_sample_size: int = Field(default=50, gt=0)
    label_keyword_count: int = Field(default=10, gt=0)
    label_max_attempts: int = Field(default=3, gt=0)
    label_retry_backoff_seconds: float = Field(default=5.0, ge=0.0)
    label_max_concurrency: int = Field(default=4, gt=0)
    label_language: str = "English"

    # Orchestration
    vectorizing_timeout_seconds: float = Field(default=240.0, gt=0.0)
    reducing_timeout_seconds: float = Field(default=240.0, gt=0.0)
    clustering_timeout_seconds: float = Field(default=120.0, gt=0.0)
    labeling_timeout_seconds: float = Field(default=240.0, gt=0.0)
    invocation_budget_seconds: float = Field(default=280.0, gt=0.0)
    max_phase_attempts: int = Field(default=3, gt=0)

    # Background jobs
    job_max_attempts: int = Field(default=3, gt=0)
    job_backoff_seconds: float = Field(default=10.0, ge=0.0)
    job_lease_seconds: float = Field(default=600.0, gt=0.0)
    vectorize_delay_seconds: float = Field(default=30.0, ge=0.0)

    # Tracing
    langsmith_tracing: bool = False
    langsmith_api_key: str = ""
    langsmith_project: str = ""
    langsmith_endpoint: str = ""

    @model_validator(mode="after")
    def _check_time_budgets(self) -> "Settings":
        slowest = max(
            self.vectorizing_timeout_seconds,
            self.reducing_timeout_seconds,
            self.clustering_timeout_seconds,
            self.labeling_timeout_seconds,
        )
        if slowest > self.invocation_budget_seconds:
            raise ValueError(
                f"A phase timeout ({slowest}s) exceeds invocation_budget_seconds "
                f"({self.invocation_budget_seconds}s)."
            )
        if self.job_lease_seconds < self.invocation_budget_seconds:
            raise ValueError(
                f"job_lease_seconds ({self.job_lease_seconds}s) must cover invocation_budget_seconds "
                f"({self.invocation_budget_seconds}s)."
            )
        if self.default_sample_size > self.max_sample_size:
            raise ValueError("default_sample_size cannot exceed max_sample_size.")
        return self

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> "Settings":
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)

    def resolved_openai_base_url(self) -> str:
        """Return the normalized base URL, or empty for the default OpenAI endpoint."""

        candidate = self.openai_base_url.strip()
        if not candidate:
            return ""
        return f"{candidate.rstrip('/')}/"

    def resolved_embedding_api_key(self) -> str:
        """Return the API key for the configured embedding provider."""

        if self.embedding_provider == "jina":
            return self.jina_api_key.strip()
        return self.openai_api_key.strip()

    def phase_timeout_seconds(self, status: str) -> float:
        """Return the wall-clock ceiling for the phase run while a session is in `status`."""

        timeouts = {
            "pending": self.vectorizing_timeout_seconds,
            "vectorizing": self.vectorizing_timeout_seconds,
            "reducing": self.reducing_timeout_seconds,
            "clustering": self.clustering_timeout_seconds,
            "labeling": self.labeling_timeout_seconds,
        }
        if status not in timeouts:
            raise ValueError(f"No phase runs while a session is '{status}'.")
        return timeouts[status]
