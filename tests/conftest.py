"""Shared fixtures: a throwaway SQLite store and fast, deterministic settings."""

from __future__ import annotations

import pytest
from fakes import _FakeEmbeddingClient, _FakeLabelClient

from opinion_map.config import Settings
from opinion_map.runtime import Runtime
from opinion_map.store import create_db_engine, init_db

_TEST_SETTINGS = {
    "openai_api_key": "",
    "jina_api_key": "",
    "embedding_batch_size": 50,
    "embedding_batch_delay_seconds": 0.0,
    "default_sample_size": 1000,
    "min_posts_for_map": 20,
    "sampling_policy": "uniform",
    "sampling_seed_mode": "deterministic",
    "clustering_strategy": "kmeans",
    "clustering_space": "intermediate",
    "kmeans_k": 5,
    "min_cluster_size": 5,
    "label_retry_backoff_seconds": 0.0,
    "label_max_concurrency": 2,
    "job_backoff_seconds": 0.0,
    "vectorize_delay_seconds": 0.0,
    "random_seed": 42,
    "langsmith_tracing": False,
}


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides) -> Settings:
        values = {"database_url": f"sqlite:///{tmp_path / 'opinion_map.db'}", **_TEST_SETTINGS}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_runtime(make_settings):
    engines = []

    def _make(*, embedding_client=None, llm_client=None, **overrides) -> Runtime:
        settings = make_settings(**overrides)
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        engines.append(engine)
        return Runtime(
            settings=settings,
            engine=engine,
            embedding_client=embedding_client or _FakeEmbeddingClient(),
            llm_client=llm_client or _FakeLabelClient(),
        )

    yield _make
    for engine in engines:
        engine.dispose()


@pytest.fixture
def runtime(make_runtime) -> Runtime:
    return make_runtime()
