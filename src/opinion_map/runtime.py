"""Shared handles for one worker process: settings, engine and model clients."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine

from opinion_map.config import Settings
from opinion_map.models import (
    LLMJsonClient,
    TextEmbeddingClient,
    build_embedding_client,
    build_llm_client,
)
from opinion_map.store import create_db_engine


@dataclass
class Runtime:
    """Process-local handles. Holds no session state; every run reads the store."""

    settings: Settings
    engine: Engine
    embedding_client: TextEmbeddingClient | None = None
    llm_client: LLMJsonClient | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def require_embedding_client(self) -> TextEmbeddingClient:
        with self._lock:
            if self.embedding_client is None:
                self.embedding_client = build_embedding_client(self.settings)
            return self.embedding_client

    def require_llm_client(self) -> LLMJsonClient:
        with self._lock:
            if self.llm_client is None:
                self.llm_client = build_llm_client(self.settings)
            return self.llm_client


def build_runtime(settings: Settings) -> Runtime:
    """Create the engine; model clients are built on first use."""

    return Runtime(settings=settings, engine=create_db_engine(settings.database_url))
