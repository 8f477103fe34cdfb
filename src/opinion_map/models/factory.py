"""Build model clients from settings."""

from __future__ import annotations

from openai import OpenAI

from opinion_map.config import Settings
from opinion_map.models.embedding_clients import (
    JinaEmbeddingClient,
    OpenAIEmbeddingClient,
    TextEmbeddingClient,
)
from opinion_map.models.openai_client import OpenAIJsonClient
from opinion_map.observability import maybe_wrap_openai_client


class ModelConfigurationError(ValueError):
    """Raised when a model client cannot be built from the current settings."""


def build_embedding_client(settings: Settings) -> TextEmbeddingClient:
    api_key = settings.resolved_embedding_api_key()
    if not api_key:
        raise ModelConfigurationError(
            f"No API key configured for embedding provider '{settings.embedding_provider}'."
        )
    if settings.embedding_provider == "jina":
        return JinaEmbeddingClient(
            api_key=api_key,
            model=settings.embedding_model,
            max_retries=settings.client_max_retries,
            backoff_seconds=settings.client_backoff_seconds,
        )
    return OpenAIEmbeddingClient(
        api_key=api_key,
        model=settings.embedding_model,
        base_url=settings.resolved_openai_base_url() or None,
        max_retries=settings.client_max_retries,
        backoff_seconds=settings.client_backoff_seconds,
    )


def build_llm_client(settings: Settings) -> OpenAIJsonClient:
    api_key = settings.openai_api_key.strip()
    if not api_key:
        raise ModelConfigurationError("OPENAI_API_KEY is required for cluster labeling.")
    base_client = OpenAI(api_key=api_key, base_url=settings.resolved_openai_base_url() or None)
    client, traced = maybe_wrap_openai_client(base_client, settings)
    return OpenAIJsonClient(
        client=client,
        model=settings.openai_model,
        temperature=settings.openai_temperature,
        max_retries=settings.client_max_retries,
        backoff_seconds=settings.client_backoff_seconds,
        traced=traced,
    )
