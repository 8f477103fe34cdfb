"""Model client abstractions."""

from opinion_map.models.embedding_clients import (
    JinaEmbeddingClient,
    OpenAIEmbeddingClient,
    TextEmbeddingClient,
)
from opinion_map.models.factory import (
    ModelConfigurationError,
    build_embedding_client,
    build_llm_client,
)
from opinion_map.models.openai_client import LLMJsonClient, OpenAIJsonClient, parse_json_object

__all__ = [
    "JinaEmbeddingClient",
    "LLMJsonClient",
    "ModelConfigurationError",
    "OpenAIEmbeddingClient",
    "OpenAIJsonClient",
    "TextEmbeddingClient",
    "build_embedding_client",
    "build_llm_client",
    "parse_json_object",
]
