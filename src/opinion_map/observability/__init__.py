"""Observability helpers."""

from opinion_map.observability.langsmith import get_langsmith_status, maybe_wrap_openai_client

__all__ = [
    "get_langsmith_status",
    "maybe_wrap_openai_client",
]
