"""LangSmith tracing helpers for model calls."""

from __future__ import annotations

import logging
import os
from typing import Any

from opinion_map.config import Settings

logger = logging.getLogger(__name__)


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def get_langsmith_status(settings: Settings) -> dict[str, Any]:
    """Return effective tracing status from settings, falling back to LANGSMITH_* env vars."""

    enabled = settings.langsmith_tracing or _is_truthy(os.getenv("LANGSMITH_TRACING"))
    api_key = settings.langsmith_api_key or os.getenv("LANGSMITH_API_KEY", "")
    return {
        "enabled": enabled,
        "endpoint": settings.langsmith_endpoint or os.getenv("LANGSMITH_ENDPOINT", ""),
        "project": settings.langsmith_project or os.getenv("LANGSMITH_PROJECT", ""),
        "api_key_present": bool(api_key),
    }


def _export_langsmith_env(settings: Settings) -> None:
    """Expose configured values to the langsmith SDK, which reads the process env."""

    pairs = {
        "LANGSMITH_TRACING": "true",
        "LANGSMITH_API_KEY": settings.langsmith_api_key,
        "LANGSMITH_PROJECT": settings.langsmith_project,
        "LANGSMITH_ENDPOINT": settings.langsmith_endpoint,
    }
    for key, value in pairs.items():
        if value and not os.getenv(key):
            os.environ[key] = value


def maybe_wrap_openai_client(client: Any, settings: Settings) -> tuple[Any, bool]:
    """Wrap an OpenAI client with the LangSmith tracer when tracing is enabled."""

    status = get_langsmith_status(settings)
    if not status["enabled"] or not status["api_key_present"]:
        return client, False

    try:
        from langsmith.wrappers import wrap_openai
    except ImportError:
        logger.warning("LangSmith tracing enabled but the 'langsmith' package is not installed.")
        return client, False

    _export_langsmith_env(settings)
    return wrap_openai(client), True
