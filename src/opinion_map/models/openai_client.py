"""Structured-output chat client used to name and describe opinion clusters."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import APIError, APITimeoutError, BadRequestError, RateLimitError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")

# Phrases a provider uses when it rejects `json_schema` response formats.
_SCHEMA_REJECTION_HINTS = (
    "json_schema",
    "response_format",
    "unsupported",
    "not supported",
    "invalid schema",
)
_JSON_OBJECT_FORMAT = {"type": "json_object"}


class LLMJsonClient(Protocol):
    """Protocol for clients that return structured JSON."""

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        """Generate a JSON object for the given prompts."""


def parse_json_object(content: str) -> dict:
    """Parse a JSON object, tolerating markdown fences and trailing commas."""

    cleaned = _FENCE_PATTERN.sub("", content.strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            payload = json.loads(_TRAILING_COMMA_PATTERN.sub(r"\1", cleaned))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Model response was not valid JSON: {content[:200]}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object, got {type(payload).__name__}.")
    return payload


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, BadRequestError):
        return False
    return isinstance(exc, (RateLimitError, APITimeoutError, APIError))


def _rejects_schema_format(exc: BadRequestError) -> bool:
    message = str(exc).lower()
    return any(hint in message for hint in _SCHEMA_REJECTION_HINTS)


@dataclass
class _UsageTally:
    """Thread-safe counters shared by concurrent labeling calls."""

    requests: int = 0
    retries: int = 0
    schema_fallbacks: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, response: Any, attempts: int) -> None:
        usage = getattr(response, "usage", None)
        with self.lock:
            self.requests += 1
            self.retries += max(0, attempts - 1)
            self.prompt_tokens += int(getattr(usage, "prompt_tokens", 0) or 0)
            self.completion_tokens += int(getattr(usage, "completion_tokens", 0) or 0)

    def note_schema_fallback(self) -> None:
        with self.lock:
            self.schema_fallbacks += 1


class OpenAIJsonClient:
    """Chat-completions client that returns one JSON object per call.

    Transient API errors (rate limits, timeouts, server errors) are retried with
    jittered exponential backoff. A provider that refuses `json_schema` output is
    asked again with plain `json_object` mode.
    """

    def __init__(
        self,
        *,
        client: Any,
        model: str,
        temperature: float = 0.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
        traced: bool = False,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self.traced = traced
        self._usage = _UsageTally()
        self._retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            wait=wait_exponential(
                multiplier=backoff_seconds,
                min=backoff_seconds,
                max=max(backoff_seconds, backoff_seconds * 8),
            )
            + wait_random(0.0, 0.25),
            stop=stop_after_attempt(max(1, max_retries)),
            reraise=True,
        )

    def _request(self, messages: list[dict], response_format: dict):
        retrying = self._retrying.copy()
        response = retrying(
            self._client.chat.completions.create,
            model=self._model,
            temperature=self._temperature,
            response_format=response_format,
            messages=messages,
        )
        self._usage.record(response, int(retrying.statistics.get("attempt_number", 1)))
        return response

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        """Call the chat API and parse one JSON object from the reply."""

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        if json_schema is None:
            response = self._request(messages, _JSON_OBJECT_FORMAT)
        else:
            schema_format = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name or "structured_output",
                    "schema": json_schema,
                    "strict": bool(strict_schema),
                },
            }
            try:
                response = self._request(messages, schema_format)
            except BadRequestError as exc:
                if not _rejects_schema_format(exc):
                    raise
                self._usage.note_schema_fallback()
                response = self._request(messages, _JSON_OBJECT_FORMAT)

        content = response.choices[0].message.content
        if content is None:
            raise ValueError("Model returned empty content for JSON response.")
        return parse_json_object(content)

    def metrics_snapshot(self) -> dict:
        """Cumulative request and token usage for this client instance."""

        usage = self._usage
        with usage.lock:
            return {
                "request_count": usage.requests,
                "retry_count": usage.retries,
                "schema_fallback_count": usage.schema_fallbacks,
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "model": self._model,
                "traced": self.traced,
            }
