"""Embedding service clients (OpenAI and Jina)."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from openai import APIError, APITimeoutError, BadRequestError, OpenAI, RateLimitError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random


class TextEmbeddingClient(Protocol):
    """Protocol for text embedding clients."""

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Return one embedding vector per input text."""


def _build_retryer(
    *,
    is_retryable: Callable[[BaseException], bool],
    max_retries: int,
    backoff_seconds: float,
) -> Retrying:
    wait_strategy = wait_exponential(
        multiplier=backoff_seconds,
        min=backoff_seconds,
        max=max(backoff_seconds, backoff_seconds * 8),
    ) + wait_random(0.0, 0.25)
    return Retrying(
        retry=retry_if_exception(is_retryable),
        wait=wait_strategy,
        stop=stop_after_attempt(max(1, max_retries)),
        reraise=True,
    )


def _vectors_in_input_order(items: list[Any], expected: int) -> list[list[float]]:
    """Order `{index, embedding}` items by index and check the count."""

    embeddings_by_index: dict[int, list[float]] = {}
    for item in items:
        index = item.get("index") if isinstance(item, dict) else getattr(item, "index", None)
        embedding = (
            item.get("embedding") if isinstance(item, dict) else getattr(item, "embedding", None)
        )
        if not isinstance(index, int):
            raise ValueError("Embedding item missing integer 'index'.")
        if not isinstance(embedding, list) or not embedding:
            raise ValueError(f"Embedding item {index} missing non-empty list 'embedding'.")
        embeddings_by_index[index] = [float(value) for value in embedding]

    if sorted(embeddings_by_index) != list(range(expected)):
        raise ValueError(
            "Embeddings response count does not match input count: "
            f"{len(embeddings_by_index)} != {expected}."
        )
    return [embeddings_by_index[idx] for idx in range(expected)]


class OpenAIEmbeddingClient:
    """Embeddings through the OpenAI SDK, with retry on transient errors."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._client = OpenAI(api_key=api_key, base_url=base_url or None, max_retries=0)
        self._model = model
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._metrics_lock = threading.Lock()
        self._request_count = 0
        self._total_tokens = 0

    @property
    def model(self) -> str:
        return self._model

    def _is_retryable_openai_error(self, exc: BaseException) -> bool:
        if isinstance(exc, (RateLimitError, APITimeoutError)):
            return True
        if isinstance(exc, BadRequestError):
            return False
        return isinstance(exc, APIError)

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        response = None
        retryer = _build_retryer(
            is_retryable=self._is_retryable_openai_error,
            max_retries=self._max_retries,
            backoff_seconds=self._backoff_seconds,
        )
        for attempt in retryer:
            with attempt:
                response = self._client.embeddings.create(model=self._model, input=texts)

        if response is None:
            raise ValueError("OpenAI embeddings response missing after retries.")

        usage = getattr(response, "usage", None)
        with self._metrics_lock:
            self._request_count += 1
            self._total_tokens += int(getattr(usage, "total_tokens", 0) or 0)
        return _vectors_in_input_order(list(response.data), len(texts))

    def metrics_snapshot(self) -> dict:
        with self._metrics_lock:
            return {
                "request_count": self._request_count,
                "total_tokens": self._total_tokens,
                "model": self._model,
            }


class JinaEmbeddingClient:
    """Thin client around Jina's embeddings endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://api.jina.ai/v1/embeddings",
        timeout_seconds: float = 60.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._model = model
        self._base_url = base_url
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._http = httpx.Client(
            timeout=timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    @property
    def model(self) -> str:
        return self._model

    def close(self) -> None:
        """Close the underlying HTTP client."""

        self._http.close()

    def _is_retryable_jina_error(self, exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return status == 429 or status >= 500
        return isinstance(exc, (httpx.TimeoutException, httpx.RequestError))

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        response: httpx.Response | None = None
        retryer = _build_retryer(
            is_retryable=self._is_retryable_jina_error,
            max_retries=self._max_retries,
            backoff_seconds=self._backoff_seconds,
        )
        for attempt in retryer:
            with attempt:
                response = self._http.post(
                    self._base_url,
                    json={"model": self._model, "input": texts},
                )
                response.raise_for_status()

        if response is None:
            raise ValueError("Jina embeddings response missing after retries.")

        payload = response.json()
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ValueError("Embeddings response missing list field 'data'.")
        return _vectors_in_input_order(payload["data"], len(texts))
