"""Rate-limited batch embedding with per-batch failure isolation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from opinion_map.models import TextEmbeddingClient

logger = logging.getLogger(__name__)


class EmbeddingExtractionError(ValueError):
    """Raised when text embeddings are missing or malformed."""


@dataclass(frozen=True, slots=True)
class EmbeddingBatchReport:
    """Outcome of embedding a list of texts; failed positions hold None."""

    vectors: list[list[float] | None]
    batch_count: int
    failed_batches: int

    @property
    def embedded_count(self) -> int:
        return sum(1 for vector in self.vectors if vector is not None)


def estimate_tokens(text: str) -> int:
    """Cheap token estimate (about four characters per token)."""

    return len(text) // 4 + 1


def plan_embedding_batches(
    texts: list[str],
    *,
    batch_size: int,
    max_batch_tokens: int,
) -> list[list[int]]:
    """Group text positions into batches bounded by item count and estimated tokens."""

    if batch_size <= 0:
        raise EmbeddingExtractionError(f"batch_size must be positive, got {batch_size}.")
    if max_batch_tokens <= 0:
        raise EmbeddingExtractionError(
            f"max_batch_tokens must be positive, got {max_batch_tokens}."
        )

    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0
    for index, text in enumerate(texts):
        tokens = estimate_tokens(text)
        if current and (len(current) >= batch_size or current_tokens + tokens > max_batch_tokens):
            batches.append(current)
            current = []
            current_tokens = 0
        current.append(index)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


def _embed_one_batch(
    texts: list[str],
    embedding_client: TextEmbeddingClient,
) -> list[list[float]]:
    vectors = embedding_client.embed_texts(texts)
    if len(vectors) != len(texts):
        raise EmbeddingExtractionError(
            f"Embedding count mismatch: {len(vectors)} != {len(texts)}."
        )
    dimensions = {len(vector) for vector in vectors}
    if len(dimensions) != 1 or 0 in dimensions:
        raise EmbeddingExtractionError(f"Inconsistent embedding dimensions: {sorted(dimensions)}.")
    return [[float(value) for value in vector] for vector in vectors]


def embed_texts_in_batches(
    texts: list[str],
    embedding_client: TextEmbeddingClient,
    *,
    batch_size: int = 100,
    max_batch_tokens: int = 250_000,
    max_concurrency: int = 1,
    batch_delay_seconds: float = 0.0,
    progress_callback: Callable[[int, int], None] | None = None,
    batch_callback: Callable[[list[int], list[list[float]]], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> EmbeddingBatchReport:
    """Embed texts in waves of at most `max_concurrency` parallel batches.

    A failing batch is logged and skipped; its positions stay None in the report.
    `batch_callback` receives each successful batch's positions and vectors as soon
    as the batch returns, so callers can persist partial progress.
    """

    if max_concurrency <= 0:
        raise EmbeddingExtractionError(f"max_concurrency must be positive, got {max_concurrency}.")

    batches = plan_embedding_batches(
        texts,
        batch_size=batch_size,
        max_batch_tokens=max_batch_tokens,
    )
    vectors: list[list[float] | None] = [None] * len(texts)
    failed_batches = 0
    processed = 0
    total = len(texts)

    with ThreadPoolExecutor(max_workers=max_concurrency) as pool:
        for wave_start in range(0, len(batches), max_concurrency):
            if wave_start > 0 and batch_delay_seconds > 0:
                sleep(batch_delay_seconds)

            wave = batches[wave_start : wave_start + max_concurrency]
            futures = [
                pool.submit(_embed_one_batch, [texts[index] for index in positions], embedding_client)
                for positions in wave
            ]
            for positions, future in zip(wave, futures, strict=True):
                try:
                    batch_vectors = future.result()
                except Exception:
                    failed_batches += 1
                    logger.warning(
                        "Embedding batch of %d texts (positions %d..%d) failed; skipping.",
                        len(positions),
                        positions[0],
                        positions[-1],
                        exc_info=True,
                    )
                else:
                    for index, vector in zip(positions, batch_vectors, strict=True):
                        vectors[index] = vector
                    if batch_callback is not None:
                        batch_callback(positions, batch_vectors)
                processed += len(positions)
                if progress_callback is not None:
                    progress_callback(processed, total)

    return EmbeddingBatchReport(
        vectors=vectors,
        batch_count=len(batches),
        failed_batches=failed_batches,
    )
