"""Tests for batch embedding helpers."""

from __future__ import annotations

import pytest

from opinion_map.pipeline import EmbeddingExtractionError, embed_texts_in_batches
from opinion_map.pipeline.embedding import estimate_tokens, plan_embedding_batches


class _FakeEmbeddingClient:
    def __init__(self):
        self.call_count = 0
        self.batch_sizes: list[int] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.call_count += 1
        self.batch_sizes.append(len(texts))
        return [[float(len(text)), float(index), 1.0] for index, text in enumerate(texts)]


class _BrokenEmbeddingClient:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return [[1.0, 2.0]] * (len(texts) - 1)


class _FailOnBatchClient:
    """Raises on the listed (1-based) batch numbers, succeeds otherwise."""

    def __init__(self, failing_batches: set[int]):
        self._failing = failing_batches
        self._batch_count = 0

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self._batch_count += 1
        if self._batch_count in self._failing:
            raise ConnectionError("Simulated network failure")
        return [[float(len(t)), 1.0, 2.0] for t in texts]


class TestPlanEmbeddingBatches:
    def test_splits_on_item_count(self):
        batches = plan_embedding_batches(
            ["a"] * 5,
            batch_size=2,
            max_batch_tokens=1000,
        )
        assert batches == [[0, 1], [2, 3], [4]]

    def test_splits_on_estimated_tokens(self):
        long_text = "x" * 400
        assert estimate_tokens(long_text) == 101

        batches = plan_embedding_batches(
            [long_text, long_text, "short"],
            batch_size=10,
            max_batch_tokens=150,
        )
        assert batches == [[0], [1, 2]]

    def test_oversized_text_still_gets_its_own_batch(self):
        batches = plan_embedding_batches(["y" * 4000, "z"], batch_size=10, max_batch_tokens=10)
        assert batches == [[0], [1]]

    def test_rejects_non_positive_limits(self):
        with pytest.raises(EmbeddingExtractionError, match="batch_size must be positive"):
            plan_embedding_batches(["a"], batch_size=0, max_batch_tokens=10)
        with pytest.raises(EmbeddingExtractionError, match="max_batch_tokens must be positive"):
            plan_embedding_batches(["a"], batch_size=1, max_batch_tokens=0)


class TestEmbedTextsInBatches:
    def test_embeds_every_text_in_order(self):
        client = _FakeEmbeddingClient()

        report = embed_texts_in_batches(
            ["alpha", "beta", "gamma", "delta"],
            client,
            batch_size=2,
        )

        assert report.batch_count == 2
        assert report.failed_batches == 0
        assert report.embedded_count == 4
        assert client.batch_sizes == [2, 2]
        assert [vector[0] for vector in report.vectors] == [5.0, 4.0, 5.0, 5.0]

    def test_empty_input_makes_no_calls(self):
        client = _FakeEmbeddingClient()

        report = embed_texts_in_batches([], client)

        assert report.vectors == []
        assert report.batch_count == 0
        assert client.call_count == 0

    def test_failed_batch_is_skipped_and_others_kept(self):
        client = _FailOnBatchClient({2})

        report = embed_texts_in_batches(["a", "b", "c", "d", "e"], client, batch_size=2)

        assert report.failed_batches == 1
        assert report.embedded_count == 3
        assert report.vectors[2] is None
        assert report.vectors[3] is None
        assert report.vectors[4] == [1.0, 1.0, 2.0]

    def test_count_mismatch_fails_only_that_batch(self):
        report = embed_texts_in_batches(["a", "b", "c"], _BrokenEmbeddingClient(), batch_size=3)

        assert report.failed_batches == 1
        assert report.vectors == [None, None, None]

    def test_batch_callback_receives_positions_and_vectors(self):
        seen: list[tuple[list[int], int]] = []

        embed_texts_in_batches(
            ["a", "b", "c"],
            _FailOnBatchClient({1}),
            batch_size=2,
            batch_callback=lambda positions, vectors: seen.append((positions, len(vectors))),
        )

        assert seen == [([2], 1)]

    def test_progress_counts_failed_batches_as_processed(self):
        progress: list[tuple[int, int]] = []

        embed_texts_in_batches(
            ["a", "b", "c", "d"],
            _FailOnBatchClient({1}),
            batch_size=2,
            progress_callback=lambda done, total: progress.append((done, total)),
        )

        assert progress == [(2, 4), (4, 4)]

    def test_delay_applies_between_waves(self):
        sleeps: list[float] = []

        embed_texts_in_batches(
            ["a", "b", "c", "d", "e"],
            _FakeEmbeddingClient(),
            batch_size=1,
            max_concurrency=2,
            batch_delay_seconds=0.5,
            sleep=sleeps.append,
        )

        # Five batches in waves of two: three waves, two pauses.
        assert sleeps == [0.5, 0.5]

    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(EmbeddingExtractionError, match="max_concurrency must be positive"):
            embed_texts_in_batches(["a"], _FakeEmbeddingClient(), max_concurrency=0)
