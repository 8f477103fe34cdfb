"""Tests for opinion clustering utilities."""

from __future__ import annotations

import numpy as np
import pytest

from opinion_map.pipeline import fit_opinion_clusters, merge_small_clusters, nearest_centroids
from opinion_map.pipeline.clustering import ClusteringError, choose_k_by_elbow, fit_kmeans


def _blob(center: tuple[float, float], count: int, *, seed: int, scale: float = 0.2) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.asarray(center, dtype=float) + rng.normal(0.0, scale, size=(count, 2))


class TestNearestCentroids:
    def test_equidistant_point_goes_to_lower_index(self):
        centroids = np.array([[0.0, 0.0], [2.0, 0.0]])
        points = np.array([[1.0, 0.0], [1.0, 5.0]])

        nearest, confidences = nearest_centroids(points, centroids)

        assert nearest.tolist() == [0, 0]
        assert confidences.tolist() == [0.0, 0.0]

    def test_confidence_is_relative_gap(self):
        centroids = np.array([[0.0, 0.0], [4.0, 0.0]])
        nearest, confidences = nearest_centroids(np.array([[1.0, 0.0]]), centroids)

        assert nearest.tolist() == [0]
        # d1 = 1, d2 = 3
        assert confidences[0] == pytest.approx(2.0 / 3.0)

    def test_single_centroid_is_fully_confident(self):
        _, confidences = nearest_centroids(np.zeros((3, 2)), np.array([[1.0, 1.0]]))
        assert confidences.tolist() == [1.0, 1.0, 1.0]


class TestMergeSmallClusters:
    def test_small_cluster_joins_nearest_larger_cluster(self):
        points = np.vstack(
            [
                _blob((0.0, 0.0), 20, seed=1),
                _blob((100.0, 0.0), 30, seed=2),
                _blob((30.0, 0.0), 3, seed=3),
            ]
        )
        centroids = np.array([[0.0, 0.0], [100.0, 0.0], [30.0, 0.0]])

        merged, merges = merge_small_clusters(points, centroids, min_size=5)

        assert merges == 1
        assert merged.shape == (2, 2)
        # The first centroid absorbed the three nearby points and moved toward them.
        assert 0.0 < merged[0][0] < 30.0
        assert merged[1][0] == pytest.approx(100.0, abs=0.5)

    def test_equal_sized_small_clusters_merge_lower_index_first(self):
        points = np.vstack(
            [
                _blob((0.0, 0.0), 2, seed=4),
                _blob((50.0, 0.0), 2, seed=5),
                _blob((20.0, 0.0), 10, seed=6),
            ]
        )
        centroids = np.array([[0.0, 0.0], [50.0, 0.0], [20.0, 0.0]])

        merged, merges = merge_small_clusters(points, centroids, min_size=3)

        assert merges == 2
        assert merged.shape == (1, 2)

    def test_clusters_at_threshold_are_kept(self):
        points = np.vstack([_blob((0.0, 0.0), 5, seed=7), _blob((9.0, 9.0), 5, seed=8)])
        centroids = np.array([[0.0, 0.0], [9.0, 9.0]])

        merged, merges = merge_small_clusters(points, centroids, min_size=5)

        assert merges == 0
        assert np.array_equal(merged, centroids)


class TestFitOpinionClusters:
    def test_ambiguous_point_is_outlier_but_keeps_nearest_cluster(self):
        points = np.vstack(
            [
                _blob((0.0, 0.0), 25, seed=10),
                _blob((10.0, 0.0), 25, seed=11),
                np.array([[5.0, 0.0]]),
            ]
        )

        result = fit_opinion_clusters(
            points,
            strategy="kmeans",
            kmeans_k=2,
            min_cluster_size=5,
            outlier_confidence_threshold=0.5,
            random_seed=42,
        )

        assert result.cluster_count == 2
        assert bool(result.outliers[-1]) is True
        assert int(result.labels[-1]) in {0, 1}
        assert result.outlier_count == 1
        assert sum(result.cluster_sizes) + result.outlier_count == points.shape[0]

    def test_zero_threshold_keeps_every_point(self):
        points = np.vstack([_blob((0.0, 0.0), 15, seed=12), _blob((8.0, 8.0), 15, seed=13)])

        result = fit_opinion_clusters(
            points,
            strategy="kmeans",
            kmeans_k=2,
            min_cluster_size=5,
            outlier_confidence_threshold=0.0,
        )

        assert result.outlier_count == 0
        assert sorted(result.cluster_sizes) == [15, 15]

    def test_small_cluster_is_merged_before_assignment(self):
        points = np.vstack(
            [
                _blob((0.0, 0.0), 30, seed=14),
                _blob((40.0, 0.0), 30, seed=15),
                _blob((12.0, 0.0), 3, seed=16, scale=0.05),
            ]
        )

        result = fit_opinion_clusters(
            points,
            strategy="kmeans",
            kmeans_k=3,
            min_cluster_size=10,
            outlier_confidence_threshold=0.0,
            random_seed=42,
        )

        assert result.raw_cluster_count == 3
        assert result.merged_clusters == 1
        assert result.cluster_count == 2

    def test_cluster_shrunk_by_outliers_is_folded_into_a_larger_one(self):
        # Six of the third cluster's ten points sit between it and the big blobs,
        # so only its four core points are confident members.
        fringe = np.array([[15.0, 20.0]] * 3 + [[45.0, 20.0]] * 3)
        core = np.array([[30.0, 40.0]] * 4)
        points = np.vstack(
            [_blob((0.0, 0.0), 40, seed=22), _blob((60.0, 0.0), 40, seed=23), core, fringe]
        )

        result = fit_opinion_clusters(
            points,
            strategy="kmeans",
            kmeans_k=3,
            min_cluster_size=10,
            outlier_confidence_threshold=0.5,
            random_seed=42,
        )

        assert result.raw_cluster_count == 3
        assert result.cluster_count == 2
        assert result.merged_clusters == 1
        assert min(result.cluster_sizes) >= 10
        assert sum(result.cluster_sizes) + result.outlier_count == points.shape[0]

    def test_lone_cluster_may_stay_below_minimum(self):
        points = np.vstack([_blob((0.0, 0.0), 4, seed=24), _blob((9.0, 0.0), 3, seed=25)])

        result = fit_opinion_clusters(
            points,
            strategy="kmeans",
            kmeans_k=2,
            min_cluster_size=10,
            outlier_confidence_threshold=0.5,
        )

        assert result.cluster_count == 1
        assert result.cluster_sizes == [7]
        assert result.outlier_count == 0

    def test_hdbscan_falls_back_to_kmeans_when_sample_is_tiny(self):
        points = np.vstack([_blob((0.0, 0.0), 4, seed=17), _blob((9.0, 0.0), 4, seed=18)])

        result = fit_opinion_clusters(
            points,
            strategy="hdbscan",
            hdbscan_min_cluster_size=15,
            kmeans_k=2,
            min_cluster_size=2,
            outlier_confidence_threshold=0.0,
        )

        assert result.strategy == "kmeans"
        assert result.fallback_reason is not None
        assert result.cluster_count == 2

    def test_hdbscan_marks_scattered_points_as_noise(self):
        rng = np.random.default_rng(19)
        points = np.vstack(
            [
                _blob((0.0, 0.0), 40, seed=20, scale=0.1),
                _blob((20.0, 20.0), 40, seed=21, scale=0.1),
                rng.uniform(-50.0, 70.0, size=(3, 2)) + np.array([[100.0, -100.0]]),
            ]
        )

        result = fit_opinion_clusters(
            points,
            strategy="hdbscan",
            hdbscan_min_cluster_size=10,
            hdbscan_min_samples=5,
            min_cluster_size=5,
            outlier_confidence_threshold=0.0,
        )

        assert result.strategy == "hdbscan"
        assert result.cluster_count == 2
        assert result.outliers[-3:].all()

    def test_rejects_unknown_strategy(self):
        with pytest.raises(ClusteringError, match="Unsupported clustering_strategy"):
            fit_opinion_clusters(np.zeros((4, 2)), strategy="spectral")


class TestKMeansHelpers:
    def test_effective_k_is_capped_by_sample_count(self):
        labels = fit_kmeans(np.array([[0.0, 0.0], [0.1, 0.0], [5.0, 5.0]]), k=10, random_seed=42)
        assert len(set(labels.tolist())) == 3

    def test_elbow_returns_sample_count_for_tiny_inputs(self):
        assert choose_k_by_elbow(np.array([[0.0], [1.0], [2.0]]), random_seed=0) == 3

    def test_elbow_stays_within_bounds(self):
        points = np.vstack(
            [_blob((float(10 * i), float(10 * (i % 2))), 20, seed=30 + i) for i in range(7)]
        )
        k = choose_k_by_elbow(points, random_seed=0)
        assert 5 <= k <= 12
