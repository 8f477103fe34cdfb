"""Opinion clustering over reduced coordinates, with outliers and small-cluster merging."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from sklearn.cluster import HDBSCAN, KMeans
from sklearn.metrics import silhouette_score

logger = logging.getLogger(__name__)

SUPPORTED_CLUSTER_STRATEGIES = {"hdbscan", "kmeans"}
AUTO_K_MIN = 5
AUTO_K_MAX = 12


class ClusteringError(ValueError):
    """Raised when clustering inputs are invalid."""


@dataclass(frozen=True, slots=True)
class OpinionClusteringResult:
    """Final cluster assignment for every point.

    `labels` holds each point's nearest cluster, ties going to the lower index;
    `outliers` marks points not confidently assigned to that cluster.
    """

    labels: np.ndarray
    confidences: np.ndarray
    outliers: np.ndarray
    centroids: np.ndarray
    cluster_sizes: list[int]
    strategy: str
    raw_cluster_count: int
    merged_clusters: int
    silhouette_score: float | None
    fallback_reason: str | None

    @property
    def cluster_count(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def outlier_count(self) -> int:
        return int(np.count_nonzero(self.outliers))


def _validate_points(points: np.ndarray) -> None:
    if points.ndim != 2:
        raise ClusteringError(f"Points must be 2D, got ndim={points.ndim}.")
    if points.shape[0] == 0:
        raise ClusteringError("Points cannot be empty.")


def fit_kmeans(
    points: np.ndarray,
    *,
    k: int,
    random_seed: int | None,
) -> np.ndarray:
    """Fit k-means and return raw labels."""

    _validate_points(points)
    if k <= 0:
        raise ClusteringError(f"k must be positive, got {k}.")
    effective_k = min(k, points.shape[0])
    model = KMeans(n_clusters=effective_k, n_init=10, random_state=random_seed)
    return model.fit_predict(points).astype(int)


def choose_k_by_elbow(
    points: np.ndarray,
    *,
    k_min: int = AUTO_K_MIN,
    k_max: int = AUTO_K_MAX,
    random_seed: int | None = None,
) -> int:
    """Pick k where the inertia curve bends most (farthest from the end-to-end chord)."""

    _validate_points(points)
    upper = max(1, min(k_max, points.shape[0]))
    lower = max(1, min(k_min, upper))
    if lower == upper:
        return lower

    ks = np.arange(lower, upper + 1)
    inertias = np.array(
        [
            KMeans(n_clusters=int(k), n_init=4, random_state=random_seed).fit(points).inertia_
            for k in ks
        ],
        dtype=float,
    )
    span = inertias[0] - inertias[-1]
    if span <= 0:
        return int(lower)

    x = (ks - ks[0]) / (ks[-1] - ks[0])
    y = (inertias - inertias[-1]) / span
    # Chord runs from (0, 1) to (1, 0); distance is proportional to 1 - x - y.
    distances = 1.0 - x - y
    return int(ks[int(np.argmax(distances))])


def _centroids_from_labels(points: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Centroid matrix for non-negative labels, in ascending label order."""

    unique = sorted({int(label) for label in labels.tolist() if int(label) >= 0})
    if not unique:
        raise ClusteringError("At least one cluster label is required.")
    return np.stack([np.mean(points[labels == label], axis=0) for label in unique], axis=0)


def _distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    deltas = points[:, None, :] - centroids[None, :, :]
    return np.sqrt(np.sum(deltas * deltas, axis=2))


def nearest_centroids(
    points: np.ndarray,
    centroids: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Return each point's nearest centroid index and assignment confidence.

    Equidistant points resolve to the lower index. Confidence is (d2 - d1) / d2 for
    the two nearest centroids, 1.0 when only one centroid exists.
    """

    distances = _distances(points, centroids)
    nearest = np.argmin(distances, axis=1)
    if centroids.shape[0] == 1:
        return nearest, np.ones(points.shape[0], dtype=float)

    ordered = np.sort(distances, axis=1)
    d1 = ordered[:, 0]
    d2 = ordered[:, 1]
    safe_d2 = np.where(d2 > 0, d2, 1.0)
    confidences = np.where(d2 > 0, (d2 - d1) / safe_d2, 0.0)
    return nearest, np.clip(confidences, 0.0, 1.0)


def _pick_merge(centroids: np.ndarray, sizes: np.ndarray, min_size: int) -> tuple[int, int] | None:
    """Smallest undersized cluster (lower index on ties) and the closest strictly larger one."""

    small = np.flatnonzero(sizes < min_size)
    if small.size == 0:
        return None
    victim = int(small[np.argmin(sizes[small])])
    larger = np.flatnonzero(sizes > sizes[victim])
    if larger.size == 0:
        larger = np.array([index for index in range(centroids.shape[0]) if index != victim])
    gaps = np.linalg.norm(centroids[larger] - centroids[victim], axis=1)
    return victim, int(larger[int(np.argmin(gaps))])


def merge_small_clusters(
    points: np.ndarray,
    centroids: np.ndarray,
    *,
    min_size: int,
) -> tuple[np.ndarray, int]:
    """Fold clusters smaller than `min_size` into the nearest larger cluster.

    The smallest cluster goes first (lower index on ties) and joins the closest
    strictly larger cluster by centroid distance (lower index on ties). Returns the
    surviving centroids and the number of merges.
    """

    merged = centroids.copy()
    merges = 0
    while merged.shape[0] > 1:
        nearest = np.argmin(_distances(points, merged), axis=1)
        sizes = np.bincount(nearest, minlength=merged.shape[0])
        picked = _pick_merge(merged, sizes, min_size)
        if picked is None:
            break
        victim, target = picked

        members = points[(nearest == victim) | (nearest == target)]
        if members.shape[0] > 0:
            merged[target] = members.mean(axis=0)
        merged = np.delete(merged, victim, axis=0)
        merges += 1
    return merged, merges


def _silhouette(points: np.ndarray, labels: np.ndarray, random_seed: int | None) -> float | None:
    unique_count = len(set(labels.tolist()))
    if unique_count <= 1 or points.shape[0] <= unique_count:
        return None
    try:
        return float(
            silhouette_score(
                points,
                labels,
                sample_size=min(points.shape[0], 2000),
                random_state=random_seed,
            )
        )
    except ValueError:
        return None


def _raw_labels(
    points: np.ndarray,
    *,
    strategy: str,
    kmeans_k: int | None,
    hdbscan_min_cluster_size: int,
    hdbscan_min_samples: int,
    random_seed: int | None,
) -> tuple[np.ndarray, str, str | None]:
    """Run the base algorithm; returns labels (-1 = noise), effective strategy, fallback reason."""

    if strategy == "hdbscan":
        if points.shape[0] >= hdbscan_min_cluster_size:
            model = HDBSCAN(
                min_cluster_size=hdbscan_min_cluster_size,
                min_samples=min(hdbscan_min_samples, points.shape[0]),
                copy=True,
            )
            labels = model.fit_predict(points).astype(int)
            if np.any(labels >= 0):
                return labels, "hdbscan", None
        reason = "hdbscan_found_no_clusters_fallback_to_kmeans"
        logger.warning("HDBSCAN found no clusters in %d points; using k-means.", points.shape[0])
    else:
        reason = None

    k = kmeans_k or choose_k_by_elbow(points, random_seed=random_seed)
    return fit_kmeans(points, k=k, random_seed=random_seed), "kmeans", reason


def fit_opinion_clusters(
    points: np.ndarray,
    *,
    strategy: str = "hdbscan",
    kmeans_k: int | None = None,
    hdbscan_min_cluster_size: int = 15,
    hdbscan_min_samples: int = 5,
    min_cluster_size: int = 10,
    outlier_confidence_threshold: float = 0.5,
    random_seed: int | None = 42,
) -> OpinionClusteringResult:
    """Partition points into opinion clusters and flag outliers.

    Density noise (HDBSCAN) and points whose assignment confidence falls below the
    threshold become outliers. While more than one cluster remains, any cluster with
    fewer than `min_cluster_size` confident members is folded into the nearest larger
    one and assignments are recomputed.
    """

    _validate_points(points)
    normalized_strategy = strategy.strip().lower()
    if normalized_strategy not in SUPPORTED_CLUSTER_STRATEGIES:
        allowed = ", ".join(sorted(SUPPORTED_CLUSTER_STRATEGIES))
        raise ClusteringError(
            f"Unsupported clustering_strategy '{strategy}'. Expected one of: {allowed}."
        )
    if min_cluster_size <= 0:
        raise ClusteringError(f"min_cluster_size must be positive, got {min_cluster_size}.")
    if not 0.0 <= outlier_confidence_threshold <= 1.0:
        raise ClusteringError(
            f"outlier_confidence_threshold must be in [0, 1], got {outlier_confidence_threshold}."
        )

    raw_labels, effective_strategy, fallback_reason = _raw_labels(
        points,
        strategy=normalized_strategy,
        kmeans_k=kmeans_k,
        hdbscan_min_cluster_size=hdbscan_min_cluster_size,
        hdbscan_min_samples=hdbscan_min_samples,
        random_seed=random_seed,
    )
    noise = raw_labels < 0
    raw_centroids = _centroids_from_labels(points, raw_labels)
    centroids, merges = merge_small_clusters(
        points[~noise],
        raw_centroids,
        min_size=min_cluster_size,
    )

    while True:
        nearest, confidences = nearest_centroids(points, centroids)
        outliers = noise | (confidences < outlier_confidence_threshold)
        member_counts = np.bincount(nearest[~outliers], minlength=centroids.shape[0])
        if not np.any(member_counts):
            raise ClusteringError(
                "No post could be confidently assigned to a cluster; "
                "lower outlier_confidence_threshold or enlarge the sample."
            )
        if centroids.shape[0] == 1:
            break
        # Outliers shrink clusters after the first merge pass; fold again on confident counts.
        picked = _pick_merge(centroids, member_counts, min_cluster_size)
        if picked is None:
            break
        victim, target = picked

        members = points[~outliers & ((nearest == victim) | (nearest == target))]
        centroids = centroids.copy()
        centroids[target] = members.mean(axis=0)
        centroids = np.delete(centroids, victim, axis=0)
        merges += 1

    silhouette_value = _silhouette(points[~outliers], nearest[~outliers], random_seed)
    logger.info(
        "Clustering (%s): %d raw -> %d clusters after %d merges, %d outliers of %d points",
        effective_strategy,
        raw_centroids.shape[0],
        centroids.shape[0],
        merges,
        int(np.count_nonzero(outliers)),
        points.shape[0],
    )
    return OpinionClusteringResult(
        labels=nearest.astype(int),
        confidences=confidences,
        outliers=outliers,
        centroids=centroids,
        cluster_sizes=[int(count) for count in member_counts],
        strategy=effective_strategy,
        raw_cluster_count=int(raw_centroids.shape[0]),
        merged_clusters=merges,
        silhouette_score=silhouette_value,
        fallback_reason=fallback_reason,
    )
