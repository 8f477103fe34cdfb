"""Two-step dimensionality reduction: PCA to an intermediate space, then UMAP to 3D."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
import umap
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)

MIN_POINTS_FOR_REDUCTION = 5
COORDINATE_SCALE = 100.0


class ReductionError(ValueError):
    """Raised when reduction inputs are invalid."""


class InsufficientEmbeddingsError(ReductionError):
    """Raised when too little of the sample has usable embeddings."""


@dataclass(frozen=True, slots=True)
class ReductionResult:
    intermediate: np.ndarray
    coordinates: np.ndarray
    pca_components: int
    explained_variance: float
    n_neighbors: int


def check_embedding_coverage(usable: int, total: int, *, min_ratio: float) -> float:
    """Return the coverage ratio, failing when it is below `min_ratio`."""

    if total <= 0:
        raise InsufficientEmbeddingsError("Insufficient embeddings: the sample is empty.")
    ratio = usable / total
    if ratio < min_ratio:
        raise InsufficientEmbeddingsError(
            f"Insufficient embeddings: {usable}/{total} sampled posts ({ratio:.0%}) have "
            f"embeddings, below the required {min_ratio:.0%}."
        )
    return ratio


def _validate_embeddings(embeddings: np.ndarray) -> None:
    if embeddings.ndim != 2:
        raise ReductionError(f"Embeddings must be 2D, got ndim={embeddings.ndim}.")
    if embeddings.shape[0] < MIN_POINTS_FOR_REDUCTION:
        raise ReductionError(
            f"At least {MIN_POINTS_FOR_REDUCTION} embeddings are required, "
            f"got {embeddings.shape[0]}."
        )
    if not np.all(np.isfinite(embeddings)):
        raise ReductionError("Embeddings contain non-finite values.")


def reduce_to_intermediate(
    embeddings: np.ndarray,
    *,
    n_components: int,
    random_seed: int | None,
) -> tuple[np.ndarray, float]:
    """Project embeddings linearly with PCA; returns the projection and explained variance."""

    _validate_embeddings(embeddings)
    effective = max(1, min(n_components, embeddings.shape[0] - 1, embeddings.shape[1]))
    pca = PCA(n_components=effective, random_state=random_seed)
    projected = pca.fit_transform(embeddings)
    return projected, float(np.sum(pca.explained_variance_ratio_))


def embed_nonlinear_3d(
    intermediate: np.ndarray,
    *,
    n_neighbors: int,
    min_dist: float,
    spread: float,
    random_seed: int | None,
) -> tuple[np.ndarray, int]:
    """Embed the intermediate space into 3D with UMAP; returns coordinates and neighbors used."""

    sample_count = intermediate.shape[0]
    effective_neighbors = max(2, min(n_neighbors, sample_count - 1))
    # Spectral init needs a connected graph of reasonable size.
    init = "spectral" if sample_count > 3 * effective_neighbors else "random"
    reducer = umap.UMAP(
        n_components=3,
        n_neighbors=effective_neighbors,
        min_dist=min_dist,
        spread=spread,
        metric="euclidean",
        init=init,
        random_state=random_seed,
    )
    return np.asarray(reducer.fit_transform(intermediate), dtype=float), effective_neighbors


def normalize_coordinates(coords: np.ndarray, *, scale: float = COORDINATE_SCALE) -> np.ndarray:
    """Rescale each axis to [0, scale]; a constant axis maps to its midpoint."""

    lower = coords.min(axis=0)
    upper = coords.max(axis=0)
    span = upper - lower
    normalized = np.full(coords.shape, scale / 2.0, dtype=float)
    varying = span > 0
    normalized[:, varying] = (coords[:, varying] - lower[varying]) / span[varying] * scale
    return normalized


def reduce_embeddings(
    embeddings: np.ndarray,
    *,
    pca_components: int = 20,
    n_neighbors: int = 15,
    min_dist: float = 0.1,
    spread: float = 1.0,
    random_seed: int | None = 42,
    progress_callback: Callable[[str], None] | None = None,
) -> ReductionResult:
    """Reduce N x D embeddings to N x 3 coordinates in [0, 100].

    With a fixed `random_seed` the same input yields the same layout.
    """

    intermediate, explained = reduce_to_intermediate(
        embeddings,
        n_components=pca_components,
        random_seed=random_seed,
    )
    logger.info(
        "PCA: %d -> %d dims (%.1f%% variance)",
        embeddings.shape[1],
        intermediate.shape[1],
        explained * 100,
    )
    if progress_callback is not None:
        progress_callback("pca")

    coords, neighbors = embed_nonlinear_3d(
        intermediate,
        n_neighbors=n_neighbors,
        min_dist=min_dist,
        spread=spread,
        random_seed=random_seed,
    )
    if progress_callback is not None:
        progress_callback("umap")

    return ReductionResult(
        intermediate=intermediate,
        coordinates=normalize_coordinates(coords),
        pca_components=intermediate.shape[1],
        explained_variance=explained,
        n_neighbors=neighbors,
    )
