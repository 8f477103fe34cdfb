"""Pipeline stages and the session orchestrator."""

from opinion_map.pipeline.clustering import (
    ClusteringError,
    OpinionClusteringResult,
    fit_opinion_clusters,
    merge_small_clusters,
    nearest_centroids,
)
from opinion_map.pipeline.embedding import (
    EmbeddingBatchReport,
    EmbeddingExtractionError,
    embed_texts_in_batches,
    plan_embedding_batches,
)
from opinion_map.pipeline.labeling import (
    ClusterDigest,
    ClusterLabelingError,
    build_cluster_digests,
    build_fallback_record,
    extract_keywords,
    label_clusters,
)
from opinion_map.pipeline.orchestrator import (
    PhaseTimeoutError,
    SessionNotFoundError,
    advance_session,
)
from opinion_map.pipeline.reduction import (
    InsufficientEmbeddingsError,
    ReductionError,
    ReductionResult,
    check_embedding_coverage,
    reduce_embeddings,
)
from opinion_map.pipeline.sampling import SampleResult, SamplingError, sample_posts, select_sample
from opinion_map.pipeline.time_series import bucket_cluster_counts, choose_granularity
from opinion_map.pipeline.vectorization import (
    EmbeddingStats,
    VectorizationOutcome,
    build_enriched_text,
    embedding_stats,
    vectorize_posts,
)

__all__ = [
    "ClusterDigest",
    "ClusterLabelingError",
    "ClusteringError",
    "EmbeddingBatchReport",
    "EmbeddingExtractionError",
    "EmbeddingStats",
    "InsufficientEmbeddingsError",
    "OpinionClusteringResult",
    "PhaseTimeoutError",
    "ReductionError",
    "ReductionResult",
    "SampleResult",
    "SamplingError",
    "SessionNotFoundError",
    "VectorizationOutcome",
    "advance_session",
    "bucket_cluster_counts",
    "build_cluster_digests",
    "build_enriched_text",
    "build_fallback_record",
    "check_embedding_coverage",
    "choose_granularity",
    "embed_texts_in_batches",
    "embedding_stats",
    "extract_keywords",
    "fit_opinion_clusters",
    "label_clusters",
    "merge_small_clusters",
    "nearest_centroids",
    "plan_embedding_batches",
    "reduce_embeddings",
    "sample_posts",
    "select_sample",
    "vectorize_posts",
]
