"""Entry points the rest of the product depends on: create, inspect and cancel sessions."""

from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass

from sqlmodel import Session

from opinion_map.pipeline.orchestrator import SessionNotFoundError
from opinion_map.pipeline.sampling import resolve_sampling_seed, sample_posts
from opinion_map.pipeline.time_series import bucket_cluster_counts
from opinion_map.runtime import Runtime
from opinion_map.schemas import (
    ClusterTimeSeries,
    CreatedSession,
    DateRange,
    SamplingPolicy,
    SessionConfig,
    SessionView,
)
from opinion_map.store.jobs import JOB_RUN_SESSION, JOB_VECTORIZE_POSTS, enqueue_job
from opinion_map.store.results import (
    list_cluster_projections,
    list_clusters,
    list_projections,
    projection_post_times,
)
from opinion_map.store.sessions import (
    cancel_session_row,
    create_session_row,
    find_active_session,
    get_session_row,
    latest_completed_session,
    mark_failed,
    update_pending_session,
)
from opinion_map.store.tables import OpinionCluster, PostProjection

logger = logging.getLogger(__name__)


class SampleSizeLimitError(ValueError):
    """Raised when a requested sample exceeds the configured hard maximum."""


class InvalidTransitionError(ValueError):
    """Raised when a session cannot move to the requested state."""


@dataclass(frozen=True, slots=True)
class SessionResults:
    """Persisted map of a session: one projection per post and one row per cluster."""

    session: SessionView
    projections: list[PostProjection]
    clusters: list[OpinionCluster]


def estimate_processing_seconds(total_posts: int, needs_embedding: int) -> int:
    """Rough wall-clock estimate for a session, shown to the requester."""

    vectorizing = math.ceil(needs_embedding / 100) * 0.5
    linear_projection = 10
    if total_posts < 1000:
        layout = 30
    elif total_posts < 5000:
        layout = 60
    else:
        layout = 120
    clustering = 10
    # Assumes about eight clusters at five seconds each.
    labeling = 8 * 5
    return math.ceil(vectorizing + linear_projection + layout + clustering + labeling)


def _to_view(row) -> SessionView:
    return SessionView.model_validate(row)


def create_session(
    runtime: Runtime,
    *,
    zone_id: str,
    date_range: DateRange,
    sample_size: int | None = None,
    sampling_policy: SamplingPolicy | None = None,
    operational_context: str | None = None,
    language: str | None = None,
    created_by: str | None = None,
    reuse_active: bool = False,
) -> CreatedSession:
    """Sample posts for a zone, persist a pending session and schedule its pipeline.

    Oversized samples are rejected before any row exists. A range holding fewer
    than `min_posts_for_map` posts yields a session that is immediately `failed`
    and never scheduled.
    """

    settings = runtime.settings
    requested = settings.default_sample_size if sample_size is None else sample_size
    if requested <= 0:
        raise SampleSizeLimitError(f"sample_size must be positive, got {requested}.")
    if requested > settings.max_sample_size:
        raise SampleSizeLimitError(
            f"sample_size {requested} exceeds the maximum of {settings.max_sample_size}."
        )
    zone = zone_id.strip()
    if not zone:
        raise ValueError("zone_id is required.")

    if reuse_active:
        with Session(runtime.engine) as db:
            active = find_active_session(db, zone)
        if active is not None:
            logger.info("Reusing active session %s for zone %s.", active.id, zone)
            return CreatedSession(
                session_id=active.id,
                status=active.status,
                reused=True,
                total_posts=active.total_posts,
            )

    policy = sampling_policy or settings.sampling_policy
    seed = resolve_sampling_seed(
        mode=settings.sampling_seed_mode,
        zone_id=zone,
        start=date_range.start,
        end=date_range.end,
        sample_size=requested,
    )
    if seed is None:
        seed = secrets.randbits(32)
    config = SessionConfig(
        date_range=date_range,
        sample_size=requested,
        sampling_policy=policy,
        sampling_seed=seed,
        operational_context=operational_context,
        language=language or settings.label_language,
        embedding_model=settings.embedding_model,
    )

    with Session(runtime.engine) as db:
        sample = sample_posts(
            db,
            zone_id=zone,
            start=date_range.start,
            end=date_range.end,
            sample_size=requested,
            policy=policy,
            embedding_model=settings.embedding_model,
            seed=seed,
            fetch_batch_size=settings.fetch_batch_size,
        )
        config.sampled_post_ids = sample.post_ids
        stats = {
            "sampling": {
                "policy": sample.policy,
                "seed": sample.seed,
                "candidates": sample.candidate_count,
                "sampled": len(sample.post_ids),
                "cache_hits": len(sample.cached_ids),
                "cache_misses": len(sample.missing_ids),
            }
        }

        # Row, sample and scheduled run commit together.
        stored_config = config.model_dump(mode="json")
        row = create_session_row(db, zone_id=zone, config=stored_config, created_by=created_by)
        session_id = row.id
        update_pending_session(
            db,
            session_id,
            config=stored_config,
            total_posts=len(sample.post_ids),
            stats=stats,
            phase_message=f"Sampled {len(sample.post_ids)} of {sample.candidate_count} posts",
        )
        status = "pending"
        if len(sample.post_ids) < settings.min_posts_for_map:
            message = (
                f"Not enough posts in the selected period: found {len(sample.post_ids)}, "
                f"need at least {settings.min_posts_for_map}."
            )
            mark_failed(db, session_id, error_message=message)
            status = "failed"
            logger.warning("Session %s failed at creation: %s", session_id, message)
        else:
            enqueue_job(
                db,
                kind=JOB_RUN_SESSION,
                payload={"session_id": session_id},
                max_attempts=settings.job_max_attempts,
            )
        db.commit()

    logger.info(
        "Session %s: sampled %d/%d posts for zone %s (%.1f%% cached).",
        session_id,
        len(sample.post_ids),
        sample.candidate_count,
        zone,
        sample.cache_hit_ratio * 100,
    )

    return CreatedSession(
        session_id=session_id,
        status=status,
        total_posts=len(sample.post_ids),
        total_available=sample.candidate_count,
        cached_posts=len(sample.cached_ids),
        cache_hit_ratio=round(sample.cache_hit_ratio, 4),
        estimated_seconds=(
            estimate_processing_seconds(len(sample.post_ids), len(sample.missing_ids))
            if status == "pending"
            else 0
        ),
    )


def get_session(runtime: Runtime, session_id: str) -> SessionView:
    with Session(runtime.engine) as db:
        row = get_session_row(db, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        return _to_view(row)


def cancel_session(runtime: Runtime, session_id: str) -> SessionView:
    """Cancel an active session. The orchestrator stops at its next phase boundary."""

    with Session(runtime.engine) as db:
        row = get_session_row(db, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        if not cancel_session_row(db, session_id):
            db.rollback()
            db.refresh(row)
            raise InvalidTransitionError(
                f"Session '{session_id}' is already {row.status} and cannot be cancelled."
            )
        db.commit()
        db.refresh(row)
        logger.info("Session %s cancelled.", session_id)
        return _to_view(row)


def latest_completed(runtime: Runtime, zone_id: str) -> SessionView | None:
    with Session(runtime.engine) as db:
        row = latest_completed_session(db, zone_id)
        return None if row is None else _to_view(row)


def session_results(runtime: Runtime, session_id: str) -> SessionResults:
    with Session(runtime.engine) as db:
        row = get_session_row(db, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        return SessionResults(
            session=_to_view(row),
            projections=list_projections(db, session_id),
            clusters=list_clusters(db, session_id),
        )


def enqueue_vectorization(
    runtime: Runtime,
    post_ids: list[int],
    *,
    zone_id: str | None = None,
    delay_seconds: float | None = None,
) -> int:
    """Schedule background embedding for freshly ingested posts; returns the job id."""

    settings = runtime.settings
    with Session(runtime.engine) as db:
        job = enqueue_job(
            db,
            kind=JOB_VECTORIZE_POSTS,
            payload={"post_ids": [int(post_id) for post_id in post_ids], "zone_id": zone_id},
            delay_seconds=settings.vectorize_delay_seconds if delay_seconds is None else delay_seconds,
            max_attempts=settings.job_max_attempts,
        )
        db.commit()
        return int(job.id)


def cluster_projections(
    runtime: Runtime,
    session_id: str,
    cluster_id: int,
    *,
    include_outliers: bool = True,
) -> list[PostProjection]:
    with Session(runtime.engine) as db:
        if get_session_row(db, session_id) is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        return list_cluster_projections(
            db, session_id, cluster_id, include_outliers=include_outliers
        )


def cluster_time_series(runtime: Runtime, session_id: str) -> ClusterTimeSeries:
    """Per-cluster post counts over the session's date range. Outliers are not counted."""

    with Session(runtime.engine) as db:
        row = get_session_row(db, session_id)
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
        date_range = DateRange.model_validate(row.config["date_range"])
        cluster_ids = [cluster.cluster_id for cluster in list_clusters(db, session_id)]
        rows = projection_post_times(db, session_id)

    granularity, points = bucket_cluster_counts(
        rows,
        cluster_ids=cluster_ids,
        start=date_range.start,
        end=date_range.end,
    )
    return ClusterTimeSeries(
        session_id=session_id,
        granularity=granularity,
        cluster_ids=cluster_ids,
        points=points,
    )
