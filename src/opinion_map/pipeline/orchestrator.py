"""Session state machine: runs one phase at a time and commits each phase atomically.

pending -> vectorizing -> reducing -> clustering -> labeling -> completed, with any
active state able to end in failed (pipeline error, timeout, retry ceiling) or
cancelled (user request, observed at phase boundaries). Every phase reads its inputs
from the store and finishes with one compare-and-set update of the session row that
also writes the phase's outputs, so a redelivered invocation resumes at the last
committed phase.
"""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from opinion_map.pipeline.clustering import ClusteringError, fit_opinion_clusters
from opinion_map.pipeline.embedding import EmbeddingExtractionError
from opinion_map.pipeline.labeling import (
    ClusterLabelingError,
    build_cluster_digests,
    label_clusters,
)
from opinion_map.pipeline.reduction import (
    ReductionError,
    check_embedding_coverage,
    reduce_embeddings,
)
from opinion_map.pipeline.sampling import SamplingError
from opinion_map.pipeline.vectorization import vectorize_posts
from opinion_map.runtime import Runtime
from opinion_map.schemas import NEXT_STATUS, TERMINAL_STATUSES, ProjectionRecord
from opinion_map.store.jobs import JOB_RUN_SESSION, enqueue_job
from opinion_map.store.posts import fetch_posts_by_ids, load_embeddings, usable_embedding_ids
from opinion_map.store.results import insert_clusters, insert_projections, list_projections
from opinion_map.store.sessions import (
    bump_phase_attempts,
    commit_phase,
    get_session_row,
    load_artifact,
    mark_failed,
    report_progress,
    save_artifact,
)
from opinion_map.store.tables import OpinionSession, ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Progress value committed when a session enters each status.
PHASE_PROGRESS = {
    "vectorizing": 2,
    "reducing": 20,
    "clustering": 45,
    "labeling": 75,
    "completed": 100,
}
REDUCTION_ARTIFACT = "reduction"


class SessionNotFoundError(LookupError):
    """Raised when a session id does not exist."""


class PhaseTimeoutError(TimeoutError):
    """Raised when a phase exceeds its wall-clock ceiling."""


_USER_FACING_ERRORS = (
    PhaseTimeoutError,
    ReductionError,
    ClusteringError,
    ClusterLabelingError,
    EmbeddingExtractionError,
    SamplingError,
)


def _merged_stats(row: OpinionSession, phase: str, values: dict) -> dict:
    return {**(row.stats or {}), phase: values}


def _progress_reporter(
    runtime: Runtime,
    row: OpinionSession,
    *,
    lower: int,
    upper: int,
    label: str,
) -> Callable[[int, int], None]:
    """Map (done, total) onto the session's progress band [lower, upper)."""

    def _report(done: int, total: int) -> None:
        if total <= 0:
            return
        progress = min(upper - 1, lower + int((upper - lower) * done / total))
        with Session(runtime.engine) as db:
            report_progress(
                db,
                row.id,
                status=row.status,
                progress=progress,
                phase_message=f"{label} {done}/{total}",
            )
            db.commit()

    return _report


def _commit_transition(
    runtime: Runtime,
    row: OpinionSession,
    *,
    phase_message: str,
    values: dict | None = None,
    write: Callable[[Session], object] | None = None,
) -> bool:
    """Commit the move to the next status together with the phase's outputs."""

    new_status = NEXT_STATUS[row.status]
    with Session(runtime.engine) as db:
        committed = commit_phase(
            db,
            row.id,
            expected_status=row.status,
            new_status=new_status,
            progress=PHASE_PROGRESS[new_status],
            phase_message=phase_message,
            values=values,
        )
        if not committed:
            db.rollback()
            logger.info(
                "Session %s left '%s' before the phase committed; discarding phase output.",
                row.id,
                row.status,
            )
            return False
        if write is not None:
            write(db)
        db.commit()
    logger.info("Session %s: %s -> %s", row.id, row.status, new_status)
    return True


def _run_pending(runtime: Runtime, row: OpinionSession) -> bool:
    return _commit_transition(runtime, row, phase_message="Checking embedding cache")


def _run_vectorizing(runtime: Runtime, row: OpinionSession) -> bool:
    settings = runtime.settings
    model = row.config["embedding_model"]
    sampled = [int(post_id) for post_id in row.config.get("sampled_post_ids", [])]
    started = time.perf_counter()

    with Session(runtime.engine) as db:
        cached = usable_embedding_ids(db, sampled, model=model, batch_size=settings.fetch_batch_size)

    outcome = None
    if len(cached) < len(sampled):
        outcome = vectorize_posts(
            runtime.engine,
            [post_id for post_id in sampled if post_id not in cached],
            runtime.require_embedding_client(),
            model=model,
            zone_id=row.zone_id,
            fetch_batch_size=settings.fetch_batch_size,
            batch_size=settings.embedding_batch_size,
            max_batch_tokens=settings.embedding_max_batch_tokens,
            max_concurrency=settings.embedding_max_concurrency,
            batch_delay_seconds=settings.embedding_batch_delay_seconds,
            max_content_length=settings.max_content_length,
            progress_callback=_progress_reporter(
                runtime, row, lower=PHASE_PROGRESS["vectorizing"], upper=20, label="Embedding posts"
            ),
        )
        with Session(runtime.engine) as db:
            usable = usable_embedding_ids(
                db, sampled, model=model, batch_size=settings.fetch_batch_size
            )
    else:
        usable = cached

    stats = {
        "cache_hits": len(cached),
        "newly_embedded": outcome.embedded if outcome else 0,
        "failed": outcome.failed if outcome else 0,
        "failed_batches": outcome.failed_batches if outcome else 0,
        "seconds": round(time.perf_counter() - started, 3),
    }
    return _commit_transition(
        runtime,
        row,
        phase_message=f"{len(usable)}/{len(sampled)} posts vectorized",
        values={"vectorized_posts": len(usable), "stats": _merged_stats(row, "vectorizing", stats)},
    )


def _run_reducing(runtime: Runtime, row: OpinionSession) -> bool:
    settings = runtime.settings
    sampled = [int(post_id) for post_id in row.config.get("sampled_post_ids", [])]
    started = time.perf_counter()

    with Session(runtime.engine) as db:
        post_ids, embeddings = load_embeddings(
            db,
            sampled,
            model=row.config["embedding_model"],
            batch_size=min(200, settings.fetch_batch_size),
        )
    coverage = check_embedding_coverage(
        len(post_ids),
        len(sampled),
        min_ratio=settings.min_coverage_ratio,
    )

    stage_progress = {"pca": 30, "umap": 40}
    stage_messages = {"pca": "Linear projection done", "umap": "3D layout computed"}

    def _report_stage(stage: str) -> None:
        with Session(runtime.engine) as db:
            report_progress(
                db,
                row.id,
                status=row.status,
                progress=stage_progress[stage],
                phase_message=stage_messages[stage],
            )
            db.commit()

    result = reduce_embeddings(
        embeddings,
        pca_components=settings.pca_components,
        n_neighbors=settings.umap_n_neighbors,
        min_dist=settings.umap_min_dist,
        spread=settings.umap_spread,
        random_seed=settings.random_seed,
        progress_callback=_report_stage,
    )
    payload = {
        "post_ids": post_ids,
        "coordinates": result.coordinates.tolist(),
        "intermediate": result.intermediate.tolist(),
    }
    stats = {
        "coverage": round(coverage, 4),
        "points": len(post_ids),
        "pca_components": result.pca_components,
        "explained_variance": round(result.explained_variance, 4),
        "n_neighbors": result.n_neighbors,
        "seconds": round(time.perf_counter() - started, 3),
    }
    return _commit_transition(
        runtime,
        row,
        phase_message=f"Reduced {len(post_ids)} posts to 3D",
        values={"stats": _merged_stats(row, "reducing", stats)},
        write=lambda db: save_artifact(db, row.id, REDUCTION_ARTIFACT, payload),
    )


def _run_clustering(runtime: Runtime, row: OpinionSession) -> bool:
    settings = runtime.settings
    started = time.perf_counter()
    with Session(runtime.engine) as db:
        artifact = load_artifact(db, row.id, REDUCTION_ARTIFACT)
    if artifact is None:
        raise ReductionError("Reduced coordinates are missing; the session cannot be clustered.")

    post_ids = [int(post_id) for post_id in artifact["post_ids"]]
    coordinates = np.asarray(artifact["coordinates"], dtype=float)
    points = (
        coordinates
        if settings.clustering_space == "projection"
        else np.asarray(artifact["intermediate"], dtype=float)
    )
    result = fit_opinion_clusters(
        points,
        strategy=settings.clustering_strategy,
        kmeans_k=settings.kmeans_k,
        hdbscan_min_cluster_size=settings.hdbscan_min_cluster_size,
        hdbscan_min_samples=settings.hdbscan_min_samples,
        min_cluster_size=settings.min_cluster_size,
        outlier_confidence_threshold=settings.outlier_confidence_threshold,
        random_seed=settings.random_seed,
    )
    records = [
        ProjectionRecord(
            post_id=post_id,
            x=float(coordinates[index][0]),
            y=float(coordinates[index][1]),
            z=float(coordinates[index][2]),
            cluster_id=int(result.labels[index]),
            cluster_confidence=float(result.confidences[index]),
            is_outlier=bool(result.outliers[index]),
        )
        for index, post_id in enumerate(post_ids)
    ]
    stats = {
        "strategy": result.strategy,
        "space": settings.clustering_space,
        "raw_clusters": result.raw_cluster_count,
        "merged_clusters": result.merged_clusters,
        "silhouette": result.silhouette_score,
        "fallback_reason": result.fallback_reason,
        "seconds": round(time.perf_counter() - started, 3),
    }
    return _commit_transition(
        runtime,
        row,
        phase_message=f"Found {result.cluster_count} clusters, {result.outlier_count} outliers",
        values={
            "total_clusters": result.cluster_count,
            "outlier_count": result.outlier_count,
            "stats": _merged_stats(row, "clustering", stats),
        },
        write=lambda db: insert_projections(
            db, session_id=row.id, zone_id=row.zone_id, records=records
        ),
    )


def _run_labeling(runtime: Runtime, row: OpinionSession) -> bool:
    settings = runtime.settings
    started = time.perf_counter()
    llm_client = runtime.require_llm_client()
    with Session(runtime.engine) as db:
        projections = list_projections(db, row.id)
        posts = fetch_posts_by_ids(
            db,
            [projection.post_id for projection in projections],
            batch_size=settings.fetch_batch_size,
        )
    if not projections:
        raise ClusterLabelingError("No projections were stored for this session.")

    text_by_id = {int(post.id): post.text for post in posts}
    digests = build_cluster_digests(
        cluster_ids=np.array([projection.cluster_id for projection in projections], dtype=int),
        outliers=np.array([projection.is_outlier for projection in projections], dtype=bool),
        coordinates=np.array([[p.x, p.y, p.z] for p in projections], dtype=float),
        confidences=np.array(
            [projection.cluster_confidence or 0.0 for projection in projections],
            dtype=float,
        ),
        texts=[text_by_id.get(projection.post_id, "") for projection in projections],
        sample_size=settings.label_sample_size,
        keyword_count=settings.label_keyword_count,
    )
    records = label_clusters(
        digests=digests,
        llm_client=llm_client,
        language=row.config.get("language") or settings.label_language,
        operational_context=row.config.get("operational_context"),
        max_attempts=settings.label_max_attempts,
        backoff_seconds=settings.label_retry_backoff_seconds,
        keyword_count=settings.label_keyword_count,
        max_concurrency=settings.label_max_concurrency,
        progress_callback=_progress_reporter(
            runtime, row, lower=PHASE_PROGRESS["labeling"], upper=100, label="Labeling clusters"
        ),
    )

    completed_at = utcnow()
    started_at = ensure_utc(row.started_at) or ensure_utc(row.created_at)
    stats = {
        "clusters": len(records),
        "fallback_labels": sum(1 for record in records if record.labeling_fallback_used),
        "seconds": round(time.perf_counter() - started, 3),
    }
    return _commit_transition(
        runtime,
        row,
        phase_message=f"Opinion map ready: {len(records)} clusters",
        values={
            "total_clusters": len(records),
            "completed_at": completed_at,
            "execution_time_ms": int((completed_at - started_at).total_seconds() * 1000),
            "stats": _merged_stats(row, "labeling", stats),
        },
        write=lambda db: insert_clusters(
            db, session_id=row.id, zone_id=row.zone_id, records=records
        ),
    )


_PHASE_HANDLERS: dict[str, Callable[[Runtime, OpinionSession], bool]] = {
    "pending": _run_pending,
    "vectorizing": _run_vectorizing,
    "reducing": _run_reducing,
    "clustering": _run_clustering,
    "labeling": _run_labeling,
}


def _run_phase_with_timeout(runtime: Runtime, row: OpinionSession) -> bool:
    """Run the handler for the row's status, failing once its ceiling elapses.

    A timed-out worker thread is abandoned, not killed; its eventual commit is
    rejected because the session is no longer in the status it expects.
    """

    timeout = runtime.settings.phase_timeout_seconds(row.status)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"phase-{row.status}")
    future = executor.submit(_PHASE_HANDLERS[row.status], runtime, row)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise PhaseTimeoutError(
            f"Phase '{row.status}' exceeded its time budget of {timeout:g}s."
        ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _fail_session(runtime: Runtime, session_id: str, status: str, exc: BaseException) -> bool:
    """Fail the session if it is still in `status`; returns whether it was failed."""

    if isinstance(exc, _USER_FACING_ERRORS):
        message = str(exc)
    else:
        message = f"Unexpected error while {status}: {type(exc).__name__}"
    stack = "".join(traceback.format_exception(exc))
    with Session(runtime.engine) as db:
        changed = mark_failed(
            db,
            session_id,
            error_message=message,
            error_stack=stack,
            expected_status=status,
        )
        db.commit()
    if changed:
        logger.error("Session %s failed while %s: %s", session_id, status, exc)
    else:
        logger.warning(
            "Session %s left %s before it could be failed (%s); keeping its state.",
            session_id,
            status,
            exc,
        )
    return changed


def _schedule_continuation(runtime: Runtime, session_id: str) -> None:
    with Session(runtime.engine) as db:
        enqueue_job(
            db,
            kind=JOB_RUN_SESSION,
            payload={"session_id": session_id},
            max_attempts=runtime.settings.job_max_attempts,
        )
        db.commit()


def _read_status(runtime: Runtime, session_id: str) -> OpinionSession:
    with Session(runtime.engine) as db:
        row = get_session_row(db, session_id)
    if row is None:
        raise SessionNotFoundError(f"Session '{session_id}' does not exist.")
    return row


def advance_session(
    runtime: Runtime,
    session_id: str,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Advance a session phase by phase until it is terminal or the invocation budget runs out.

    Returns the session status at exit. When the budget cannot fit the next phase, a
    `run_session` job is enqueued to continue in a fresh invocation. Store errors
    propagate so the job queue can redeliver; every other phase error fails the session.
    """

    settings = runtime.settings
    started = clock()
    phases_run = 0
    while True:
        row = _read_status(runtime, session_id)
        if row.status in TERMINAL_STATUSES:
            return row.status

        elapsed = clock() - started
        if phases_run and elapsed + settings.phase_timeout_seconds(row.status) > (
            settings.invocation_budget_seconds
        ):
            logger.info(
                "Session %s: %.1fs used, continuing '%s' in a new invocation.",
                session_id,
                elapsed,
                row.status,
            )
            _schedule_continuation(runtime, session_id)
            return row.status

        with Session(runtime.engine) as db:
            attempts = bump_phase_attempts(db, session_id, status=row.status)
            db.commit()
        if attempts is None:
            continue
        if attempts > settings.max_phase_attempts:
            _fail_session(
                runtime,
                session_id,
                row.status,
                PhaseTimeoutError(
                    f"Phase '{row.status}' did not complete after "
                    f"{settings.max_phase_attempts} attempts."
                ),
            )
            return _read_status(runtime, session_id).status

        try:
            committed = _run_phase_with_timeout(runtime, row)
        except SQLAlchemyError:
            raise
        except Exception as exc:
            if _fail_session(runtime, session_id, row.status, exc):
                return _read_status(runtime, session_id).status
            # The phase committed before the failure landed; carry on from its new status.
            phases_run += 1
            continue

        phases_run += 1
        if not committed:
            return _read_status(runtime, session_id).status
