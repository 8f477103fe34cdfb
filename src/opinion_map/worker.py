"""Job worker: claims queued jobs and dispatches them to the pipeline."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlmodel import Session

from opinion_map.pipeline.orchestrator import SessionNotFoundError, advance_session
from opinion_map.pipeline.vectorization import vectorize_posts
from opinion_map.runtime import Runtime
from opinion_map.store.jobs import (
    JOB_RUN_SESSION,
    JOB_VECTORIZE_POSTS,
    claim_next_job,
    complete_job,
    reclaim_stale_jobs,
    retry_or_bury_job,
)
from opinion_map.store.posts import pending_embedding_ids
from opinion_map.store.tables import Job

logger = logging.getLogger(__name__)

# Upper bound on posts a zone-wide vectorization job embeds in one run.
ZONE_VECTORIZE_LIMIT = 5000


class UnknownJobKindError(ValueError):
    """Raised when a job carries a kind no handler is registered for."""


def _handle_vectorize(runtime: Runtime, payload: dict) -> dict:
    settings = runtime.settings
    zone_id = payload.get("zone_id")
    post_ids = [int(post_id) for post_id in payload.get("post_ids") or []]
    if not post_ids and zone_id:
        with Session(runtime.engine) as db:
            post_ids = pending_embedding_ids(
                db,
                zone_id=zone_id,
                model=settings.embedding_model,
                limit=ZONE_VECTORIZE_LIMIT,
            )
    if not post_ids:
        return {"requested": 0}

    outcome = vectorize_posts(
        runtime.engine,
        post_ids,
        runtime.require_embedding_client(),
        model=settings.embedding_model,
        zone_id=zone_id,
        fetch_batch_size=settings.fetch_batch_size,
        batch_size=settings.embedding_batch_size,
        max_batch_tokens=settings.embedding_max_batch_tokens,
        max_concurrency=settings.embedding_max_concurrency,
        batch_delay_seconds=settings.embedding_batch_delay_seconds,
        max_content_length=settings.max_content_length,
    )
    return outcome.as_dict()


def _handle_run_session(runtime: Runtime, payload: dict) -> dict:
    session_id = str(payload["session_id"])
    try:
        status = advance_session(runtime, session_id)
    except SessionNotFoundError:
        logger.warning("Dropping run for unknown session %s.", session_id)
        return {"session_id": session_id, "status": None}
    return {"session_id": session_id, "status": status}


JOB_HANDLERS: dict[str, Callable[[Runtime, dict], dict]] = {
    JOB_VECTORIZE_POSTS: _handle_vectorize,
    JOB_RUN_SESSION: _handle_run_session,
}


def handle_job(runtime: Runtime, job: Job) -> dict:
    handler = JOB_HANDLERS.get(job.kind)
    if handler is None:
        raise UnknownJobKindError(f"No handler for job kind '{job.kind}'.")
    return handler(runtime, dict(job.payload or {}))


def run_worker(
    runtime: Runtime,
    *,
    max_jobs: int | None = None,
    stop_when_idle: bool = True,
    idle_sleep_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Process queued jobs until idle (or `max_jobs` ran). Returns the number processed.

    A failing job is rescheduled with exponential backoff, then marked dead once it
    runs out of attempts. A job left `running` past `job_lease_seconds` (its worker died)
    is redelivered. Delivery is at-least-once, so handlers must be idempotent.
    """

    processed = 0
    while max_jobs is None or processed < max_jobs:
        with Session(runtime.engine) as db:
            if reclaim_stale_jobs(db, lease_seconds=runtime.settings.job_lease_seconds):
                db.commit()
            job = claim_next_job(db)
            if job is not None:
                job_id, kind, attempts = int(job.id), job.kind, job.attempts
        if job is None:
            if stop_when_idle:
                break
            sleep(idle_sleep_seconds)
            continue

        logger.info("Running job %s (%s), attempt %d.", job_id, kind, attempts)
        try:
            result = handle_job(runtime, job)
        except Exception as exc:
            with Session(runtime.engine) as db:
                retry_or_bury_job(
                    db,
                    job_id,
                    error=f"{type(exc).__name__}: {exc}",
                    backoff_seconds=runtime.settings.job_backoff_seconds,
                )
                db.commit()
            logger.warning("Job %s (%s) raised.", job_id, kind, exc_info=True)
        else:
            with Session(runtime.engine) as db:
                complete_job(db, job_id)
                db.commit()
            logger.info("Job %s (%s) done: %s", job_id, kind, result)
        processed += 1
    return processed
