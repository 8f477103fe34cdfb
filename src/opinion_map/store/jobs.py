"""Database-backed job queue with at-least-once delivery."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, col, select

from opinion_map.store.tables import Job, utcnow

logger = logging.getLogger(__name__)

JOB_VECTORIZE_POSTS = "vectorize_posts"
JOB_RUN_SESSION = "run_session"

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_DEAD = "dead"


def enqueue_job(
    db: Session,
    *,
    kind: str,
    payload: dict,
    delay_seconds: float = 0.0,
    max_attempts: int = 3,
) -> Job:
    job = Job(
        kind=kind,
        payload=payload,
        max_attempts=max(1, max_attempts),
        available_at=utcnow() + timedelta(seconds=max(0.0, delay_seconds)),
    )
    db.add(job)
    db.flush()
    logger.info("Enqueued job %s (%s) delay=%.1fs", job.id, kind, delay_seconds)
    return job


def claim_next_job(db: Session, *, now: datetime | None = None) -> Job | None:
    """Claim the oldest due job. Concurrent claimers race on a status compare-and-set."""

    current = now or utcnow()
    candidates = db.exec(
        select(Job.id)
        .where(Job.status == JOB_PENDING, Job.available_at <= current)
        .order_by(col(Job.available_at), col(Job.id))
        .limit(5)
    ).all()
    for job_id in candidates:
        statement = (
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_PENDING)
            .values(status=JOB_RUNNING, attempts=Job.attempts + 1, started_at=current)
            .execution_options(synchronize_session=False)
        )
        if db.execute(statement).rowcount == 1:
            db.commit()
            job = db.get(Job, job_id)
            if job is not None:
                db.refresh(job)
            return job
    return None


def reclaim_stale_jobs(db: Session, *, lease_seconds: float, now: datetime | None = None) -> int:
    """Return running jobs whose lease expired to the queue, or bury them when out of attempts.

    A worker that dies mid-job leaves its row `running`. The claim already counted the
    attempt, so redelivery here spends from the same `max_attempts` budget.
    """

    current = now or utcnow()
    cutoff = current - timedelta(seconds=lease_seconds)
    stale = db.exec(
        select(Job).where(Job.status == JOB_RUNNING, Job.started_at < cutoff).order_by(col(Job.id))
    ).all()
    for job in stale:
        job.last_error = f"Lease expired after {lease_seconds:.0f}s without completion."
        if job.attempts >= job.max_attempts:
            job.status = JOB_DEAD
            job.completed_at = current
            logger.error("Job %s (%s) is dead: lease expired on attempt %d.", job.id, job.kind, job.attempts)
        else:
            job.status = JOB_PENDING
            job.available_at = current
            job.started_at = None
            logger.warning(
                "Job %s (%s) lease expired on attempt %d/%d; requeued.",
                job.id,
                job.kind,
                job.attempts,
                job.max_attempts,
            )
        db.add(job)
    if stale:
        db.flush()
    return len(stale)


def complete_job(db: Session, job_id: int) -> None:
    statement = (
        update(Job)
        .where(Job.id == job_id)
        .values(status=JOB_DONE, completed_at=utcnow(), last_error=None)
        .execution_options(synchronize_session=False)
    )
    db.execute(statement)


def retry_or_bury_job(
    db: Session,
    job_id: int,
    *,
    error: str,
    backoff_seconds: float,
) -> str:
    """Reschedule a failed job with exponential backoff, or mark it dead when out of attempts."""

    job = db.get(Job, job_id)
    if job is None:
        raise LookupError(f"Job {job_id} does not exist.")
    db.refresh(job)

    now = utcnow()
    job.last_error = error
    if job.attempts >= job.max_attempts:
        job.status = JOB_DEAD
        job.completed_at = now
        logger.error("Job %s (%s) is dead after %d attempts: %s", job.id, job.kind, job.attempts, error)
    else:
        delay = backoff_seconds * (2 ** max(0, job.attempts - 1))
        job.status = JOB_PENDING
        job.available_at = now + timedelta(seconds=delay)
        logger.warning(
            "Job %s (%s) attempt %d/%d failed, retrying in %.1fs: %s",
            job.id,
            job.kind,
            job.attempts,
            job.max_attempts,
            delay,
            error,
        )
    db.add(job)
    db.flush()
    return job.status


def list_jobs(db: Session, *, status: str | None = None) -> list[Job]:
    statement = select(Job).order_by(col(Job.id))
    if status is not None:
        statement = statement.where(Job.status == status)
    return list(db.exec(statement))
