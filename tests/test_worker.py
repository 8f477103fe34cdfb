"""Tests for the job queue and the worker loop."""

from __future__ import annotations

from datetime import date, timedelta

from fakes import seed_themed_posts
from sqlalchemy import update
from sqlmodel import Session

from opinion_map.schemas import DateRange
from opinion_map.service import create_session, enqueue_vectorization, get_session
from opinion_map.store.jobs import (
    JOB_DEAD,
    JOB_DONE,
    JOB_PENDING,
    JOB_RUN_SESSION,
    claim_next_job,
    enqueue_job,
    list_jobs,
    reclaim_stale_jobs,
    retry_or_bury_job,
)
from opinion_map.store.posts import embedding_counts
from opinion_map.store.tables import Job, utcnow
from opinion_map.worker import run_worker


class TestJobQueue:
    def test_claim_skips_jobs_not_yet_due(self, runtime):
        with Session(runtime.engine) as db:
            enqueue_job(db, kind="later", payload={}, delay_seconds=60)
            due = enqueue_job(db, kind="now", payload={"n": 1})
            db.commit()
            due_id = due.id

        with Session(runtime.engine) as db:
            claimed = claim_next_job(db)
            assert claimed.id == due_id
            assert claimed.attempts == 1
            assert claim_next_job(db) is None
            assert claim_next_job(db, now=utcnow() + timedelta(seconds=120)).kind == "later"

    def test_retry_backs_off_then_buries(self, runtime):
        with Session(runtime.engine) as db:
            job = enqueue_job(db, kind="flaky", payload={}, max_attempts=2)
            db.commit()
            job_id = job.id

        with Session(runtime.engine) as db:
            claim_next_job(db)
            status = retry_or_bury_job(db, job_id, error="boom", backoff_seconds=10.0)
            db.commit()
        assert status == JOB_PENDING

        with Session(runtime.engine) as db:
            assert claim_next_job(db) is None
            claim_next_job(db, now=utcnow() + timedelta(seconds=11))
            status = retry_or_bury_job(db, job_id, error="boom again", backoff_seconds=10.0)
            db.commit()
            job = list_jobs(db)[0]
        assert status == JOB_DEAD
        assert job.attempts == 2
        assert job.last_error == "boom again"

    def test_expired_lease_requeues_then_buries(self, runtime):
        with Session(runtime.engine) as db:
            job = enqueue_job(db, kind="slow", payload={}, max_attempts=2)
            db.commit()
            job_id = job.id

        with Session(runtime.engine) as db:
            claim_next_job(db)
            assert reclaim_stale_jobs(db, lease_seconds=600) == 0
            later = utcnow() + timedelta(seconds=601)
            assert reclaim_stale_jobs(db, lease_seconds=600, now=later) == 1
            db.commit()
            job = list_jobs(db)[0]
            assert (job.status, job.attempts) == (JOB_PENDING, 1)
            assert "Lease expired" in job.last_error

            claim_next_job(db, now=later)
            assert reclaim_stale_jobs(db, lease_seconds=600, now=later + timedelta(seconds=601)) == 1
            db.commit()
            job = db.get(Job, job_id)
            db.refresh(job)
        assert job.status == JOB_DEAD
        assert job.attempts == 2


class TestRunWorker:
    def test_runs_session_job_to_completion(self, runtime):
        seed_themed_posts(runtime.engine, count=100)
        created = create_session(
            runtime,
            zone_id="zone-1",
            date_range=DateRange(start=date(2025, 1, 1), end=date(2025, 1, 5)),
            sample_size=100,
        )

        processed = run_worker(runtime)

        assert processed == 1
        assert get_session(runtime, created.session_id).status == "completed"
        with Session(runtime.engine) as db:
            jobs = list_jobs(db)
        assert [(job.kind, job.status) for job in jobs] == [(JOB_RUN_SESSION, JOB_DONE)]

    def test_job_of_a_dead_worker_is_redelivered(self, runtime):
        seed_themed_posts(runtime.engine, count=100)
        created = create_session(
            runtime,
            zone_id="zone-1",
            date_range=DateRange(start=date(2025, 1, 1), end=date(2025, 1, 5)),
            sample_size=100,
        )
        with Session(runtime.engine) as db:
            claimed = claim_next_job(db)
            claimed_id = claimed.id
            db.execute(
                update(Job)
                .where(Job.id == claimed_id)
                .values(started_at=utcnow() - timedelta(seconds=runtime.settings.job_lease_seconds + 1))
            )
            db.commit()

        processed = run_worker(runtime, max_jobs=5)

        assert processed == 1
        assert get_session(runtime, created.session_id).status == "completed"
        with Session(runtime.engine) as db:
            job = db.get(Job, claimed_id)
        assert job.status == JOB_DONE
        assert job.attempts == 2

    def test_vectorize_job_fills_the_cache(self, runtime):
        post_ids = seed_themed_posts(runtime.engine, count=30)
        enqueue_vectorization(runtime, post_ids, zone_id="zone-1", delay_seconds=0)

        assert run_worker(runtime) == 1

        with Session(runtime.engine) as db:
            total, embedded = embedding_counts(
                db, zone_id="zone-1", model=runtime.settings.embedding_model
            )
        assert (total, embedded) == (30, 30)

    def test_zone_wide_vectorize_job_picks_pending_posts(self, runtime):
        seed_themed_posts(runtime.engine, count=12)
        enqueue_vectorization(runtime, [], zone_id="zone-1", delay_seconds=0)

        run_worker(runtime)

        assert len(runtime.embedding_client.texts_seen) == 12

    def test_unknown_kind_is_retried_then_dead(self, make_runtime):
        runtime = make_runtime(job_backoff_seconds=0.0)
        with Session(runtime.engine) as db:
            enqueue_job(db, kind="mystery", payload={}, max_attempts=2)
            db.commit()

        processed = run_worker(runtime, max_jobs=5)

        with Session(runtime.engine) as db:
            job = list_jobs(db)[0]
        assert processed == 2
        assert job.status == JOB_DEAD
        assert "UnknownJobKindError" in job.last_error

    def test_run_for_missing_session_completes_quietly(self, runtime):
        with Session(runtime.engine) as db:
            enqueue_job(db, kind=JOB_RUN_SESSION, payload={"session_id": "gone"})
            db.commit()

        run_worker(runtime)

        with Session(runtime.engine) as db:
            assert list_jobs(db)[0].status == JOB_DONE
