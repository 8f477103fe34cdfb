"""End-to-end tests for the session state machine."""

from __future__ import annotations

import time
from datetime import date

from fakes import (
    _FailingEmbeddingClient,
    _FakeEmbeddingClient,
    _FakeLabelClient,
    seed_themed_posts,
    themed_vector,
)
from sqlalchemy import update
from sqlmodel import Session

from opinion_map.pipeline import orchestrator
from opinion_map.pipeline.orchestrator import PhaseTimeoutError, advance_session
from opinion_map.schemas import DateRange
from opinion_map.service import cancel_session, create_session, get_session
from opinion_map.store.jobs import JOB_RUN_SESSION, list_jobs
from opinion_map.store.posts import fetch_posts_by_ids, write_embedding
from opinion_map.store.results import count_clusters, count_projections, list_clusters
from opinion_map.store.sessions import get_session_row
from opinion_map.store.tables import OpinionSession

RANGE = DateRange(start=date(2025, 1, 1), end=date(2025, 1, 5))


def _create(runtime, *, sample_size: int | None = None, zone_id: str = "zone-1") -> str:
    created = create_session(runtime, zone_id=zone_id, date_range=RANGE, sample_size=sample_size)
    assert created.status == "pending"
    return created.session_id


def _row(runtime, session_id: str) -> OpinionSession:
    with Session(runtime.engine) as db:
        return get_session_row(db, session_id)


class TestScenarios:
    def test_fresh_posts_run_through_every_phase(self, runtime):
        seed_themed_posts(runtime.engine, count=1000)
        session_id = _create(runtime, sample_size=1000)

        status = advance_session(runtime, session_id)

        row = _row(runtime, session_id)
        assert status == "completed"
        assert row.vectorized_posts == 1000
        assert row.progress == 100
        assert row.total_clusters == 5
        assert row.completed_at is not None
        assert row.error_message is None
        assert row.execution_time_ms is not None and row.execution_time_ms >= 0
        assert len(runtime.embedding_client.texts_seen) == 1000
        assert row.stats["vectorizing"]["newly_embedded"] == 1000

        with Session(runtime.engine) as db:
            clusters = list_clusters(db, session_id)
            projections = count_projections(db, session_id)
        assert projections == 1000
        assert sum(cluster.tweet_count for cluster in clusters) + row.outlier_count == projections
        assert all(not cluster.labeling_fallback_used for cluster in clusters)

    def test_second_session_reuses_cached_embeddings(self, runtime):
        seed_themed_posts(runtime.engine, count=1000)
        first = _create(runtime, sample_size=1000)
        assert advance_session(runtime, first) == "completed"
        calls_after_first = runtime.embedding_client.call_count

        created = create_session(runtime, zone_id="zone-1", date_range=RANGE, sample_size=1000)
        assert created.cached_posts == 1000
        assert advance_session(runtime, created.session_id) == "completed"

        row = _row(runtime, created.session_id)
        assert runtime.embedding_client.call_count == calls_after_first
        assert row.stats["vectorizing"]["cache_hits"] == 1000
        assert row.stats["vectorizing"]["newly_embedded"] == 0
        assert row.vectorized_posts == 1000

    def test_low_embedding_coverage_fails_without_results(self, make_runtime):
        runtime = make_runtime(embedding_client=_FailingEmbeddingClient())
        post_ids = seed_themed_posts(runtime.engine, count=100)
        with Session(runtime.engine) as db:
            for post in fetch_posts_by_ids(db, post_ids[:40]):
                write_embedding(
                    db, post.id, themed_vector(post.text), model=runtime.settings.embedding_model
                )
            db.commit()
        session_id = _create(runtime, sample_size=100)

        status = advance_session(runtime, session_id)

        row = _row(runtime, session_id)
        assert status == "failed"
        assert "Insufficient embeddings" in row.error_message
        assert row.vectorized_posts == 40
        assert row.completed_at is None
        assert row.error_stack
        with Session(runtime.engine) as db:
            assert count_projections(db, session_id) == 0
            assert count_clusters(db, session_id) == 0

    def test_one_cluster_labeling_failure_falls_back(self, make_runtime):
        label_client = _FakeLabelClient(fail_on="pollution")
        runtime = make_runtime(llm_client=label_client, label_max_attempts=3)
        seed_themed_posts(runtime.engine, count=200)
        session_id = _create(runtime, sample_size=200)

        assert advance_session(runtime, session_id) == "completed"

        row = _row(runtime, session_id)
        with Session(runtime.engine) as db:
            clusters = list_clusters(db, session_id)
        assert row.total_clusters == 5
        assert len(clusters) == 5
        fallback = [cluster for cluster in clusters if cluster.labeling_fallback_used]
        assert len(fallback) == 1
        assert fallback[0].label
        assert "pollution" in fallback[0].label
        assert fallback[0].avg_sentiment == 0.0
        assert row.stats["labeling"]["fallback_labels"] == 1
        # 4 clusters answer on the first try; the failing one uses all attempts.
        assert label_client.call_count == 4 + 3


class TestStateMachine:
    def test_progress_never_decreases(self, make_runtime):
        readings: list[int] = []
        holder = {}

        def _record_progress():
            readings.append(get_session(holder["runtime"], holder["session_id"]).progress)

        runtime = make_runtime(
            embedding_client=_FakeEmbeddingClient(on_call=_record_progress),
            llm_client=_FakeLabelClient(on_call=_record_progress),
            embedding_batch_size=20,
            embedding_max_concurrency=1,
            label_max_concurrency=1,
        )
        holder["runtime"] = runtime
        seed_themed_posts(runtime.engine, count=200)
        holder["session_id"] = _create(runtime, sample_size=200)

        assert advance_session(runtime, holder["session_id"]) == "completed"
        readings.append(get_session(runtime, holder["session_id"]).progress)

        assert readings == sorted(readings)
        assert readings[0] >= 2
        assert 75 <= readings[-2] < 100
        assert readings[-1] == 100

    def test_completed_session_is_not_rerun(self, runtime):
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)
        assert advance_session(runtime, session_id) == "completed"
        calls = runtime.llm_client.call_count

        assert advance_session(runtime, session_id) == "completed"
        assert runtime.llm_client.call_count == calls
        with Session(runtime.engine) as db:
            assert count_projections(db, session_id) == 100

    def test_cancel_while_pending_produces_no_results(self, runtime):
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)
        cancel_session(runtime, session_id)

        assert advance_session(runtime, session_id) == "cancelled"
        assert runtime.embedding_client.call_count == 0
        with Session(runtime.engine) as db:
            assert count_projections(db, session_id) == 0

    def test_cancel_during_vectorizing_discards_phase(self, make_runtime):
        holder = {}

        def _cancel_once():
            if not holder.get("cancelled"):
                holder["cancelled"] = True
                cancel_session(holder["runtime"], holder["session_id"])

        runtime = make_runtime(embedding_client=_FakeEmbeddingClient(on_call=_cancel_once))
        holder["runtime"] = runtime
        seed_themed_posts(runtime.engine, count=100)
        holder["session_id"] = _create(runtime, sample_size=100)

        assert advance_session(runtime, holder["session_id"]) == "cancelled"

        row = _row(runtime, holder["session_id"])
        assert row.completed_at is not None
        assert row.error_message is None
        with Session(runtime.engine) as db:
            assert count_projections(db, holder["session_id"]) == 0
            assert count_clusters(db, holder["session_id"]) == 0

    def test_phase_timeout_fails_session_and_stray_commit_is_rejected(self, make_runtime):
        runtime = make_runtime(
            llm_client=_FakeLabelClient(delay_seconds=0.3),
            labeling_timeout_seconds=0.2,
            label_max_concurrency=1,
        )
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)

        assert advance_session(runtime, session_id) == "failed"
        row = _row(runtime, session_id)
        assert "labeling" in row.error_message
        assert "time budget" in row.error_message

        # Let the abandoned labeling thread finish and try to commit.
        time.sleep(2.0)
        row = _row(runtime, session_id)
        assert row.status == "failed"
        with Session(runtime.engine) as db:
            assert count_clusters(db, session_id) == 0

    def test_phase_that_commits_before_its_failure_is_not_failed(self, runtime, monkeypatch):
        finish_reducing = orchestrator._PHASE_HANDLERS["reducing"]

        def _reduce_then_time_out(runtime, row):
            finish_reducing(runtime, row)
            raise PhaseTimeoutError("Phase 'reducing' exceeded its time budget of 1s.")

        monkeypatch.setitem(orchestrator._PHASE_HANDLERS, "reducing", _reduce_then_time_out)
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)

        assert advance_session(runtime, session_id) == "completed"
        row = _row(runtime, session_id)
        assert row.error_message is None
        with Session(runtime.engine) as db:
            assert count_projections(db, session_id) == 100

    def test_budget_exhaustion_schedules_continuation(self, runtime):
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)
        ticks = iter(range(0, 10_000, 200))

        status = advance_session(runtime, session_id, clock=lambda: float(next(ticks)))

        assert status == "vectorizing"
        with Session(runtime.engine) as db:
            jobs = [job for job in list_jobs(db) if job.kind == JOB_RUN_SESSION]
        # One from creation, one continuation.
        assert len(jobs) == 2
        assert jobs[-1].payload == {"session_id": session_id}

        assert advance_session(runtime, session_id) == "completed"

    def test_repeated_redelivery_fails_after_attempt_ceiling(self, make_runtime):
        runtime = make_runtime(max_phase_attempts=2)
        seed_themed_posts(runtime.engine, count=100)
        session_id = _create(runtime, sample_size=100)
        with Session(runtime.engine) as db:
            db.execute(
                update(OpinionSession)
                .where(OpinionSession.id == session_id)
                .values(phase_attempts=2)
            )
            db.commit()

        assert advance_session(runtime, session_id) == "failed"
        row = _row(runtime, session_id)
        assert "did not complete after 2 attempts" in row.error_message
        assert runtime.embedding_client.call_count == 0
