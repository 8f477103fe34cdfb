"""Tests for CLI parser options and command handlers."""

import json
from datetime import date

import pytest
from fakes import seed_themed_posts
from sqlmodel import Session

from opinion_map.cli import (
    build_parser,
    cmd_cancel,
    cmd_create_session,
    cmd_seed_demo,
    cmd_stats,
    cmd_status,
    cmd_timeline,
    cmd_vectorize,
)
from opinion_map.store.jobs import JOB_VECTORIZE_POSTS, list_jobs


def test_create_session_parser_reads_dates_and_flags():
    args = build_parser().parse_args(
        [
            "create-session",
            "--zone",
            "lyon",
            "--start",
            "2025-01-01",
            "--end",
            "2025-01-07",
            "--sample-size",
            "800",
            "--policy",
            "most_recent",
            "--reuse-active",
            "--run",
        ]
    )
    assert args.command == "create-session"
    assert args.start == date(2025, 1, 1)
    assert args.end == date(2025, 1, 7)
    assert args.sample_size == 800
    assert args.policy == "most_recent"
    assert args.reuse_active is True
    assert args.run is True


def test_create_session_parser_rejects_unknown_policy():
    with pytest.raises(SystemExit):
        build_parser().parse_args(
            ["create-session", "--zone", "z", "--start", "2025-01-01", "--end", "2025-01-02", "--policy", "loudest"]
        )


def test_work_parser_defaults_to_draining_the_queue():
    args = build_parser().parse_args(["work"])
    assert args.command == "work"
    assert args.forever is False
    assert args.max_jobs is None
    assert args.poll_seconds == 2.0


def test_global_options():
    args = build_parser().parse_args(["--config", "custom.yaml", "--log-level", "DEBUG", "info"])
    assert args.config == "custom.yaml"
    assert args.log_level == "DEBUG"
    assert args.command == "info"


def test_seed_demo_with_vectorize_queues_job(runtime, capsys):
    args = build_parser().parse_args(["seed-demo", "--zone", "demo", "--count", "12", "--vectorize"])

    cmd_seed_demo(runtime, args)

    payload = json.loads(capsys.readouterr().out)
    assert payload["zone_id"] == "demo"
    assert payload["inserted"] == 12
    with Session(runtime.engine) as db:
        assert [job.kind for job in list_jobs(db)] == [JOB_VECTORIZE_POSTS]


def _json_documents(text: str) -> list[dict]:
    decoder = json.JSONDecoder()
    documents = []
    position = 0
    while text[position:].strip():
        while text[position].isspace():
            position += 1
        document, position = decoder.raw_decode(text, position)
        documents.append(document)
    return documents


def test_create_then_status_with_results(runtime, capsys):
    seed_themed_posts(runtime.engine, count=100)
    args = build_parser().parse_args(
        ["create-session", "--zone", "zone-1", "--start", "2025-01-01", "--end", "2025-01-05", "--run"]
    )

    cmd_create_session(runtime, args)
    created, final = _json_documents(capsys.readouterr().out)

    assert created["status"] == "pending"
    assert final["status"] == "completed"

    cmd_status(runtime, build_parser().parse_args(["status", created["session_id"], "--results"]))
    results = json.loads(capsys.readouterr().out)
    assert results["projection_count"] == 100
    assert len(results["clusters"]) == 5

    cmd_timeline(runtime, build_parser().parse_args(["timeline", created["session_id"]]))
    timeline = json.loads(capsys.readouterr().out)
    assert timeline["granularity"] == "6hours"
    assert len(timeline["points"]) == 20


def test_create_session_rejects_oversized_sample(runtime, capsys):
    args = build_parser().parse_args(
        ["create-session", "--zone", "zone-1", "--start", "2025-01-01", "--end", "2025-01-05", "--sample-size", "9000"]
    )

    with pytest.raises(SystemExit) as excinfo:
        cmd_create_session(runtime, args)

    assert excinfo.value.code == 2
    assert "exceeds the maximum" in capsys.readouterr().err


def test_cancel_unknown_session_exits_with_error(runtime, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cmd_cancel(runtime, build_parser().parse_args(["cancel", "nope"]))

    assert excinfo.value.code == 1
    assert "nope" in capsys.readouterr().err


def test_vectorize_and_stats_commands(runtime, capsys):
    seed_themed_posts(runtime.engine, count=7)

    cmd_vectorize(runtime, build_parser().parse_args(["vectorize", "--zone", "zone-1"]))
    queued = json.loads(capsys.readouterr().out)
    cmd_stats(runtime, build_parser().parse_args(["stats", "--zone", "zone-1"]))
    stats = json.loads(capsys.readouterr().out)

    assert queued["zone_id"] == "zone-1"
    assert stats["total_posts"] == 7
    assert stats["embedded_posts"] == 0
