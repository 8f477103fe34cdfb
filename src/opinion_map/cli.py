"""CLI entrypoint for the Opinion Map pipeline."""

import argparse
import json
import logging
import sys
from datetime import date

from pydantic import ValidationError

from opinion_map import __version__
from opinion_map.config import Settings
from opinion_map.mock_data import seed_demo_posts
from opinion_map.observability import get_langsmith_status
from opinion_map.pipeline.orchestrator import SessionNotFoundError
from opinion_map.pipeline.vectorization import embedding_stats
from opinion_map.runtime import Runtime, build_runtime
from opinion_map.schemas import DateRange
from opinion_map.service import (
    InvalidTransitionError,
    SampleSizeLimitError,
    cancel_session,
    cluster_time_series,
    create_session,
    enqueue_vectorization,
    get_session,
    session_results,
)
from opinion_map.store import init_db
from opinion_map.worker import run_worker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opinion-map",
        description="Opinion map generation: embed, project, cluster and label social posts",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to YAML config file (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")
    sub.add_parser("init-db", help="Create the database tables")

    seed_parser = sub.add_parser("seed-demo", help="Insert synthetic posts for a zone")
    seed_parser.add_argument("--zone", type=str, required=True, help="Zone identifier")
    seed_parser.add_argument("--count", type=int, default=600, help="Number of posts")
    seed_parser.add_argument("--seed", type=int, default=7, help="Generator seed")
    seed_parser.add_argument(
        "--start-date",
        type=date.fromisoformat,
        default=date(2025, 1, 1),
        help="First day of generated posts (YYYY-MM-DD)",
    )
    seed_parser.add_argument("--days", type=int, default=14, help="Days of posts to spread over")
    seed_parser.add_argument(
        "--vectorize",
        action="store_true",
        help="Queue background vectorization of the new posts",
    )

    create_parser = sub.add_parser("create-session", help="Sample posts and schedule a map")
    create_parser.add_argument("--zone", type=str, required=True, help="Zone identifier")
    create_parser.add_argument(
        "--start", type=date.fromisoformat, required=True, help="Start date (YYYY-MM-DD)"
    )
    create_parser.add_argument(
        "--end", type=date.fromisoformat, required=True, help="End date, inclusive (YYYY-MM-DD)"
    )
    create_parser.add_argument("--sample-size", type=int, default=None, help="Posts to sample")
    create_parser.add_argument(
        "--policy",
        type=str,
        default=None,
        choices=["stratified_engagement", "uniform", "most_recent"],
        help="Sampling policy override",
    )
    create_parser.add_argument("--context", type=str, default=None, help="Operational context")
    create_parser.add_argument("--language", type=str, default=None, help="Label language")
    create_parser.add_argument("--created-by", type=str, default=None, help="Requesting user")
    create_parser.add_argument(
        "--reuse-active",
        action="store_true",
        help="Return the zone's active session instead of starting another",
    )
    create_parser.add_argument(
        "--run",
        action="store_true",
        help="Process queued jobs immediately after creating the session",
    )

    status_parser = sub.add_parser("status", help="Show a session")
    status_parser.add_argument("session_id", type=str)
    status_parser.add_argument(
        "--results",
        action="store_true",
        help="Include cluster labels of a completed session",
    )

    timeline_parser = sub.add_parser("timeline", help="Show per-cluster post counts over time")
    timeline_parser.add_argument("session_id", type=str)

    cancel_parser = sub.add_parser("cancel", help="Cancel an active session")
    cancel_parser.add_argument("session_id", type=str)

    vectorize_parser = sub.add_parser("vectorize", help="Queue embedding of a zone's posts")
    vectorize_parser.add_argument("--zone", type=str, required=True, help="Zone identifier")
    vectorize_parser.add_argument(
        "--delay",
        type=float,
        default=0.0,
        help="Seconds before the job becomes due (default: 0)",
    )

    stats_parser = sub.add_parser("stats", help="Show embedding cache coverage for a zone")
    stats_parser.add_argument("--zone", type=str, required=True, help="Zone identifier")

    work_parser = sub.add_parser("work", help="Process queued background jobs")
    work_parser.add_argument("--max-jobs", type=int, default=None, help="Stop after N jobs")
    work_parser.add_argument(
        "--forever",
        action="store_true",
        help="Keep polling when the queue is empty",
    )
    work_parser.add_argument(
        "--poll-seconds",
        type=float,
        default=2.0,
        help="Idle polling interval with --forever (default: 2.0)",
    )

    return parser


def cmd_info(settings: Settings) -> None:
    langsmith = get_langsmith_status(settings)

    print(f"opinion-map v{__version__}")
    print(f"  Database:         {settings.database_url}")
    print(f"  OpenAI model:     {settings.openai_model}")
    print(f"  OpenAI base URL:  {settings.resolved_openai_base_url() or '(default OpenAI)'}")
    print(f"  Embedding provider: {settings.embedding_provider}")
    print(f"  Embedding model:  {settings.embedding_model}")
    print(f"  Embed batch size: {settings.embedding_batch_size}")
    print(f"  Embed delay:      {settings.embedding_batch_delay_seconds}s")
    print(f"  Sample size:      {settings.default_sample_size} (max {settings.max_sample_size})")
    print(f"  Sampling policy:  {settings.sampling_policy} ({settings.sampling_seed_mode} seed)")
    print(f"  Min coverage:     {settings.min_coverage_ratio:.0%}")
    print(f"  PCA components:   {settings.pca_components}")
    print(f"  UMAP neighbors:   {settings.umap_n_neighbors}")
    print(f"  Clustering:       {settings.clustering_strategy} on {settings.clustering_space}")
    print(f"  Outlier threshold: {settings.outlier_confidence_threshold}")
    print(f"  Min cluster size: {settings.min_cluster_size}")
    print(f"  Label sample size: {settings.label_sample_size}")
    print(f"  Label concurrency: {settings.label_max_concurrency}")
    print(f"  Invocation budget: {settings.invocation_budget_seconds}s")
    print(f"  LangSmith tracing: {langsmith['enabled']}")
    print(f"  LangSmith project: {langsmith['project'] or '(not set)'}")
    print(f"  Random seed:      {settings.random_seed}")


def _print_json(payload: dict | list[dict]) -> None:
    """Pretty-print JSON payload."""

    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def cmd_init_db(runtime: Runtime) -> None:
    init_db(runtime.engine)
    print(f"Database ready: {runtime.settings.database_url}")


def cmd_seed_demo(runtime: Runtime, args: argparse.Namespace) -> None:
    init_db(runtime.engine)
    post_ids = seed_demo_posts(
        runtime.engine,
        zone_id=args.zone,
        count=args.count,
        seed=args.seed,
        start_date=args.start_date,
        days=args.days,
    )
    payload = {"zone_id": args.zone, "inserted": len(post_ids)}
    if args.vectorize:
        payload["job_id"] = enqueue_vectorization(runtime, post_ids, zone_id=args.zone)
    _print_json(payload)


def cmd_create_session(runtime: Runtime, args: argparse.Namespace) -> None:
    try:
        created = create_session(
            runtime,
            zone_id=args.zone,
            date_range=DateRange(start=args.start, end=args.end),
            sample_size=args.sample_size,
            sampling_policy=args.policy,
            operational_context=args.context,
            language=args.language,
            created_by=args.created_by,
            reuse_active=args.reuse_active,
        )
    except (SampleSizeLimitError, ValidationError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    _print_json(created.model_dump(mode="json"))
    if args.run and created.status == "pending":
        run_worker(runtime)
        _print_json(get_session(runtime, created.session_id).model_dump(mode="json"))


def cmd_status(runtime: Runtime, args: argparse.Namespace) -> None:
    try:
        if not args.results:
            _print_json(get_session(runtime, args.session_id).model_dump(mode="json"))
            return
        results = session_results(runtime, args.session_id)
    except SessionNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    payload = results.session.model_dump(mode="json")
    payload["projection_count"] = len(results.projections)
    payload["clusters"] = [
        {
            "cluster_id": cluster.cluster_id,
            "label": cluster.label,
            "tweet_count": cluster.tweet_count,
            "keywords": cluster.keywords,
            "avg_sentiment": cluster.avg_sentiment,
            "coherence_score": cluster.coherence_score,
            "labeling_fallback_used": cluster.labeling_fallback_used,
        }
        for cluster in results.clusters
    ]
    _print_json(payload)


def cmd_timeline(runtime: Runtime, args: argparse.Namespace) -> None:
    try:
        series = cluster_time_series(runtime, args.session_id)
    except SessionNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_json(series.model_dump(mode="json"))


def cmd_cancel(runtime: Runtime, args: argparse.Namespace) -> None:
    try:
        view = cancel_session(runtime, args.session_id)
    except (SessionNotFoundError, InvalidTransitionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    _print_json(view.model_dump(mode="json"))


def cmd_vectorize(runtime: Runtime, args: argparse.Namespace) -> None:
    job_id = enqueue_vectorization(runtime, [], zone_id=args.zone, delay_seconds=args.delay)
    _print_json({"zone_id": args.zone, "job_id": job_id})


def cmd_stats(runtime: Runtime, args: argparse.Namespace) -> None:
    stats = embedding_stats(runtime.engine, zone_id=args.zone, model=runtime.settings.embedding_model)
    _print_json(stats.as_dict())


def cmd_work(runtime: Runtime, args: argparse.Namespace) -> None:
    processed = run_worker(
        runtime,
        max_jobs=args.max_jobs,
        stop_when_idle=not args.forever,
        idle_sleep_seconds=args.poll_seconds,
    )
    print(f"Processed {processed} job(s).")


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_yaml(args.config)

    if args.command == "info":
        cmd_info(settings)
        return
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    runtime = build_runtime(settings)
    if args.command == "init-db":
        cmd_init_db(runtime)
    elif args.command == "seed-demo":
        cmd_seed_demo(runtime, args)
    elif args.command == "create-session":
        cmd_create_session(runtime, args)
    elif args.command == "status":
        cmd_status(runtime, args)
    elif args.command == "timeline":
        cmd_timeline(runtime, args)
    elif args.command == "cancel":
        cmd_cancel(runtime, args)
    elif args.command == "vectorize":
        cmd_vectorize(runtime, args)
    elif args.command == "stats":
        cmd_stats(runtime, args)
    elif args.command == "work":
        cmd_work(runtime, args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
