"""Post sampling for a session and cache partitioning of the sample."""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from math import ceil

from sqlmodel import Session

from opinion_map.store.posts import usable_embedding_ids, zone_posts_between
from opinion_map.store.tables import ensure_utc

SUPPORTED_SAMPLING_POLICIES = {"stratified_engagement", "uniform", "most_recent"}
REPOST_PREFIX = "RT @"


class SamplingError(ValueError):
    """Raised when sampling inputs are invalid."""


@dataclass(frozen=True, slots=True)
class SampleCandidate:
    post_id: int
    is_repost: bool
    engagement: int
    posted_at: datetime


@dataclass(frozen=True, slots=True)
class SampleResult:
    """Sampled ids split by embedding cache state."""

    post_ids: list[int]
    cached_ids: list[int]
    missing_ids: list[int]
    candidate_count: int
    policy: str
    seed: int | None

    @property
    def cache_hit_ratio(self) -> float:
        return len(self.cached_ids) / len(self.post_ids) if self.post_ids else 0.0


def date_range_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Convert an inclusive calendar range to a half-open UTC datetime interval."""

    if start > end:
        raise SamplingError(f"Date range start {start} is after end {end}.")
    lower = datetime.combine(start, time.min, tzinfo=UTC)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=UTC)
    return lower, upper


def resolve_sampling_seed(
    *,
    mode: str,
    zone_id: str,
    start: date,
    end: date,
    sample_size: int,
) -> int | None:
    """Return a seed derived from the request in deterministic mode, else None."""

    if mode == "random":
        return None
    if mode != "deterministic":
        raise SamplingError(f"Unsupported sampling_seed_mode '{mode}'.")
    key = f"{zone_id}|{start.isoformat()}|{end.isoformat()}|{sample_size}".encode()
    return int.from_bytes(hashlib.sha256(key).digest()[:4], "big")


def _engagement_order(candidate: SampleCandidate) -> tuple[int, int]:
    return (-candidate.engagement, candidate.post_id)


def _stratified_engagement(candidates: list[SampleCandidate], sample_size: int) -> list[int]:
    originals = [item for item in candidates if not item.is_repost]
    if not originals:
        return []

    buckets: dict[date, list[SampleCandidate]] = {}
    for item in originals:
        buckets.setdefault(ensure_utc(item.posted_at).date(), []).append(item)

    per_bucket = ceil(sample_size / len(buckets))
    selected: list[int] = []
    chosen: set[int] = set()
    for day in sorted(buckets):
        for item in sorted(buckets[day], key=_engagement_order)[:per_bucket]:
            selected.append(item.post_id)
            chosen.add(item.post_id)

    if len(selected) < sample_size:
        for item in sorted(originals, key=_engagement_order):
            if item.post_id in chosen:
                continue
            selected.append(item.post_id)
            chosen.add(item.post_id)
            if len(selected) >= sample_size:
                break
    return selected[:sample_size]


def select_sample(
    candidates: list[SampleCandidate],
    *,
    sample_size: int,
    policy: str,
    seed: int | None = None,
) -> list[int]:
    """Pick up to `sample_size` post ids from candidates under the given policy."""

    if sample_size <= 0:
        raise SamplingError(f"sample_size must be positive, got {sample_size}.")
    if policy not in SUPPORTED_SAMPLING_POLICIES:
        allowed = ", ".join(sorted(SUPPORTED_SAMPLING_POLICIES))
        raise SamplingError(f"Unsupported sampling policy '{policy}'. Expected one of: {allowed}.")

    if policy == "stratified_engagement":
        return _stratified_engagement(candidates, sample_size)
    if policy == "most_recent":
        ordered = sorted(
            candidates,
            key=lambda item: (ensure_utc(item.posted_at), item.post_id),
            reverse=True,
        )
        return [item.post_id for item in ordered[:sample_size]]

    ids = sorted(item.post_id for item in candidates)
    if len(ids) <= sample_size:
        return ids
    return random.Random(seed).sample(ids, sample_size)


def sample_posts(
    db: Session,
    *,
    zone_id: str,
    start: date,
    end: date,
    sample_size: int,
    policy: str,
    embedding_model: str,
    seed: int | None = None,
    fetch_batch_size: int = 500,
) -> SampleResult:
    """Sample zone posts in the date range and split the sample by cache state."""

    lower, upper = date_range_bounds(start, end)
    candidates = [
        SampleCandidate(
            post_id=post_id, is_repost=is_repost, engagement=engagement, posted_at=posted_at
        )
        for post_id, is_repost, engagement, posted_at in zone_posts_between(
            db, zone_id=zone_id, start=lower, end=upper, repost_prefix=REPOST_PREFIX
        )
    ]
    post_ids = select_sample(candidates, sample_size=sample_size, policy=policy, seed=seed)
    cached = usable_embedding_ids(db, post_ids, model=embedding_model, batch_size=fetch_batch_size)
    return SampleResult(
        post_ids=post_ids,
        cached_ids=[post_id for post_id in post_ids if post_id in cached],
        missing_ids=[post_id for post_id in post_ids if post_id not in cached],
        candidate_count=len(candidates),
        policy=policy,
        seed=seed,
    )
