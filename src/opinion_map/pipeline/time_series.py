"""Bucket a session's clustered posts over time for the opinion evolution chart."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta

from opinion_map.pipeline.sampling import date_range_bounds
from opinion_map.schemas import TimeGranularity, TimeSeriesPoint

logger = logging.getLogger(__name__)

BUCKET_WIDTHS: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "6hours": timedelta(hours=6),
    "day": timedelta(days=1),
}


def choose_granularity(days: int) -> TimeGranularity:
    """Hourly for a single day, 6-hour buckets up to a week, daily beyond."""

    if days <= 1:
        return "hour"
    if days <= 7:
        return "6hours"
    return "day"


def _bucket_label(bucket_start: datetime, granularity: str) -> str:
    if granularity == "day":
        return bucket_start.strftime("%b %d")
    return bucket_start.strftime("%b %d %H:%M")


def bucket_cluster_counts(
    rows: Iterable[tuple[int, datetime]],
    *,
    cluster_ids: Iterable[int],
    start: date,
    end: date,
) -> tuple[TimeGranularity, list[TimeSeriesPoint]]:
    """Count posts per cluster in fixed-width UTC buckets covering [start, end].

    Every bucket lists every cluster, zero when empty. Posts outside the range
    are skipped.
    """

    lower, upper = date_range_bounds(start, end)
    granularity = choose_granularity((end - start).days + 1)
    width = BUCKET_WIDTHS[granularity]
    known = sorted(set(cluster_ids))

    points: list[TimeSeriesPoint] = []
    cursor = lower
    while cursor < upper:
        points.append(
            TimeSeriesPoint(
                bucket_start=cursor,
                label=_bucket_label(cursor, granularity),
                counts={cluster_id: 0 for cluster_id in known},
            )
        )
        cursor += width

    skipped = 0
    for cluster_id, posted_at in rows:
        if not lower <= posted_at < upper:
            skipped += 1
            continue
        index = int((posted_at - lower) // width)
        counts = points[index].counts
        counts[cluster_id] = counts.get(cluster_id, 0) + 1

    if skipped:
        logger.debug("Skipped %d posts outside %s..%s.", skipped, start, end)
    return granularity, points
