"""Post reads and embedding cache writes."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime

import numpy as np
from sqlalchemy import and_, func, or_, update
from sqlmodel import Session, select

from opinion_map.store.tables import Post, utcnow

logger = logging.getLogger(__name__)


class EmbeddingWriteError(ValueError):
    """Raised when an embedding write would violate cache invariants."""


def chunked(values: Sequence[int], size: int) -> Iterator[list[int]]:
    """Yield consecutive slices of at most `size` items."""

    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}.")
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def has_usable_embedding(model: str):
    """SQL condition for posts whose cached vector was produced by `model`."""

    return and_(Post.embedding.is_not(None), Post.embedding_model == model)


def needs_embedding(model: str):
    """SQL condition for posts that have no vector for `model` yet."""

    return or_(
        Post.embedding.is_(None),
        Post.embedding_model.is_(None),
        Post.embedding_model != model,
    )


def insert_posts(db: Session, posts: Iterable[Post]) -> list[int]:
    """Insert posts and return their assigned ids."""

    rows = list(posts)
    db.add_all(rows)
    db.flush()
    return [int(row.id) for row in rows]


def fetch_posts_by_ids(
    db: Session,
    post_ids: Sequence[int],
    *,
    batch_size: int = 500,
    zone_id: str | None = None,
) -> list[Post]:
    """Fetch posts by id in bounded batches, preserving the input order."""

    by_id: dict[int, Post] = {}
    for chunk in chunked(post_ids, batch_size):
        statement = select(Post).where(Post.id.in_(chunk))
        if zone_id is not None:
            statement = statement.where(Post.zone_id == zone_id)
        for post in db.exec(statement):
            by_id[int(post.id)] = post
    return [by_id[post_id] for post_id in post_ids if post_id in by_id]


def usable_embedding_ids(
    db: Session,
    post_ids: Sequence[int],
    *,
    model: str,
    batch_size: int = 500,
) -> set[int]:
    """Return the subset of ids whose cached embedding matches `model`."""

    usable: set[int] = set()
    for chunk in chunked(post_ids, batch_size):
        statement = select(Post.id).where(Post.id.in_(chunk), has_usable_embedding(model))
        usable.update(int(post_id) for post_id in db.exec(statement))
    return usable


def load_embeddings(
    db: Session,
    post_ids: Sequence[int],
    *,
    model: str,
    batch_size: int = 200,
) -> tuple[list[int], np.ndarray | None]:
    """Load usable vectors for the given ids, in input order.

    Returns the ids that had a usable vector and the stacked matrix (None when none did).
    """

    vectors_by_id: dict[int, np.ndarray] = {}
    for chunk in chunked(post_ids, batch_size):
        statement = select(Post.id, Post.embedding).where(
            Post.id.in_(chunk),
            has_usable_embedding(model),
        )
        for post_id, embedding in db.exec(statement):
            vectors_by_id[int(post_id)] = np.asarray(embedding, dtype=float)

    ordered_ids = [post_id for post_id in post_ids if post_id in vectors_by_id]
    if not ordered_ids:
        return [], None
    return ordered_ids, np.stack([vectors_by_id[post_id] for post_id in ordered_ids], axis=0)


def write_embedding(
    db: Session,
    post_id: int,
    vector: Sequence[float],
    *,
    model: str,
    computed_at: datetime | None = None,
) -> bool:
    """Store a vector unless the post already holds one from the same model.

    Returns True when a row changed. Concurrent writers race benignly: the guard only
    admits rows lacking a vector for `model`, and a null vector is never written.
    """

    values = [float(value) for value in vector]
    if not values:
        raise EmbeddingWriteError(f"Refusing to cache an empty embedding for post {post_id}.")
    if not all(np.isfinite(values)):
        raise EmbeddingWriteError(f"Refusing to cache a non-finite embedding for post {post_id}.")

    statement = (
        update(Post)
        .where(Post.id == post_id, needs_embedding(model))
        .values(
            embedding=values,
            embedding_model=model,
            embedding_created_at=computed_at or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(statement)
    return result.rowcount == 1


def zone_posts_between(
    db: Session,
    *,
    zone_id: str,
    start: datetime,
    end: datetime,
    repost_prefix: str = "RT @",
) -> list[tuple[int, bool, int, datetime]]:
    """Return (id, is_repost, engagement, posted_at) for zone posts with start <= posted_at < end.

    Post text stays in the database; a repost is text starting with `repost_prefix`
    after leading spaces (case-sensitive).
    """

    is_repost = (
        func.substr(func.ltrim(Post.text), 1, len(repost_prefix)) == repost_prefix
    ).label("is_repost")
    statement = (
        select(Post.id, is_repost, Post.engagement, Post.posted_at)
        .where(Post.zone_id == zone_id, Post.posted_at >= start, Post.posted_at < end)
        .order_by(Post.id)
    )
    return [
        (int(post_id), bool(repost), int(engagement or 0), posted_at)
        for post_id, repost, engagement, posted_at in db.exec(statement)
    ]


def pending_embedding_ids(
    db: Session,
    *,
    zone_id: str,
    model: str,
    limit: int | None = None,
) -> list[int]:
    """Return ids of zone posts still lacking a vector for `model`, oldest first."""

    statement = (
        select(Post.id)
        .where(Post.zone_id == zone_id, needs_embedding(model))
        .order_by(Post.id)
    )
    if limit is not None:
        statement = statement.limit(limit)
    return [int(post_id) for post_id in db.exec(statement)]


def embedding_counts(db: Session, *, zone_id: str, model: str) -> tuple[int, int]:
    """Return (total posts, posts with a usable vector) for a zone."""

    total = db.exec(select(func.count(Post.id)).where(Post.zone_id == zone_id)).one()
    embedded = db.exec(
        select(func.count(Post.id)).where(Post.zone_id == zone_id, has_usable_embedding(model))
    ).one()
    return int(total), int(embedded)
