"""Embedding cache fill: the background vectorization worker and cache statistics."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlmodel import Session

from opinion_map.models import TextEmbeddingClient
from opinion_map.pipeline.embedding import embed_texts_in_batches
from opinion_map.store.posts import (
    embedding_counts,
    fetch_posts_by_ids,
    usable_embedding_ids,
    write_embedding,
)
from opinion_map.store.tables import Post

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VectorizationOutcome:
    """Counts from one vectorization pass."""

    requested: int
    found: int
    already_embedded: int
    embedded: int
    failed: int
    failed_batches: int

    def as_dict(self) -> dict:
        return {
            "requested": self.requested,
            "found": self.found,
            "already_embedded": self.already_embedded,
            "embedded": self.embedded,
            "failed": self.failed,
            "failed_batches": self.failed_batches,
        }


@dataclass(frozen=True, slots=True)
class EmbeddingStats:
    zone_id: str
    model: str
    total_posts: int
    embedded_posts: int

    @property
    def pending_posts(self) -> int:
        return self.total_posts - self.embedded_posts

    @property
    def coverage(self) -> float:
        return self.embedded_posts / self.total_posts if self.total_posts else 0.0

    def as_dict(self) -> dict:
        return {
            "zone_id": self.zone_id,
            "model": self.model,
            "total_posts": self.total_posts,
            "embedded_posts": self.embedded_posts,
            "pending_posts": self.pending_posts,
            "coverage": round(self.coverage, 4),
        }


def build_enriched_text(
    text: str,
    *,
    author_name: str | None = None,
    author_username: str | None = None,
    hashtags: Sequence[str] = (),
    max_length: int = 8000,
) -> str:
    """Combine post text, author and hashtags into the text that gets embedded."""

    parts = [text.strip()]
    name = (author_name or "").strip()
    handle = f"@{author_username.strip().lstrip('@')}" if author_username else ""
    if name and handle:
        parts.append(f"Author: {name} ({handle})")
    elif name or handle:
        parts.append(f"Author: {name or handle}")
    tags = [tag.strip().lstrip("#") for tag in hashtags if tag and tag.strip().lstrip("#")]
    if tags:
        parts.append("Hashtags: " + " ".join(f"#{tag}" for tag in tags))
    return "\n".join(parts)[:max_length]


def _enriched_text_for(post: Post, max_length: int) -> str:
    return build_enriched_text(
        post.text,
        author_name=post.author_name,
        author_username=post.author_username,
        hashtags=post.hashtags or [],
        max_length=max_length,
    )


def vectorize_posts(
    engine: Engine,
    post_ids: Sequence[int],
    embedding_client: TextEmbeddingClient,
    *,
    model: str,
    zone_id: str | None = None,
    fetch_batch_size: int = 500,
    batch_size: int = 100,
    max_batch_tokens: int = 250_000,
    max_concurrency: int = 1,
    batch_delay_seconds: float = 0.0,
    max_content_length: int = 8000,
    progress_callback: Callable[[int, int], None] | None = None,
) -> VectorizationOutcome:
    """Embed every listed post that lacks a vector for `model` and cache the result.

    Safe to repeat: posts already embedded with `model` are skipped, and the cache
    write itself refuses to touch them, so a fully embedded batch changes no rows.
    """

    unique_ids = list(dict.fromkeys(int(post_id) for post_id in post_ids))
    with Session(engine) as db:
        posts = fetch_posts_by_ids(db, unique_ids, batch_size=fetch_batch_size, zone_id=zone_id)
        usable = usable_embedding_ids(
            db,
            [int(post.id) for post in posts],
            model=model,
            batch_size=fetch_batch_size,
        )
        pending = [
            (int(post.id), _enriched_text_for(post, max_content_length))
            for post in posts
            if int(post.id) not in usable
        ]

    if not pending:
        logger.info("Vectorization: all %d found posts already embedded.", len(posts))
        return VectorizationOutcome(
            requested=len(unique_ids),
            found=len(posts),
            already_embedded=len(usable),
            embedded=0,
            failed=0,
            failed_batches=0,
        )

    pending_ids = [post_id for post_id, _ in pending]
    written = 0

    def _persist_batch(positions: list[int], vectors: list[list[float]]) -> None:
        nonlocal written
        with Session(engine) as db:
            for position, vector in zip(positions, vectors, strict=True):
                if write_embedding(db, pending_ids[position], vector, model=model):
                    written += 1
            db.commit()

    logger.info(
        "Vectorization: embedding %d of %d posts (%d cached).",
        len(pending),
        len(posts),
        len(usable),
    )
    report = embed_texts_in_batches(
        [text for _, text in pending],
        embedding_client,
        batch_size=batch_size,
        max_batch_tokens=max_batch_tokens,
        max_concurrency=max_concurrency,
        batch_delay_seconds=batch_delay_seconds,
        progress_callback=progress_callback,
        batch_callback=_persist_batch,
    )
    failed = len(pending) - report.embedded_count
    if report.failed_batches:
        logger.warning(
            "Vectorization: %d/%d batches failed, %d posts left without embeddings.",
            report.failed_batches,
            report.batch_count,
            failed,
        )
    return VectorizationOutcome(
        requested=len(unique_ids),
        found=len(posts),
        already_embedded=len(usable),
        embedded=written,
        failed=failed,
        failed_batches=report.failed_batches,
    )


def embedding_stats(engine: Engine, *, zone_id: str, model: str) -> EmbeddingStats:
    """Report how much of a zone's dataset is covered by the embedding cache."""

    with Session(engine) as db:
        total, embedded = embedding_counts(db, zone_id=zone_id, model=model)
    return EmbeddingStats(zone_id=zone_id, model=model, total_posts=total, embedded_posts=embedded)
