"""Write-once projection and cluster rows for a session."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func
from sqlmodel import Session, col, select

from opinion_map.schemas import ClusterRecord, ProjectionRecord
from opinion_map.store.tables import OpinionCluster, Post, PostProjection, ensure_utc


def insert_projections(
    db: Session,
    *,
    session_id: str,
    zone_id: str,
    records: Iterable[ProjectionRecord],
) -> int:
    """Insert validated projection rows; the unique (post, session) key rejects duplicates."""

    rows = [
        PostProjection(session_id=session_id, zone_id=zone_id, **record.model_dump())
        for record in records
    ]
    db.add_all(rows)
    db.flush()
    return len(rows)


def insert_clusters(
    db: Session,
    *,
    session_id: str,
    zone_id: str,
    records: Iterable[ClusterRecord],
) -> int:
    rows = [
        OpinionCluster(session_id=session_id, zone_id=zone_id, **record.model_dump())
        for record in records
    ]
    db.add_all(rows)
    db.flush()
    return len(rows)


def list_projections(db: Session, session_id: str) -> list[PostProjection]:
    statement = (
        select(PostProjection)
        .where(PostProjection.session_id == session_id)
        .order_by(col(PostProjection.id))
    )
    return list(db.exec(statement))


def list_clusters(db: Session, session_id: str) -> list[OpinionCluster]:
    statement = (
        select(OpinionCluster)
        .where(OpinionCluster.session_id == session_id)
        .order_by(col(OpinionCluster.cluster_id))
    )
    return list(db.exec(statement))


def count_projections(db: Session, session_id: str) -> int:
    statement = select(func.count(PostProjection.id)).where(
        PostProjection.session_id == session_id
    )
    return int(db.exec(statement).one())


def count_clusters(db: Session, session_id: str) -> int:
    statement = select(func.count(OpinionCluster.id)).where(
        OpinionCluster.session_id == session_id
    )
    return int(db.exec(statement).one())


def list_cluster_projections(
    db: Session,
    session_id: str,
    cluster_id: int,
    *,
    include_outliers: bool = True,
) -> list[PostProjection]:
    """Projections assigned to one cluster. Outliers carry their nearest cluster id."""

    statement = select(PostProjection).where(
        PostProjection.session_id == session_id,
        PostProjection.cluster_id == cluster_id,
    )
    if not include_outliers:
        statement = statement.where(col(PostProjection.is_outlier).is_(False))
    return list(db.exec(statement.order_by(col(PostProjection.id))))


def projection_post_times(
    db: Session,
    session_id: str,
    *,
    include_outliers: bool = False,
) -> list[tuple[int, datetime]]:
    """(cluster_id, posted_at) for each projection of a session, oldest post first."""

    statement = (
        select(PostProjection.cluster_id, Post.posted_at)
        .join(Post, col(Post.id) == col(PostProjection.post_id))
        .where(PostProjection.session_id == session_id)
        .order_by(col(Post.posted_at), col(PostProjection.id))
    )
    if not include_outliers:
        statement = statement.where(col(PostProjection.is_outlier).is_(False))
    return [(int(cluster_id), ensure_utc(posted_at)) for cluster_id, posted_at in db.exec(statement)]
