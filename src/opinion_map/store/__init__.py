"""Relational persistence for posts, sessions, results and background jobs."""

from opinion_map.store.engine import create_db_engine, init_db
from opinion_map.store.tables import (
    Job,
    OpinionCluster,
    OpinionSession,
    Post,
    PostProjection,
    SessionArtifact,
)

__all__ = [
    "Job",
    "OpinionCluster",
    "OpinionSession",
    "Post",
    "PostProjection",
    "SessionArtifact",
    "create_db_engine",
    "init_db",
]
