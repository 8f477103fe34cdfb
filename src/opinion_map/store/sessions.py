"""Session store: creation, compare-and-set phase commits, progress, failure and cancel."""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from typing import Any

from sqlalchemy import case, update
from sqlmodel import Session, col, select

from opinion_map.schemas import ACTIVE_STATUSES
from opinion_map.store.tables import OpinionSession, SessionArtifact, utcnow

_NANOID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_-"


def generate_session_id(size: int = 12) -> str:
    """Generate a nanoid-style session identifier."""

    return "".join(secrets.choice(_NANOID_ALPHABET) for _ in range(size))


def create_session_row(
    db: Session,
    *,
    zone_id: str,
    config: dict,
    created_by: str | None = None,
) -> OpinionSession:
    row = OpinionSession(
        id=generate_session_id(),
        zone_id=zone_id,
        status="pending",
        progress=0,
        current_phase="pending",
        phase_message="Session created",
        config=config,
        created_by=created_by,
    )
    db.add(row)
    db.flush()
    return row


def get_session_row(db: Session, session_id: str) -> OpinionSession | None:
    return db.get(OpinionSession, session_id)


def find_active_session(db: Session, zone_id: str) -> OpinionSession | None:
    """Return the most recent non-terminal session for a zone."""

    statement = (
        select(OpinionSession)
        .where(OpinionSession.zone_id == zone_id, col(OpinionSession.status).in_(ACTIVE_STATUSES))
        .order_by(col(OpinionSession.created_at).desc())
        .limit(1)
    )
    return db.exec(statement).first()


def latest_completed_session(db: Session, zone_id: str) -> OpinionSession | None:
    statement = (
        select(OpinionSession)
        .where(OpinionSession.zone_id == zone_id, OpinionSession.status == "completed")
        .order_by(col(OpinionSession.completed_at).desc())
        .limit(1)
    )
    return db.exec(statement).first()


def _monotonic_progress(progress: int):
    """SQL expression keeping the stored progress when it is already higher."""

    bounded = max(0, min(100, int(progress)))
    return case((OpinionSession.progress > bounded, OpinionSession.progress), else_=bounded)


def update_pending_session(
    db: Session,
    session_id: str,
    *,
    config: dict,
    total_posts: int,
    stats: dict,
    phase_message: str,
    progress: int = 1,
) -> bool:
    """Record the sample on a session that has not started running yet."""

    statement = (
        update(OpinionSession)
        .where(OpinionSession.id == session_id, OpinionSession.status == "pending")
        .values(
            config=config,
            total_posts=total_posts,
            stats=stats,
            phase_message=phase_message,
            current_phase="sampled",
            progress=_monotonic_progress(progress),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(statement).rowcount == 1


def commit_phase(
    db: Session,
    session_id: str,
    *,
    expected_status: str,
    new_status: str,
    progress: int,
    phase_message: str,
    current_phase: str | None = None,
    values: Mapping[str, Any] | None = None,
) -> bool:
    """Atomically move a session from `expected_status` to `new_status`.

    The update only applies while the row still holds `expected_status`, so a
    cancelled, failed or concurrently advanced session rejects the commit. Returns
    whether the transition happened. The caller owns the transaction.
    """

    now = utcnow()
    fields: dict[str, Any] = {
        "status": new_status,
        "progress": _monotonic_progress(progress),
        "phase_message": phase_message,
        "current_phase": current_phase or new_status,
        "phase_attempts": 0,
        "updated_at": now,
    }
    if expected_status == "pending":
        fields["started_at"] = now
    if values:
        fields.update(values)

    statement = (
        update(OpinionSession)
        .where(OpinionSession.id == session_id, OpinionSession.status == expected_status)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    return db.execute(statement).rowcount == 1


def report_progress(
    db: Session,
    session_id: str,
    *,
    status: str,
    progress: int,
    phase_message: str,
) -> bool:
    """Raise in-phase progress; ignored when the session moved on or progress would drop."""

    bounded = max(0, min(100, int(progress)))
    statement = (
        update(OpinionSession)
        .where(
            OpinionSession.id == session_id,
            OpinionSession.status == status,
            OpinionSession.progress <= bounded,
        )
        .values(progress=bounded, phase_message=phase_message, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(statement).rowcount == 1


def bump_phase_attempts(db: Session, session_id: str, *, status: str) -> int | None:
    """Count one more attempt at the current phase; None when the session left `status`."""

    statement = (
        update(OpinionSession)
        .where(OpinionSession.id == session_id, OpinionSession.status == status)
        .values(phase_attempts=OpinionSession.phase_attempts + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(statement).rowcount != 1:
        return None
    attempts = db.exec(
        select(OpinionSession.phase_attempts).where(OpinionSession.id == session_id)
    ).one()
    return int(attempts)


def mark_failed(
    db: Session,
    session_id: str,
    *,
    error_message: str,
    error_stack: str | None = None,
    expected_status: str | None = None,
) -> bool:
    """Move an active session to `failed`. Terminal sessions are left untouched.

    With `expected_status`, only a session still in that status is failed, so a phase
    that committed its transition in the meantime keeps it.
    """

    guard = [OpinionSession.id == session_id, col(OpinionSession.status).in_(ACTIVE_STATUSES)]
    if expected_status is not None:
        guard.append(OpinionSession.status == expected_status)
    statement = (
        update(OpinionSession)
        .where(*guard)
        .values(
            status="failed",
            current_phase="failed",
            phase_message=error_message,
            error_message=error_message,
            error_stack=error_stack,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(statement).rowcount == 1


def cancel_session_row(db: Session, session_id: str) -> bool:
    """Move an active session to `cancelled`; returns False if it was already terminal."""

    now = utcnow()
    statement = (
        update(OpinionSession)
        .where(OpinionSession.id == session_id, col(OpinionSession.status).in_(ACTIVE_STATUSES))
        .values(
            status="cancelled",
            current_phase="cancelled",
            phase_message="Cancelled by user",
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(statement).rowcount == 1


def save_artifact(db: Session, session_id: str, phase: str, payload: dict) -> None:
    """Store a phase checkpoint, replacing one left by an earlier uncommitted attempt."""

    existing = db.get(SessionArtifact, (session_id, phase))
    if existing is None:
        db.add(SessionArtifact(session_id=session_id, phase=phase, payload=payload))
    else:
        existing.payload = payload
        existing.created_at = utcnow()
        db.add(existing)
    db.flush()


def load_artifact(db: Session, session_id: str, phase: str) -> dict | None:
    artifact = db.get(SessionArtifact, (session_id, phase))
    return None if artifact is None else dict(artifact.payload)
