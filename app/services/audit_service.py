from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import AuditEntry

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    *,
    order_id: int,
    action: str,
    user_id: int | None = None,
    location_id: int | None = None,
    details: str | None = None,
) -> AuditEntry | None:
    """Append an audit entry without risking the caller's transaction.

    The write happens in a savepoint. A failure rolls back only the savepoint and
    is logged; the triggering state change is kept.
    """
    # Flush the caller's pending changes first so their errors are not swallowed here.
    db.flush()
    entry = AuditEntry(
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action=action,
        details=details,
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except SQLAlchemyError:
        logger.warning(
            'Audit write failed for order=%s location=%s action=%s',
            order_id,
            location_id,
            action,
            exc_info=True,
        )
        return None
    return entry


def list_audit_for_order(db: Session, *, order_id: int) -> list[AuditEntry]:
    return db.execute(
        select(AuditEntry)
        .where(AuditEntry.order_id == order_id)
        .order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
    ).scalars().all()


def list_recent_audit(db: Session, *, limit: int = 200) -> list[AuditEntry]:
    return db.execute(
        select(AuditEntry).order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).limit(limit)
    ).scalars().all()


def serialize_audit_entry(entry: AuditEntry) -> dict:
    return {
        'id': entry.id,
        'order_id': entry.order_id,
        'user_id': entry.user_id,
        'location_id': entry.location_id,
        'action': entry.action,
        'details': entry.details,
        'created_at': entry.created_at,
    }
