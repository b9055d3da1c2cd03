from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationError
from app.models import HelpRequest, OrderLocation
from app.services.audit_service import log_audit
from app.services.notification_service import EVENT_HELP_REQUESTED, queue_notification


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def create_help_request(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    user_id: int | None,
    notes: str | None,
) -> HelpRequest:
    routed = db.execute(
        select(OrderLocation.id).where(OrderLocation.order_id == order_id, OrderLocation.location_id == location_id)
    ).scalar_one_or_none()
    if routed is None:
        raise NotFoundError(
            f'Order {order_id} is not routed through location {location_id}',
            order_id=order_id,
            location_id=location_id,
        )

    help_request = HelpRequest(
        order_id=order_id,
        location_id=location_id,
        user_id=user_id,
        notes=notes.strip() if notes and notes.strip() else None,
    )
    db.add(help_request)
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='help_requested',
        details=help_request.notes or 'Help requested',
    )
    queue_notification(db, order_id=order_id, location_id=location_id, event_type=EVENT_HELP_REQUESTED)
    return help_request


def resolve_help_request(db: Session, *, help_request_id: int) -> HelpRequest:
    help_request = db.get(HelpRequest, help_request_id)
    if help_request is None:
        raise NotFoundError(f'Help request {help_request_id} not found', help_request_id=help_request_id)
    if help_request.is_resolved:
        raise ValidationError('Help request is already resolved', field='id')
    help_request.is_resolved = True
    help_request.resolved_at = _now()
    db.flush()
    return help_request


def list_active_help_requests(db: Session) -> list[HelpRequest]:
    return db.execute(
        select(HelpRequest).where(HelpRequest.is_resolved.is_(False)).order_by(HelpRequest.created_at.asc())
    ).scalars().all()


def serialize_help_request(help_request: HelpRequest) -> dict:
    return {
        'id': help_request.id,
        'order_id': help_request.order_id,
        'location_id': help_request.location_id,
        'user_id': help_request.user_id,
        'notes': help_request.notes,
        'is_resolved': help_request.is_resolved,
        'created_at': help_request.created_at,
        'resolved_at': help_request.resolved_at,
    }
