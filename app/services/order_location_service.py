from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import Blocked, InvalidTransition, NotFoundError, QuantityOutOfRange, ValidationError, guard_conflicts
from app.models import Location, Order, OrderLocation, OrderLocationStatus
from app.services.audit_service import log_audit
from app.services.gating_service import Eligibility, is_eligible
from app.services.notification_service import (
    EVENT_FINISHED,
    EVENT_PAUSED,
    EVENT_STARTED,
    queue_notification,
)
from app.services.order_workflow_service import OrderWorkflow, load_order_workflow, read_order_workflow
from app.services.queue_service import admit_eligible, place_in_queue, renumber_queue

STARTABLE = {OrderLocationStatus.NOT_STARTED, OrderLocationStatus.IN_QUEUE, OrderLocationStatus.PAUSED}
FINISHABLE = {OrderLocationStatus.IN_PROGRESS, OrderLocationStatus.PAUSED}
ACTIVE = FINISHABLE


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def max_quantity_for_total(total_quantity: int, location: Location) -> int:
    multiplier = Decimal(str(location.count_multiplier))
    return math.ceil(Decimal(total_quantity) * multiplier)


def effective_max_quantity(order: Order, location: Location) -> int:
    return max_quantity_for_total(order.total_quantity, location)


def _parse_quantity(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError('Completed quantity must be an integer', field='completedQuantity')
    return value


def _invalid(row: OrderLocation, action: str) -> InvalidTransition:
    return InvalidTransition(
        f'Cannot {action} while status is {row.status.value}',
        status=row.status.value,
        action=action,
    )


def _blocked(location: Location, eligibility: Eligibility) -> Blocked:
    return Blocked(
        f'Order cannot start at {location.name}: {eligibility.reason}',
        tier=eligibility.tier,
        reason=eligibility.reason,
    )


@guard_conflicts
def enqueue_location(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    user_id: int | None = None,
) -> OrderLocation:
    workflow = load_order_workflow(db, order_id)
    row = workflow.row(location_id)
    location = workflow.location(location_id)
    if row.status != OrderLocationStatus.NOT_STARTED:
        raise _invalid(row, 'enqueue')

    eligibility = workflow.eligibility(location_id)
    if not eligibility.eligible:
        raise _blocked(location, eligibility)

    place_in_queue(db, row, workflow.order)
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='queued',
        details=f'Order queued for processing at {location.name}',
    )
    admit_eligible(db, workflow, user_id=user_id)
    return row


@guard_conflicts
def start_location(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    user_id: int | None = None,
) -> OrderLocation:
    workflow = load_order_workflow(db, order_id)
    row = workflow.row(location_id)
    location = workflow.location(location_id)
    if row.status not in STARTABLE:
        raise _invalid(row, 'start')

    if row.status == OrderLocationStatus.NOT_STARTED:
        eligibility = workflow.eligibility(location_id)
        if not eligibility.eligible:
            raise _blocked(location, eligibility)

    was_queued = row.status == OrderLocationStatus.IN_QUEUE
    resumed = row.status == OrderLocationStatus.PAUSED
    row.status = OrderLocationStatus.IN_PROGRESS
    row.queue_position = None
    if row.started_at is None:
        row.started_at = _now()
    db.flush()

    if was_queued:
        renumber_queue(db, location_id)

    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='started',
        details=f'{"Resumed" if resumed else "Started"} processing at {location.name}',
    )
    queue_notification(db, order_id=order_id, location_id=location_id, event_type=EVENT_STARTED)
    admit_eligible(db, workflow, user_id=user_id)
    return row


@guard_conflicts
def pause_location(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    user_id: int | None = None,
) -> OrderLocation:
    workflow = load_order_workflow(db, order_id)
    row = workflow.row(location_id)
    location = workflow.location(location_id)
    if row.status != OrderLocationStatus.IN_PROGRESS:
        raise _invalid(row, 'pause')

    row.status = OrderLocationStatus.PAUSED
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='paused',
        details=f'Paused processing at {location.name}',
    )
    queue_notification(db, order_id=order_id, location_id=location_id, event_type=EVENT_PAUSED)
    return row


@guard_conflicts
def finish_location(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    completed_quantity: int,
    user_id: int | None = None,
) -> OrderLocation:
    """Mark a stage done, clamping the reported quantity into range."""
    quantity = _parse_quantity(completed_quantity)
    workflow = load_order_workflow(db, order_id)
    row = workflow.row(location_id)
    location = workflow.location(location_id)
    if row.status not in FINISHABLE:
        raise _invalid(row, 'finish')

    maximum = effective_max_quantity(workflow.order, location)
    recorded = maximum if location.no_count else min(max(quantity, 0), maximum)

    row.status = OrderLocationStatus.DONE
    row.completed_quantity = recorded
    row.queue_position = None
    row.completed_at = _now()
    db.flush()

    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='finished',
        details=f'Completed processing {recorded} units at {location.name}',
    )
    queue_notification(db, order_id=order_id, location_id=location_id, event_type=EVENT_FINISHED)

    admit_eligible(db, workflow, user_id=user_id)
    _mark_finished_if_complete(db, workflow)
    return row


def _mark_finished_if_complete(db: Session, workflow: OrderWorkflow) -> None:
    order = workflow.order
    if order.is_finished or not workflow.rows:
        return
    if all(row.status == OrderLocationStatus.DONE for row in workflow.rows.values()):
        order.is_finished = True
        db.flush()


@guard_conflicts
def update_location_quantity(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    completed_quantity: int,
    user_id: int | None = None,
) -> OrderLocation:
    """Record progress without changing status; out-of-range values are rejected."""
    quantity = _parse_quantity(completed_quantity)
    workflow = load_order_workflow(db, order_id)
    row = workflow.row(location_id)
    location = workflow.location(location_id)
    if row.status not in ACTIVE:
        raise _invalid(row, 'update quantity')
    if location.no_count:
        raise ValidationError(f'Quantity tracking is disabled at {location.name}', field='completedQuantity')

    maximum = effective_max_quantity(workflow.order, location)
    if quantity < 0 or quantity > maximum:
        raise QuantityOutOfRange(quantity, minimum=0, maximum=maximum)

    if row.completed_quantity == quantity:
        return row

    row.completed_quantity = quantity
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='updated_quantity',
        details=f'Updated completed quantity to {quantity} at {location.name}',
    )
    return row


def get_eligibility(db: Session, *, order_id: int, location_id: int) -> Eligibility:
    workflow = read_order_workflow(db, order_id)
    return workflow.eligibility(location_id)


def list_order_locations(db: Session, *, order_id: int) -> list[OrderLocation]:
    if db.get(Order, order_id) is None:
        raise NotFoundError(f'Order {order_id} not found', order_id=order_id)
    return db.execute(
        select(OrderLocation)
        .join(Location, Location.id == OrderLocation.location_id)
        .where(OrderLocation.order_id == order_id)
        .order_by(Location.used_order.asc(), Location.id.asc())
    ).scalars().all()


def list_order_locations_for_orders(db: Session, *, order_ids: list[int]) -> dict[int, list[OrderLocation]]:
    grouped: dict[int, list[OrderLocation]] = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return grouped
    rows = db.execute(
        select(OrderLocation)
        .join(Location, Location.id == OrderLocation.location_id)
        .where(OrderLocation.order_id.in_(order_ids))
        .order_by(OrderLocation.order_id.asc(), Location.used_order.asc(), Location.id.asc())
    ).scalars().all()
    for row in rows:
        grouped[row.order_id].append(row)
    return grouped


def list_upcoming(db: Session, *, location_id: int) -> list[dict]:
    """Not-started rows at a location that cannot start yet, with the failing tier."""
    location = db.get(Location, location_id)
    if location is None:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)

    candidates = db.execute(
        select(OrderLocation, Order)
        .join(Order, Order.id == OrderLocation.order_id)
        .where(
            OrderLocation.location_id == location_id,
            OrderLocation.status == OrderLocationStatus.NOT_STARTED,
            Order.is_shipped.is_(False),
        )
    ).all()
    if not candidates:
        return []

    order_ids = [order.id for _, order in candidates]
    siblings_by_order: dict[int, list[OrderLocation]] = {order_id: [] for order_id in order_ids}
    for sibling in db.execute(select(OrderLocation).where(OrderLocation.order_id.in_(order_ids))).scalars().all():
        siblings_by_order[sibling.order_id].append(sibling)
    location_ids = {sibling.location_id for rows in siblings_by_order.values() for sibling in rows}
    locations = db.execute(select(Location).where(Location.id.in_(location_ids))).scalars().all()

    upcoming = []
    for row, order in candidates:
        eligibility = is_eligible(order, location, siblings_by_order[order.id], locations)
        if eligibility.eligible:
            continue
        sort_key = (not order.rush, order.global_queue_position is None, order.global_queue_position or 0, order.id)
        upcoming.append(
            (
                sort_key,
                {
                    'order_location_id': row.id,
                    'order_id': order.id,
                    'order_number': order.order_number,
                    'global_queue_position': order.global_queue_position,
                    'rush': order.rush,
                    'tier': eligibility.tier,
                    'reason': eligibility.reason,
                },
            )
        )
    upcoming.sort(key=lambda pair: pair[0])
    return [item for _, item in upcoming]


def list_orders_awaiting_admission(db: Session, *, location_id: int) -> list[Order]:
    """Active orders still not started at a primary location."""
    location = db.get(Location, location_id)
    if location is None:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)
    if not location.is_primary:
        return []
    return db.execute(
        select(Order)
        .join(OrderLocation, OrderLocation.order_id == Order.id)
        .where(
            OrderLocation.location_id == location_id,
            OrderLocation.status == OrderLocationStatus.NOT_STARTED,
            Order.is_shipped.is_(False),
            Order.is_finished.is_(False),
        )
        .order_by(Order.due_date.asc(), Order.id.asc())
    ).scalars().all()


def serialize_order_location(row: OrderLocation) -> dict:
    return {
        'id': row.id,
        'order_id': row.order_id,
        'location_id': row.location_id,
        'status': row.status.value,
        'queue_position': row.queue_position,
        'completed_quantity': row.completed_quantity,
        'notes': row.notes,
        'started_at': row.started_at,
        'completed_at': row.completed_at,
    }
