from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationError, guard_conflicts
from app.models import Location, Order, OrderLocation, OrderLocationStatus
from app.services.audit_service import log_audit
from app.services.order_workflow_service import (
    OrderWorkflow,
    load_order_workflow,
    lock_location,
    lock_location_rows,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

QueueEntry = tuple[OrderLocation, Order]


def as_aware(value: datetime | None) -> datetime:
    # SQLite hands back naive timestamps; PostgreSQL aware ones.
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def queue_sort_key(row: OrderLocation, order: Order) -> tuple:
    if order.rush:
        return (0, as_aware(order.rush_set_at), 0, 0, as_aware(order.created_at), row.id)
    position = row.queue_position
    return (1, _EPOCH, position is None, position or 0, as_aware(order.created_at), row.id)


def sort_queue(entries: list[QueueEntry]) -> list[QueueEntry]:
    return sorted(entries, key=lambda entry: queue_sort_key(*entry))


def _queue_entries(db: Session, location_id: int) -> list[QueueEntry]:
    rows = db.execute(
        select(OrderLocation, Order)
        .join(Order, Order.id == OrderLocation.order_id)
        .where(
            OrderLocation.location_id == location_id,
            OrderLocation.status == OrderLocationStatus.IN_QUEUE,
        )
    ).all()
    return [(row, order) for row, order in rows]


def get_location_queue(db: Session, *, location_id: int) -> list[QueueEntry]:
    if db.get(Location, location_id) is None:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)
    return sort_queue(_queue_entries(db, location_id))


def _apply_positions(ordered: list[QueueEntry]) -> None:
    position = 0
    for row, order in ordered:
        if order.rush:
            target = None
        else:
            position += 1
            target = position
        if row.queue_position != target:
            row.queue_position = target


def renumber_queue(db: Session, location_id: int) -> list[QueueEntry]:
    """Rewrite non-rush positions as 1..K in queue order; rush rows carry no position.

    The caller must hold the location lock.
    """
    ordered = sort_queue(_queue_entries(db, location_id))
    _apply_positions(ordered)
    return ordered


def next_queue_position(db: Session, location_id: int) -> int:
    positions = [
        row.queue_position
        for row, order in _queue_entries(db, location_id)
        if not order.rush and row.queue_position is not None
    ]
    return max(positions, default=0) + 1


def place_in_queue(db: Session, row: OrderLocation, order: Order) -> None:
    """Move a row into ``in_queue`` at the trailing end of the non-rush ordering."""
    row.queue_position = None if order.rush else next_queue_position(db, row.location_id)
    row.status = OrderLocationStatus.IN_QUEUE
    db.flush()


def admit_eligible(db: Session, workflow: OrderWorkflow, *, user_id: int | None = None) -> list[OrderLocation]:
    """Auto-enqueue every not-started stage whose gating is now satisfied.

    Runs to a fixpoint because a stage entering the queue counts as started for
    the stages after it.
    """
    admitted: list[OrderLocation] = []
    changed = True
    while changed:
        changed = False
        for location_id in sorted(workflow.rows, key=lambda lid: (workflow.locations[lid].used_order, lid)):
            row = workflow.rows[location_id]
            location = workflow.locations[location_id]
            if row.status != OrderLocationStatus.NOT_STARTED or location.skip_auto_queue:
                continue
            if not workflow.eligibility(location_id).eligible:
                continue
            place_in_queue(db, row, workflow.order)
            log_audit(
                db,
                order_id=workflow.order.id,
                user_id=user_id,
                location_id=location_id,
                action='queued',
                details=f'Automatically queued at {location.name}',
            )
            logger.debug('Admitted order %s into queue at location %s', workflow.order.id, location_id)
            admitted.append(row)
            changed = True
    return admitted


@guard_conflicts
def reorder_queue(
    db: Session,
    *,
    location_id: int,
    order_id: int,
    position: int,
    user_id: int | None = None,
) -> list[QueueEntry]:
    if isinstance(position, bool) or not isinstance(position, int) or position < 1:
        raise ValidationError('Position must be a positive integer', field='position')

    location = lock_location(db, location_id)
    lock_location_rows(db, location_id)
    entries = _queue_entries(db, location_id)

    target = next((entry for entry in entries if entry[1].id == order_id), None)
    if target is None:
        raise NotFoundError(
            f'Order {order_id} is not in the queue at {location.name}', order_id=order_id, location_id=location_id
        )
    if target[1].rush:
        raise ValidationError('Rush orders are ordered by rush time and cannot be moved', field='orderId')

    ordered = sort_queue(entries)
    rush_entries = [entry for entry in ordered if entry[1].rush]
    normal_entries = [entry for entry in ordered if not entry[1].rush and entry[1].id != order_id]
    clamped = min(position, len(normal_entries) + 1)
    normal_entries.insert(clamped - 1, target)

    result = rush_entries + normal_entries
    _apply_positions(result)
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='queue_reordered',
        details=f'Moved to position {clamped} at {location.name}',
    )
    return result


@guard_conflicts
def recalculate_order(db: Session, *, order_id: int, user_id: int | None = None) -> int:
    return len(admit_eligible(db, load_order_workflow(db, order_id), user_id=user_id))


@guard_conflicts
def recalculate_location(db: Session, *, location_id: int) -> int:
    lock_location(db, location_id)
    lock_location_rows(db, location_id)
    ordered = renumber_queue(db, location_id)
    db.flush()
    return len(ordered)


def recalculate_all_queues(
    db: Session,
    *,
    user_id: int | None = None,
    after_step: Callable[[], None] | None = None,
) -> dict:
    """Admit every eligible stage of unshipped orders, then renumber each location queue.

    Each order and each location is its own step so a caller committing through
    ``after_step`` never holds more than one order's locks at a time.
    """
    order_ids = db.execute(
        select(Order.id)
        .join(OrderLocation, OrderLocation.order_id == Order.id)
        .where(Order.is_shipped.is_(False), OrderLocation.status == OrderLocationStatus.NOT_STARTED)
        .distinct()
        .order_by(Order.id.asc())
    ).scalars().all()
    location_ids = db.execute(select(Location.id).order_by(Location.id.asc())).scalars().all()

    admitted = 0
    for order_id in order_ids:
        admitted += recalculate_order(db, order_id=order_id, user_id=user_id)
        if after_step:
            after_step()

    queued = 0
    for location_id in location_ids:
        queued += recalculate_location(db, location_id=location_id)
        if after_step:
            after_step()

    logger.info(
        'Queue sweep admitted %s stages across %s orders; %s entries in %s location queues',
        admitted,
        len(order_ids),
        queued,
        len(location_ids),
    )
    return {
        'orders_checked': len(order_ids),
        'admitted': admitted,
        'locations_renumbered': len(location_ids),
        'queued_entries': queued,
    }


def serialize_queue_entry(entry: QueueEntry) -> dict:
    row, order = entry
    return {
        'order_location_id': row.id,
        'order_id': order.id,
        'order_number': order.order_number,
        'location_id': row.location_id,
        'queue_position': row.queue_position,
        'rush': order.rush,
        'rush_set_at': order.rush_set_at,
        'due_date': order.due_date,
        'total_quantity': order.total_quantity,
    }
