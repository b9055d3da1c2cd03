from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationError, guard_conflicts
from app.models import AuditEntry, HelpRequest, Location, MachineAssignment, Order, OrderLocation, OrderLocationStatus
from app.services.audit_service import log_audit
from app.services.order_location_service import max_quantity_for_total
from app.services.order_workflow_service import load_order_workflow, lock_location_rows, lock_order, lock_orders
from app.services.queue_service import as_aware, admit_eligible, next_queue_position, renumber_queue

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
TEXT_FIELDS = ('tbfos_number', 'client', 'description', 'notes')
EDITABLE_FIELDS = ('order_number', 'due_date', 'total_quantity', *TEXT_FIELDS)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _require_positive_int(value, *, field: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{field} must be an integer', field=field)
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f'{field} must be {"zero or more" if allow_zero else "greater than zero"}', field=field)
    return value


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def get_order(db: Session, *, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError(f'Order {order_id} not found', order_id=order_id)
    return order


def _resolve_locations(db: Session, selected_location_ids: list[int] | None) -> list[Location]:
    if not selected_location_ids:
        # No explicit route means the order visits every registered stage.
        locations = db.execute(select(Location).order_by(Location.used_order.asc(), Location.id.asc())).scalars().all()
        if not locations:
            raise ValidationError('No locations are configured', field='selectedLocationIds')
        return locations

    unique_ids = list(dict.fromkeys(selected_location_ids))
    for location_id in unique_ids:
        if isinstance(location_id, bool) or not isinstance(location_id, int):
            raise ValidationError('Location ids must be integers', field='selectedLocationIds')
    found = {
        location.id: location
        for location in db.execute(select(Location).where(Location.id.in_(unique_ids))).scalars().all()
    }
    missing = [location_id for location_id in unique_ids if location_id not in found]
    if missing:
        raise NotFoundError(f'Unknown location ids: {missing}', location_ids=missing)
    return [found[location_id] for location_id in unique_ids]


@guard_conflicts
def create_order(
    db: Session,
    *,
    order_number: str,
    total_quantity: int,
    due_date: datetime,
    selected_location_ids: list[int] | None = None,
    client: str | None = None,
    tbfos_number: str | None = None,
    description: str | None = None,
    notes: str | None = None,
    global_queue_position: int | None = None,
    user_id: int | None = None,
) -> Order:
    order_number = _clean_text(order_number)
    if not order_number:
        raise ValidationError('Order number is required', field='orderNumber')
    _require_positive_int(total_quantity, field='totalQuantity')
    if not isinstance(due_date, datetime):
        raise ValidationError('Due date must be a timestamp', field='dueDate')
    if global_queue_position is not None:
        _require_positive_int(global_queue_position, field='globalQueuePosition')

    existing = db.execute(select(Order.id).where(Order.order_number == order_number)).scalar_one_or_none()
    if existing:
        raise ValidationError(f'Order number {order_number} already exists', field='orderNumber')

    locations = _resolve_locations(db, selected_location_ids)

    order = Order(
        order_number=order_number,
        total_quantity=total_quantity,
        due_date=due_date,
        client=_clean_text(client),
        tbfos_number=_clean_text(tbfos_number),
        description=_clean_text(description),
        notes=_clean_text(notes),
        created_by=user_id,
    )
    db.add(order)
    db.flush()
    db.add_all(
        [
            OrderLocation(order_id=order.id, location_id=location.id, status=OrderLocationStatus.NOT_STARTED)
            for location in locations
        ]
    )
    db.flush()
    log_audit(db, order_id=order.id, user_id=user_id, action='created', details=f'Order {order_number} created')

    if global_queue_position is not None:
        set_global_queue_position(db, order_id=order.id, position=global_queue_position, user_id=user_id)
    else:
        admit_eligible(db, load_order_workflow(db, order.id), user_id=user_id)
    return order


def _global_sort_key(order: Order) -> tuple:
    if order.rush:
        return (0, as_aware(order.rush_set_at), 0, as_aware(order.created_at), order.id)
    position = order.global_queue_position
    return (1, position is None, position or 0, as_aware(order.created_at), order.id)


def get_global_queue(db: Session) -> list[Order]:
    """Globally admitted, unshipped orders: rush first by rush time, then by position."""
    orders = db.execute(
        select(Order).where(Order.is_shipped.is_(False), Order.global_queue_position.is_not(None))
    ).scalars().all()
    return sorted(orders, key=_global_sort_key)


def _lock_global_queue(db: Session, include_order_id: int) -> list[Order]:
    queued_ids = db.execute(
        select(Order.id).where(Order.is_shipped.is_(False), Order.global_queue_position.is_not(None))
    ).scalars().all()
    locked = lock_orders(db, sorted(set(queued_ids) | {include_order_id}))
    if include_order_id not in locked:
        raise NotFoundError(f'Order {include_order_id} not found', order_id=include_order_id)
    return [order for order in locked.values() if not order.is_shipped and order.global_queue_position is not None]


def _write_global_positions(ordered: list[Order]) -> None:
    for index, order in enumerate(ordered, start=1):
        if order.global_queue_position != index:
            order.global_queue_position = index


@guard_conflicts
def set_global_queue_position(
    db: Session,
    *,
    order_id: int,
    position: int,
    user_id: int | None = None,
) -> Order:
    """Admit an order to the global queue or move it within the non-rush block.

    Rush orders always lead the queue ordered by rush time; a non-rush order may
    not be placed ahead of them.
    """
    _require_positive_int(position, field='position')
    queued = _lock_global_queue(db, order_id)
    order = lock_order(db, order_id)
    if order.is_shipped:
        raise ValidationError('Shipped orders cannot be queued', field='orderId')

    ordered = sorted((o for o in queued if o.id != order_id), key=_global_sort_key)
    rush_block = [o for o in ordered if o.rush]
    normal_block = [o for o in ordered if not o.rush]

    if order.rush:
        rush_block = sorted(rush_block + [order], key=_global_sort_key)
        applied = rush_block.index(order) + 1
    else:
        if position <= len(rush_block):
            raise ValidationError(
                'Cannot move non-rush order ahead of rush orders',
                field='position',
                min_allowed_position=len(rush_block) + 1,
            )
        relative = min(position - len(rush_block), len(normal_block) + 1)
        normal_block.insert(relative - 1, order)
        applied = len(rush_block) + relative

    _write_global_positions(rush_block + normal_block)
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        action='global_queue_set',
        details=f'Set global queue position to {applied}',
    )
    admit_eligible(db, load_order_workflow(db, order_id), user_id=user_id)
    return order


def _apply_rush(db: Session, *, order_id: int, rush: bool, user_id: int | None) -> Order:
    queued = _lock_global_queue(db, order_id)
    workflow = load_order_workflow(db, order_id)
    order = workflow.order
    if order.rush == rush:
        return order

    order.rush = rush
    order.rush_set_at = _now() if rush else None

    if order.global_queue_position is not None and not order.is_shipped:
        others = sorted((o for o in queued if o.id != order_id), key=_global_sort_key)
        if rush:
            ordered = sorted(others + [order], key=_global_sort_key)
        else:
            # An unrushed order goes to the back of the normal block.
            ordered = [o for o in others if o.rush] + [o for o in others if not o.rush] + [order]
        _write_global_positions(ordered)

    for location_id, row in workflow.rows.items():
        if row.status != OrderLocationStatus.IN_QUEUE:
            continue
        if rush:
            row.queue_position = None
        else:
            row.queue_position = next_queue_position(db, location_id)
        db.flush()
        renumber_queue(db, location_id)

    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        action='rush' if rush else 'unrush',
        details=f'Order marked RUSH at {order.rush_set_at.isoformat()}' if rush else 'Order rush cleared',
    )
    return order


@guard_conflicts
def set_rush(db: Session, *, order_id: int, user_id: int | None = None) -> Order:
    return _apply_rush(db, order_id=order_id, rush=True, user_id=user_id)


@guard_conflicts
def clear_rush(db: Session, *, order_id: int, user_id: int | None = None) -> Order:
    return _apply_rush(db, order_id=order_id, rush=False, user_id=user_id)


@guard_conflicts
def ship_order(db: Session, *, order_id: int, shipped_quantity: int, user_id: int | None = None) -> Order:
    """Record the cumulative quantity shipped so far."""
    _require_positive_int(shipped_quantity, field='quantity', allow_zero=True)
    order = lock_order(db, order_id)
    if shipped_quantity > order.total_quantity:
        raise ValidationError(
            f'Shipped quantity cannot exceed the order total of {order.total_quantity}',
            field='quantity',
        )

    order.shipped_quantity = shipped_quantity
    order.is_shipped = shipped_quantity == order.total_quantity
    order.partially_shipped = 0 < shipped_quantity < order.total_quantity
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        action='shipped',
        details=f'Shipped {shipped_quantity} units of order {order.order_number}',
    )
    return order


def _validate_page(page: int, page_size: int) -> None:
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise ValidationError('Invalid page number', field='page')
    if isinstance(page_size, bool) or not isinstance(page_size, int) or not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f'Page size must be between 1 and {MAX_PAGE_SIZE}', field='pageSize')


def _paginate(db: Session, conditions: list, *, page: int, page_size: int) -> dict:
    _validate_page(page, page_size)
    total_items = db.execute(select(func.count()).select_from(Order).where(*conditions)).scalar_one()
    orders = db.execute(
        select(Order)
        .where(*conditions)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    ).scalars().all()
    return {
        'data': orders,
        'pagination': {
            'page': page,
            'page_size': page_size,
            'total_items': total_items,
            'total_pages': math.ceil(total_items / page_size),
        },
    }


def list_orders(
    db: Session,
    *,
    include_shipped: bool = False,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """Newest orders first, one page at a time."""
    conditions = [] if include_shipped else [Order.is_shipped.is_(False)]
    return _paginate(db, conditions, page=page, page_size=page_size)


def search_orders(
    db: Session,
    *,
    query: str | None,
    include_shipped: bool = False,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """Case-insensitive substring match on order number, client, TBFOS number and description."""
    conditions = [] if include_shipped else [Order.is_shipped.is_(False)]
    term = (query or '').strip()
    if term:
        conditions.append(
            or_(
                *(
                    column.icontains(term, autoescape=True)
                    for column in (Order.order_number, Order.client, Order.tbfos_number, Order.description)
                )
            )
        )
    return _paginate(db, conditions, page=page, page_size=page_size)


def _text_change(value, *, field: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f'{field} must be text', field=field)
    return _clean_text(value)


def _check_total_against_progress(order: Order, workflow, total_quantity: int) -> None:
    if total_quantity < order.shipped_quantity:
        raise ValidationError(
            f'Total quantity cannot be below the {order.shipped_quantity} units already shipped',
            field='totalQuantity',
        )
    for location_id, row in workflow.rows.items():
        location = workflow.locations[location_id]
        maximum = max_quantity_for_total(total_quantity, location)
        if row.completed_quantity > maximum:
            raise ValidationError(
                f'{location.name} has recorded {row.completed_quantity} units, above the new maximum of {maximum}',
                field='totalQuantity',
                location_id=location_id,
                completed_quantity=row.completed_quantity,
                maximum=maximum,
            )


@guard_conflicts
def update_order(db: Session, *, order_id: int, changes: dict, user_id: int | None = None) -> Order:
    """Edit the descriptive fields and total of an order.

    Routing, queue placement, rush and shipping have their own operations and are
    not editable here.
    """
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError(f'Unknown order fields: {", ".join(unknown)}', field=unknown[0])

    workflow = load_order_workflow(db, order_id)
    order = workflow.order

    if 'order_number' in changes:
        order_number = _text_change(changes['order_number'], field='orderNumber')
        if not order_number:
            raise ValidationError('Order number is required', field='orderNumber')
        clash = db.execute(
            select(Order.id).where(Order.order_number == order_number, Order.id != order_id)
        ).scalar_one_or_none()
        if clash is not None:
            raise ValidationError(f'Order number {order_number} already exists', field='orderNumber')
        order.order_number = order_number

    if 'due_date' in changes:
        if not isinstance(changes['due_date'], datetime):
            raise ValidationError('Due date must be a timestamp', field='dueDate')
        order.due_date = changes['due_date']

    if 'total_quantity' in changes:
        total_quantity = _require_positive_int(changes['total_quantity'], field='totalQuantity')
        _check_total_against_progress(order, workflow, total_quantity)
        order.total_quantity = total_quantity
        if order.shipped_quantity:
            order.is_shipped = order.shipped_quantity == total_quantity
            order.partially_shipped = order.shipped_quantity < total_quantity

    for field in TEXT_FIELDS:
        if field in changes:
            setattr(order, field, _text_change(changes[field], field=field))

    db.flush()
    log_audit(db, order_id=order_id, user_id=user_id, action='updated', details=f'Order {order.order_number} updated')
    return order


@guard_conflicts
def delete_order(db: Session, *, order_id: int, user_id: int | None = None) -> None:
    """Remove an order with its stages, assignments, help requests and audit trail.

    The queues it sat in are renumbered so no gaps are left behind.
    """
    queued = _lock_global_queue(db, order_id)
    workflow = load_order_workflow(db, order_id)
    queued_location_ids = sorted(
        location_id for location_id, row in workflow.rows.items() if row.status == OrderLocationStatus.IN_QUEUE
    )
    for location_id in queued_location_ids:
        lock_location_rows(db, location_id)

    order_number = workflow.order.order_number
    for model in (MachineAssignment, HelpRequest, AuditEntry, OrderLocation):
        db.execute(delete(model).where(model.order_id == order_id))
    db.delete(workflow.order)
    db.flush()

    for location_id in queued_location_ids:
        renumber_queue(db, location_id)
    _write_global_positions(sorted((o for o in queued if o.id != order_id), key=_global_sort_key))
    db.flush()
    logger.info('Order %s (%s) deleted by user=%s', order_id, order_number, user_id)


def serialize_order(order: Order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'tbfos_number': order.tbfos_number,
        'client': order.client,
        'due_date': order.due_date,
        'total_quantity': order.total_quantity,
        'description': order.description,
        'notes': order.notes,
        'is_finished': order.is_finished,
        'is_shipped': order.is_shipped,
        'partially_shipped': order.partially_shipped,
        'shipped_quantity': order.shipped_quantity,
        'global_queue_position': order.global_queue_position,
        'rush': order.rush,
        'rush_set_at': order.rush_set_at,
        'created_at': order.created_at,
    }
