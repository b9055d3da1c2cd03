from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Principal, admin_access, management_access, staff_access
from app.db import get_db
from app.dependencies import parse_int, read_json_body, require_field
from app.services.order_location_service import (
    enqueue_location,
    list_orders_awaiting_admission,
    list_upcoming,
    serialize_order_location,
)
from app.services.order_service import get_global_queue, serialize_order, set_global_queue_position
from app.services.queue_service import (
    get_location_queue,
    recalculate_all_queues,
    reorder_queue,
    serialize_queue_entry,
)

router = APIRouter(prefix='/api/queue', tags=['queue'])


@router.get('/global')
def global_queue(
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_order(order) for order in get_global_queue(db)]


@router.post('/global/{order_id}')
def global_queue_set(
    order_id: int,
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    order = set_global_queue_position(
        db,
        order_id=order_id,
        position=parse_int(require_field(payload, 'position'), field='position'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_order(order)


@router.get('/location/{location_id}')
def location_queue(
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_queue_entry(entry) for entry in get_location_queue(db, location_id=location_id)]


@router.post('/location/{location_id}')
def location_enqueue(
    location_id: int,
    principal: Principal = Depends(staff_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    row = enqueue_location(
        db,
        order_id=parse_int(require_field(payload, 'orderId'), field='orderId'),
        location_id=location_id,
        user_id=principal.id,
    )
    db.commit()
    return serialize_order_location(row)


@router.post('/location/{location_id}/reorder')
def location_reorder(
    location_id: int,
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    entries = reorder_queue(
        db,
        location_id=location_id,
        order_id=parse_int(require_field(payload, 'orderId'), field='orderId'),
        position=parse_int(require_field(payload, 'position'), field='position'),
        user_id=principal.id,
    )
    db.commit()
    return [serialize_queue_entry(entry) for entry in entries]


@router.get('/location/{location_id}/upcoming')
def location_upcoming(
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return list_upcoming(db, location_id=location_id)


@router.get('/location/{location_id}/awaiting-admission')
def location_awaiting_admission(
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_order(order) for order in list_orders_awaiting_admission(db, location_id=location_id)]


@router.post('/recalculate')
def queues_recalculate(
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    summary = recalculate_all_queues(db, user_id=principal.id, after_step=db.commit)
    db.commit()
    return summary
