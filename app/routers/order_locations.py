from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Principal, staff_access
from app.db import get_db
from app.dependencies import parse_int, read_json_body, require_field
from app.services.order_location_service import (
    finish_location,
    get_eligibility,
    pause_location,
    serialize_order_location,
    start_location,
    update_location_quantity,
)

router = APIRouter(prefix='/api/order-locations', tags=['order-locations'])


@router.post('/{order_id}/{location_id}/start')
def order_location_start(
    order_id: int,
    location_id: int,
    principal: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    row = start_location(db, order_id=order_id, location_id=location_id, user_id=principal.id)
    db.commit()
    return serialize_order_location(row)


@router.post('/{order_id}/{location_id}/pause')
def order_location_pause(
    order_id: int,
    location_id: int,
    principal: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    row = pause_location(db, order_id=order_id, location_id=location_id, user_id=principal.id)
    db.commit()
    return serialize_order_location(row)


@router.post('/{order_id}/{location_id}/finish')
def order_location_finish(
    order_id: int,
    location_id: int,
    principal: Principal = Depends(staff_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    row = finish_location(
        db,
        order_id=order_id,
        location_id=location_id,
        completed_quantity=parse_int(payload.get('completedQuantity', 0), field='completedQuantity'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_order_location(row)


@router.post('/{order_id}/{location_id}/update-quantity')
def order_location_update_quantity(
    order_id: int,
    location_id: int,
    principal: Principal = Depends(staff_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    row = update_location_quantity(
        db,
        order_id=order_id,
        location_id=location_id,
        completed_quantity=parse_int(require_field(payload, 'completedQuantity'), field='completedQuantity'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_order_location(row)


@router.get('/{order_id}/{location_id}/eligibility')
def order_location_eligibility(
    order_id: int,
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return get_eligibility(db, order_id=order_id, location_id=location_id).as_dict()
