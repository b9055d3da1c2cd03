from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Principal, management_access, staff_access
from app.db import get_db
from app.dependencies import parse_int, parse_optional_int, read_json_body, require_field
from app.errors import NotFoundError, ValidationError
from app.services.machine_assignment_service import (
    assign_machine,
    list_assignments_for_location,
    list_assignments_for_machine,
    serialize_assignment,
    unassign_machine,
    update_assignment_quantity,
)

router = APIRouter(prefix='/api/assignments', tags=['assignments'])


def _triple(payload: dict) -> dict:
    return {
        'order_id': parse_int(require_field(payload, 'orderId'), field='orderId'),
        'location_id': parse_int(require_field(payload, 'locationId'), field='locationId'),
        'machine_id': parse_int(require_field(payload, 'machineId'), field='machineId'),
    }


@router.get('')
def assignments_index(
    request: Request,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    location_id = parse_optional_int(request.query_params.get('location_id'), field='location_id')
    machine_id = parse_optional_int(request.query_params.get('machine_id'), field='machine_id')
    if machine_id is not None:
        return list_assignments_for_machine(db, machine_id=machine_id)
    if location_id is not None:
        return list_assignments_for_location(db, location_id=location_id)
    raise ValidationError('location_id or machine_id is required', field='location_id')


@router.post('', status_code=201)
def assignments_create(
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    assignment = assign_machine(
        db,
        **_triple(payload),
        assigned_quantity=parse_int(payload.get('assignedQuantity', 0), field='assignedQuantity'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_assignment(assignment)


@router.put('')
def assignments_update(
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    assignment = update_assignment_quantity(
        db,
        **_triple(payload),
        assigned_quantity=parse_int(require_field(payload, 'assignedQuantity'), field='assignedQuantity'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_assignment(assignment)


@router.delete('')
def assignments_delete(
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    triple = _triple(payload)
    if not unassign_machine(db, **triple, user_id=principal.id):
        raise NotFoundError('Machine assignment not found', **triple)
    db.commit()
    return {'deleted': True}
