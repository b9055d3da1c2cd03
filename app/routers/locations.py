from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Principal, admin_access, staff_access
from app.db import get_db
from app.dependencies import parse_int, read_json_body, require_field
from app.services.machine_assignment_service import list_assignments_for_location, list_assignments_for_machine
from app.services.registry_service import (
    create_location,
    create_machine,
    list_locations,
    list_machines,
    serialize_location,
    serialize_machine,
)

router = APIRouter(prefix='/api', tags=['locations'])


@router.get('/locations')
def locations_index(
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_location(location) for location in list_locations(db)]


@router.post('/locations', status_code=201)
def locations_create(
    _: Principal = Depends(admin_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    location = create_location(
        db,
        name=require_field(payload, 'name'),
        used_order=parse_int(require_field(payload, 'usedOrder'), field='usedOrder'),
        is_primary=bool(payload.get('isPrimary', False)),
        skip_auto_queue=bool(payload.get('skipAutoQueue', False)),
        count_multiplier=payload.get('countMultiplier', '1'),
        no_count=bool(payload.get('noCount', False)),
    )
    db.commit()
    return serialize_location(location)


@router.get('/locations/{location_id}/machines')
def location_machines(
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_machine(machine) for machine in list_machines(db, location_id=location_id)]


@router.get('/locations/{location_id}/assignments')
def location_assignments(
    location_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return list_assignments_for_location(db, location_id=location_id)


@router.get('/machines')
def machines_index(
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_machine(machine) for machine in list_machines(db)]


@router.post('/machines', status_code=201)
def machines_create(
    _: Principal = Depends(admin_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    machine = create_machine(
        db,
        name=require_field(payload, 'name'),
        machine_code=require_field(payload, 'machineCode'),
        location_id=parse_int(require_field(payload, 'locationId'), field='locationId'),
    )
    db.commit()
    return serialize_machine(machine)


@router.get('/machines/{machine_id}/assignments')
def machine_assignments(
    machine_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return list_assignments_for_machine(db, machine_id=machine_id)
