from __future__ import annotations

from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationError
from app.models import Location, Machine


def _parse_multiplier(value) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError('Count multiplier must be a number', field='countMultiplier')
    try:
        multiplier = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError('Count multiplier must be a number', field='countMultiplier') from exc
    if not multiplier.is_finite() or multiplier <= 0:
        raise ValidationError('Count multiplier must be greater than zero', field='countMultiplier')
    return multiplier


def list_locations(db: Session) -> list[Location]:
    return db.execute(select(Location).order_by(Location.used_order.asc(), Location.id.asc())).scalars().all()


def get_location(db: Session, *, location_id: int) -> Location:
    location = db.get(Location, location_id)
    if location is None:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)
    return location


def create_location(
    db: Session,
    *,
    name: str,
    used_order: int,
    is_primary: bool = False,
    skip_auto_queue: bool = False,
    count_multiplier=Decimal('1'),
    no_count: bool = False,
) -> Location:
    name = (name or '').strip()
    if not name:
        raise ValidationError('Location name is required', field='name')
    if isinstance(used_order, bool) or not isinstance(used_order, int):
        raise ValidationError('Used order must be an integer', field='usedOrder')
    multiplier = _parse_multiplier(count_multiplier)

    existing = db.execute(select(Location.id).where(Location.name == name)).scalar_one_or_none()
    if existing:
        raise ValidationError(f'Location {name} already exists', field='name')

    location = Location(
        name=name,
        used_order=used_order,
        is_primary=bool(is_primary),
        skip_auto_queue=bool(skip_auto_queue),
        count_multiplier=multiplier,
        no_count=bool(no_count),
    )
    db.add(location)
    db.flush()
    return location


def list_machines(db: Session, *, location_id: int | None = None) -> list[Machine]:
    query = select(Machine).order_by(Machine.machine_code.asc())
    if location_id is not None:
        get_location(db, location_id=location_id)
        query = query.where(Machine.location_id == location_id)
    return db.execute(query).scalars().all()


def create_machine(db: Session, *, name: str, machine_code: str, location_id: int) -> Machine:
    name = (name or '').strip()
    machine_code = (machine_code or '').strip()
    if not name:
        raise ValidationError('Machine name is required', field='name')
    if not machine_code:
        raise ValidationError('Machine code is required', field='machineCode')
    get_location(db, location_id=location_id)

    existing = db.execute(select(Machine.id).where(Machine.machine_code == machine_code)).scalar_one_or_none()
    if existing:
        raise ValidationError(f'Machine code {machine_code} already exists', field='machineCode')

    machine = Machine(name=name, machine_code=machine_code, location_id=location_id)
    db.add(machine)
    db.flush()
    return machine


def serialize_location(location: Location) -> dict:
    return {
        'id': location.id,
        'name': location.name,
        'used_order': location.used_order,
        'is_primary': location.is_primary,
        'skip_auto_queue': location.skip_auto_queue,
        'count_multiplier': str(location.count_multiplier),
        'no_count': location.no_count,
    }


def serialize_machine(machine: Machine) -> dict:
    return {
        'id': machine.id,
        'name': machine.name,
        'machine_code': machine.machine_code,
        'location_id': machine.location_id,
    }
