from __future__ import annotations

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ConcurrencyConflict, NotFoundError, ValidationError, guard_conflicts
from app.models import Location, Machine, MachineAssignment, Order, OrderLocation
from app.services.audit_service import log_audit
from app.services.order_workflow_service import lock_order


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError('Assigned quantity must be an integer', field='assignedQuantity')
    if quantity < 0:
        raise ValidationError('Assigned quantity cannot be negative', field='assignedQuantity')
    return quantity


def _triple_filter(order_id: int, location_id: int, machine_id: int):
    return and_(
        MachineAssignment.order_id == order_id,
        MachineAssignment.location_id == location_id,
        MachineAssignment.machine_id == machine_id,
    )


def _get_assignment(db: Session, *, order_id: int, location_id: int, machine_id: int) -> MachineAssignment | None:
    return db.execute(
        select(MachineAssignment).where(_triple_filter(order_id, location_id, machine_id))
    ).scalar_one_or_none()


def _check_routing(db: Session, *, order_id: int, location_id: int, machine_id: int) -> Machine:
    machine = db.get(Machine, machine_id)
    if machine is None:
        raise NotFoundError(f'Machine {machine_id} not found', machine_id=machine_id)
    if machine.location_id != location_id:
        raise ValidationError('Machine is not in the specified location', field='machineId')
    routed = db.execute(
        select(OrderLocation.id).where(OrderLocation.order_id == order_id, OrderLocation.location_id == location_id)
    ).scalar_one_or_none()
    if routed is None:
        raise ValidationError('Order is not routed through this location', field='locationId')
    return machine


@guard_conflicts
def assign_machine(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    machine_id: int,
    assigned_quantity: int = 0,
    user_id: int | None = None,
) -> MachineAssignment:
    """Create or overwrite the planned quantity for an (order, location, machine) triple.

    Quantities are advisory; nothing checks them against the order's total or the
    other machines at the location.
    """
    quantity = _validate_quantity(assigned_quantity)
    lock_order(db, order_id)
    machine = _check_routing(db, order_id=order_id, location_id=location_id, machine_id=machine_id)

    assignment = _get_assignment(db, order_id=order_id, location_id=location_id, machine_id=machine_id)
    if assignment is None:
        assignment = MachineAssignment(
            order_id=order_id,
            location_id=location_id,
            machine_id=machine_id,
            assigned_quantity=quantity,
        )
        db.add(assignment)
    elif assignment.assigned_quantity != quantity:
        assignment.assigned_quantity = quantity
    try:
        db.flush()
    except IntegrityError as exc:
        # Another writer inserted the same triple first.
        raise ConcurrencyConflict() from exc

    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='machine_assigned',
        details=f'Assigned {quantity} units to machine {machine.machine_code}',
    )
    return assignment


@guard_conflicts
def update_assignment_quantity(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    machine_id: int,
    assigned_quantity: int,
    user_id: int | None = None,
) -> MachineAssignment:
    quantity = _validate_quantity(assigned_quantity)
    lock_order(db, order_id)
    assignment = _get_assignment(db, order_id=order_id, location_id=location_id, machine_id=machine_id)
    if assignment is None:
        raise NotFoundError(
            'Machine assignment not found',
            order_id=order_id,
            location_id=location_id,
            machine_id=machine_id,
        )
    assignment.assigned_quantity = quantity
    db.flush()
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='assignment_updated',
        details=f'Updated machine {machine_id} assignment to {quantity} units',
    )
    return assignment


@guard_conflicts
def unassign_machine(
    db: Session,
    *,
    order_id: int,
    location_id: int,
    machine_id: int,
    user_id: int | None = None,
) -> bool:
    lock_order(db, order_id)
    removed = db.execute(
        delete(MachineAssignment).where(_triple_filter(order_id, location_id, machine_id))
    ).rowcount
    if not removed:
        return False
    log_audit(
        db,
        order_id=order_id,
        user_id=user_id,
        location_id=location_id,
        action='machine_unassigned',
        details=f'Removed machine {machine_id} assignment',
    )
    return True


def list_assignments_for_location(db: Session, *, location_id: int) -> list[dict]:
    if db.get(Location, location_id) is None:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)
    rows = db.execute(
        select(MachineAssignment, Order.order_number, Machine.machine_code, Machine.name)
        .join(Order, Order.id == MachineAssignment.order_id)
        .join(Machine, Machine.id == MachineAssignment.machine_id)
        .where(MachineAssignment.location_id == location_id)
        .order_by(Machine.machine_code.asc(), MachineAssignment.id.asc())
    ).all()
    return [
        {
            **serialize_assignment(assignment),
            'order_number': order_number,
            'machine_code': machine_code,
            'machine_name': machine_name,
        }
        for assignment, order_number, machine_code, machine_name in rows
    ]


def list_assignments_for_machine(db: Session, *, machine_id: int) -> list[dict]:
    if db.get(Machine, machine_id) is None:
        raise NotFoundError(f'Machine {machine_id} not found', machine_id=machine_id)
    rows = db.execute(
        select(MachineAssignment, Order.order_number, Location.name)
        .join(Order, Order.id == MachineAssignment.order_id)
        .join(Location, Location.id == MachineAssignment.location_id)
        .where(MachineAssignment.machine_id == machine_id)
        .order_by(MachineAssignment.assigned_at.asc(), MachineAssignment.id.asc())
    ).all()
    return [
        {
            **serialize_assignment(assignment),
            'order_number': order_number,
            'location_name': location_name,
        }
        for assignment, order_number, location_name in rows
    ]


def serialize_assignment(assignment: MachineAssignment) -> dict:
    return {
        'id': assignment.id,
        'order_id': assignment.order_id,
        'location_id': assignment.location_id,
        'machine_id': assignment.machine_id,
        'assigned_quantity': assignment.assigned_quantity,
        'assigned_at': assignment.assigned_at,
    }
