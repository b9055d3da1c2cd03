from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Select, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ConcurrencyConflict, NotFoundError
from app.models import Location, Order, OrderLocation
from app.services.gating_service import Eligibility, is_eligible


@dataclass
class OrderWorkflow:
    """An order with its selected locations and order-location rows, loaded under lock."""

    order: Order
    locations: dict[int, Location]
    rows: dict[int, OrderLocation]

    def row(self, location_id: int) -> OrderLocation:
        row = self.rows.get(location_id)
        if row is None:
            raise NotFoundError(
                f'Order {self.order.id} is not routed through location {location_id}',
                order_id=self.order.id,
                location_id=location_id,
            )
        return row

    def location(self, location_id: int) -> Location:
        self.row(location_id)
        return self.locations[location_id]

    def eligibility(self, location_id: int) -> Eligibility:
        return is_eligible(
            self.order,
            self.location(location_id),
            self.rows.values(),
            self.locations,
        )


def locked(stmt: Select) -> Select:
    return stmt.with_for_update(nowait=settings.lock_nowait).execution_options(populate_existing=True)


def _run_locked(db: Session, stmt: Select):
    try:
        return db.execute(locked(stmt))
    except OperationalError as exc:
        if settings.lock_nowait:
            raise ConcurrencyConflict() from exc
        raise


def lock_order(db: Session, order_id: int) -> Order:
    order = _run_locked(db, select(Order).where(Order.id == order_id)).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_id} not found', order_id=order_id)
    return order


def lock_orders(db: Session, order_ids: list[int]) -> dict[int, Order]:
    if not order_ids:
        return {}
    rows = _run_locked(db, select(Order).where(Order.id.in_(order_ids)).order_by(Order.id.asc())).scalars().all()
    return {order.id: order for order in rows}


def lock_location(db: Session, location_id: int) -> Location:
    location = _run_locked(db, select(Location).where(Location.id == location_id)).scalar_one_or_none()
    if not location:
        raise NotFoundError(f'Location {location_id} not found', location_id=location_id)
    return location


def lock_location_rows(db: Session, location_id: int) -> list[OrderLocation]:
    return _run_locked(
        db,
        select(OrderLocation).where(OrderLocation.location_id == location_id).order_by(OrderLocation.id.asc()),
    ).scalars().all()


def load_order_workflow(db: Session, order_id: int) -> OrderWorkflow:
    """Lock the order, then its locations, then its order-location rows.

    Every writer takes locks in this sequence (orders, locations, order-locations)
    so two transactions never wait on each other in opposite directions.
    """
    order = lock_order(db, order_id)
    location_ids = db.execute(
        select(OrderLocation.location_id).where(OrderLocation.order_id == order_id)
    ).scalars().all()

    locations: dict[int, Location] = {}
    if location_ids:
        locations = {
            location.id: location
            for location in _run_locked(
                db, select(Location).where(Location.id.in_(location_ids)).order_by(Location.id.asc())
            ).scalars().all()
        }

    rows = _run_locked(
        db,
        select(OrderLocation).where(OrderLocation.order_id == order_id).order_by(OrderLocation.location_id.asc()),
    ).scalars().all()
    return OrderWorkflow(order=order, locations=locations, rows={row.location_id: row for row in rows})


def read_order_workflow(db: Session, order_id: int) -> OrderWorkflow:
    """Same shape as ``load_order_workflow`` without taking locks, for read-only views."""
    order = db.execute(select(Order).where(Order.id == order_id)).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_id} not found', order_id=order_id)
    rows = db.execute(select(OrderLocation).where(OrderLocation.order_id == order_id)).scalars().all()
    location_ids = [row.location_id for row in rows]
    locations = {}
    if location_ids:
        locations = {
            location.id: location
            for location in db.execute(select(Location).where(Location.id.in_(location_ids))).scalars().all()
        }
    return OrderWorkflow(order=order, locations=locations, rows={row.location_id: row for row in rows})
