from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer(), 'sqlite')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderLocationStatus(str, Enum):
    NOT_STARTED = 'not_started'
    IN_QUEUE = 'in_queue'
    IN_PROGRESS = 'in_progress'
    PAUSED = 'paused'
    DONE = 'done'


class Location(Base):
    __tablename__ = 'locations'
    __table_args__ = (
        UniqueConstraint('name', name='locations_name_key'),
        CheckConstraint('count_multiplier > 0', name='locations_count_multiplier_positive_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    used_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    skip_auto_queue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    count_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(10, 4), nullable=False, default=Decimal('1'), server_default='1'
    )
    no_count: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )


class Machine(Base):
    __tablename__ = 'machines'
    __table_args__ = (
        UniqueConstraint('machine_code', name='machines_machine_code_key'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    machine_code: Mapped[str] = mapped_column(Text, nullable=False)
    location_id: Mapped[int] = mapped_column(IdType, ForeignKey('locations.id', ondelete='CASCADE'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('order_number', name='orders_order_number_key'),
        CheckConstraint('total_quantity > 0', name='orders_total_quantity_positive_ck'),
        CheckConstraint(
            'shipped_quantity >= 0 AND shipped_quantity <= total_quantity',
            name='orders_shipped_quantity_range_ck',
        ),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    tbfos_number: Mapped[str | None] = mapped_column(Text)
    client: Mapped[str | None] = mapped_column(Text)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    is_finished: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    is_shipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    partially_shipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    shipped_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    global_queue_position: Mapped[int | None] = mapped_column(Integer)
    rush: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    rush_set_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}


class OrderLocation(Base):
    __tablename__ = 'order_locations'
    __table_args__ = (
        UniqueConstraint('order_id', 'location_id', name='order_locations_order_location_key'),
        CheckConstraint('completed_quantity >= 0', name='order_locations_completed_quantity_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_id: Mapped[int] = mapped_column(IdType, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    location_id: Mapped[int] = mapped_column(IdType, ForeignKey('locations.id'), nullable=False)
    status: Mapped[OrderLocationStatus] = mapped_column(
        SQLEnum(OrderLocationStatus, name='order_location_status'),
        nullable=False,
        default=OrderLocationStatus.NOT_STARTED,
        server_default='NOT_STARTED',
    )
    queue_position: Mapped[int | None] = mapped_column(Integer)
    completed_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}


class MachineAssignment(Base):
    __tablename__ = 'machine_assignments'
    __table_args__ = (
        UniqueConstraint('order_id', 'location_id', 'machine_id', name='machine_assignments_triple_key'),
        CheckConstraint('assigned_quantity >= 0', name='machine_assignments_quantity_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_id: Mapped[int] = mapped_column(IdType, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    location_id: Mapped[int] = mapped_column(IdType, ForeignKey('locations.id'), nullable=False)
    machine_id: Mapped[int] = mapped_column(IdType, ForeignKey('machines.id', ondelete='CASCADE'), nullable=False)
    assigned_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )


class AuditEntry(Base):
    __tablename__ = 'audit_trail'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_id: Mapped[int] = mapped_column(IdType, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger)
    location_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('locations.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )


class HelpRequest(Base):
    __tablename__ = 'help_requests'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_id: Mapped[int] = mapped_column(IdType, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    location_id: Mapped[int] = mapped_column(IdType, ForeignKey('locations.id'), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, server_default=func.now()
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
