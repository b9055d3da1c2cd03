import argparse
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import Base, Location, Machine, Order
from app.services.order_service import create_order, set_global_queue_position
from app.services.registry_service import create_location, create_machine

DEMO_LOCATIONS = [
    # name, used_order, is_primary, skip_auto_queue, count_multiplier, no_count
    ('Cutting', 1, True, False, '1', False),
    ('Sewing', 2, False, False, '1', False),
    ('Embroidery', 2, False, True, '1', False),
    ('Pressing', 3, False, False, '0.5', False),
    ('Packing', 4, False, False, '1', True),
]

DEMO_MACHINES = [
    ('Cutter 1', 'CUT-01', 'Cutting'),
    ('Cutter 2', 'CUT-02', 'Cutting'),
    ('Juki 1', 'SEW-01', 'Sewing'),
    ('Juki 2', 'SEW-02', 'Sewing'),
    ('Tajima 6-head', 'EMB-01', 'Embroidery'),
    ('Steam Press', 'PRS-01', 'Pressing'),
]

DEMO_ORDERS = [
    # order number, client, quantity, due in days, stages, global position
    ('SO-1001', 'Harbor Outfitters', 120, 7, ['Cutting', 'Sewing', 'Pressing', 'Packing'], 1),
    ('SO-1002', 'Northside Athletics', 60, 10, ['Cutting', 'Sewing', 'Embroidery', 'Packing'], 2),
    ('SO-1003', 'Maple Street Cafe', 40, 14, ['Cutting', 'Sewing', 'Packing'], None),
    ('SO-1004', 'Riverbend School', 250, 21, ['Sewing', 'Pressing', 'Packing'], None),
]


def seed() -> None:
    with SessionLocal() as db:
        locations = {location.name: location for location in db.execute(select(Location)).scalars().all()}
        for name, used_order, is_primary, skip_auto_queue, multiplier, no_count in DEMO_LOCATIONS:
            if name in locations:
                continue
            locations[name] = create_location(
                db,
                name=name,
                used_order=used_order,
                is_primary=is_primary,
                skip_auto_queue=skip_auto_queue,
                count_multiplier=multiplier,
                no_count=no_count,
            )

        existing_codes = set(db.execute(select(Machine.machine_code)).scalars().all())
        for name, code, location_name in DEMO_MACHINES:
            if code not in existing_codes:
                create_machine(db, name=name, machine_code=code, location_id=locations[location_name].id)
        db.commit()

        due_base = datetime.now(tz=timezone.utc).replace(hour=17, minute=0, second=0, microsecond=0)
        for order_number, client, quantity, due_days, stages, position in DEMO_ORDERS:
            order = db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()
            if not order:
                order = create_order(
                    db,
                    order_number=order_number,
                    client=client,
                    total_quantity=quantity,
                    due_date=due_base + timedelta(days=due_days),
                    selected_location_ids=[locations[stage].id for stage in stages],
                )
                db.commit()
            if position is not None and order.global_queue_position is None:
                set_global_queue_position(db, order_id=order.id, position=position)
                db.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description='Insert demo locations, machines and orders.')
    parser.add_argument(
        '--create-tables',
        action='store_true',
        help='Create any missing tables before seeding.',
    )
    args = parser.parse_args()

    if args.create_tables:
        Base.metadata.create_all(engine)
    seed()
    print('Seed data inserted/verified.')


if __name__ == '__main__':
    main()
