from __future__ import annotations

import argparse
import logging

from app.config import settings
from app.db import SessionLocal
from app.services.queue_service import recalculate_all_queues, recalculate_location, recalculate_order


def main() -> None:
    parser = argparse.ArgumentParser(description='Re-run queue admission and renumber location queues.')
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument('--order-id', type=int, help='Only re-run admission for this order.')
    scope.add_argument('--location-id', type=int, help='Only renumber the queue at this location.')
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    with SessionLocal() as db:
        if args.order_id is not None:
            admitted = recalculate_order(db, order_id=args.order_id)
            db.commit()
            print(f'Order {args.order_id}: admitted={admitted}')
            return
        if args.location_id is not None:
            queued = recalculate_location(db, location_id=args.location_id)
            db.commit()
            print(f'Location {args.location_id}: queued_entries={queued}')
            return

        summary = recalculate_all_queues(db, after_step=db.commit)
        db.commit()

    print(
        'Queue recalculation complete: '
        f"orders_checked={summary['orders_checked']}, admitted={summary['admitted']}, "
        f"locations_renumbered={summary['locations_renumbered']}, queued_entries={summary['queued_entries']}"
    )


if __name__ == '__main__':
    main()
