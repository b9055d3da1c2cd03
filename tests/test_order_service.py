from __future__ import annotations

import unittest
from datetime import timedelta

from sqlalchemy import func, select

from app.errors import NotFoundError, ValidationError
from app.models import AuditEntry, HelpRequest, OrderLocation
from app.services.help_request_service import create_help_request
from app.services.order_location_service import start_location, update_location_quantity
from app.services.order_service import (
    create_order,
    delete_order,
    get_global_queue,
    get_order,
    list_orders,
    search_orders,
    set_global_queue_position,
    set_rush,
    ship_order,
    update_order,
)
from app.services.queue_service import get_location_queue
from workflow_fixtures import DUE, add_location, add_order, make_engine, make_session_factory


class OrderServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        self.db = self.Session()
        self.cutting = add_location(self.db, 'Cutting', 1, is_primary=True)
        self.sewing = add_location(self.db, 'Sewing', 2)
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _global(self) -> list[tuple[str, int]]:
        return [(order.order_number, order.global_queue_position) for order in get_global_queue(self.db)]

    def test_create_order_routes_through_selected_locations(self) -> None:
        order = add_order(self.db, 'SO-1', [self.sewing], client='  Harbor Outfitters ', user_id=4)
        self.db.commit()

        rows = self.db.execute(select(OrderLocation).where(OrderLocation.order_id == order.id)).scalars().all()
        self.assertEqual([row.location_id for row in rows], [self.sewing.id])
        self.assertEqual(order.client, 'Harbor Outfitters')
        self.assertEqual(order.created_by, 4)
        created = self.db.execute(select(AuditEntry).where(AuditEntry.action == 'created')).scalar_one()
        self.assertEqual(created.order_id, order.id)

    def test_create_order_without_selection_uses_every_location(self) -> None:
        order = add_order(self.db, 'SO-1', [])
        self.db.commit()
        location_ids = self.db.execute(
            select(OrderLocation.location_id).where(OrderLocation.order_id == order.id)
        ).scalars().all()
        self.assertEqual(sorted(location_ids), sorted([self.cutting.id, self.sewing.id]))

    def test_create_order_validates_input(self) -> None:
        add_order(self.db, 'SO-1', [self.sewing])
        self.db.commit()

        with self.assertRaises(ValidationError):
            add_order(self.db, 'SO-1', [self.sewing])
        self.db.rollback()
        with self.assertRaises(ValidationError):
            add_order(self.db, 'SO-2', [self.sewing], total_quantity=0)
        self.db.rollback()
        with self.assertRaises(ValidationError):
            add_order(self.db, '   ', [self.sewing])
        self.db.rollback()

        with self.assertRaises(NotFoundError):
            create_order(self.db, order_number='SO-3', total_quantity=5, due_date=DUE, selected_location_ids=[999])
        self.db.rollback()

    def test_create_order_with_global_position_admits_entry_stage(self) -> None:
        order = add_order(self.db, 'SO-1', [self.cutting, self.sewing], global_queue_position=1)
        self.db.commit()
        self.assertEqual(self._global(), [('SO-1', 1)])
        self.assertIn('global_queue_set', self.db.execute(select(AuditEntry.action)).scalars().all())
        self.assertEqual(order.global_queue_position, 1)

    def test_global_positions_insert_and_renumber(self) -> None:
        orders = {number: add_order(self.db, number, [self.cutting]) for number in ('SO-1', 'SO-2', 'SO-3')}
        self.db.commit()
        for number, position in (('SO-1', 1), ('SO-2', 2), ('SO-3', 1)):
            set_global_queue_position(self.db, order_id=orders[number].id, position=position)
            self.db.commit()
        self.assertEqual(self._global(), [('SO-3', 1), ('SO-1', 2), ('SO-2', 3)])

        set_global_queue_position(self.db, order_id=orders['SO-3'].id, position=10)
        self.db.commit()
        self.assertEqual(self._global(), [('SO-1', 1), ('SO-2', 2), ('SO-3', 3)])

    def test_rush_orders_lead_the_global_queue(self) -> None:
        orders = {number: add_order(self.db, number, [self.cutting]) for number in ('SO-1', 'SO-2', 'SO-3')}
        self.db.commit()
        for position, number in enumerate(('SO-1', 'SO-2', 'SO-3'), start=1):
            set_global_queue_position(self.db, order_id=orders[number].id, position=position)
            self.db.commit()

        set_rush(self.db, order_id=orders['SO-2'].id)
        self.db.commit()
        self.assertEqual(self._global(), [('SO-2', 1), ('SO-1', 2), ('SO-3', 3)])

        with self.assertRaises(ValidationError) as ctx:
            set_global_queue_position(self.db, order_id=orders['SO-3'].id, position=1)
        self.assertEqual(ctx.exception.extra['min_allowed_position'], 2)
        self.db.rollback()

    def test_ship_tracks_partial_and_full_shipment(self) -> None:
        order = add_order(self.db, 'SO-1', [self.cutting], total_quantity=100, global_queue_position=1)
        self.db.commit()

        ship_order(self.db, order_id=order.id, shipped_quantity=40)
        self.db.commit()
        self.assertTrue(order.partially_shipped)
        self.assertFalse(order.is_shipped)

        ship_order(self.db, order_id=order.id, shipped_quantity=100)
        self.db.commit()
        self.assertTrue(order.is_shipped)
        self.assertFalse(order.partially_shipped)
        self.assertEqual(self._global(), [])

    def test_ship_rejects_out_of_range_quantities(self) -> None:
        order = add_order(self.db, 'SO-1', [self.cutting], total_quantity=10)
        self.db.commit()
        for quantity in (-1, 11):
            with self.assertRaises(ValidationError):
                ship_order(self.db, order_id=order.id, shipped_quantity=quantity)
            self.db.rollback()
        with self.assertRaises(NotFoundError):
            ship_order(self.db, order_id=9999, shipped_quantity=1)
        self.db.rollback()

    def _numbers(self, page: dict) -> list[str]:
        return [order.order_number for order in page['data']]

    def test_list_orders_pages_newest_first_and_hides_shipped(self) -> None:
        first = add_order(self.db, 'SO-1', [self.sewing])
        add_order(self.db, 'SO-2', [self.sewing])
        add_order(self.db, 'SO-3', [self.sewing])
        ship_order(self.db, order_id=first.id, shipped_quantity=100)
        self.db.commit()

        page = list_orders(self.db, page_size=1)
        self.assertEqual(self._numbers(page), ['SO-3'])
        self.assertEqual(page['pagination'], {'page': 1, 'page_size': 1, 'total_items': 2, 'total_pages': 2})
        self.assertEqual(self._numbers(list_orders(self.db, page=2, page_size=1)), ['SO-2'])
        self.assertEqual(self._numbers(list_orders(self.db, include_shipped=True)), ['SO-3', 'SO-2', 'SO-1'])
        self.assertEqual(list_orders(self.db, page=5)['data'], [])

        for params in ({'page': 0}, {'page_size': 0}, {'page_size': 101}):
            with self.assertRaises(ValidationError):
                list_orders(self.db, **params)

    def test_search_matches_text_fields_case_insensitively(self) -> None:
        add_order(self.db, 'SO-1', [self.sewing], client='Harbor Outfitters')
        add_order(self.db, 'SO-2', [self.sewing], description='Jackets, 50% wool', tbfos_number='TB-77')
        add_order(self.db, 'XY-3', [self.sewing], description='Jackets, 50 wool')
        self.db.commit()

        self.assertEqual(self._numbers(search_orders(self.db, query='harbor')), ['SO-1'])
        self.assertEqual(self._numbers(search_orders(self.db, query='tb-77')), ['SO-2'])
        self.assertEqual(self._numbers(search_orders(self.db, query='50%')), ['SO-2'])
        self.assertEqual(self._numbers(search_orders(self.db, query=' so-')), ['SO-2', 'SO-1'])
        self.assertEqual(search_orders(self.db, query='')['pagination']['total_items'], 3)

    def test_update_order_edits_fields_and_audits(self) -> None:
        order = add_order(self.db, 'SO-1', [self.sewing], client='Harbor')
        add_order(self.db, 'SO-2', [self.sewing])
        self.db.commit()

        new_due = DUE + timedelta(days=7)
        update_order(
            self.db,
            order_id=order.id,
            changes={'order_number': ' SO-1A ', 'client': '  ', 'notes': 'Rework sleeves', 'due_date': new_due},
            user_id=5,
        )
        self.db.commit()
        self.assertEqual(order.order_number, 'SO-1A')
        self.assertIsNone(order.client)
        self.assertEqual(order.notes, 'Rework sleeves')
        updated = self.db.execute(select(AuditEntry).where(AuditEntry.action == 'updated')).scalar_one()
        self.assertEqual((updated.order_id, updated.user_id), (order.id, 5))

        for changes in ({'order_number': 'SO-2'}, {'order_number': ''}, {'rush': True}, {'client': 7}):
            with self.assertRaises(ValidationError):
                update_order(self.db, order_id=order.id, changes=changes)
            self.db.rollback()
        with self.assertRaises(NotFoundError):
            update_order(self.db, order_id=9999, changes={'notes': 'x'})
        self.db.rollback()

    def test_update_total_cannot_undercut_recorded_progress(self) -> None:
        order = add_order(self.db, 'SO-1', [self.sewing], total_quantity=100)
        self.db.commit()
        start_location(self.db, order_id=order.id, location_id=self.sewing.id)
        update_location_quantity(self.db, order_id=order.id, location_id=self.sewing.id, completed_quantity=60)
        ship_order(self.db, order_id=order.id, shipped_quantity=40)
        self.db.commit()

        with self.assertRaises(ValidationError) as ctx:
            update_order(self.db, order_id=order.id, changes={'total_quantity': 59})
        self.assertEqual(ctx.exception.extra['maximum'], 59)
        self.assertEqual(ctx.exception.extra['completed_quantity'], 60)
        self.db.rollback()

        update_order(self.db, order_id=order.id, changes={'total_quantity': 60})
        self.db.commit()
        self.assertEqual(order.total_quantity, 60)
        self.assertTrue(order.partially_shipped)

        other = add_order(self.db, 'SO-2', [self.sewing], total_quantity=100)
        ship_order(self.db, order_id=other.id, shipped_quantity=40)
        self.db.commit()
        with self.assertRaises(ValidationError):
            update_order(self.db, order_id=other.id, changes={'total_quantity': 39})
        self.db.rollback()
        update_order(self.db, order_id=other.id, changes={'total_quantity': 40})
        self.db.commit()
        self.assertTrue(other.is_shipped)

    def test_delete_order_removes_dependents_and_closes_queue_gaps(self) -> None:
        first = add_order(self.db, 'SO-1', [self.cutting, self.sewing], global_queue_position=1)
        second = add_order(self.db, 'SO-2', [self.cutting, self.sewing], global_queue_position=2)
        create_help_request(self.db, order_id=first.id, location_id=self.sewing.id, user_id=3, notes='Jammed')
        self.db.commit()
        first_id = first.id

        delete_order(self.db, order_id=first_id, user_id=1)
        self.db.commit()

        with self.assertRaises(NotFoundError):
            get_order(self.db, order_id=first_id)
        for model in (AuditEntry, HelpRequest, OrderLocation):
            count = self.db.execute(
                select(func.count()).select_from(model).where(model.order_id == first_id)
            ).scalar_one()
            self.assertEqual(count, 0, model.__name__)
        self.assertEqual(self._global(), [('SO-2', 1)])
        for location in (self.cutting, self.sewing):
            queue = get_location_queue(self.db, location_id=location.id)
            self.assertEqual([(row.order_id, row.queue_position) for row, _ in queue], [(second.id, 1)])

        with self.assertRaises(NotFoundError):
            delete_order(self.db, order_id=first_id)
        self.db.rollback()


if __name__ == '__main__':
    unittest.main()
