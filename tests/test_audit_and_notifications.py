from __future__ import annotations

import threading
import unittest
from unittest.mock import patch

from sqlalchemy import select

from app.models import AuditEntry, OrderLocationStatus
from app.services.help_request_service import create_help_request, list_active_help_requests, resolve_help_request
from app.services.notification_service import (
    EVENT_FINISHED,
    EVENT_HELP_REQUESTED,
    EVENT_STARTED,
    dispatch_pending,
    wait_for_delivery,
)
from app.services.order_location_service import finish_location, start_location
from workflow_fixtures import add_location, add_order, make_engine, make_session_factory


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)


class GatedSink:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.events = []

    def notify(self, event) -> None:
        self.release.wait(timeout=5)
        self.events.append(event)


class ExplodingSink:
    def notify(self, event) -> None:
        raise ValueError('webhook unreachable')


def _entry_without_action(**kwargs):
    kwargs['action'] = None
    return AuditEntry(**kwargs)


class AuditAndNotificationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        self.db = self.Session()
        self.sewing = add_location(self.db, 'Sewing', 2)
        self.order = add_order(self.db, 'SO-1', [self.sewing])
        self.db.commit()

    def tearDown(self) -> None:
        wait_for_delivery(timeout=5)
        self.db.close()
        self.engine.dispose()

    def test_audit_failure_keeps_the_transition(self) -> None:
        with patch('app.services.audit_service.AuditEntry', side_effect=_entry_without_action):
            with self.assertLogs('app.services.audit_service', level='WARNING'):
                row = start_location(self.db, order_id=self.order.id, location_id=self.sewing.id)
        self.db.commit()

        self.assertEqual(row.status, OrderLocationStatus.IN_PROGRESS)
        actions = self.db.execute(select(AuditEntry.action)).scalars().all()
        self.assertNotIn('started', actions)

    def test_notifications_are_sent_only_after_commit(self) -> None:
        sink = RecordingSink()
        with patch('app.services.notification_service.get_notification_sink', return_value=sink):
            start_location(self.db, order_id=self.order.id, location_id=self.sewing.id)
            self.assertEqual(sink.events, [])
            self.db.commit()
            self.assertTrue(wait_for_delivery(timeout=5))
            self.assertEqual([event.event_type for event in sink.events], [EVENT_STARTED])

            finish_location(self.db, order_id=self.order.id, location_id=self.sewing.id, completed_quantity=100)
            self.db.rollback()
            self.db.commit()
            wait_for_delivery(timeout=5)
            self.assertEqual(len(sink.events), 1)

            finish_location(self.db, order_id=self.order.id, location_id=self.sewing.id, completed_quantity=100)
            self.db.commit()
            wait_for_delivery(timeout=5)
            self.assertEqual([event.event_type for event in sink.events], [EVENT_STARTED, EVENT_FINISHED])

    def test_commit_does_not_wait_on_the_sink(self) -> None:
        sink = GatedSink()
        with patch('app.services.notification_service.get_notification_sink', return_value=sink):
            start_location(self.db, order_id=self.order.id, location_id=self.sewing.id)
            self.db.commit()
        self.assertFalse(wait_for_delivery(timeout=0.05))
        self.assertEqual(sink.events, [])

        sink.release.set()
        self.assertTrue(wait_for_delivery(timeout=5))
        self.assertEqual([event.event_type for event in sink.events], [EVENT_STARTED])

    def test_sink_failure_is_logged_not_raised(self) -> None:
        with patch('app.services.notification_service.get_notification_sink', return_value=ExplodingSink()):
            with self.assertLogs('app.services.notification_service', level='WARNING'):
                start_location(self.db, order_id=self.order.id, location_id=self.sewing.id)
                self.db.commit()
                self.assertTrue(wait_for_delivery(timeout=5))
        self.assertIsNone(dispatch_pending(self.db, RecordingSink()))

    def test_help_request_lifecycle(self) -> None:
        sink = RecordingSink()
        with patch('app.services.notification_service.get_notification_sink', return_value=sink):
            help_request = create_help_request(
                self.db, order_id=self.order.id, location_id=self.sewing.id, user_id=9, notes=' Needle broke '
            )
            self.db.commit()
        wait_for_delivery(timeout=5)
        self.assertEqual([event.event_type for event in sink.events], [EVENT_HELP_REQUESTED])
        self.assertEqual(help_request.notes, 'Needle broke')
        self.assertEqual([item.id for item in list_active_help_requests(self.db)], [help_request.id])

        resolve_help_request(self.db, help_request_id=help_request.id)
        self.db.commit()
        self.assertEqual(list_active_help_requests(self.db), [])
        self.assertIsNotNone(help_request.resolved_at)


if __name__ == '__main__':
    unittest.main()
