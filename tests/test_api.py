from __future__ import annotations

import unittest

from fastapi.testclient import TestClient

from app.db import get_db
from app.main import app
from workflow_fixtures import make_engine, make_session_factory

ADMIN = {'X-User-Id': '1', 'X-User-Role': 'admin'}
SHOP = {'X-User-Id': '2', 'X-User-Role': 'shop'}


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)

        def _override_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override_db
        self.client = TestClient(app)

        self.cutting = self._post('/api/locations', {'name': 'Cutting', 'usedOrder': 1, 'isPrimary': True})
        self.sewing = self._post('/api/locations', {'name': 'Sewing', 'usedOrder': 2, 'countMultiplier': '0.5'})

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _post(self, path: str, payload: dict | None = None, headers: dict | None = None, expected: int | None = None):
        response = self.client.post(path, json=payload or {}, headers=headers or ADMIN)
        if expected is not None:
            self.assertEqual(response.status_code, expected, response.text)
            return response.json()
        self.assertLess(response.status_code, 300, response.text)
        return response.json()

    def _create_order(self, number: str = 'SO-1', **extra) -> dict:
        payload = {
            'orderNumber': number,
            'totalQuantity': 100,
            'dueDate': '2026-11-01',
            'selectedLocationIds': [self.cutting['id'], self.sewing['id']],
        }
        payload.update(extra)
        return self._post('/api/orders', payload)

    def test_requests_without_principal_are_rejected(self) -> None:
        self.assertEqual(self.client.get('/api/locations').status_code, 401)
        response = self.client.post('/api/locations', json={'name': 'Packing', 'usedOrder': 4}, headers=SHOP)
        self.assertEqual(response.status_code, 403)

    def test_order_flow_through_two_stages(self) -> None:
        order = self._create_order()
        self.assertEqual([stage['status'] for stage in order['locations']], ['not_started', 'not_started'])

        eligibility = self.client.get(
            f"/api/order-locations/{order['id']}/{self.cutting['id']}/eligibility", headers=SHOP
        ).json()
        self.assertEqual(eligibility, {'eligible': False, 'tier': 'global_queue', 'reason': 'Waiting for Global Queue'})

        blocked = self._post(
            f"/api/order-locations/{order['id']}/{self.cutting['id']}/start", headers=SHOP, expected=409
        )
        self.assertEqual(blocked['code'], 'blocked')
        self.assertEqual(blocked['tier'], 'global_queue')

        self._post(f"/api/queue/global/{order['id']}", {'position': 1})
        queue = self.client.get(f"/api/queue/location/{self.cutting['id']}", headers=SHOP).json()
        self.assertEqual([entry['order_id'] for entry in queue], [order['id']])

        started = self._post(f"/api/order-locations/{order['id']}/{self.cutting['id']}/start", headers=SHOP)
        self.assertEqual(started['status'], 'in_progress')
        finished = self._post(
            f"/api/order-locations/{order['id']}/{self.cutting['id']}/finish",
            {'completedQuantity': 100},
            headers=SHOP,
        )
        self.assertEqual(finished['status'], 'done')

        self._post(f"/api/order-locations/{order['id']}/{self.sewing['id']}/start", headers=SHOP)
        too_many = self._post(
            f"/api/order-locations/{order['id']}/{self.sewing['id']}/update-quantity",
            {'completedQuantity': 51},
            headers=SHOP,
            expected=422,
        )
        self.assertEqual(too_many['code'], 'quantity_out_of_range')
        self.assertEqual(too_many['maximum'], 50)

        paused = self._post(f"/api/order-locations/{order['id']}/{self.sewing['id']}/pause", headers=SHOP)
        self.assertEqual(paused['status'], 'paused')
        again = self._post(
            f"/api/order-locations/{order['id']}/{self.sewing['id']}/pause", headers=SHOP, expected=409
        )
        self.assertEqual(again['code'], 'invalid_transition')

        detail = self.client.get(f"/api/orders/{order['id']}", headers=SHOP).json()
        actions = [entry['action'] for entry in detail['audit_trail']]
        self.assertEqual(actions[0], 'created')
        self.assertIn('finished', actions)

    def test_validation_and_not_found_errors(self) -> None:
        missing = self.client.get('/api/orders/999', headers=SHOP)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()['code'], 'not_found')

        bad = self._post('/api/orders', {'orderNumber': 'SO-9', 'totalQuantity': 0, 'dueDate': '2026-11-01'}, expected=400)
        self.assertEqual(bad['code'], 'validation_error')

    def test_rush_ship_and_global_queue(self) -> None:
        first = self._create_order('SO-1', globalQueuePosition=1)
        second = self._create_order('SO-2', globalQueuePosition=2)
        self._post(f"/api/orders/{second['id']}/rush")

        queue = self.client.get('/api/queue/global', headers=SHOP).json()
        self.assertEqual([order['order_number'] for order in queue], ['SO-2', 'SO-1'])

        blocked = self._post(f"/api/queue/global/{first['id']}", {'position': 1}, expected=400)
        self.assertEqual(blocked['min_allowed_position'], 2)

        shipped = self._post(f"/api/orders/{first['id']}/ship", {'quantity': 30})
        self.assertTrue(shipped['partially_shipped'])

    def test_reorder_and_recalculate(self) -> None:
        first = self._create_order('SO-1', selectedLocationIds=[self.sewing['id']])
        second = self._create_order('SO-2', selectedLocationIds=[self.sewing['id']])

        reordered = self._post(
            f"/api/queue/location/{self.sewing['id']}/reorder", {'orderId': second['id'], 'position': 1}
        )
        self.assertEqual([entry['order_id'] for entry in reordered], [second['id'], first['id']])
        self.assertEqual([entry['queue_position'] for entry in reordered], [1, 2])

        summary = self._post('/api/queue/recalculate')
        self.assertEqual(summary['queued_entries'], 2)
        self._post('/api/queue/recalculate', headers=SHOP, expected=403)

    def test_machine_assignments_and_help_requests(self) -> None:
        order = self._create_order('SO-1', selectedLocationIds=[self.sewing['id']])
        machine = self._post('/api/machines', {'name': 'Juki 1', 'machineCode': 'SEW-01', 'locationId': self.sewing['id']})
        triple = {'orderId': order['id'], 'locationId': self.sewing['id'], 'machineId': machine['id']}

        self._post('/api/assignments', {**triple, 'assignedQuantity': 40})
        response = self.client.put('/api/assignments', json={**triple, 'assignedQuantity': 55}, headers=ADMIN)
        self.assertEqual(response.json()['assigned_quantity'], 55)
        listed = self.client.get(f"/api/assignments?location_id={self.sewing['id']}", headers=SHOP).json()
        self.assertEqual([item['machine_code'] for item in listed], ['SEW-01'])
        self.assertEqual(self.client.request('DELETE', '/api/assignments', json=triple, headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.request('DELETE', '/api/assignments', json=triple, headers=ADMIN).status_code, 404)

        help_request = self._post(
            '/api/help-requests', {'orderId': order['id'], 'locationId': self.sewing['id'], 'notes': 'Thread jam'}, headers=SHOP
        )
        active = self.client.get('/api/help-requests/active', headers=SHOP).json()
        self.assertEqual([item['id'] for item in active], [help_request['id']])
        self._post(f"/api/help-requests/{help_request['id']}/resolve")
        self.assertEqual(self.client.get('/api/help-requests/active', headers=SHOP).json(), [])

    def test_malformed_input_gets_structured_errors(self) -> None:
        for bad_number in ('--5', '²', '1_000', 'ten'):
            body = self._post(
                '/api/orders',
                {'orderNumber': 'SO-9', 'totalQuantity': bad_number, 'dueDate': '2026-11-01'},
                expected=400,
            )
            self.assertEqual((body['code'], body['field']), ('validation_error', 'totalQuantity'), bad_number)

        response = self.client.post(
            '/api/orders', content=b'{not json', headers={**ADMIN, 'Content-Type': 'application/json'}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')
        response = self.client.post('/api/orders', json=[1, 2], headers=ADMIN)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_order_listing_search_update_and_delete(self) -> None:
        first = self._create_order('SO-1', client='Harbor Outfitters')
        self._create_order('SO-2')

        listed = self.client.get('/api/orders?pageSize=1', headers=SHOP).json()
        self.assertEqual([order['order_number'] for order in listed['data']], ['SO-2'])
        self.assertEqual(listed['pagination']['total_pages'], 2)
        self.assertEqual(len(listed['data'][0]['locations']), 2)
        bad_page = self.client.get('/api/orders?page=0', headers=SHOP)
        self.assertEqual((bad_page.status_code, bad_page.json()['field']), (400, 'page'))

        found = self.client.get('/api/orders/search?q=harbor', headers=SHOP).json()
        self.assertEqual([order['id'] for order in found['data']], [first['id']])

        response = self.client.put(
            f"/api/orders/{first['id']}", json={'notes': 'Hold for inspection', 'totalQuantity': '120'}, headers=ADMIN
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual((response.json()['notes'], response.json()['total_quantity']), ('Hold for inspection', 120))
        self.assertEqual(self.client.put(f"/api/orders/{first['id']}", json={}, headers=SHOP).status_code, 403)

        self.assertEqual(self.client.delete(f"/api/orders/{first['id']}", headers=SHOP).status_code, 403)
        self.assertEqual(self.client.delete(f"/api/orders/{first['id']}", headers=ADMIN).status_code, 204)
        self.assertEqual(self.client.get(f"/api/orders/{first['id']}", headers=SHOP).status_code, 404)



if __name__ == '__main__':
    unittest.main()
