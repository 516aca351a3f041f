from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import patch

from fastapi.testclient import TestClient

from app.db import get_db
from app.main import app
from app.services.order_editor_service import EditorRegistry
from tests.db_fixtures import make_session_factory


class PurchasingFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()

        def _get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db
        app.state.session_factory = self.session_factory
        app.state.editors = EditorRegistry()
        # Only finalize writes here; no background autosave on the shared connection.
        settings_patch = patch(
            'app.routers.purchasing.settings',
            SimpleNamespace(autosave_quiet_period_seconds=30.0, autosave_retry_seconds=30.0, finalize_timeout_seconds=10.0),
        )
        settings_patch.start()
        self.addCleanup(settings_patch.stop)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.state.editors.close_all()
        app.dependency_overrides.clear()

    def _command(self, order_id: str, command: str, **params) -> dict:
        response = self.client.post(f'/purchasing/editors/{order_id}/commands', json={'command': command, 'params': params})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _seed_catalog(self) -> tuple[str, str, str]:
        supplier = self.client.post('/catalog/suppliers', json={'name': 'Acme Training', 'contract_value': '1000'})
        self.assertEqual(supplier.status_code, 201, supplier.text)
        supplier_id = supplier.json()['id']
        course = self.client.post('/catalog/courses', json={'supplier_id': supplier_id, 'title': 'Safety'})
        course_id = course.json()['id']
        edition = self.client.post(f'/catalog/courses/{course_id}/editions', json={'run_id': 'RUN-0001'})
        self.assertEqual(edition.status_code, 201, edition.text)
        return supplier_id, course_id, edition.json()['id']

    def test_compose_finalize_and_report(self) -> None:
        supplier_id, course_id, edition_id = self._seed_catalog()

        created = self.client.post('/purchasing/editors')
        self.assertEqual(created.status_code, 201)
        order_id = created.json()['order_id']

        self.assertTrue(self._command(order_id, 'select_supplier', supplier_id=supplier_id)['outcome']['applied'])
        self._command(order_id, 'add_course', course_id=course_id)
        self._command(order_id, 'attach_edition', edition_id=edition_id)
        line_id = self._command(order_id, 'add_line_item', edition_id=edition_id)['outcome']['created_id']
        body = self._command(order_id, 'update_line_item', line_id=line_id, planned_qty='3', unit_price_override='12.50')
        self.assertEqual(body['editor']['totals']['planned'], '37.50')

        finalized = self.client.post(f'/purchasing/editors/{order_id}/finalize')
        self.assertTrue(finalized.json()['outcome']['applied'], finalized.text)
        self.assertEqual(self.client.get(f'/purchasing/editors/{order_id}').status_code, 404)

        orders = self.client.get('/purchasing/orders').json()
        self.assertEqual([row['id'] for row in orders], [order_id])
        self.assertEqual(orders[0]['planned_total'], '37.50')

        summary = self.client.get('/dashboard/summary').json()
        self.assertEqual(summary['total_planned'], '37.50')
        self.assertEqual(summary['suppliers'][0]['residual'], '1000.00')

        self.assertEqual(self.client.delete(f'/catalog/suppliers/{supplier_id}').status_code, 409)

        reopened = self.client.post(f'/purchasing/orders/{order_id}/editor', params={'mode': 'reconciliation'})
        self.assertEqual(reopened.status_code, 200, reopened.text)
        self.assertEqual(reopened.json()['courses'][0]['editions'][0]['edition_id'], edition_id)
        conflict = self.client.post(f'/purchasing/orders/{order_id}/editor', params={'mode': 'workflow'})
        self.assertEqual(conflict.status_code, 409)

    def test_bad_commands_and_missing_orders(self) -> None:
        order_id = self.client.post('/purchasing/editors').json()['order_id']

        unknown = self.client.post(f'/purchasing/editors/{order_id}/commands', json={'command': 'explode', 'params': {}})
        self.assertEqual(unknown.status_code, 400)
        bad_value = self.client.post(
            f'/purchasing/editors/{order_id}/commands',
            json={'command': 'update_line_item', 'params': {'line_id': 'x', 'planned_qty': 'lots'}},
        )
        self.assertEqual(bad_value.status_code, 400)
        not_finite = self.client.post(
            f'/purchasing/editors/{order_id}/commands',
            json={'command': 'update_line_item', 'params': {'line_id': 'x', 'unit_price_override': 'Infinity'}},
        )
        self.assertEqual(not_finite.status_code, 400)
        self.assertEqual(self.client.get(f'/purchasing/editors/{order_id}').status_code, 200)

        finalize = self.client.post(f'/purchasing/editors/{order_id}/finalize').json()
        self.assertEqual(finalize['outcome']['message'], 'Select a supplier before saving')

        self.assertEqual(self.client.post('/purchasing/orders/missing/editor').status_code, 404)
        self.assertEqual(self.client.post('/purchasing/editors', params={'mode': 'reconciliation'}).status_code, 403)

    def test_delete_order_is_workflow_only(self) -> None:
        supplier_id, _, _ = self._seed_catalog()
        order_id = self.client.post('/purchasing/editors').json()['order_id']
        self._command(order_id, 'select_supplier', supplier_id=supplier_id)
        self.client.post(f'/purchasing/editors/{order_id}/finalize')

        forbidden = self.client.delete(f'/purchasing/orders/{order_id}', params={'mode': 'reconciliation'})
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(self.client.delete(f'/purchasing/orders/{order_id}').status_code, 204)
        self.assertEqual(self.client.get('/purchasing/orders').json(), [])

    def test_dashboard_rejects_inverted_range(self) -> None:
        response = self.client.get('/dashboard/summary', params={'start': '2024-05-01', 'end': '2024-04-01'})
        self.assertEqual(response.status_code, 400)


if __name__ == '__main__':
    unittest.main()
