from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import AuditLog, EditMode, PurchaseLineItem, Supplier, WorkflowStatus
from app.services.cost_model_service import order_totals
from app.services.order_composition_service import build_save_snapshot, open_session, update_line_item
from app.services.order_draft import EmDraft, LineDraft, OrderDraft
from app.services.order_sync_service import (
    STATUS_FILTER_ALL,
    OrderSyncError,
    delete_order,
    list_purchase_orders,
    load_order_draft,
    persist_order_snapshot,
    record_order_event,
    save_order,
)
from tests.catalog_fakes import build_catalog
from tests.db_fixtures import make_session_factory


def _draft(order_id: str = 'order-1', **overrides) -> OrderDraft:
    values = dict(
        id=order_id,
        supplier_id='sup-1',
        title='Spring safety courses',
        created_at=date(2024, 3, 1),
        status=WorkflowStatus.IN_PROGRESS,
        items={
            'l-1': LineDraft(
                id='l-1',
                edition_id='ed-b',
                service_item_id='svc-day',
                planned_qty=Decimal('2'),
                actual_qty=Decimal('2'),
                unit_price_override=Decimal('100'),
            ),
            'l-2': LineDraft(
                id='l-2',
                edition_id='ed-a',
                service_item_id='svc-kit',
                planned_qty=Decimal('1'),
                actual_qty=Decimal('1'),
                unit_price_override=Decimal('50'),
            ),
        },
        ems={'em-1': EmDraft(id='em-1', code='EM-2024-01', edition_ids=['ed-b', 'ed-a'])},
    )
    values.update(overrides)
    return OrderDraft(**values)


class OrderSyncServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            db.add_all(
                [
                    Supplier(id='sup-1', name='Acme Training', contract_value=Decimal('10000')),
                    Supplier(id='sup-2', name='Northwind Academy', contract_value=Decimal('5000')),
                ]
            )
            db.commit()

    def _load(self, order_id: str = 'order-1') -> OrderDraft:
        with self.session_factory() as db:
            return load_order_draft(db, order_id=order_id)

    def test_round_trip_rederives_costs_and_em_amounts(self) -> None:
        persist_order_snapshot(self.session_factory, _draft())

        loaded = self._load()

        self.assertEqual(list(loaded.items), ['l-1', 'l-2'])
        self.assertEqual(loaded.items['l-1'].planned_cost, Decimal('200.00'))
        self.assertEqual(loaded.items['l-2'].actual_cost, Decimal('50.00'))
        em = loaded.ems['em-1']
        self.assertEqual(em.amount, Decimal('250.00'))
        self.assertEqual(sorted(em.edition_ids), ['ed-a', 'ed-b'])
        self.assertEqual(loaded.status, WorkflowStatus.IN_PROGRESS)
        self.assertEqual(loaded.created_at, date(2024, 3, 1))

    def test_edited_values_reload_with_identical_totals(self) -> None:
        session = open_session(_draft(), EditMode.WORKFLOW, build_catalog())
        update_line_item(session, 'l-1', planned_qty=Decimal('1.00004'), unit_price_override=Decimal('1000'))
        update_line_item(session, 'l-2', actual_qty=Decimal('0.12345'), unit_price_override=Decimal('33.33333'))
        snapshot = build_save_snapshot(session)

        persist_order_snapshot(self.session_factory, snapshot)
        loaded = self._load()

        self.assertEqual(loaded.items['l-1'].planned_qty, Decimal('1.0000'))
        self.assertEqual(loaded.items['l-1'].planned_cost, Decimal('1000.00'))
        self.assertEqual(loaded.items['l-2'].unit_price_override, Decimal('33.3333'))
        self.assertEqual(order_totals(loaded), order_totals(snapshot))
        self.assertEqual(loaded.ems['em-1'].amount, snapshot.ems['em-1'].amount)

    def test_resave_replaces_children(self) -> None:
        persist_order_snapshot(self.session_factory, _draft())
        draft = self._load()
        del draft.items['l-2']
        draft.ems = {}
        draft.title = 'Trimmed'

        persist_order_snapshot(self.session_factory, draft)

        loaded = self._load()
        self.assertEqual(loaded.title, 'Trimmed')
        self.assertEqual(list(loaded.items), ['l-1'])
        self.assertEqual(loaded.ems, {})
        with self.session_factory() as db:
            remaining = db.execute(select(PurchaseLineItem.id)).scalars().all()
        self.assertEqual(remaining, ['l-1'])

    def test_save_requires_supplier(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(ValueError):
                save_order(db, _draft(supplier_id=None))

    def test_load_missing_order(self) -> None:
        with self.assertRaises(ValueError):
            self._load('nope')

    def test_list_filters_search_and_sort(self) -> None:
        persist_order_snapshot(self.session_factory, _draft('order-1', created_at=date(2024, 3, 1)))
        persist_order_snapshot(
            self.session_factory,
            _draft('order-2', title='Closed batch', status=WorkflowStatus.CLOSED, created_at=date(2024, 1, 5)),
        )
        persist_order_snapshot(
            self.session_factory,
            _draft(
                'order-3',
                supplier_id='sup-2',
                title='Leadership retainer',
                is_generic=True,
                planned_amount=Decimal('500'),
                items={},
                ems={},
                created_at=date(2024, 5, 9),
            ),
        )

        with self.session_factory() as db:
            active = list_purchase_orders(db)
            everything = list_purchase_orders(db, status_filter=STATUS_FILTER_ALL, sort='asc')
            closed = list_purchase_orders(db, status_filter='CLOSED')
            by_supplier = list_purchase_orders(db, search='northwind')

        self.assertEqual([row['id'] for row in active], ['order-3', 'order-1'])
        self.assertEqual([row['id'] for row in everything], ['order-2', 'order-1', 'order-3'])
        self.assertEqual([row['id'] for row in closed], ['order-2'])
        self.assertEqual([row['id'] for row in by_supplier], ['order-3'])
        self.assertEqual(by_supplier[0]['planned_total'], Decimal('500.00'))
        self.assertEqual(active[1]['supplier_name'], 'Acme Training')
        self.assertEqual(active[1]['actual_total'], Decimal('250.00'))

    def test_delete_order_removes_graph(self) -> None:
        persist_order_snapshot(self.session_factory, _draft())
        with self.session_factory() as db:
            delete_order(db, order_id='order-1')
            db.commit()
            self.assertEqual(db.execute(select(PurchaseLineItem)).scalars().all(), [])
            with self.assertRaises(ValueError):
                delete_order(db, order_id='order-1')

    def test_persist_wraps_database_errors(self) -> None:
        # No tables: every statement fails.
        engine = create_engine('sqlite://', poolclass=StaticPool)
        broken_factory = sessionmaker(bind=engine)
        with self.assertRaises(OrderSyncError):
            persist_order_snapshot(broken_factory, _draft())

    def test_record_order_event_writes_audit_row(self) -> None:
        record_order_event(
            self.session_factory,
            action='ORDER_FINALIZED',
            order_id='order-1',
            mode='workflow',
            metadata={'planned_total': '250.00'},
        )
        with self.session_factory() as db:
            row = db.execute(select(AuditLog)).scalar_one()
        self.assertEqual(row.action, 'ORDER_FINALIZED')
        self.assertEqual(row.mode, 'workflow')
        self.assertEqual(row.meta, {'planned_total': '250.00'})


if __name__ == '__main__':
    unittest.main()
