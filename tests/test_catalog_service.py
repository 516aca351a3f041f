from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Course, CourseEdition, PurchaseOrder, ServiceItem, Supplier
from app.services.catalog_service import (
    SqlCatalogStore,
    copy_services_to_supplier,
    create_edition,
    delete_course,
    delete_supplier,
    list_services,
    list_suppliers,
    patch_edition,
    upsert_course,
    upsert_service,
    upsert_supplier,
)
from app.services.catalog_store import CatalogUnavailableError, EditionRecord
from tests.db_fixtures import make_session_factory


class CatalogServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        self.supplier = upsert_supplier(
            self.db,
            supplier_id='sup-1',
            name=' Acme Training ',
            contract_number='CTR-1',
            contract_value=Decimal('20000'),
            contract_start=date(2024, 1, 1),
            contract_end=date(2024, 12, 31),
        )
        self.course = upsert_course(self.db, course_id='course-a', supplier_id='sup-1', title='Safety')
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_supplier_validation(self) -> None:
        self.assertEqual(self.supplier.name, 'Acme Training')
        with self.assertRaises(ValueError):
            upsert_supplier(self.db, supplier_id=None, name='  ')
        with self.assertRaises(ValueError):
            upsert_supplier(self.db, supplier_id=None, name='Bad', contract_value=Decimal('-1'))
        with self.assertRaises(ValueError):
            upsert_supplier(
                self.db,
                supplier_id=None,
                name='Bad',
                contract_start=date(2024, 2, 1),
                contract_end=date(2024, 1, 1),
            )

    def test_list_suppliers_searches_name_and_contract(self) -> None:
        upsert_supplier(self.db, supplier_id='sup-2', name='Northwind Academy', contract_number='NW-9')
        self.assertEqual([row.id for row in list_suppliers(self.db, search='nw-9')], ['sup-2'])
        self.assertEqual([row.id for row in list_suppliers(self.db)], ['sup-1', 'sup-2'])

    def test_service_scope_must_match_supplier(self) -> None:
        upsert_supplier(self.db, supplier_id='sup-2', name='Northwind Academy')
        with self.assertRaises(ValueError):
            upsert_service(
                self.db,
                service_id=None,
                supplier_id='sup-2',
                name='Kit',
                unit_price=Decimal('5'),
                course_id='course-a',
            )

    def test_list_services_generic_and_course_scoped(self) -> None:
        upsert_service(self.db, service_id='svc-day', supplier_id='sup-1', name='Day', unit_price=Decimal('800'))
        upsert_service(
            self.db,
            service_id='svc-kit',
            supplier_id='sup-1',
            name='Kit',
            unit_price=Decimal('20'),
            course_id='course-a',
        )
        generic = list_services(self.db, supplier_id='sup-1', generic_only=True)
        scoped = list_services(self.db, supplier_id='sup-1', course_id='course-a')
        self.assertEqual([row.id for row in generic], ['svc-day'])
        self.assertEqual([row.id for row in scoped], ['svc-kit'])

    def test_copy_services_drops_course_scope(self) -> None:
        upsert_supplier(self.db, supplier_id='sup-2', name='Northwind Academy')
        upsert_service(
            self.db,
            service_id='svc-kit',
            supplier_id='sup-1',
            name='Kit',
            unit_price=Decimal('20'),
            course_id='course-a',
        )

        copies = copy_services_to_supplier(self.db, service_ids=['svc-kit'], target_supplier_id='sup-2')

        self.assertEqual(len(copies), 1)
        self.assertEqual(copies[0].supplier_id, 'sup-2')
        self.assertIsNone(copies[0].course_id)
        self.assertEqual(copies[0].unit_price, Decimal('20'))
        self.assertNotEqual(copies[0].id, 'svc-kit')

    def test_delete_supplier_cascades_catalog(self) -> None:
        create_edition(self.db, edition_id='ed-1', course_id='course-a', run_id='RUN-0001')
        upsert_service(self.db, service_id='svc-day', supplier_id='sup-1', name='Day', unit_price=Decimal('800'))

        delete_supplier(self.db, supplier_id='sup-1')
        self.db.commit()

        self.assertIsNone(self.db.get(Supplier, 'sup-1'))
        self.assertEqual(self.db.execute(select(Course)).scalars().all(), [])
        self.assertEqual(self.db.execute(select(CourseEdition)).scalars().all(), [])
        self.assertEqual(self.db.execute(select(ServiceItem)).scalars().all(), [])

    def test_delete_supplier_blocked_by_orders(self) -> None:
        self.db.add(PurchaseOrder(id='order-1', supplier_id='sup-1', title='Plan', created_at=date(2024, 2, 1)))
        self.db.flush()
        with self.assertRaises(ValueError):
            delete_supplier(self.db, supplier_id='sup-1')
        self.assertIsNotNone(self.db.get(Supplier, 'sup-1'))

    def test_delete_course_removes_its_editions_and_scoped_services(self) -> None:
        create_edition(self.db, edition_id='ed-1', course_id='course-a', run_id='RUN-0001')
        upsert_service(
            self.db,
            service_id='svc-kit',
            supplier_id='sup-1',
            name='Kit',
            unit_price=Decimal('20'),
            course_id='course-a',
        )
        upsert_service(self.db, service_id='svc-day', supplier_id='sup-1', name='Day', unit_price=Decimal('800'))

        delete_course(self.db, course_id='course-a')

        self.assertIsNone(self.db.get(CourseEdition, 'ed-1'))
        self.assertEqual([row.id for row in self.db.execute(select(ServiceItem)).scalars()], ['svc-day'])

    def test_patch_edition_validates(self) -> None:
        create_edition(
            self.db,
            edition_id='ed-1',
            course_id='course-a',
            run_id='RUN-0001',
            start_date=date(2024, 3, 1),
        )
        edition = patch_edition(self.db, edition_id='ed-1', fields={'run_id': ' RUN-0002 '})
        self.assertEqual(edition.run_id, 'RUN-0002')
        with self.assertRaises(ValueError):
            patch_edition(self.db, edition_id='ed-1', fields={'end_date': date(2024, 2, 1)})
        with self.assertRaises(ValueError):
            patch_edition(self.db, edition_id='ed-1', fields={'supplier_id': 'x'})


class SqlCatalogStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            upsert_supplier(db, supplier_id='sup-1', name='Acme Training')
            upsert_course(db, course_id='course-a', supplier_id='sup-1', title='Safety')
            upsert_service(db, service_id='svc-day', supplier_id='sup-1', name='Day', unit_price=Decimal('800'))
            db.commit()
        self.store = SqlCatalogStore(self.session_factory)

    def test_reads_return_records(self) -> None:
        self.assertEqual(self.store.get_supplier('sup-1').name, 'Acme Training')
        self.assertEqual(self.store.get_course('course-a').supplier_id, 'sup-1')
        self.assertEqual(self.store.get_service('svc-day').unit_price, Decimal('800'))
        self.assertIsNone(self.store.get_edition('missing'))
        self.assertEqual([row.id for row in self.store.list_courses_for_supplier('sup-1')], ['course-a'])
        self.assertEqual([row.id for row in self.store.list_services_for_supplier('sup-1', generic_only=True)], ['svc-day'])

    def test_created_edition_is_committed(self) -> None:
        edition_id = self.store.create_edition(EditionRecord(id='ed-9', course_id='course-a', run_id='RUN-0009'))
        self.assertEqual(edition_id, 'ed-9')
        self.assertEqual(self.store.get_edition('ed-9').run_id, 'RUN-0009')
        self.assertEqual([row.id for row in self.store.list_editions_for_course('course-a')], ['ed-9'])

        patched = self.store.patch_edition('ed-9', {'lms_lesson_id': 'LMS-7'})
        self.assertEqual(patched.lms_lesson_id, 'LMS-7')

    def test_database_errors_surface_as_catalog_unavailable(self) -> None:
        engine = create_engine('sqlite://', poolclass=StaticPool)
        store = SqlCatalogStore(sessionmaker(bind=engine))
        with self.assertRaises(CatalogUnavailableError):
            store.get_supplier('sup-1')


if __name__ == '__main__':
    unittest.main()
