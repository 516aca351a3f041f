from datetime import date
from decimal import Decimal

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import Base, Course, CourseEdition, ServiceItem, Supplier
from app.services.catalog_service import create_edition, upsert_course, upsert_service, upsert_supplier


def seed() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        supplier = db.execute(select(Supplier).where(Supplier.name == 'Demo Training Co')).scalar_one_or_none()
        if not supplier:
            supplier = upsert_supplier(
                db,
                supplier_id=None,
                name='Demo Training Co',
                contract_number='CTR-2024-001',
                contract_value=Decimal('50000.00'),
                contract_start=date(2024, 1, 1),
                contract_end=date(2025, 12, 31),
            )

        course = db.execute(
            select(Course).where(Course.supplier_id == supplier.id, Course.title == 'Workplace Safety Basics')
        ).scalar_one_or_none()
        if not course:
            course = upsert_course(
                db,
                course_id=None,
                supplier_id=supplier.id,
                title='Workplace Safety Basics',
                lms_element_id='LMS-100',
            )

        existing_services = db.execute(
            select(ServiceItem).where(ServiceItem.supplier_id == supplier.id)
        ).scalars().all()
        if not existing_services:
            upsert_service(
                db,
                service_id=None,
                supplier_id=supplier.id,
                name='Classroom day',
                unit_price=Decimal('800.00'),
                unit_type='day',
                course_id=course.id,
            )
            upsert_service(
                db,
                service_id=None,
                supplier_id=supplier.id,
                name='Trainer travel',
                unit_price=Decimal('120.00'),
                unit_type='trip',
            )

        edition = db.execute(select(CourseEdition).where(CourseEdition.course_id == course.id)).scalars().first()
        if not edition:
            create_edition(
                db,
                edition_id=None,
                course_id=course.id,
                run_id='RUN-0001',
                start_date=date(2024, 3, 4),
                end_date=date(2024, 3, 5),
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
