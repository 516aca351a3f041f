from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Course, CourseEdition, PurchaseOrder, ServiceItem, Supplier
from app.services.catalog_store import (
    EDITION_PATCH_FIELDS,
    CatalogUnavailableError,
    CourseRecord,
    EditionRecord,
    ServiceRecord,
    SupplierRecord,
)
from app.services.order_draft import new_id

logger = get_logger('services.catalog')


def _clean(value: str | None) -> str:
    return (value or '').strip()


def _validate_interval(start: date | None, end: date | None, *, label: str) -> None:
    if start and end and end < start:
        raise ValueError(f'{label} end date cannot be before start date')


def _supplier_or_error(db: Session, supplier_id: str) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None:
        raise ValueError('Supplier not found')
    return supplier


def list_suppliers(db: Session, *, search: str = '') -> list[Supplier]:
    query = select(Supplier).order_by(Supplier.name.asc())
    term = _clean(search)
    if term:
        query = query.where(
            or_(Supplier.name.ilike(f'%{term}%'), Supplier.contract_number.ilike(f'%{term}%'))
        )
    return db.execute(query).scalars().all()


def upsert_supplier(
    db: Session,
    *,
    supplier_id: str | None,
    name: str,
    contract_number: str = '',
    is_active: bool = True,
    contract_value: Decimal = Decimal('0'),
    contract_start: date | None = None,
    contract_end: date | None = None,
) -> Supplier:
    clean_name = _clean(name)
    if not clean_name:
        raise ValueError('Supplier name is required')
    if contract_value < 0:
        raise ValueError('Contract value cannot be negative')
    _validate_interval(contract_start, contract_end, label='Contract')

    supplier = db.get(Supplier, supplier_id) if supplier_id else None
    if supplier is None:
        supplier = Supplier(id=supplier_id or new_id())
        db.add(supplier)
    supplier.name = clean_name
    supplier.contract_number = _clean(contract_number)
    supplier.is_active = is_active
    supplier.contract_value = contract_value
    supplier.contract_start = contract_start
    supplier.contract_end = contract_end
    db.flush()
    return supplier


def delete_supplier(db: Session, *, supplier_id: str) -> None:
    """Delete a supplier with its services, courses and their editions.

    Blocked while any purchase order still references the supplier, so no
    order is left pointing at a missing supplier.
    """
    supplier = _supplier_or_error(db, supplier_id)
    referenced = db.execute(
        select(PurchaseOrder.id).where(PurchaseOrder.supplier_id == supplier_id).limit(1)
    ).first()
    if referenced:
        raise ValueError('Supplier has purchase orders; delete or reassign them first')

    course_ids = select(Course.id).where(Course.supplier_id == supplier_id)
    db.execute(delete(CourseEdition).where(CourseEdition.course_id.in_(course_ids)))
    db.execute(delete(ServiceItem).where(ServiceItem.supplier_id == supplier_id))
    db.execute(delete(Course).where(Course.supplier_id == supplier_id))
    db.delete(supplier)
    db.flush()


def list_services(
    db: Session,
    *,
    supplier_id: str | None = None,
    generic_only: bool = False,
    course_id: str | None = None,
    search: str = '',
) -> list[ServiceItem]:
    query = select(ServiceItem).order_by(ServiceItem.name.asc())
    if supplier_id is not None:
        query = query.where(ServiceItem.supplier_id == supplier_id)
    if generic_only:
        query = query.where(ServiceItem.course_id.is_(None))
    elif course_id is not None:
        query = query.where(ServiceItem.course_id == course_id)
    term = _clean(search)
    if term:
        query = query.where(ServiceItem.name.ilike(f'%{term}%'))
    return db.execute(query).scalars().all()


def upsert_service(
    db: Session,
    *,
    service_id: str | None,
    supplier_id: str,
    name: str,
    unit_price: Decimal,
    unit_type: str = '',
    course_id: str | None = None,
) -> ServiceItem:
    clean_name = _clean(name)
    if not clean_name:
        raise ValueError('Service name is required')
    if unit_price < 0:
        raise ValueError('Unit price cannot be negative')
    _supplier_or_error(db, supplier_id)
    if course_id:
        course = db.get(Course, course_id)
        if course is None or course.supplier_id != supplier_id:
            raise ValueError('Course does not belong to the supplier')

    service = db.get(ServiceItem, service_id) if service_id else None
    if service is None:
        service = ServiceItem(id=service_id or new_id(), supplier_id=supplier_id)
        db.add(service)
    service.supplier_id = supplier_id
    service.course_id = course_id or None
    service.name = clean_name
    service.unit_price = unit_price
    service.unit_type = _clean(unit_type)
    db.flush()
    return service


def delete_service(db: Session, *, service_id: str) -> None:
    service = db.get(ServiceItem, service_id)
    if service is None:
        raise ValueError('Service not found')
    db.delete(service)
    db.flush()


def copy_services_to_supplier(db: Session, *, service_ids: list[str], target_supplier_id: str) -> list[ServiceItem]:
    if not service_ids:
        raise ValueError('Select at least one service')
    _supplier_or_error(db, target_supplier_id)
    sources = db.execute(select(ServiceItem).where(ServiceItem.id.in_(service_ids))).scalars().all()
    copies: list[ServiceItem] = []
    for source in sources:
        # Course scope is dropped: courses belong to the source supplier.
        copy = ServiceItem(
            id=new_id(),
            supplier_id=target_supplier_id,
            course_id=None,
            name=source.name,
            unit_price=source.unit_price,
            unit_type=source.unit_type,
        )
        db.add(copy)
        copies.append(copy)
    db.flush()
    return copies


def list_courses(db: Session, *, supplier_id: str | None = None) -> list[Course]:
    query = select(Course).order_by(Course.title.asc())
    if supplier_id is not None:
        query = query.where(Course.supplier_id == supplier_id)
    return db.execute(query).scalars().all()


def upsert_course(
    db: Session,
    *,
    course_id: str | None,
    supplier_id: str,
    title: str,
    lms_element_id: str = '',
    sif_code: str | None = None,
) -> Course:
    clean_title = _clean(title)
    if not clean_title:
        raise ValueError('Course title is required')
    _supplier_or_error(db, supplier_id)

    course = db.get(Course, course_id) if course_id else None
    if course is None:
        course = Course(id=course_id or new_id(), supplier_id=supplier_id)
        db.add(course)
    elif course.supplier_id != supplier_id:
        raise ValueError('A course cannot move to another supplier')
    course.title = clean_title
    course.lms_element_id = _clean(lms_element_id)
    course.sif_code = _clean(sif_code) or None
    db.flush()
    return course


def delete_course(db: Session, *, course_id: str) -> None:
    course = db.get(Course, course_id)
    if course is None:
        raise ValueError('Course not found')
    db.execute(delete(CourseEdition).where(CourseEdition.course_id == course_id))
    db.execute(delete(ServiceItem).where(ServiceItem.course_id == course_id))
    db.delete(course)
    db.flush()


def list_editions(db: Session, *, course_id: str) -> list[CourseEdition]:
    return db.execute(
        select(CourseEdition)
        .where(CourseEdition.course_id == course_id)
        .order_by(CourseEdition.start_date.asc(), CourseEdition.run_id.asc())
    ).scalars().all()


def create_edition(
    db: Session,
    *,
    edition_id: str | None,
    course_id: str,
    run_id: str,
    lms_lesson_id: str = '',
    start_date: date | None = None,
    end_date: date | None = None,
) -> CourseEdition:
    if db.get(Course, course_id) is None:
        raise ValueError('Course not found')
    clean_run = _clean(run_id)
    if not clean_run:
        raise ValueError('Run label is required')
    _validate_interval(start_date, end_date, label='Edition')
    edition = CourseEdition(
        id=edition_id or new_id(),
        course_id=course_id,
        run_id=clean_run,
        lms_lesson_id=_clean(lms_lesson_id),
        start_date=start_date,
        end_date=end_date,
    )
    db.add(edition)
    db.flush()
    return edition


def patch_edition(db: Session, *, edition_id: str, fields: dict) -> CourseEdition:
    unknown = set(fields) - EDITION_PATCH_FIELDS
    if unknown:
        raise ValueError(f"Unknown edition fields: {', '.join(sorted(unknown))}")
    edition = db.get(CourseEdition, edition_id)
    if edition is None:
        raise ValueError('Edition not found')
    for name, value in fields.items():
        setattr(edition, name, _clean(value) if name in {'run_id', 'lms_lesson_id'} else value)
    if not edition.run_id:
        raise ValueError('Run label is required')
    _validate_interval(edition.start_date, edition.end_date, label='Edition')
    db.flush()
    return edition


def _supplier_record(row: Supplier) -> SupplierRecord:
    return SupplierRecord(id=row.id, name=row.name, is_active=row.is_active)


def _course_record(row: Course) -> CourseRecord:
    return CourseRecord(
        id=row.id,
        supplier_id=row.supplier_id,
        title=row.title,
        lms_element_id=row.lms_element_id,
        sif_code=row.sif_code,
    )


def _service_record(row: ServiceItem) -> ServiceRecord:
    return ServiceRecord(
        id=row.id,
        supplier_id=row.supplier_id,
        name=row.name,
        unit_price=Decimal(row.unit_price),
        unit_type=row.unit_type,
        course_id=row.course_id,
    )


def _edition_record(row: CourseEdition) -> EditionRecord:
    return EditionRecord(
        id=row.id,
        course_id=row.course_id,
        run_id=row.run_id,
        lms_lesson_id=row.lms_lesson_id,
        start_date=row.start_date,
        end_date=row.end_date,
    )


class SqlCatalogStore:
    """Catalog access for the composition engine.

    Every call runs in its own short-lived session; writes are committed
    before returning so a new edition id is usable as soon as it is handed
    back.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _read(self, fn):
        try:
            with self._session_factory() as db:
                return fn(db)
        except SQLAlchemyError as exc:
            logger.error('catalog read failed', exc_info=True)
            raise CatalogUnavailableError('Catalog is unavailable') from exc

    def _write(self, fn):
        try:
            with self._session_factory() as db:
                result = fn(db)
                db.commit()
                return result
        except SQLAlchemyError as exc:
            logger.error('catalog write failed', exc_info=True)
            raise CatalogUnavailableError('Catalog write failed') from exc

    def get_supplier(self, supplier_id: str) -> SupplierRecord | None:
        def _get(db: Session):
            row = db.get(Supplier, supplier_id)
            return _supplier_record(row) if row else None

        return self._read(_get)

    def get_course(self, course_id: str) -> CourseRecord | None:
        def _get(db: Session):
            row = db.get(Course, course_id)
            return _course_record(row) if row else None

        return self._read(_get)

    def get_service(self, service_id: str) -> ServiceRecord | None:
        def _get(db: Session):
            row = db.get(ServiceItem, service_id)
            return _service_record(row) if row else None

        return self._read(_get)

    def get_edition(self, edition_id: str) -> EditionRecord | None:
        def _get(db: Session):
            row = db.get(CourseEdition, edition_id)
            return _edition_record(row) if row else None

        return self._read(_get)

    def create_edition(self, edition: EditionRecord) -> str:
        def _create(db: Session) -> str:
            row = create_edition(
                db,
                edition_id=edition.id or None,
                course_id=edition.course_id,
                run_id=edition.run_id,
                lms_lesson_id=edition.lms_lesson_id,
                start_date=edition.start_date,
                end_date=edition.end_date,
            )
            return row.id

        return self._write(_create)

    def patch_edition(self, edition_id: str, fields: dict) -> EditionRecord:
        return self._write(lambda db: _edition_record(patch_edition(db, edition_id=edition_id, fields=fields)))

    def list_courses_for_supplier(self, supplier_id: str) -> list[CourseRecord]:
        return self._read(lambda db: [_course_record(row) for row in list_courses(db, supplier_id=supplier_id)])

    def list_services_for_supplier(
        self,
        supplier_id: str,
        *,
        generic_only: bool = False,
        course_id: str | None = None,
    ) -> list[ServiceRecord]:
        return self._read(
            lambda db: [
                _service_record(row)
                for row in list_services(db, supplier_id=supplier_id, generic_only=generic_only, course_id=course_id)
            ]
        )

    def list_editions_for_course(self, course_id: str) -> list[EditionRecord]:
        return self._read(lambda db: [_edition_record(row) for row in list_editions(db, course_id=course_id)])
