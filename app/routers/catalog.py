from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import to_jsonable
from app.models import Course, CourseEdition, ServiceItem, Supplier
from app.services.catalog_service import (
    copy_services_to_supplier,
    create_edition,
    delete_course,
    delete_service,
    delete_supplier,
    list_courses,
    list_editions,
    list_services,
    list_suppliers,
    patch_edition,
    upsert_course,
    upsert_service,
    upsert_supplier,
)

router = APIRouter(prefix='/catalog', tags=['catalog'])


class SupplierIn(BaseModel):
    name: str
    contract_number: str = ''
    is_active: bool = True
    contract_value: Decimal = Decimal('0')
    contract_start: date | None = None
    contract_end: date | None = None


class ServiceIn(BaseModel):
    supplier_id: str
    name: str
    unit_price: Decimal
    unit_type: str = ''
    course_id: str | None = None


class ServiceCopyIn(BaseModel):
    service_ids: list[str]
    target_supplier_id: str


class CourseIn(BaseModel):
    supplier_id: str
    title: str
    lms_element_id: str = ''
    sif_code: str | None = None


class EditionIn(BaseModel):
    run_id: str
    lms_lesson_id: str = ''
    start_date: date | None = None
    end_date: date | None = None


class EditionPatch(BaseModel):
    run_id: str | None = None
    lms_lesson_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None


def _supplier_row(row: Supplier) -> dict:
    return to_jsonable(
        {
            'id': row.id,
            'name': row.name,
            'contract_number': row.contract_number,
            'is_active': row.is_active,
            'contract_value': row.contract_value,
            'contract_start': row.contract_start,
            'contract_end': row.contract_end,
        }
    )


def _service_row(row: ServiceItem) -> dict:
    return to_jsonable(
        {
            'id': row.id,
            'supplier_id': row.supplier_id,
            'course_id': row.course_id,
            'name': row.name,
            'unit_price': row.unit_price,
            'unit_type': row.unit_type,
        }
    )


def _course_row(row: Course) -> dict:
    return {
        'id': row.id,
        'supplier_id': row.supplier_id,
        'title': row.title,
        'lms_element_id': row.lms_element_id,
        'sif_code': row.sif_code,
    }


def _edition_row(row: CourseEdition) -> dict:
    return to_jsonable(
        {
            'id': row.id,
            'course_id': row.course_id,
            'run_id': row.run_id,
            'lms_lesson_id': row.lms_lesson_id,
            'start_date': row.start_date,
            'end_date': row.end_date,
        }
    )


@router.get('/suppliers')
def suppliers_index(search: str = '', db: Session = Depends(get_db)):
    return [_supplier_row(row) for row in list_suppliers(db, search=search)]


@router.post('/suppliers', status_code=201)
def suppliers_create(payload: SupplierIn, db: Session = Depends(get_db)):
    return _save_supplier(db, None, payload)


@router.put('/suppliers/{supplier_id}')
def suppliers_update(supplier_id: str, payload: SupplierIn, db: Session = Depends(get_db)):
    return _save_supplier(db, supplier_id, payload)


def _save_supplier(db: Session, supplier_id: str | None, payload: SupplierIn) -> dict:
    try:
        supplier = upsert_supplier(db, supplier_id=supplier_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _supplier_row(supplier)


@router.delete('/suppliers/{supplier_id}', status_code=204)
def suppliers_delete(supplier_id: str, db: Session = Depends(get_db)):
    try:
        delete_supplier(db, supplier_id=supplier_id)
    except ValueError as exc:
        raise HTTPException(status_code=409 if 'purchase orders' in str(exc) else 404, detail=str(exc)) from exc
    db.commit()


@router.get('/services')
def services_index(
    supplier_id: str | None = None,
    generic_only: bool = False,
    course_id: str | None = None,
    search: str = '',
    db: Session = Depends(get_db),
):
    rows = list_services(db, supplier_id=supplier_id, generic_only=generic_only, course_id=course_id, search=search)
    return [_service_row(row) for row in rows]


@router.post('/services', status_code=201)
def services_create(payload: ServiceIn, db: Session = Depends(get_db)):
    return _save_service(db, None, payload)


@router.put('/services/{service_id}')
def services_update(service_id: str, payload: ServiceIn, db: Session = Depends(get_db)):
    return _save_service(db, service_id, payload)


def _save_service(db: Session, service_id: str | None, payload: ServiceIn) -> dict:
    try:
        service = upsert_service(db, service_id=service_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _service_row(service)


@router.post('/services/copy', status_code=201)
def services_copy(payload: ServiceCopyIn, db: Session = Depends(get_db)):
    try:
        copies = copy_services_to_supplier(
            db,
            service_ids=payload.service_ids,
            target_supplier_id=payload.target_supplier_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return [_service_row(row) for row in copies]


@router.delete('/services/{service_id}', status_code=204)
def services_delete(service_id: str, db: Session = Depends(get_db)):
    try:
        delete_service(db, service_id=service_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()


@router.get('/courses')
def courses_index(supplier_id: str | None = None, db: Session = Depends(get_db)):
    return [_course_row(row) for row in list_courses(db, supplier_id=supplier_id)]


@router.post('/courses', status_code=201)
def courses_create(payload: CourseIn, db: Session = Depends(get_db)):
    return _save_course(db, None, payload)


@router.put('/courses/{course_id}')
def courses_update(course_id: str, payload: CourseIn, db: Session = Depends(get_db)):
    return _save_course(db, course_id, payload)


def _save_course(db: Session, course_id: str | None, payload: CourseIn) -> dict:
    try:
        course = upsert_course(db, course_id=course_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _course_row(course)


@router.delete('/courses/{course_id}', status_code=204)
def courses_delete(course_id: str, db: Session = Depends(get_db)):
    try:
        delete_course(db, course_id=course_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()


@router.get('/courses/{course_id}/editions')
def editions_index(course_id: str, db: Session = Depends(get_db)):
    return [_edition_row(row) for row in list_editions(db, course_id=course_id)]


@router.post('/courses/{course_id}/editions', status_code=201)
def editions_create(course_id: str, payload: EditionIn, db: Session = Depends(get_db)):
    try:
        edition = create_edition(db, edition_id=None, course_id=course_id, **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _edition_row(edition)


@router.patch('/editions/{edition_id}')
def editions_patch(edition_id: str, payload: EditionPatch, db: Session = Depends(get_db)):
    try:
        edition = patch_edition(db, edition_id=edition_id, fields=payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _edition_row(edition)
