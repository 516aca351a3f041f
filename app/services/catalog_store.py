from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol


class CatalogUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class SupplierRecord:
    id: str
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class CourseRecord:
    id: str
    supplier_id: str
    title: str
    lms_element_id: str = ''
    sif_code: str | None = None


@dataclass(frozen=True)
class ServiceRecord:
    id: str
    supplier_id: str
    name: str
    unit_price: Decimal
    unit_type: str = ''
    course_id: str | None = None


@dataclass(frozen=True)
class EditionRecord:
    id: str
    course_id: str
    run_id: str
    lms_lesson_id: str = ''
    start_date: date | None = None
    end_date: date | None = None


EDITION_PATCH_FIELDS = frozenset({'run_id', 'lms_lesson_id', 'start_date', 'end_date'})


class CatalogStore(Protocol):
    def get_supplier(self, supplier_id: str) -> SupplierRecord | None: ...

    def get_course(self, course_id: str) -> CourseRecord | None: ...

    def get_service(self, service_id: str) -> ServiceRecord | None: ...

    def get_edition(self, edition_id: str) -> EditionRecord | None: ...

    def create_edition(self, edition: EditionRecord) -> str: ...

    def patch_edition(self, edition_id: str, fields: dict) -> EditionRecord: ...

    def list_courses_for_supplier(self, supplier_id: str) -> list[CourseRecord]: ...

    def list_services_for_supplier(
        self,
        supplier_id: str,
        *,
        generic_only: bool = False,
        course_id: str | None = None,
    ) -> list[ServiceRecord]: ...

    def list_editions_for_course(self, course_id: str) -> list[EditionRecord]: ...
