"""
Purchase order composition.

A ``CompositionSession`` is the explicit edit context for one order: the
caller's mode, the draft graph and the active course / edition selection.
Every operation takes the session as its first argument and returns an
``EditOutcome``. User-correctable problems come back as a message on the
outcome; operations forbidden by the mode gate are silent no-ops. Catalog
I/O happens before the buffer is touched, so a failing catalog call leaves
the session exactly as it was.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum

from app.models import EditMode, RiaStatus, WorkflowStatus
from app.services.catalog_store import EDITION_PATCH_FIELDS, CatalogStore, EditionRecord
from app.services.cost_model_service import CENT, CostKind, derived_order, order_totals, stored_decimal, subtotal
from app.services.order_draft import EmDraft, LineDraft, OrderDraft, blank_order, new_id

HEADER_FIELDS = frozenset(
    {
        'title',
        'status',
        'is_generic',
        'planned_amount',
        'actual_amount',
        'rda_code',
        'ria_code',
        'ria_status',
        'oda_code',
    }
)


class EditorState(str, Enum):
    EMPTY = 'EMPTY'
    COMPOSING = 'COMPOSING'
    FINALIZED = 'FINALIZED'


@dataclass(frozen=True)
class EditOutcome:
    applied: bool
    message: str | None = None
    needs_confirmation: bool = False
    created_id: str | None = None


NOOP = EditOutcome(applied=False)


def _rejected(message: str) -> EditOutcome:
    return EditOutcome(applied=False, message=message)


@dataclass
class CompositionSession:
    mode: EditMode
    draft: OrderDraft
    state: EditorState = EditorState.EMPTY
    active_course_ids: list[str] = field(default_factory=list)
    active_edition_ids: list[str] = field(default_factory=list)
    # edition id -> course id for every edition the session has seen
    edition_courses: dict[str, str] = field(default_factory=dict)

    @property
    def order_id(self) -> str:
        return self.draft.id

    @property
    def is_closed(self) -> bool:
        return self.draft.status == WorkflowStatus.CLOSED

    def has_composition(self) -> bool:
        return bool(self.draft.items or self.active_course_ids or self.active_edition_ids or self.draft.ems)


def can_edit_values(session: CompositionSession) -> bool:
    return session.state == EditorState.COMPOSING and not session.is_closed


def can_edit_structure(session: CompositionSession) -> bool:
    if not can_edit_values(session):
        return False
    return session.mode == EditMode.WORKFLOW or session.draft.is_generic


def can_manage_ems(session: CompositionSession) -> bool:
    return can_edit_values(session) and session.mode == EditMode.RECONCILIATION


def _refresh(session: CompositionSession) -> None:
    session.draft = derived_order(session.draft)


def _default_run_label() -> str:
    return f'RUN-{int(time.time() * 1000) % 10000:04d}'


def new_session(mode: EditMode, *, today: date | None = None) -> CompositionSession:
    return CompositionSession(mode=mode, draft=blank_order(today=today))


def open_session(draft: OrderDraft, mode: EditMode, catalog: CatalogStore) -> CompositionSession:
    """Build a session for a persisted order, deriving the active selection from its lines and EMs.

    Editions the catalog no longer knows stay active without a course. Their
    lines are kept and listed under ``orphan_edition_ids`` by
    ``describe_session``; ``remove_edition`` clears them, ``remove_course`` never does.
    """
    session = CompositionSession(mode=mode, draft=copy.deepcopy(draft))
    if draft.supplier_id:
        session.state = EditorState.COMPOSING
    for edition_id in draft.referenced_edition_ids():
        edition = catalog.get_edition(edition_id)
        session.active_edition_ids.append(edition_id)
        if edition is None:
            continue
        session.edition_courses[edition_id] = edition.course_id
        if edition.course_id not in session.active_course_ids:
            session.active_course_ids.append(edition.course_id)
    _refresh(session)
    return session


def _clear_composition(session: CompositionSession) -> None:
    session.draft.items = {}
    session.draft.ems = {}
    session.active_course_ids = []
    session.active_edition_ids = []
    session.edition_courses = {}


def select_supplier(
    session: CompositionSession,
    catalog: CatalogStore,
    supplier_id: str,
    *,
    confirm: bool = False,
) -> EditOutcome:
    if session.state == EditorState.FINALIZED or session.is_closed:
        return NOOP
    if session.mode != EditMode.WORKFLOW and not session.draft.is_generic:
        return NOOP
    if supplier_id == session.draft.supplier_id:
        return NOOP
    if catalog.get_supplier(supplier_id) is None:
        return _rejected('Supplier not found')
    if session.has_composition() and not confirm:
        return EditOutcome(
            applied=False,
            needs_confirmation=True,
            message='Changing supplier removes every course, edition, line and EM of this order',
        )
    _clear_composition(session)
    session.draft.supplier_id = supplier_id
    session.state = EditorState.COMPOSING
    _refresh(session)
    return EditOutcome(applied=True)


def update_header(session: CompositionSession, **fields) -> EditOutcome:
    """Edit order header fields.

    Allowed on closed orders too, so a closed order can be reopened through
    ``status``. ``is_generic`` only changes in workflow mode.
    """
    if session.state == EditorState.FINALIZED:
        return NOOP
    unknown = set(fields) - HEADER_FIELDS
    if unknown:
        return _rejected(f"Unknown order fields: {', '.join(sorted(unknown))}")
    if 'is_generic' in fields and session.mode != EditMode.WORKFLOW:
        fields.pop('is_generic')
    if not fields:
        return NOOP
    for amount_field in ('planned_amount', 'actual_amount'):
        if amount_field in fields:
            value = stored_decimal(fields[amount_field] or 0, CENT)
            if value is None:
                return _rejected('Amounts must be finite numbers below 10,000,000,000')
            if value < 0:
                return _rejected('Amounts cannot be negative')
            fields[amount_field] = value
    if 'title' in fields:
        title = str(fields['title'] or '').strip()
        if not title:
            return _rejected('Title is required')
        fields['title'] = title
    for code_field in ('rda_code', 'ria_code', 'oda_code'):
        if code_field in fields:
            fields[code_field] = str(fields[code_field] or '').strip()
    try:
        if 'status' in fields:
            fields['status'] = WorkflowStatus(fields['status'])
        if 'ria_status' in fields:
            fields['ria_status'] = RiaStatus(fields['ria_status'] or RiaStatus.NONE)
    except ValueError:
        return _rejected('Unknown status value')
    if 'is_generic' in fields:
        fields['is_generic'] = bool(fields['is_generic'])
    for name, value in fields.items():
        setattr(session.draft, name, value)
    _refresh(session)
    return EditOutcome(applied=True)


def add_course(session: CompositionSession, catalog: CatalogStore, course_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if course_id in session.active_course_ids:
        return NOOP
    course = catalog.get_course(course_id)
    if course is None or course.supplier_id != session.draft.supplier_id:
        return _rejected('Course is not offered by the order supplier')
    session.active_course_ids.append(course_id)
    return EditOutcome(applied=True)


def _drop_editions(session: CompositionSession, edition_ids: set[str]) -> None:
    session.active_edition_ids = [eid for eid in session.active_edition_ids if eid not in edition_ids]
    session.draft.items = {
        item_id: item for item_id, item in session.draft.items.items() if item.edition_id not in edition_ids
    }
    for em in session.draft.ems.values():
        em.edition_ids = [eid for eid in em.edition_ids if eid not in edition_ids]
    _refresh(session)


def remove_course(session: CompositionSession, course_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if course_id not in session.active_course_ids:
        return NOOP
    removed = {eid for eid in session.active_edition_ids if session.edition_courses.get(eid) == course_id}
    session.active_course_ids = [cid for cid in session.active_course_ids if cid != course_id]
    _drop_editions(session, removed)
    return EditOutcome(applied=True)


def _activate_edition(session: CompositionSession, edition_id: str, course_id: str) -> None:
    session.edition_courses[edition_id] = course_id
    if course_id not in session.active_course_ids:
        session.active_course_ids.append(course_id)
    if edition_id not in session.active_edition_ids:
        session.active_edition_ids.append(edition_id)


def create_edition(
    session: CompositionSession,
    catalog: CatalogStore,
    course_id: str,
    *,
    run_id: str = '',
    lms_lesson_id: str = '',
    start_date: date | None = None,
    end_date: date | None = None,
) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if course_id not in session.active_course_ids:
        return _rejected('Add the course to the order first')
    if start_date and end_date and end_date < start_date:
        return _rejected('Edition end date cannot be before start date')
    record = EditionRecord(
        id=new_id(),
        course_id=course_id,
        run_id=(run_id or '').strip() or _default_run_label(),
        lms_lesson_id=(lms_lesson_id or '').strip(),
        start_date=start_date,
        end_date=end_date,
    )
    edition_id = catalog.create_edition(record)
    _activate_edition(session, edition_id, course_id)
    return EditOutcome(applied=True, created_id=edition_id)


def attach_edition(session: CompositionSession, catalog: CatalogStore, edition_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if edition_id in session.active_edition_ids:
        return NOOP
    edition = catalog.get_edition(edition_id)
    if edition is None:
        return _rejected('Edition not found')
    course = catalog.get_course(edition.course_id)
    if course is None or course.supplier_id != session.draft.supplier_id:
        return _rejected('Edition belongs to a course of another supplier')
    _activate_edition(session, edition_id, edition.course_id)
    return EditOutcome(applied=True)


def clone_edition(
    session: CompositionSession,
    catalog: CatalogStore,
    source_edition_id: str,
    *,
    run_id: str = '',
    start_date: date | None = None,
    end_date: date | None = None,
) -> EditOutcome:
    """Create a new run of an active edition and copy its line structure onto it.

    Cloned lines keep service and price but start with nothing delivered.
    """
    if not can_edit_structure(session):
        return NOOP
    if source_edition_id not in session.active_edition_ids:
        return _rejected('Edition is not part of this order')
    source = catalog.get_edition(source_edition_id)
    if source is None:
        return _rejected('Edition not found')
    if start_date and end_date and end_date < start_date:
        return _rejected('Edition end date cannot be before start date')
    record = EditionRecord(
        id=new_id(),
        course_id=source.course_id,
        run_id=(run_id or '').strip() or _default_run_label(),
        lms_lesson_id=source.lms_lesson_id,
        start_date=start_date,
        end_date=end_date,
    )
    edition_id = catalog.create_edition(record)
    _activate_edition(session, edition_id, source.course_id)
    for item in session.draft.items_for_editions([source_edition_id]):
        clone = LineDraft(
            id=new_id(),
            edition_id=edition_id,
            service_item_id=item.service_item_id,
            planned_qty=item.planned_qty,
            actual_qty=Decimal('0'),
            unit_price_override=item.unit_price_override,
        )
        session.draft.items[clone.id] = clone
    _refresh(session)
    return EditOutcome(applied=True, created_id=edition_id)


def patch_edition(session: CompositionSession, catalog: CatalogStore, edition_id: str, **fields) -> EditOutcome:
    if not can_edit_values(session):
        return NOOP
    if edition_id not in session.active_edition_ids:
        return _rejected('Edition is not part of this order')
    if not fields:
        return NOOP
    unknown = set(fields) - EDITION_PATCH_FIELDS
    if unknown:
        return _rejected(f"Unknown edition fields: {', '.join(sorted(unknown))}")
    if 'run_id' in fields and not (fields['run_id'] or '').strip():
        return _rejected('Run label is required')
    current = catalog.get_edition(edition_id)
    if current is None:
        return _rejected('Edition not found')
    start_date = fields.get('start_date', current.start_date)
    end_date = fields.get('end_date', current.end_date)
    if start_date and end_date and end_date < start_date:
        return _rejected('Edition end date cannot be before start date')
    catalog.patch_edition(edition_id, fields)
    return EditOutcome(applied=True)


def remove_edition(session: CompositionSession, edition_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if edition_id not in session.active_edition_ids:
        return NOOP
    _drop_editions(session, {edition_id})
    return EditOutcome(applied=True)


def add_line_item(session: CompositionSession, edition_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if edition_id not in session.active_edition_ids:
        return _rejected('Edition is not part of this order')
    if session.mode == EditMode.RECONCILIATION:
        planned_qty, actual_qty = Decimal('0'), Decimal('1')
    else:
        planned_qty, actual_qty = Decimal('1'), Decimal('0')
    item = LineDraft(id=new_id(), edition_id=edition_id, planned_qty=planned_qty, actual_qty=actual_qty)
    session.draft.items[item.id] = item
    _refresh(session)
    return EditOutcome(applied=True, created_id=item.id)


def select_service(
    session: CompositionSession,
    catalog: CatalogStore,
    line_id: str,
    service_item_id: str,
) -> EditOutcome:
    if not can_edit_values(session):
        return NOOP
    item = session.draft.items.get(line_id)
    if item is None:
        return _rejected('Line item not found')
    service = catalog.get_service(service_item_id)
    if service is None or service.supplier_id != session.draft.supplier_id:
        return _rejected('Service is not offered by the order supplier')
    if service.course_id and service.course_id != session.edition_courses.get(item.edition_id):
        return _rejected('Service is priced for a different course')
    price = stored_decimal(service.unit_price)
    if price is None:
        return _rejected('Service price is not a valid amount')
    item.service_item_id = service.id
    # Snapshot of the catalog price, editable afterwards.
    item.unit_price_override = price
    _refresh(session)
    return EditOutcome(applied=True)


def update_line_item(
    session: CompositionSession,
    line_id: str,
    *,
    planned_qty: Decimal | None = None,
    actual_qty: Decimal | None = None,
    unit_price_override: Decimal | None = None,
) -> EditOutcome:
    if not can_edit_values(session):
        return NOOP
    item = session.draft.items.get(line_id)
    if item is None:
        return _rejected('Line item not found')
    changes = {
        name: stored_decimal(value)
        for name, value in (
            ('planned_qty', planned_qty),
            ('actual_qty', actual_qty),
            ('unit_price_override', unit_price_override),
        )
        if value is not None
    }
    if not changes:
        return NOOP
    if any(value is None for value in changes.values()):
        return _rejected('Quantities and prices must be finite numbers below 10,000,000,000')
    if any(value < 0 for value in changes.values()):
        return _rejected('Quantities and prices cannot be negative')
    for name, value in changes.items():
        setattr(item, name, value)
    _refresh(session)
    return EditOutcome(applied=True)


def remove_line_item(session: CompositionSession, line_id: str) -> EditOutcome:
    if not can_edit_structure(session):
        return NOOP
    if line_id not in session.draft.items:
        return NOOP
    del session.draft.items[line_id]
    _refresh(session)
    return EditOutcome(applied=True)


def _check_em_allocation(session: CompositionSession, edition_ids: list[str], *, em_id: str | None) -> str | None:
    if not edition_ids:
        return 'Select at least one edition for the EM'
    unknown = [eid for eid in edition_ids if eid not in session.active_edition_ids]
    if unknown:
        return 'EM editions must belong to this order'
    for other in session.draft.ems.values():
        if other.id == em_id:
            continue
        if set(other.edition_ids) & set(edition_ids):
            return f'Edition already covered by EM {other.code}'
    return None


def create_em(session: CompositionSession, code: str, edition_ids: list[str]) -> EditOutcome:
    if not can_manage_ems(session):
        return NOOP
    clean_code = (code or '').strip()
    if not clean_code:
        return _rejected('EM code is required')
    unique_ids = list(dict.fromkeys(edition_ids))
    problem = _check_em_allocation(session, unique_ids, em_id=None)
    if problem:
        return _rejected(problem)
    em = EmDraft(id=new_id(), code=clean_code, edition_ids=unique_ids)
    session.draft.ems[em.id] = em
    _refresh(session)
    return EditOutcome(applied=True, created_id=em.id)


def reallocate_em(session: CompositionSession, em_id: str, edition_ids: list[str]) -> EditOutcome:
    if not can_manage_ems(session):
        return NOOP
    em = session.draft.ems.get(em_id)
    if em is None:
        return _rejected('EM not found')
    unique_ids = list(dict.fromkeys(edition_ids))
    problem = _check_em_allocation(session, unique_ids, em_id=em_id)
    if problem:
        return _rejected(problem)
    em.edition_ids = unique_ids
    _refresh(session)
    return EditOutcome(applied=True)


def remove_em(session: CompositionSession, em_id: str) -> EditOutcome:
    if not can_manage_ems(session):
        return NOOP
    if em_id not in session.draft.ems:
        return NOOP
    del session.draft.ems[em_id]
    _refresh(session)
    return EditOutcome(applied=True)


def validate_for_save(session: CompositionSession) -> str | None:
    if session.state == EditorState.FINALIZED:
        return 'Order editor is already closed'
    if not session.draft.supplier_id:
        return 'Select a supplier before saving'
    return None


def build_save_snapshot(session: CompositionSession) -> OrderDraft:
    """Detached copy of the draft with every derived cost and EM amount recomputed."""
    return copy.deepcopy(derived_order(session.draft))


def edition_subtotal(session: CompositionSession, edition_id: str, kind: CostKind) -> Decimal:
    return subtotal(session.draft.items.values(), kind, edition_ids={edition_id})


def course_subtotal(session: CompositionSession, course_id: str, kind: CostKind) -> Decimal:
    edition_ids = {eid for eid in session.active_edition_ids if session.edition_courses.get(eid) == course_id}
    return subtotal(session.draft.items.values(), kind, edition_ids=edition_ids)


def describe_session(session: CompositionSession) -> dict:
    draft = session.draft
    totals = order_totals(draft)
    orphans = [eid for eid in session.active_edition_ids if eid not in session.edition_courses]
    courses = []
    for course_id in session.active_course_ids:
        editions = []
        for edition_id in session.active_edition_ids:
            if session.edition_courses.get(edition_id) != course_id:
                continue
            editions.append(
                {
                    'edition_id': edition_id,
                    'planned_total': edition_subtotal(session, edition_id, CostKind.PLANNED),
                    'actual_total': edition_subtotal(session, edition_id, CostKind.ACTUAL),
                    'line_ids': [item.id for item in draft.items_for_editions([edition_id])],
                }
            )
        courses.append(
            {
                'course_id': course_id,
                'planned_total': course_subtotal(session, course_id, CostKind.PLANNED),
                'actual_total': course_subtotal(session, course_id, CostKind.ACTUAL),
                'editions': editions,
            }
        )
    return {
        'order_id': draft.id,
        'mode': session.mode.value,
        'state': session.state.value,
        'read_only': session.is_closed,
        'can_edit_structure': can_edit_structure(session),
        'header': {
            'supplier_id': draft.supplier_id,
            'title': draft.title,
            'created_at': draft.created_at,
            'status': draft.status.value,
            'is_generic': draft.is_generic,
            'planned_amount': draft.planned_amount,
            'actual_amount': draft.actual_amount,
            'rda_code': draft.rda_code,
            'ria_code': draft.ria_code,
            'ria_status': draft.ria_status.value,
            'oda_code': draft.oda_code,
        },
        'courses': courses,
        'orphan_edition_ids': orphans,
        'items': [
            {
                'id': item.id,
                'edition_id': item.edition_id,
                'service_item_id': item.service_item_id,
                'planned_qty': item.planned_qty,
                'actual_qty': item.actual_qty,
                'unit_price_override': item.unit_price_override,
                'planned_cost': item.planned_cost,
                'actual_cost': item.actual_cost,
            }
            for item in draft.items.values()
        ],
        'ems': [
            {'id': em.id, 'code': em.code, 'edition_ids': list(em.edition_ids), 'amount': em.amount}
            for em in draft.ems.values()
        ],
        'totals': {
            'planned': totals.planned,
            'actual': totals.actual,
            'em': totals.em_total,
        },
    }
