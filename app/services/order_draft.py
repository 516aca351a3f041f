from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.models import RiaStatus, WorkflowStatus


def new_id() -> str:
    return uuid4().hex


@dataclass
class LineDraft:
    id: str
    edition_id: str
    service_item_id: str | None = None
    planned_qty: Decimal = Decimal('0')
    actual_qty: Decimal = Decimal('0')
    unit_price_override: Decimal = Decimal('0')
    planned_cost: Decimal = Decimal('0.00')
    actual_cost: Decimal = Decimal('0.00')


@dataclass
class EmDraft:
    id: str
    code: str
    edition_ids: list[str] = field(default_factory=list)
    amount: Decimal = Decimal('0.00')


@dataclass
class OrderDraft:
    """In-memory purchase order graph.

    Line items and EMs live in id-keyed dicts (insertion ordered); every
    cross-reference (line -> edition, EM -> editions) is an id, never an
    embedded object.
    """

    id: str
    supplier_id: str | None
    title: str
    created_at: date
    status: WorkflowStatus = WorkflowStatus.DRAFT
    is_generic: bool = False
    planned_amount: Decimal = Decimal('0.00')
    actual_amount: Decimal = Decimal('0.00')
    rda_code: str = ''
    ria_code: str = ''
    ria_status: RiaStatus = RiaStatus.NONE
    oda_code: str = ''
    items: dict[str, LineDraft] = field(default_factory=dict)
    ems: dict[str, EmDraft] = field(default_factory=dict)

    def items_for_editions(self, edition_ids) -> list[LineDraft]:
        wanted = set(edition_ids)
        return [item for item in self.items.values() if item.edition_id in wanted]

    def referenced_edition_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for item in self.items.values():
            seen.setdefault(item.edition_id, None)
        for em in self.ems.values():
            for edition_id in em.edition_ids:
                seen.setdefault(edition_id, None)
        return list(seen)


def blank_order(*, today: date | None = None, title: str = 'New purchase order') -> OrderDraft:
    return OrderDraft(
        id=new_id(),
        supplier_id=None,
        title=title,
        created_at=today or date.today(),
    )
