from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import (
    PurchaseEm,
    PurchaseEmEdition,
    PurchaseLineItem,
    PurchaseOrder,
    Supplier,
    WorkflowStatus,
)
from app.services.audit_service import log_audit
from app.services.cost_model_service import derived_order, order_actual_total, order_planned_total
from app.services.order_draft import EmDraft, LineDraft, OrderDraft

logger = get_logger('services.order_sync')

STATUS_FILTER_ACTIVE = 'ACTIVE'
STATUS_FILTER_ALL = 'ALL'


class OrderSyncError(RuntimeError):
    pass


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def save_order(db: Session, draft: OrderDraft) -> PurchaseOrder:
    """Replace the persisted order graph with ``draft``.

    Header is upserted; line items, EMs and EM allocations are deleted for
    the order id and inserted again. No diffing.
    """
    if not draft.supplier_id:
        raise ValueError('Select a supplier before saving')
    draft = derived_order(draft)

    po = db.get(PurchaseOrder, draft.id)
    if po is None:
        po = PurchaseOrder(id=draft.id)
        db.add(po)
    po.supplier_id = draft.supplier_id
    po.title = draft.title
    po.created_at = draft.created_at
    po.status = draft.status
    po.is_generic = draft.is_generic
    po.planned_amount = draft.planned_amount
    po.actual_amount = draft.actual_amount
    po.rda_code = draft.rda_code
    po.ria_code = draft.ria_code
    po.ria_status = draft.ria_status
    po.oda_code = draft.oda_code
    po.updated_at = _now()
    db.flush()

    em_ids = select(PurchaseEm.id).where(PurchaseEm.purchase_order_id == draft.id)
    db.execute(delete(PurchaseEmEdition).where(PurchaseEmEdition.purchase_em_id.in_(em_ids)))
    db.execute(delete(PurchaseEm).where(PurchaseEm.purchase_order_id == draft.id))
    db.execute(delete(PurchaseLineItem).where(PurchaseLineItem.purchase_order_id == draft.id))

    db.add_all(
        PurchaseLineItem(
            id=item.id,
            purchase_order_id=draft.id,
            edition_id=item.edition_id,
            service_item_id=item.service_item_id,
            planned_qty=item.planned_qty,
            actual_qty=item.actual_qty,
            unit_price_override=item.unit_price_override,
            planned_cost=item.planned_cost,
            actual_cost=item.actual_cost,
            position=position,
        )
        for position, item in enumerate(draft.items.values())
    )
    for position, em in enumerate(draft.ems.values()):
        db.add(PurchaseEm(id=em.id, purchase_order_id=draft.id, code=em.code, amount=em.amount, position=position))
        db.add_all(PurchaseEmEdition(purchase_em_id=em.id, course_edition_id=edition_id) for edition_id in em.edition_ids)
    db.flush()
    return po


def _draft_from_rows(po: PurchaseOrder, lines: list[PurchaseLineItem], ems: list[PurchaseEm], allocations: dict[str, list[str]]) -> OrderDraft:
    return OrderDraft(
        id=po.id,
        supplier_id=po.supplier_id,
        title=po.title,
        created_at=po.created_at,
        status=po.status,
        is_generic=po.is_generic,
        planned_amount=Decimal(po.planned_amount),
        actual_amount=Decimal(po.actual_amount),
        rda_code=po.rda_code,
        ria_code=po.ria_code,
        ria_status=po.ria_status,
        oda_code=po.oda_code,
        items={
            line.id: LineDraft(
                id=line.id,
                edition_id=line.edition_id,
                service_item_id=line.service_item_id,
                planned_qty=Decimal(line.planned_qty),
                actual_qty=Decimal(line.actual_qty),
                unit_price_override=Decimal(line.unit_price_override),
                planned_cost=Decimal(line.planned_cost),
                actual_cost=Decimal(line.actual_cost),
            )
            for line in lines
        },
        ems={
            em.id: EmDraft(id=em.id, code=em.code, edition_ids=allocations.get(em.id, []), amount=Decimal(em.amount))
            for em in ems
        },
    )


def load_order_drafts(db: Session, *, order_ids: list[str] | None = None, supplier_ids: list[str] | None = None) -> list[OrderDraft]:
    query = select(PurchaseOrder).order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.asc())
    if order_ids is not None:
        query = query.where(PurchaseOrder.id.in_(order_ids))
    if supplier_ids is not None:
        query = query.where(PurchaseOrder.supplier_id.in_(supplier_ids))
    orders = db.execute(query).scalars().all()
    if not orders:
        return []
    ids = [po.id for po in orders]

    lines_by_order: dict[str, list[PurchaseLineItem]] = {}
    for line in db.execute(
        select(PurchaseLineItem)
        .where(PurchaseLineItem.purchase_order_id.in_(ids))
        .order_by(PurchaseLineItem.position.asc())
    ).scalars():
        lines_by_order.setdefault(line.purchase_order_id, []).append(line)

    ems_by_order: dict[str, list[PurchaseEm]] = {}
    for em in db.execute(
        select(PurchaseEm).where(PurchaseEm.purchase_order_id.in_(ids)).order_by(PurchaseEm.position.asc())
    ).scalars():
        ems_by_order.setdefault(em.purchase_order_id, []).append(em)

    allocations: dict[str, list[str]] = {}
    em_ids = [em.id for rows in ems_by_order.values() for em in rows]
    if em_ids:
        for row in db.execute(
            select(PurchaseEmEdition)
            .where(PurchaseEmEdition.purchase_em_id.in_(em_ids))
            .order_by(PurchaseEmEdition.course_edition_id.asc())
        ).scalars():
            allocations.setdefault(row.purchase_em_id, []).append(row.course_edition_id)

    return [
        _draft_from_rows(po, lines_by_order.get(po.id, []), ems_by_order.get(po.id, []), allocations)
        for po in orders
    ]


def load_order_draft(db: Session, *, order_id: str) -> OrderDraft:
    drafts = load_order_drafts(db, order_ids=[order_id])
    if not drafts:
        raise ValueError('Order not found')
    return drafts[0]


def list_purchase_orders(
    db: Session,
    *,
    search: str = '',
    status_filter: str = STATUS_FILTER_ACTIVE,
    sort: str = 'desc',
) -> list[dict]:
    supplier_names = dict(db.execute(select(Supplier.id, Supplier.name)).all())
    term = (search or '').strip().lower()
    rows: list[dict] = []
    for draft in load_order_drafts(db):
        supplier_name = supplier_names.get(draft.supplier_id, '')
        if term and term not in draft.title.lower() and term not in supplier_name.lower():
            continue
        if status_filter == STATUS_FILTER_ACTIVE:
            if draft.status == WorkflowStatus.CLOSED:
                continue
        elif status_filter != STATUS_FILTER_ALL and draft.status.value != status_filter:
            continue
        rows.append(
            {
                'id': draft.id,
                'title': draft.title,
                'supplier_id': draft.supplier_id,
                'supplier_name': supplier_name,
                'status': draft.status.value,
                'is_generic': draft.is_generic,
                'created_at': draft.created_at,
                'planned_total': order_planned_total(draft),
                'actual_total': order_actual_total(draft),
            }
        )
    rows.sort(key=lambda row: (row['created_at'], row['id']), reverse=(sort != 'asc'))
    return rows


def delete_order(db: Session, *, order_id: str) -> None:
    po = db.get(PurchaseOrder, order_id)
    if po is None:
        raise ValueError('Order not found')
    em_ids = select(PurchaseEm.id).where(PurchaseEm.purchase_order_id == order_id)
    db.execute(delete(PurchaseEmEdition).where(PurchaseEmEdition.purchase_em_id.in_(em_ids)))
    db.execute(delete(PurchaseEm).where(PurchaseEm.purchase_order_id == order_id))
    db.execute(delete(PurchaseLineItem).where(PurchaseLineItem.purchase_order_id == order_id))
    db.delete(po)
    db.flush()
    logger.info('order deleted', extra={'order_id': order_id})


def persist_order_snapshot(session_factory: Callable[[], Session], draft: OrderDraft) -> None:
    """Write one snapshot in its own transaction; the autosave writer."""
    try:
        with session_factory() as db:
            save_order(db, draft)
            db.commit()
    except SQLAlchemyError as exc:
        raise OrderSyncError(f'Saving order {draft.id} failed') from exc


def record_order_event(
    session_factory: Callable[[], Session],
    *,
    action: str,
    order_id: str,
    mode: str | None = None,
    metadata: dict | None = None,
) -> None:
    with session_factory() as db:
        log_audit(db, action=action, purchase_order_id=order_id, mode=mode, metadata=metadata)
        db.commit()
