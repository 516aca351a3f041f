from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Supplier
from app.services.cost_model_service import ZERO, money, order_actual_total, order_planned_total
from app.services.order_draft import OrderDraft
from app.services.order_sync_service import load_order_drafts


@dataclass(frozen=True)
class SupplierStats:
    supplier_id: str
    name: str
    contract_number: str
    budget: Decimal
    planned: Decimal
    actual: Decimal

    @property
    def residual(self) -> Decimal:
        return self.budget - self.actual


def _contract_overlaps(supplier: Supplier, start: date, end: date) -> bool:
    if supplier.contract_start is None or supplier.contract_end is None:
        return False
    return supplier.contract_start <= end and supplier.contract_end >= start


def filter_suppliers(
    suppliers: list[Supplier],
    *,
    supplier_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[Supplier]:
    if start and end and end < start:
        raise ValueError('Range end cannot be before range start')
    rows = []
    for supplier in suppliers:
        if supplier_id and supplier.id != supplier_id:
            continue
        if start and end and not _contract_overlaps(supplier, start, end):
            continue
        rows.append(supplier)
    return rows


def build_supplier_stats(suppliers: list[Supplier], orders: list[OrderDraft]) -> list[SupplierStats]:
    by_supplier: dict[str, list[OrderDraft]] = {}
    for order in orders:
        by_supplier.setdefault(order.supplier_id, []).append(order)
    stats = []
    for supplier in suppliers:
        supplier_orders = by_supplier.get(supplier.id, [])
        stats.append(
            SupplierStats(
                supplier_id=supplier.id,
                name=supplier.name,
                contract_number=supplier.contract_number,
                budget=money(supplier.contract_value),
                planned=sum((order_planned_total(order) for order in supplier_orders), ZERO),
                actual=sum((order_actual_total(order) for order in supplier_orders), ZERO),
            )
        )
    return stats


def supplier_budget_summary(
    db: Session,
    *,
    supplier_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
) -> dict:
    suppliers = db.execute(select(Supplier).order_by(Supplier.name.asc())).scalars().all()
    selected = filter_suppliers(suppliers, supplier_id=supplier_id, start=start, end=end)
    orders = load_order_drafts(db, supplier_ids=[supplier.id for supplier in selected]) if selected else []
    stats = build_supplier_stats(selected, orders)
    return {
        'suppliers': stats,
        'total_budget': sum((row.budget for row in stats), ZERO),
        'total_planned': sum((row.planned for row in stats), ZERO),
        'total_actual': sum((row.actual for row in stats), ZERO),
        'total_residual': sum((row.residual for row in stats), ZERO),
    }
