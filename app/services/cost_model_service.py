from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from app.services.order_draft import EmDraft, LineDraft, OrderDraft

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
# Quantities and prices are stored as Numeric(14, 4), amounts as Numeric(14, 2).
QUANTITY_STEP = Decimal('0.0001')
STORED_LIMIT = Decimal('1E10')


class CostKind(str, Enum):
    PLANNED = 'planned'
    ACTUAL = 'actual'


@dataclass(frozen=True)
class OrderTotals:
    planned: Decimal
    actual: Decimal
    structured_planned: Decimal
    structured_actual: Decimal
    em_total: Decimal


def money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def stored_decimal(value: Decimal | int | str, step: Decimal = QUANTITY_STEP) -> Decimal | None:
    """Round ``value`` to the stored column scale.

    Returns None when the value is not a finite number or needs more than
    ten integer digits. Sign is kept.
    """
    try:
        number = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not number.is_finite() or abs(number) >= STORED_LIMIT:
        return None
    return number.quantize(step, rounding=ROUND_HALF_UP)


def line_cost(item: LineDraft, kind: CostKind) -> Decimal:
    qty = item.planned_qty if kind == CostKind.PLANNED else item.actual_qty
    return money(qty * item.unit_price_override)


def subtotal(
    items: Iterable[LineDraft],
    kind: CostKind,
    *,
    edition_ids: Collection[str] | None = None,
) -> Decimal:
    """Sum of line costs, optionally restricted to a set of editions.

    The same function serves edition, course and order granularity; only the
    edition filter changes.
    """
    wanted = set(edition_ids) if edition_ids is not None else None
    total = ZERO
    for item in items:
        if wanted is not None and item.edition_id not in wanted:
            continue
        total += line_cost(item, kind)
    return total


def order_planned_total(order: OrderDraft) -> Decimal:
    structured = subtotal(order.items.values(), CostKind.PLANNED)
    if order.is_generic:
        return max(money(order.planned_amount), structured)
    return structured


def order_actual_total(order: OrderDraft) -> Decimal:
    structured = subtotal(order.items.values(), CostKind.ACTUAL)
    if order.is_generic:
        return structured if structured > 0 else money(order.actual_amount)
    return structured


def em_amount(order: OrderDraft, em: EmDraft) -> Decimal:
    # Allocations pointing at editions without lines contribute nothing.
    return subtotal(order.items.values(), CostKind.ACTUAL, edition_ids=em.edition_ids)


def order_totals(order: OrderDraft) -> OrderTotals:
    return OrderTotals(
        planned=order_planned_total(order),
        actual=order_actual_total(order),
        structured_planned=subtotal(order.items.values(), CostKind.PLANNED),
        structured_actual=subtotal(order.items.values(), CostKind.ACTUAL),
        em_total=sum((em_amount(order, em) for em in order.ems.values()), ZERO),
    )


def derived_line(item: LineDraft) -> LineDraft:
    return replace(
        item,
        planned_cost=line_cost(item, CostKind.PLANNED),
        actual_cost=line_cost(item, CostKind.ACTUAL),
    )


def derived_order(order: OrderDraft) -> OrderDraft:
    """Return a copy of ``order`` with every line cost and EM amount re-derived."""
    items = {item_id: derived_line(item) for item_id, item in order.items.items()}
    with_items = replace(order, items=items)
    ems = {
        em_id: replace(em, edition_ids=list(em.edition_ids), amount=em_amount(with_items, em))
        for em_id, em in order.ems.items()
    }
    return replace(with_items, ems=ems)
