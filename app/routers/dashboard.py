from __future__ import annotations

from dataclasses import asdict
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import to_jsonable
from app.services.dashboard_service import SupplierStats, supplier_budget_summary
from app.services.insight_service import generate_insight

router = APIRouter(prefix='/dashboard', tags=['dashboard'])


class InsightIn(BaseModel):
    supplier_id: str | None = None
    start: date | None = None
    end: date | None = None


def _stats_row(row: SupplierStats) -> dict:
    data = asdict(row)
    data['residual'] = row.residual
    return data


def _summary(db: Session, *, supplier_id: str | None, start: date | None, end: date | None) -> dict:
    try:
        return supplier_budget_summary(db, supplier_id=supplier_id, start=start, end=end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get('/summary')
def dashboard_summary(
    supplier_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
):
    summary = _summary(db, supplier_id=supplier_id, start=start, end=end)
    summary['suppliers'] = [_stats_row(row) for row in summary['suppliers']]
    return to_jsonable(summary)


@router.post('/insight')
def dashboard_insight(payload: InsightIn, db: Session = Depends(get_db)):
    summary = _summary(db, supplier_id=payload.supplier_id, start=payload.start, end=payload.end)
    return {'insight': generate_insight(summary['suppliers'])}
