from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal, InvalidOperation
from functools import partial

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.dependencies import (
    get_catalog_store,
    get_client_ip,
    get_editor_registry,
    get_session_factory,
    to_jsonable,
)
from app.models import EditMode
from app.services.audit_service import log_audit
from app.services.catalog_service import SqlCatalogStore
from app.services.catalog_store import CatalogUnavailableError
from app.services.order_composition_service import (
    CompositionSession,
    EditOutcome,
    describe_session,
    new_session,
    open_session,
)
from app.services.order_editor_service import CommandError, EditorModeConflict, EditorRegistry, OrderEditor
from app.services.order_sync_service import (
    STATUS_FILTER_ACTIVE,
    delete_order,
    list_purchase_orders,
    load_order_draft,
    persist_order_snapshot,
    record_order_event,
)

router = APIRouter(prefix='/purchasing', tags=['purchasing'])

DECIMAL_PARAMS = frozenset({'planned_qty', 'actual_qty', 'unit_price_override', 'planned_amount', 'actual_amount'})
DATE_PARAMS = frozenset({'start_date', 'end_date'})


class CommandIn(BaseModel):
    command: str
    params: dict = Field(default_factory=dict)


def _coerce_params(params: dict) -> dict:
    coerced: dict = {}
    for key, value in params.items():
        if value is None or value == '':
            coerced[key] = None
            continue
        try:
            if key in DECIMAL_PARAMS:
                number = Decimal(str(value))
                if not number.is_finite():
                    raise HTTPException(status_code=400, detail=f'Invalid value for {key}')
                coerced[key] = number
            elif key in DATE_PARAMS:
                coerced[key] = date.fromisoformat(str(value))
            else:
                coerced[key] = value
        except (InvalidOperation, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f'Invalid value for {key}') from exc
    return coerced


def _outcome(outcome: EditOutcome) -> dict:
    return {
        'applied': outcome.applied,
        'message': outcome.message,
        'needs_confirmation': outcome.needs_confirmation,
        'created_id': outcome.created_id,
    }


def _editor_view(editor: OrderEditor) -> dict:
    return to_jsonable({**describe_session(editor.session), 'sync': editor.status()})


def _build_editor(
    session: CompositionSession,
    catalog: SqlCatalogStore,
    session_factory: Callable[[], Session],
) -> OrderEditor:
    def _on_finalized(finalized: CompositionSession) -> None:
        record_order_event(
            session_factory,
            action='ORDER_FINALIZED',
            order_id=finalized.order_id,
            mode=finalized.mode.value,
            metadata={'items': len(finalized.draft.items), 'ems': len(finalized.draft.ems)},
        )

    return OrderEditor(
        session,
        catalog,
        partial(persist_order_snapshot, session_factory),
        quiet_period=settings.autosave_quiet_period_seconds,
        retry_delay=settings.autosave_retry_seconds,
        on_finalized=_on_finalized,
    )


def _require_editor(registry: EditorRegistry, order_id: str) -> OrderEditor:
    editor = registry.get(order_id)
    if editor is None:
        raise HTTPException(status_code=404, detail='No open editor for this order')
    return editor


@router.get('/orders')
def orders_index(
    search: str = '',
    status: str = STATUS_FILTER_ACTIVE,
    sort: str = 'desc',
    db: Session = Depends(get_db),
):
    return to_jsonable(list_purchase_orders(db, search=search, status_filter=status, sort=sort))


@router.delete('/orders/{order_id}', status_code=204)
def orders_delete(
    order_id: str,
    request: Request,
    mode: EditMode = EditMode.WORKFLOW,
    db: Session = Depends(get_db),
    registry: EditorRegistry = Depends(get_editor_registry),
):
    if mode != EditMode.WORKFLOW:
        raise HTTPException(status_code=403, detail='Orders can only be deleted in workflow mode')
    editor = registry.get(order_id)
    if editor is not None:
        editor.close(confirm=True)
        registry.discard(order_id)
    try:
        delete_order(db, order_id=order_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    log_audit(db, action='ORDER_DELETED', purchase_order_id=order_id, mode=mode.value, ip=get_client_ip(request))
    db.commit()


@router.post('/editors', status_code=201)
def editors_create(
    mode: EditMode = EditMode.WORKFLOW,
    catalog: SqlCatalogStore = Depends(get_catalog_store),
    session_factory=Depends(get_session_factory),
    registry: EditorRegistry = Depends(get_editor_registry),
):
    if mode != EditMode.WORKFLOW:
        raise HTTPException(status_code=403, detail='Orders can only be created in workflow mode')
    session = new_session(mode)
    editor = registry.open(session.order_id, lambda: _build_editor(session, catalog, session_factory))
    return _editor_view(editor)


@router.post('/orders/{order_id}/editor')
def editors_open(
    order_id: str,
    mode: EditMode = EditMode.WORKFLOW,
    db: Session = Depends(get_db),
    catalog: SqlCatalogStore = Depends(get_catalog_store),
    session_factory=Depends(get_session_factory),
    registry: EditorRegistry = Depends(get_editor_registry),
):
    def _load() -> OrderEditor:
        try:
            draft = load_order_draft(db, order_id=order_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        try:
            session = open_session(draft, mode, catalog)
        except CatalogUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _build_editor(session, catalog, session_factory)

    try:
        editor = registry.open(order_id, _load, mode=mode)
    except EditorModeConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _editor_view(editor)


@router.get('/editors/{order_id}')
def editors_show(order_id: str, registry: EditorRegistry = Depends(get_editor_registry)):
    return _editor_view(_require_editor(registry, order_id))


@router.post('/editors/{order_id}/commands')
def editors_command(
    order_id: str,
    payload: CommandIn,
    registry: EditorRegistry = Depends(get_editor_registry),
):
    editor = _require_editor(registry, order_id)
    try:
        outcome = editor.apply(payload.command, **_coerce_params(payload.params))
    except CommandError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CatalogUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {'outcome': _outcome(outcome), 'editor': _editor_view(editor)}


@router.post('/editors/{order_id}/finalize')
def editors_finalize(order_id: str, registry: EditorRegistry = Depends(get_editor_registry)):
    editor = _require_editor(registry, order_id)
    outcome = editor.finalize(timeout=settings.finalize_timeout_seconds)
    if outcome.applied:
        registry.discard(order_id)
        return {'outcome': _outcome(outcome)}
    return {'outcome': _outcome(outcome), 'editor': _editor_view(editor)}


@router.post('/editors/{order_id}/close')
def editors_close(
    order_id: str,
    confirm: bool = False,
    registry: EditorRegistry = Depends(get_editor_registry),
):
    editor = _require_editor(registry, order_id)
    outcome = editor.close(confirm=confirm)
    if outcome.applied:
        registry.discard(order_id)
    return {'outcome': _outcome(outcome)}
