from __future__ import annotations

from collections.abc import Callable
from datetime import date
from decimal import Decimal

from fastapi import Request
from sqlalchemy.orm import Session

from app.services.catalog_service import SqlCatalogStore
from app.services.order_editor_service import EditorRegistry


def get_session_factory(request: Request) -> Callable[[], Session]:
    return request.app.state.session_factory


def get_catalog_store(request: Request) -> SqlCatalogStore:
    return SqlCatalogStore(request.app.state.session_factory)


def get_editor_registry(request: Request) -> EditorRegistry:
    return request.app.state.editors


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def to_jsonable(value):
    """Money and quantities travel as strings so no float rounding creeps in."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value
