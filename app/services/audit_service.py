from __future__ import annotations

from sqlalchemy.orm import Session

from app.models import AuditLog


def log_audit(
    db: Session,
    *,
    action: str,
    purchase_order_id: str | None,
    mode: str | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            action=action,
            purchase_order_id=purchase_order_id,
            mode=mode,
            ip=ip,
            meta=metadata or {},
        )
    )
