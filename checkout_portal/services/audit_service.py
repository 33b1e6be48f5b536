from __future__ import annotations

from sqlalchemy.orm import Session

from checkout_portal.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_id: str | None,
    action: str,
    reservation_id: str | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_id=actor_id,
            action=action,
            reservation_id=reservation_id,
            ip=ip,
            meta=metadata or {},
        )
    )
