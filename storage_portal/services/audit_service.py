from __future__ import annotations

from sqlalchemy.orm import Session

from storage_portal.models import AuditLog, AuthEvent


def log_auth_event(
    db: Session,
    *,
    attempted_email: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    user_id: int | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_email=attempted_email,
            success=success,
            failure_reason=failure_reason,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor_user_id: int | None,
    action: str,
    entity_type: str | None,
    entity_id: int | None,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            meta=metadata or {},
        )
    )
