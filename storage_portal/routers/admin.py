from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, get_current_principal
from storage_portal.db import get_db
from storage_portal.dependencies import get_client_ip
from storage_portal.policy import Transition, authorize
from storage_portal.services.audit_service import log_audit
from storage_portal.services.system_settings_service import (
    get_system_settings,
    settings_payload,
    update_system_settings,
)

router = APIRouter(prefix='/admin', tags=['admin'])


@router.get('/settings')
def settings_read(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    authorize(principal, Transition.VIEW_SETTINGS)
    return settings_payload(get_system_settings(db))


@router.put('/settings')
def settings_update(
    request: Request,
    changes: dict = Body(...),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    values = update_system_settings(db, actor=principal, changes=changes)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='SYSTEM_SETTINGS_UPDATED',
        entity_type='system_settings',
        entity_id=None,
        ip=get_client_ip(request),
        metadata={'changes': changes},
    )
    db.commit()
    return settings_payload(values)
