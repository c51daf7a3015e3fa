from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, get_current_principal
from storage_portal.db import get_db
from storage_portal.dependencies import get_client_ip
from storage_portal.schemas import RevertSeedingBody
from storage_portal.services.audit_service import log_audit
from storage_portal.services.clearance_service import list_seeding_records, revert_seeding

router = APIRouter(prefix='/clearance', tags=['clearance'])


@router.get('/seeding')
def seeding_list(
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_seeding_records(db, actor=principal, status=status, date_from=date_from, date_to=date_to)


@router.post('/seeding/{clearance_id}/revert')
def seeding_revert(
    clearance_id: int,
    body: RevertSeedingBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    result = revert_seeding(
        db,
        actor=principal,
        clearance_id=clearance_id,
        reason=body.reason,
        restore_quantity=body.restore_quantity,
    )
    log_audit(
        db,
        actor_user_id=principal.id,
        action='SEEDING_REVERTED',
        entity_type='item_clearance',
        entity_id=clearance_id,
        ip=get_client_ip(request),
        metadata={
            'item_id': result['item_id'],
            'restore_quantity': body.restore_quantity,
            'borrow_request_id': result['borrow_request_id'],
        },
    )
    db.commit()
    return {'message': 'Seeding decision reverted successfully', **result}
