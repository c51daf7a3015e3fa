from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, get_current_principal
from storage_portal.db import get_db
from storage_portal.dependencies import get_client_ip
from storage_portal.schemas import (
    BorrowRequestCreate,
    CompleteBody,
    LegacyRequestCreate,
    ReasonBody,
    ReceiveBody,
    ReturnBody,
    StageBody,
    StageReasonBody,
)
from storage_portal.services.audit_service import log_audit
from storage_portal.services.borrow_service import (
    approve_borrow_request,
    approve_return,
    borrow_request_payload,
    complete_borrow_request,
    create_borrow_request,
    get_lines,
    list_borrow_requests,
    receive_item,
    reject_borrow_request,
    request_return,
    return_request_payload,
)
from storage_portal.services.legacy_request_service import (
    approve_legacy_request,
    create_legacy_request,
    reject_legacy_request,
)

router = APIRouter(prefix='/borrow-requests', tags=['borrow-requests'])
legacy_router = APIRouter(prefix='/requests', tags=['requests'])


def _audit(db: Session, request: Request, principal: Principal, action: str, request_id: int, **metadata) -> None:
    log_audit(
        db,
        actor_user_id=principal.id,
        action=action,
        entity_type='borrow_request',
        entity_id=request_id,
        ip=get_client_ip(request),
        metadata=metadata,
    )


def _return(body: ReturnBody, request_id: int, request: Request, principal: Principal, db: Session) -> dict:
    return_request = request_return(
        db,
        actor=principal,
        request_id=request_id,
        return_condition=body.return_condition,
        reason=body.reason,
        return_notes=body.return_notes,
    )
    _audit(db, request, principal, 'BORROW_RETURN_REQUESTED', request_id, return_request_id=return_request.id)
    db.commit()
    return return_request_payload(return_request)


@router.post('', status_code=201)
def borrow_request_create(
    body: BorrowRequestCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = create_borrow_request(
        db,
        actor=principal,
        lines=[line.model_dump() for line in body.items],
        start_date=body.start_date,
        end_date=body.end_date,
        reason=body.reason,
    )
    _audit(db, request, principal, 'BORROW_REQUEST_CREATED', borrow_request.id, status=borrow_request.status.value)
    db.commit()
    return {
        'message': 'Borrow request created successfully',
        'borrow_request': borrow_request_payload(borrow_request, get_lines(db, borrow_request.id)),
    }


@router.get('')
def borrow_request_list(
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_borrow_requests(db, actor=principal, status=status)


@router.post('/{request_id}/approve')
def borrow_request_approve(
    request_id: int,
    body: StageBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = approve_borrow_request(db, actor=principal, request_id=request_id, stage=body.stage)
    _audit(db, request, principal, 'BORROW_REQUEST_APPROVED', request_id, stage=body.stage)
    db.commit()
    return borrow_request_payload(borrow_request, get_lines(db, borrow_request.id))


@router.post('/{request_id}/reject')
def borrow_request_reject(
    request_id: int,
    body: StageReasonBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = reject_borrow_request(
        db, actor=principal, request_id=request_id, stage=body.stage, reason=body.reason
    )
    _audit(db, request, principal, 'BORROW_REQUEST_REJECTED', request_id, stage=body.stage, reason=body.reason)
    db.commit()
    return {
        'message': f'Borrow request rejected by {body.stage}',
        'reason': (body.reason or '').strip(),
        'borrow_request': borrow_request_payload(borrow_request),
    }


@router.post('/{request_id}/return', status_code=201)
def borrow_request_return(
    request_id: int,
    body: ReturnBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _return(body, request_id, request, principal, db)


@router.post('/{request_id}/complete')
def borrow_request_complete(
    request_id: int,
    body: CompleteBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = complete_borrow_request(
        db, actor=principal, request_id=request_id, outcomes=[outcome.model_dump() for outcome in body.items]
    )
    _audit(db, request, principal, 'BORROW_REQUEST_COMPLETED', request_id, status=borrow_request.status.value)
    db.commit()
    return borrow_request_payload(borrow_request, get_lines(db, borrow_request.id))


@legacy_router.post('', status_code=201)
def legacy_request_create(
    body: LegacyRequestCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = create_legacy_request(
        db,
        actor=principal,
        item_size_id=body.item_size_id,
        quantity=body.quantity,
        start_date=body.start_date,
        end_date=body.end_date,
        reason=body.reason,
    )
    _audit(db, request, principal, 'REQUEST_CREATED', borrow_request.id, item_size_id=body.item_size_id)
    db.commit()
    return borrow_request_payload(borrow_request)


@legacy_router.post('/{request_id}/approve')
def legacy_request_approve(
    request_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request, fully_approved = approve_legacy_request(db, actor=principal, request_id=request_id)
    _audit(db, request, principal, 'REQUEST_APPROVED', request_id, fully_approved=fully_approved)
    db.commit()
    return {
        'message': 'Request approved successfully' if fully_approved else 'Request approved. Awaiting admin approval.',
        'borrow_request': borrow_request_payload(borrow_request),
    }


@legacy_router.post('/{request_id}/reject')
def legacy_request_reject(
    request_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = reject_legacy_request(db, actor=principal, request_id=request_id, reason=body.reason)
    _audit(db, request, principal, 'REQUEST_REJECTED', request_id, reason=borrow_request.rejection_reason)
    db.commit()
    return borrow_request_payload(borrow_request)


@legacy_router.post('/{request_id}/return', status_code=201)
def legacy_request_return(
    request_id: int,
    body: ReturnBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _return(body, request_id, request, principal, db)


@legacy_router.post('/{request_id}/approve-return')
def legacy_request_approve_return(
    request_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = approve_return(db, actor=principal, request_id=request_id)
    _audit(db, request, principal, 'RETURN_APPROVED', request_id)
    db.commit()
    return {'message': 'Return approved successfully', 'borrow_request': borrow_request_payload(borrow_request)}


@legacy_router.post('/{request_id}/receive')
def legacy_request_receive(
    request_id: int,
    request: Request,
    body: ReceiveBody | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    borrow_request = receive_item(db, actor=principal, request_id=request_id, notes=body.notes if body else None)
    _audit(db, request, principal, 'ITEM_RECEIVED', request_id)
    db.commit()
    return {'message': 'Item received successfully', 'borrow_request': borrow_request_payload(borrow_request)}
