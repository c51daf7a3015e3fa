from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, get_current_principal
from storage_portal.clearance_kinds import kind_from_tag
from storage_portal.db import get_db
from storage_portal.dependencies import get_client_ip
from storage_portal.models import Item
from storage_portal.schemas import (
    BulkApproveBody,
    BulkRejectBody,
    ClearanceCreate,
    ItemRequestCreate,
    LocationBody,
    ReasonBody,
    RevertClearanceBody,
)
from storage_portal.services.audit_service import log_audit
from storage_portal.services.clearance_service import (
    clearance_payload,
    create_clearance,
    list_clearance_items,
    revert_from_clearance,
)
from storage_portal.services.intake_service import (
    approve_item_request,
    bulk_approve_item_requests,
    bulk_reject_item_requests,
    create_item_request,
    item_request_payload,
    list_item_requests,
    reject_item_request,
)
from storage_portal.services.item_service import archive_item, item_payload, unarchive_item
from storage_portal.services.ledger_service import get_stock, list_stock_movements, stock_snapshot

intake_router = APIRouter(prefix='/item-requests', tags=['intake'])
router = APIRouter(prefix='/items', tags=['items'])
movements_router = APIRouter(prefix='/item-movements', tags=['item-movements'])


@intake_router.post('', status_code=201)
def item_request_create(
    body: ItemRequestCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    item_request = create_item_request(
        db,
        actor=principal,
        product_code=body.product_code,
        total_stock=body.total_stock,
        description=body.description,
        brand_code=body.brand_code,
        product_division=body.product_division,
        product_category=body.product_category,
        unit_of_measure=body.unit_of_measure,
        condition=body.condition,
    )
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_REQUEST_CREATED',
        entity_type='item_request',
        entity_id=item_request.id,
        ip=get_client_ip(request),
        metadata={'product_code': item_request.product_code, 'item_id': item_request.item_id},
    )
    db.commit()
    return item_request_payload(item_request, db.get(Item, item_request.item_id))


@intake_router.get('')
def item_request_list(
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_item_requests(db, actor=principal, status=status)


@intake_router.post('/{request_id}/approve')
def item_request_approve(
    request_id: int,
    body: LocationBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    item_request = approve_item_request(db, actor=principal, request_id=request_id, location=body.location)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_REQUEST_APPROVED',
        entity_type='item_request',
        entity_id=item_request.id,
        ip=get_client_ip(request),
        metadata={'item_id': item_request.item_id, 'location': item_request.location},
    )
    db.commit()
    return {
        'message': 'Item approved and stored successfully',
        'item_id': item_request.item_id,
        'location': item_request.location,
        'status': item_request.status.value,
    }


@intake_router.post('/{request_id}/reject')
def item_request_reject(
    request_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    item_request = reject_item_request(db, actor=principal, request_id=request_id, reason=body.reason)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_REQUEST_REJECTED',
        entity_type='item_request',
        entity_id=item_request.id,
        ip=get_client_ip(request),
        metadata={'product_code': item_request.product_code, 'reason': item_request.rejection_reason},
    )
    db.commit()
    return {'message': 'Item rejected successfully', 'reason': item_request.rejection_reason}


@intake_router.post('/bulk-approve')
def item_request_bulk_approve(
    body: BulkApproveBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    result = bulk_approve_item_requests(db, actor=principal, request_ids=body.request_ids, location=body.location)
    for item_request in result['approved']:
        log_audit(
            db,
            actor_user_id=principal.id,
            action='ITEM_REQUEST_APPROVED',
            entity_type='item_request',
            entity_id=item_request.id,
            ip=get_client_ip(request),
            metadata={'item_id': item_request.item_id, 'location': item_request.location, 'bulk': True},
        )
    db.commit()
    return {
        'message': f'{len(result["approved"])} items approved and stored successfully',
        'approved_count': len(result['approved']),
        'approved_ids': [item_request.id for item_request in result['approved']],
        'failed': result['failed'],
        'location': result['location'],
        'status': 'approved',
    }


@intake_router.post('/bulk-reject')
def item_request_bulk_reject(
    body: BulkRejectBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    result = bulk_reject_item_requests(db, actor=principal, request_ids=body.request_ids, reason=body.reason)
    for item_request in result['rejected']:
        log_audit(
            db,
            actor_user_id=principal.id,
            action='ITEM_REQUEST_REJECTED',
            entity_type='item_request',
            entity_id=item_request.id,
            ip=get_client_ip(request),
            metadata={'product_code': item_request.product_code, 'reason': result['reason'], 'bulk': True},
        )
    db.commit()
    return {
        'message': f'{len(result["rejected"])} items rejected successfully',
        'rejected_count': len(result['rejected']),
        'rejected_ids': [item_request.id for item_request in result['rejected']],
        'failed': result['failed'],
        'reason': result['reason'],
    }


@router.get('/clearance')
def clearance_items(
    page: int = 1,
    limit: int = 10,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_clearance_items(db, actor=principal, page=page, limit=limit)


@router.post('/clearance', status_code=201)
def clearance_create(
    body: ClearanceCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    clearance = create_clearance(
        db,
        actor=principal,
        item_id=body.item_id,
        quantity=body.quantity,
        reason=body.reason,
        kind=kind_from_tag(body.kind),
    )
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_CLEARED',
        entity_type='item_clearance',
        entity_id=clearance.id,
        ip=get_client_ip(request),
        metadata={'item_id': clearance.item_id, 'quantity': clearance.quantity},
    )
    db.commit()
    return clearance_payload(clearance)


@router.post('/revert-from-clearance')
def clearance_revert(
    body: RevertClearanceBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    clearance = revert_from_clearance(db, actor=principal, item_id=body.item_id, quantity=body.quantity)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_CLEARANCE_REVERTED',
        entity_type='item_clearance',
        entity_id=clearance.id,
        ip=get_client_ip(request),
        metadata={'item_id': body.item_id, 'quantity': body.quantity},
    )
    db.commit()
    stock = get_stock(db, item_id=body.item_id)
    return {
        'message': 'Item reverted from clearance successfully',
        'item_id': body.item_id,
        'quantity': body.quantity,
        'stock': stock_snapshot(stock) if stock else None,
    }


@router.post('/{item_id}/archive')
def item_archive(
    item_id: int,
    body: ReasonBody,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    item = archive_item(db, actor=principal, item_id=item_id, reason=body.reason)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_ARCHIVED',
        entity_type='item',
        entity_id=item.id,
        ip=get_client_ip(request),
        metadata={'reason': item.archive_reason},
    )
    db.commit()
    return item_payload(db, item)


@router.post('/{item_id}/unarchive')
def item_unarchive(
    item_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    item = unarchive_item(db, actor=principal, item_id=item_id)
    log_audit(
        db,
        actor_user_id=principal.id,
        action='ITEM_UNARCHIVED',
        entity_type='item',
        entity_id=item.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return item_payload(db, item)


@movements_router.get('')
def stock_movement_list(
    item_id: int | None = None,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_stock_movements(
        db,
        actor=principal,
        item_id=item_id,
        movement_type=movement_type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
