from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from storage_portal.auth import Principal
from storage_portal.config import settings
from storage_portal.errors import NotFound, PreconditionFailed
from storage_portal.models import (
    BorrowRequestItem,
    Item,
    ItemClearance,
    ItemImage,
    ItemRequest,
    ItemRequestStatus,
    ItemSize,
    ItemStatus,
    ItemStock,
    StockMovement,
)
from storage_portal.policy import Transition, authorize
from storage_portal.services.catalog_client import ItemCatalog
from storage_portal.services.catalog_factory import get_item_catalog
from storage_portal.services.ledger_service import StockState, get_stock, move_stock, open_stock
from storage_portal.services.system_settings_service import get_system_settings
from storage_portal.services.transitions import compare_and_set, lock_row, now, transition

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = 'Item request has already been processed'

# Rows that reference an item, in the order they must go before the item itself.
ITEM_DEPENDENTS = (StockMovement, BorrowRequestItem, ItemClearance, ItemImage, ItemStock, ItemSize)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def item_request_payload(item_request: ItemRequest, item: Item | None = None) -> dict:
    payload = {
        'id': item_request.id,
        'item_id': item_request.item_id,
        'product_code': item_request.product_code,
        'status': item_request.status.value,
        'requested_by': item_request.requested_by,
        'approved_by': item_request.approved_by,
        'approved_at': item_request.approved_at.isoformat() if item_request.approved_at else None,
        'location': item_request.location,
        'rejection_reason': item_request.rejection_reason,
    }
    if item is not None:
        payload['item'] = {
            'id': item.id,
            'product_code': item.product_code,
            'description': item.description,
            'status': item.status.value,
            'location': item.location,
            'total_stock': item.total_stock,
        }
    return payload


def create_item_request(
    db: Session,
    *,
    actor: Principal,
    product_code: str,
    total_stock: int,
    description: str | None = None,
    brand_code: str | None = None,
    product_division: str | None = None,
    product_category: str | None = None,
    unit_of_measure: str | None = None,
    condition: str | None = None,
    catalog: ItemCatalog | None = None,
) -> ItemRequest:
    authorize(actor, Transition.CREATE_INTAKE)
    clean_code = _clean(product_code)
    if not clean_code:
        raise PreconditionFailed('Product code is required')
    if isinstance(total_stock, bool) or not isinstance(total_stock, int) or total_stock < 0:
        raise PreconditionFailed('Total stock must be a non-negative integer')

    existing = db.execute(select(Item.id).where(Item.product_code == clean_code)).scalar_one_or_none()
    if existing:
        raise PreconditionFailed('An item with this product code already exists')

    if get_system_settings(db).validate_sku_on_intake:
        catalog = catalog or get_item_catalog()
        if clean_code not in catalog.lookup_skus([clean_code]):
            raise PreconditionFailed('SKU not found in catalog')

    item = Item(
        product_code=clean_code,
        description=_clean(description),
        brand_code=_clean(brand_code),
        product_division=_clean(product_division),
        product_category=_clean(product_category),
        unit_of_measure=_clean(unit_of_measure),
        condition=_clean(condition),
        status=ItemStatus.PENDING,
        total_stock=total_stock,
        created_by=actor.id,
    )
    db.add(item)
    db.flush()

    item_request = ItemRequest(
        item_id=item.id,
        product_code=clean_code,
        status=ItemRequestStatus.PENDING,
        requested_by=actor.id,
    )
    db.add(item_request)
    db.flush()

    open_stock(
        db,
        item_id=item.id,
        quantity=total_stock,
        performed_by=actor.id,
        reference_id=item_request.id,
        reference_type='item_request',
    )
    logger.info('Item request %s created for %s by user=%s', item_request.id, clean_code, actor.id)
    return item_request


def list_item_requests(db: Session, *, actor: Principal, status: str | None = None) -> list[dict]:
    authorize(actor, Transition.VIEW_INTAKE)
    query = select(ItemRequest, Item).outerjoin(Item, Item.id == ItemRequest.item_id)
    if status:
        try:
            query = query.where(ItemRequest.status == ItemRequestStatus(status))
        except ValueError as exc:
            raise PreconditionFailed(f'Unknown status: {status}') from exc
    rows = db.execute(query.order_by(ItemRequest.created_at.desc(), ItemRequest.id.desc())).all()
    return [item_request_payload(item_request, item) for item_request, item in rows]


def _storage_location(location: str | None) -> str:
    clean_location = _clean(location)
    if not clean_location:
        raise PreconditionFailed('Storage location is required')
    if clean_location not in settings.storage_locations:
        raise PreconditionFailed(f'Invalid location. Allowed values: {", ".join(settings.storage_locations)}')
    return clean_location


def approve_item_request(db: Session, *, actor: Principal, request_id: int, location: str | None) -> ItemRequest:
    authorize(actor, Transition.APPROVE_INTAKE)
    clean_location = _storage_location(location)

    item_request = lock_row(db, ItemRequest, request_id, label='Item request')
    if item_request.item_id is None:
        raise PreconditionFailed(ALREADY_PROCESSED)
    stamp = now()
    transition(
        db,
        item_request,
        expected=ItemRequestStatus.PENDING,
        values={
            'status': ItemRequestStatus.APPROVED,
            'approved_by': actor.id,
            'approved_at': stamp,
            'location': clean_location,
            'updated_at': stamp,
        },
        message=ALREADY_PROCESSED,
    )

    item = lock_row(db, Item, item_request.item_id, label='Item')
    transition(
        db,
        item,
        expected=ItemStatus.PENDING,
        values={
            'status': ItemStatus.AVAILABLE,
            'location': clean_location,
            'approved_by': actor.id,
            'approved_at': stamp,
            'updated_at': stamp,
        },
        message='Item is not awaiting approval',
    )

    stock = get_stock(db, item_id=item.id)
    if stock is not None and stock.pending > 0:
        move_stock(
            db,
            item_id=item.id,
            quantity=stock.pending,
            from_state=StockState.PENDING,
            to_state=StockState.STORAGE,
            performed_by=actor.id,
            reference_id=item_request.id,
            reference_type='item_request',
            movement_type='intake_approved',
            notes=f'Stored in {clean_location}',
        )
    logger.info('Item request %s approved by user=%s into %s', item_request.id, actor.id, clean_location)
    return item_request


def reject_item_request(db: Session, *, actor: Principal, request_id: int, reason: str | None) -> ItemRequest:
    """Reject an intake and delete the item it created.

    The request row is kept as the record of the rejection; the item and
    everything hanging off it goes in one transaction.
    """
    authorize(actor, Transition.REJECT_INTAKE)
    clean_reason = _clean(reason)
    if not clean_reason:
        raise PreconditionFailed('Rejection reason is required')

    item_request = lock_row(db, ItemRequest, request_id, label='Item request')
    item_id = item_request.item_id
    stamp = now()
    transition(
        db,
        item_request,
        expected=ItemRequestStatus.PENDING,
        values={
            'status': ItemRequestStatus.REJECTED,
            'approved_by': actor.id,
            'approved_at': stamp,
            'rejection_reason': clean_reason,
            'item_id': None,
            'updated_at': stamp,
        },
        message=ALREADY_PROCESSED,
    )

    if item_id is not None:
        compare_and_set(
            db,
            Item,
            row_id=item_id,
            expected=ItemStatus.PENDING,
            values={'status': ItemStatus.REJECTED, 'updated_at': stamp},
            message='Item is not awaiting approval',
        )
        for model in ITEM_DEPENDENTS:
            db.execute(delete(model).where(model.item_id == item_id))
        db.execute(delete(Item).where(Item.id == item_id))
        db.flush()

    logger.info('Item request %s rejected by user=%s; item %s removed', item_request.id, actor.id, item_id)
    return item_request


def _request_ids(request_ids) -> list[int]:
    if not isinstance(request_ids, (list, tuple)) or not request_ids:
        raise PreconditionFailed('Request IDs are required')
    unique: list[int] = []
    for request_id in request_ids:
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            raise PreconditionFailed('Request IDs must be integers')
        if request_id not in unique:
            unique.append(request_id)
    return unique


def _apply_each(db: Session, request_ids: list[int], apply) -> tuple[list[ItemRequest], list[dict]]:
    done: list[ItemRequest] = []
    failed: list[dict] = []
    missing = 0
    for request_id in request_ids:
        savepoint = db.begin_nested()
        try:
            item_request = apply(request_id)
        except (NotFound, PreconditionFailed) as exc:
            savepoint.rollback()
            missing += isinstance(exc, NotFound)
            failed.append({'id': request_id, 'error': str(exc)})
            continue
        savepoint.commit()
        done.append(item_request)

    if not done:
        if missing == len(request_ids):
            raise NotFound('No valid item requests found')
        raise PreconditionFailed('No pending requests found')
    return done, failed


def bulk_approve_item_requests(db: Session, *, actor: Principal, request_ids, location: str | None) -> dict:
    """Approve several intakes into one location.

    Each id runs in its own savepoint; ids that are missing or already
    processed are reported under ``failed`` and leave no trace.
    """
    authorize(actor, Transition.APPROVE_INTAKE)
    ids = _request_ids(request_ids)
    clean_location = _storage_location(location)

    approved, failed = _apply_each(
        db,
        ids,
        lambda request_id: approve_item_request(db, actor=actor, request_id=request_id, location=clean_location),
    )
    logger.info('Bulk intake approval by user=%s: %s approved, %s failed', actor.id, len(approved), len(failed))
    return {'approved': approved, 'failed': failed, 'location': clean_location}


def bulk_reject_item_requests(db: Session, *, actor: Principal, request_ids, reason: str | None) -> dict:
    authorize(actor, Transition.REJECT_INTAKE)
    ids = _request_ids(request_ids)
    clean_reason = _clean(reason)
    if not clean_reason:
        raise PreconditionFailed('Rejection reason is required')

    rejected, failed = _apply_each(
        db,
        ids,
        lambda request_id: reject_item_request(db, actor=actor, request_id=request_id, reason=clean_reason),
    )
    logger.info('Bulk intake rejection by user=%s: %s rejected, %s failed', actor.id, len(rejected), len(failed))
    return {'rejected': rejected, 'failed': failed, 'reason': clean_reason}
