from __future__ import annotations

import logging
import math
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from storage_portal.auth import Principal
from storage_portal.clearance_kinds import ClearanceKind, Other, Seeding, parse_kind
from storage_portal.errors import NotFound, PreconditionFailed
from storage_portal.models import (
    BorrowRequest,
    BorrowRequestItem,
    BorrowRequestItemStatus,
    BorrowRequestStatus,
    ClearanceStatus,
    Item,
    ItemClearance,
    ItemStatus,
    ItemStock,
)
from storage_portal.policy import Transition, authorize
from storage_portal.services.ledger_service import StockState, get_stock, move_stock, stock_snapshot
from storage_portal.services.transitions import as_utc, compare_and_set, lock_row, now, transition

logger = logging.getLogger(__name__)

CLEARABLE_ITEM_STATUSES = frozenset({ItemStatus.AVAILABLE, ItemStatus.ACTIVE})
REVERT_REASON = 'Reverted from clearance'


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def clearance_payload(clearance: ItemClearance) -> dict:
    kind = parse_kind(clearance.meta)
    return {
        'id': clearance.id,
        'item_id': clearance.item_id,
        'quantity': clearance.quantity,
        'reason': clearance.reason,
        'status': clearance.status.value,
        'kind': kind.tag if kind else None,
        'metadata': clearance.meta,
        'requested_by': clearance.requested_by,
        'approved_by': clearance.approved_by,
        'requested_at': _isoformat(clearance.requested_at),
        'cleared_at': _isoformat(clearance.cleared_at),
        'reverted_by': clearance.reverted_by,
        'reverted_at': _isoformat(clearance.reverted_at),
        'revert_reason': clearance.revert_reason,
    }


def record_clearance(
    db: Session,
    *,
    item_id: int,
    quantity: int,
    reason: str,
    kind: ClearanceKind,
    actor_id: int,
) -> ItemClearance:
    stamp = now()
    clearance = ItemClearance(
        item_id=item_id,
        quantity=quantity,
        reason=reason,
        status=ClearanceStatus.COMPLETED,
        meta=kind.to_metadata(),
        requested_by=actor_id,
        approved_by=actor_id,
        requested_at=stamp,
        approved_at=stamp,
        cleared_at=stamp,
    )
    db.add(clearance)
    db.flush()
    return clearance


def create_clearance(
    db: Session,
    *,
    actor: Principal,
    item_id: int,
    quantity: int,
    reason: str | None,
    kind: ClearanceKind,
) -> ItemClearance:
    authorize(actor, Transition.CREATE_CLEARANCE)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise PreconditionFailed('Quantity must be a positive integer')
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Clearance reason is required')

    item = lock_row(db, Item, item_id, label='Item')
    if item.status not in CLEARABLE_ITEM_STATUSES:
        raise PreconditionFailed('Only available items can be cleared')

    stock = get_stock(db, item_id=item.id)
    movement = None
    if stock is not None:
        movement = move_stock(
            db,
            item_id=item.id,
            quantity=quantity,
            from_state=StockState.STORAGE,
            to_state=StockState.CLEARANCE,
            performed_by=actor.id,
            reference_type='clearance',
            movement_type='clearance',
            notes=clean_reason,
        )
    # Items without a stock row are legacy records; the disposition is logged without counters.

    clearance = record_clearance(
        db, item_id=item.id, quantity=quantity, reason=clean_reason, kind=kind, actor_id=actor.id
    )
    if movement is not None:
        movement.reference_id = str(clearance.id)
        db.flush()
    logger.info('Clearance %s created for item=%s qty=%s by user=%s', clearance.id, item.id, quantity, actor.id)
    return clearance


def revert_from_clearance(db: Session, *, actor: Principal, item_id: int, quantity: int) -> ItemClearance:
    authorize(actor, Transition.REVERT_CLEARANCE)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise PreconditionFailed('Item ID and quantity are required')

    stock = get_stock(db, item_id=item_id)
    if stock is None:
        raise NotFound('Item stock not found')
    previous_in_clearance = stock.in_clearance

    movement = move_stock(
        db,
        item_id=item_id,
        quantity=quantity,
        from_state=StockState.CLEARANCE,
        to_state=StockState.STORAGE,
        performed_by=actor.id,
        reference_type='clearance',
        movement_type='clearance_revert',
        notes=REVERT_REASON,
    )
    clearance = record_clearance(
        db,
        item_id=item_id,
        quantity=-quantity,
        reason=REVERT_REASON,
        kind=Other(
            details={
                'previousInClearance': previous_in_clearance,
                'newInClearance': previous_in_clearance - quantity,
            }
        ),
        actor_id=actor.id,
    )
    movement.reference_id = str(clearance.id)
    db.flush()
    logger.info('Reverted %s units of item=%s from clearance by user=%s', quantity, item_id, actor.id)
    return clearance


def _reactivate_borrow_request(
    db: Session, *, actor: Principal, borrow_request_id: int, item_id: int
) -> BorrowRequest | None:
    borrow_request = db.execute(
        select(BorrowRequest)
        .where(BorrowRequest.id == borrow_request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if borrow_request is None:
        logger.warning('Seeding revert references missing borrow request %s', borrow_request_id)
        return None

    if borrow_request.status != BorrowRequestStatus.ACTIVE:
        transition(
            db,
            borrow_request,
            expected=borrow_request.status,
            values={
                'status': BorrowRequestStatus.ACTIVE,
                'completed_by': None,
                'completed_at': None,
                'updated_at': now(),
            },
            message='Borrow request changed while reverting seeding',
        )

    seeded_lines = db.execute(
        select(BorrowRequestItem).where(
            BorrowRequestItem.borrow_request_id == borrow_request.id,
            BorrowRequestItem.item_id == item_id,
            BorrowRequestItem.status == BorrowRequestItemStatus.SEEDED,
        )
        .execution_options(populate_existing=True)
    ).scalars().all()
    for line in seeded_lines:
        stock = get_stock(db, item_id=line.item_id)
        if stock is not None and stock.seeded >= line.quantity:
            move_stock(
                db,
                item_id=line.item_id,
                quantity=line.quantity,
                from_state=StockState.SEEDED,
                to_state=StockState.BORROWED,
                performed_by=actor.id,
                reference_id=borrow_request.id,
                reference_type='borrow_request',
                movement_type='seeding_revert',
            )
        compare_and_set(
            db,
            BorrowRequestItem,
            row_id=line.id,
            expected=BorrowRequestItemStatus.SEEDED,
            values={'status': BorrowRequestItemStatus.ACTIVE, 'seeded_by': None, 'seeded_at': None},
            message='Borrow request item changed while reverting seeding',
        )
        db.refresh(line)
    return borrow_request


def revert_seeding(
    db: Session,
    *,
    actor: Principal,
    clearance_id: int,
    reason: str | None,
    restore_quantity: bool = False,
) -> dict:
    """Undo a seeding decision.

    The item becomes available again, optionally with its legacy inventory
    topped up by the seeded quantity, and the borrow request the seeding came
    from goes back to active. The clearance record is kept and marked
    reverted.
    """
    authorize(actor, Transition.REVERT_SEEDING)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Reason is required')

    clearance = lock_row(db, ItemClearance, clearance_id, label='Clearance record')
    kind = parse_kind(clearance.meta)
    if not isinstance(kind, Seeding):
        raise PreconditionFailed('This is not a seeding record')

    stamp = now()
    transition(
        db,
        clearance,
        expected=ClearanceStatus.COMPLETED,
        values={
            'status': ClearanceStatus.REVERTED,
            'reverted_by': actor.id,
            'reverted_at': stamp,
            'revert_reason': clean_reason,
        },
        message='This seeding record has already been reverted',
    )

    item = lock_row(db, Item, clearance.item_id, label='Item')
    db.execute(
        update(Item)
        .where(Item.id == item.id)
        .values(status=ItemStatus.AVAILABLE, updated_at=stamp)
        .execution_options(synchronize_session=False)
    )
    if restore_quantity:
        # Stock-tracked items keep inventory NULL; their units come back through the ledger below.
        db.execute(
            update(Item)
            .where(Item.id == item.id, Item.inventory.is_not(None))
            .values(inventory=Item.inventory + kind.original_quantity)
            .execution_options(synchronize_session=False)
        )
    db.refresh(item)

    borrow_request = None
    if kind.borrow_request_id is not None:
        borrow_request = _reactivate_borrow_request(
            db, actor=actor, borrow_request_id=kind.borrow_request_id, item_id=clearance.item_id
        )

    logger.info(
        'Seeding clearance %s reverted by user=%s restore=%s borrow_request=%s',
        clearance.id,
        actor.id,
        restore_quantity,
        kind.borrow_request_id,
    )
    return {
        'clearance': clearance_payload(clearance),
        'item_id': item.id,
        'item_status': item.status.value,
        'inventory': item.inventory,
        'inventory_restored': bool(restore_quantity) and item.inventory is not None,
        'borrow_request_id': borrow_request.id if borrow_request else None,
        'borrow_request_status': borrow_request.status.value if borrow_request else None,
    }


def list_seeding_records(
    db: Session,
    *,
    actor: Principal,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[dict]:
    authorize(actor, Transition.VIEW_SEEDING)
    query = select(ItemClearance, Item).outerjoin(Item, Item.id == ItemClearance.item_id)
    if status and status != 'all':
        try:
            query = query.where(ItemClearance.status == ClearanceStatus(status))
        except ValueError as exc:
            raise PreconditionFailed(f'Unknown status: {status}') from exc
    if date_from:
        query = query.where(ItemClearance.cleared_at >= as_utc(date_from))
    if date_to:
        query = query.where(ItemClearance.cleared_at <= as_utc(date_to))

    rows = db.execute(query.order_by(ItemClearance.cleared_at.asc(), ItemClearance.id.asc())).all()
    records: list[dict] = []
    for clearance, item in rows:
        kind = parse_kind(clearance.meta)
        if not isinstance(kind, Seeding):
            continue
        payload = clearance_payload(clearance)
        payload['original_quantity'] = kind.original_quantity
        payload['borrow_request_id'] = kind.borrow_request_id
        payload['item'] = (
            {
                'id': item.id,
                'product_code': item.product_code,
                'description': item.description,
                'status': item.status.value,
                'location': item.location,
            }
            if item
            else None
        )
        records.append(payload)
    return records


def list_clearance_items(db: Session, *, actor: Principal, page: int = 1, limit: int = 10) -> dict:
    authorize(actor, Transition.VIEW_CLEARANCE)
    page = max(1, page)
    limit = min(max(1, limit), 100)

    condition = ItemStock.in_clearance > 0
    total = db.execute(select(func.count()).select_from(ItemStock).where(condition)).scalar_one()
    rows = db.execute(
        select(Item, ItemStock)
        .join(ItemStock, ItemStock.item_id == Item.id)
        .where(condition)
        .order_by(Item.product_code.asc())
        .limit(limit)
        .offset((page - 1) * limit)
        .execution_options(populate_existing=True)
    ).all()

    items = []
    for item, stock in rows:
        latest = db.execute(
            select(ItemClearance)
            .where(ItemClearance.item_id == item.id)
            .order_by(ItemClearance.requested_at.desc(), ItemClearance.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        items.append(
            {
                'id': item.id,
                'product_code': item.product_code,
                'description': item.description,
                'status': item.status.value,
                'stock': stock_snapshot(stock),
                'latest_clearance': clearance_payload(latest) if latest else None,
            }
        )
    return {
        'items': items,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': math.ceil(total / limit) if total else 0,
        },
    }
