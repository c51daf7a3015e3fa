from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storage_portal.auth import Principal
from storage_portal.errors import InsufficientQuantity, NotFound, PreconditionFailed
from storage_portal.models import ItemStock, StockMovement
from storage_portal.policy import Transition, authorize
from storage_portal.services.transitions import as_utc, now

logger = logging.getLogger(__name__)


class StockState(str, Enum):
    PENDING = 'pending'
    STORAGE = 'storage'
    RESERVED = 'reserved'
    BORROWED = 'borrowed'
    CLEARANCE = 'clearance'
    SEEDED = 'seeded'


BUCKET_COLUMNS = {
    StockState.PENDING: 'pending',
    StockState.STORAGE: 'in_storage',
    StockState.RESERVED: 'reserved',
    StockState.BORROWED: 'on_borrow',
    StockState.CLEARANCE: 'in_clearance',
    StockState.SEEDED: 'seeded',
}


def _require_positive(quantity) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise PreconditionFailed('Quantity must be a positive integer')


def get_stock(db: Session, *, item_id: int) -> ItemStock | None:
    # Counters change through bulk UPDATEs, so always reload the row.
    return db.execute(
        select(ItemStock).where(ItemStock.item_id == item_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def stock_snapshot(stock: ItemStock) -> dict:
    return {
        'item_id': stock.item_id,
        'pending': stock.pending,
        'in_storage': stock.in_storage,
        'reserved': stock.reserved,
        'on_borrow': stock.on_borrow,
        'in_clearance': stock.in_clearance,
        'seeded': stock.seeded,
    }


def open_stock(
    db: Session,
    *,
    item_id: int,
    quantity: int,
    performed_by: int | None,
    reference_id: int | str | None = None,
    reference_type: str | None = None,
) -> ItemStock:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise PreconditionFailed('Quantity cannot be negative')
    if get_stock(db, item_id=item_id) is not None:
        raise PreconditionFailed('Item stock already exists')

    stock = ItemStock(item_id=item_id, pending=quantity)
    db.add(stock)
    db.flush()
    if quantity:
        db.add(
            StockMovement(
                item_id=item_id,
                stock_id=stock.id,
                movement_type='intake',
                from_state=None,
                to_state=StockState.PENDING.value,
                quantity=quantity,
                performed_by=performed_by,
                reference_id=str(reference_id) if reference_id is not None else None,
                reference_type=reference_type,
                notes='Registered on intake',
            )
        )
        db.flush()
    return stock


def move_stock(
    db: Session,
    *,
    item_id: int,
    quantity: int,
    from_state: StockState,
    to_state: StockState,
    performed_by: int | None,
    reference_id: int | str | None = None,
    reference_type: str | None = None,
    movement_type: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Move ``quantity`` units between two buckets of an item's stock.

    The balance check and both counter changes are one conditional UPDATE, so
    a concurrent move cannot drive the source bucket negative. On failure
    nothing is written.
    """
    _require_positive(quantity)
    from_state = StockState(from_state)
    to_state = StockState(to_state)
    if from_state == to_state:
        raise PreconditionFailed('Source and target stock states must differ')

    source_name = BUCKET_COLUMNS[from_state]
    target_name = BUCKET_COLUMNS[to_state]
    source = getattr(ItemStock, source_name)
    target = getattr(ItemStock, target_name)

    result = db.execute(
        update(ItemStock)
        .where(ItemStock.item_id == item_id, source >= quantity)
        .values({source_name: source - quantity, target_name: target + quantity, 'updated_at': now()})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if get_stock(db, item_id=item_id) is None:
            raise NotFound('Item stock not found')
        raise InsufficientQuantity(f'Insufficient {from_state.value} quantity')

    stock_id = get_stock(db, item_id=item_id).id
    movement = StockMovement(
        item_id=item_id,
        stock_id=stock_id,
        movement_type=movement_type or to_state.value,
        from_state=from_state.value,
        to_state=to_state.value,
        quantity=quantity,
        performed_by=performed_by,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        notes=notes,
    )
    db.add(movement)
    db.flush()
    logger.info(
        'Stock moved item=%s qty=%s %s->%s ref=%s:%s',
        item_id,
        quantity,
        from_state.value,
        to_state.value,
        reference_type,
        reference_id,
    )
    return movement


def movement_payload(movement: StockMovement) -> dict:
    return {
        'id': movement.id,
        'item_id': movement.item_id,
        'movement_type': movement.movement_type,
        'quantity': movement.quantity,
        'from_state': movement.from_state,
        'to_state': movement.to_state,
        'reference_id': movement.reference_id,
        'reference_type': movement.reference_type,
        'notes': movement.notes,
        'performed_by': movement.performed_by,
        'created_at': movement.created_at.isoformat() if movement.created_at else None,
    }


def list_stock_movements(
    db: Session,
    *,
    actor: Principal,
    item_id: int | None = None,
    movement_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[dict]:
    """Newest first. ``limit`` is clamped to 1..100."""
    authorize(actor, Transition.VIEW_STOCK_MOVEMENTS)
    query = select(StockMovement)
    if item_id is not None:
        query = query.where(StockMovement.item_id == item_id)
    if movement_type:
        query = query.where(StockMovement.movement_type == movement_type.strip())
    if date_from:
        query = query.where(StockMovement.created_at >= as_utc(date_from))
    if date_to:
        query = query.where(StockMovement.created_at <= as_utc(date_to))

    movements = db.execute(
        query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(min(max(1, limit), 100))
        .offset(max(0, offset))
    ).scalars()
    return [movement_payload(movement) for movement in movements]
