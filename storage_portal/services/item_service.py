from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from storage_portal.auth import Principal
from storage_portal.errors import PreconditionFailed
from storage_portal.models import Item, ItemStatus
from storage_portal.policy import Transition, authorize
from storage_portal.services.ledger_service import get_stock, stock_snapshot
from storage_portal.services.transitions import lock_row, now, transition

logger = logging.getLogger(__name__)

ARCHIVABLE_STATUSES = (ItemStatus.AVAILABLE, ItemStatus.ACTIVE)


def item_payload(db: Session, item: Item) -> dict:
    stock = get_stock(db, item_id=item.id)
    return {
        'id': item.id,
        'product_code': item.product_code,
        'description': item.description,
        'brand_code': item.brand_code,
        'product_division': item.product_division,
        'product_category': item.product_category,
        'unit_of_measure': item.unit_of_measure,
        'condition': item.condition,
        'location': item.location,
        'status': item.status.value,
        'inventory': item.inventory,
        'total_stock': item.total_stock,
        'archived_by': item.archived_by,
        'archived_at': item.archived_at.isoformat() if item.archived_at else None,
        'archive_reason': item.archive_reason,
        'stock': stock_snapshot(stock) if stock else None,
    }


def archive_item(db: Session, *, actor: Principal, item_id: int, reason: str | None) -> Item:
    authorize(actor, Transition.ARCHIVE_ITEM)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Reason is required for archiving')

    item = lock_row(db, Item, item_id, label='Item')
    stamp = now()
    transition(
        db,
        item,
        expected=ARCHIVABLE_STATUSES,
        values={
            'status': ItemStatus.ARCHIVED,
            'archived_by': actor.id,
            'archived_at': stamp,
            'archive_reason': clean_reason,
            'updated_at': stamp,
        },
        message='Only available items can be archived',
    )
    logger.info('Item %s archived by user=%s', item.id, actor.id)
    return item


def unarchive_item(db: Session, *, actor: Principal, item_id: int) -> Item:
    authorize(actor, Transition.ARCHIVE_ITEM)
    item = lock_row(db, Item, item_id, label='Item')
    transition(
        db,
        item,
        expected=ItemStatus.ARCHIVED,
        values={
            'status': ItemStatus.AVAILABLE,
            'archived_by': None,
            'archived_at': None,
            'archive_reason': None,
            'updated_at': now(),
        },
        message='Item is not archived',
    )
    logger.info('Item %s unarchived by user=%s', item.id, actor.id)
    return item
