from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, Role
from storage_portal.clearance_kinds import Seeding
from storage_portal.errors import NotFound, PreconditionFailed
from storage_portal.models import (
    BorrowRequest,
    BorrowRequestItem,
    BorrowRequestItemStatus,
    BorrowRequestStatus,
    Item,
    ItemSize,
    ItemStatus,
    ReturnRequest,
    ReturnRequestStatus,
    User,
)
from storage_portal.policy import Subject, Transition, authorize
from storage_portal.services.clearance_service import record_clearance
from storage_portal.services.ledger_service import StockState, get_stock, move_stock
from storage_portal.services.system_settings_service import get_system_settings
from storage_portal.services.transitions import as_utc, compare_and_set, lock_row, now, transition
from storage_portal.services.user_service import subject_for_user

logger = logging.getLogger(__name__)

RETURN_CONDITIONS = ('excellent', 'good', 'fair', 'poor')
STAGES = ('manager', 'storage')
LINE_OUTCOMES = ('complete', 'seeded')
FULL_VISIBILITY_ROLES = frozenset(
    {Role.SUPERADMIN, Role.ADMIN, Role.STORAGE_MASTER, Role.STORAGE_MASTER_MANAGER, Role.STORAGE_MANAGER}
)

_STAGE_RULES = {
    'manager': {
        'approve': Transition.MANAGER_APPROVE_BORROW,
        'reject': Transition.MANAGER_REJECT_BORROW,
        'expected': BorrowRequestStatus.PENDING_MANAGER,
        'message': 'This request is not waiting for manager approval',
    },
    'storage': {
        'approve': Transition.STORAGE_APPROVE_BORROW,
        'reject': Transition.STORAGE_REJECT_BORROW,
        'expected': BorrowRequestStatus.PENDING_STORAGE,
        'message': 'This request is not waiting for storage approval',
    },
}


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _stage_rules(stage: str | None) -> dict:
    clean = (stage or '').strip().lower()
    if clean not in _STAGE_RULES:
        raise PreconditionFailed('Stage must be either "manager" or "storage"')
    return _STAGE_RULES[clean]


def get_lines(db: Session, borrow_request_id: int) -> list[BorrowRequestItem]:
    return list(
        db.execute(
            select(BorrowRequestItem)
            .where(BorrowRequestItem.borrow_request_id == borrow_request_id)
            .order_by(BorrowRequestItem.id.asc())
            .execution_options(populate_existing=True)
        ).scalars()
    )


def get_lines_by_request(db: Session, borrow_request_ids: list[int]) -> dict[int, list[BorrowRequestItem]]:
    grouped: dict[int, list[BorrowRequestItem]] = {request_id: [] for request_id in borrow_request_ids}
    if not borrow_request_ids:
        return grouped
    lines = db.execute(
        select(BorrowRequestItem)
        .where(BorrowRequestItem.borrow_request_id.in_(borrow_request_ids))
        .order_by(BorrowRequestItem.id.asc())
        .execution_options(populate_existing=True)
    ).scalars()
    for line in lines:
        grouped[line.borrow_request_id].append(line)
    return grouped


def line_payload(line: BorrowRequestItem) -> dict:
    return {
        'id': line.id,
        'item_id': line.item_id,
        'quantity': line.quantity,
        'status': line.status.value,
        'return_condition': line.return_condition,
        'return_notes': line.return_notes,
        'completed_by': line.completed_by,
        'completed_at': _isoformat(line.completed_at),
        'seeded_by': line.seeded_by,
        'seeded_at': _isoformat(line.seeded_at),
    }


def borrow_request_payload(borrow_request: BorrowRequest, lines: list[BorrowRequestItem] | None = None) -> dict:
    payload = {
        'id': borrow_request.id,
        'user_id': borrow_request.user_id,
        'item_id': borrow_request.item_id,
        'item_size_id': borrow_request.item_size_id,
        'quantity': borrow_request.quantity,
        'status': borrow_request.status.value,
        'reason': borrow_request.reason,
        'start_date': _isoformat(borrow_request.start_date),
        'end_date': _isoformat(borrow_request.end_date),
        'stock_reserved': borrow_request.stock_reserved,
        'manager_approved': borrow_request.manager_approved,
        'manager_approved_by': borrow_request.manager_approved_by,
        'manager_approved_at': _isoformat(borrow_request.manager_approved_at),
        'manager_rejection_reason': borrow_request.manager_rejection_reason,
        'storage_approved_by': borrow_request.storage_approved_by,
        'storage_approved_at': _isoformat(borrow_request.storage_approved_at),
        'storage_rejection_reason': borrow_request.storage_rejection_reason,
        'admin_approved': borrow_request.admin_approved,
        'admin_approved_by': borrow_request.admin_approved_by,
        'admin_approved_at': _isoformat(borrow_request.admin_approved_at),
        'rejection_reason': borrow_request.rejection_reason,
        'return_requested_at': _isoformat(borrow_request.return_requested_at),
        'return_approved_by': borrow_request.return_approved_by,
        'return_approved_at': _isoformat(borrow_request.return_approved_at),
        'received_at': _isoformat(borrow_request.received_at),
        'receive_notes': borrow_request.receive_notes,
        'completed_by': borrow_request.completed_by,
        'completed_at': _isoformat(borrow_request.completed_at),
    }
    if lines is not None:
        payload['items'] = [line_payload(line) for line in lines]
    return payload


def return_request_payload(return_request: ReturnRequest) -> dict:
    return {
        'id': return_request.id,
        'borrow_request_id': return_request.borrow_request_id,
        'item_id': return_request.item_id,
        'user_id': return_request.user_id,
        'reason': return_request.reason,
        'return_condition': return_request.return_condition,
        'return_notes': return_request.return_notes,
        'status': return_request.status.value,
        'approved_by': return_request.approved_by,
        'approved_at': _isoformat(return_request.approved_at),
    }


def validate_period(
    start_date: datetime | None, end_date: datetime | None, *, max_days: int
) -> tuple[datetime, datetime]:
    if start_date is None or end_date is None:
        raise PreconditionFailed('Start date and end date are required')
    start = as_utc(start_date)
    end = as_utc(end_date)
    if start < now():
        raise PreconditionFailed('Start date cannot be in the past')
    if end <= start:
        raise PreconditionFailed('End date must be after start date')
    if end - start > timedelta(days=max_days):
        raise PreconditionFailed(f'Borrow period cannot exceed {max_days} days')
    return start, end


def _normalize_lines(lines: list[dict] | None) -> list[tuple[int, int]]:
    if not lines:
        raise PreconditionFailed('At least one item must be requested')
    normalized: list[tuple[int, int]] = []
    seen: set[int] = set()
    for line in lines:
        item_id = line.get('item_id')
        quantity = line.get('quantity')
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise PreconditionFailed('Each item needs an item_id')
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise PreconditionFailed('Each item needs a positive quantity')
        if item_id in seen:
            raise PreconditionFailed('An item can only appear once per request')
        seen.add(item_id)
        normalized.append((item_id, quantity))
    return normalized


def create_borrow_request(
    db: Session,
    *,
    actor: Principal,
    lines: list[dict] | None,
    start_date: datetime | None,
    end_date: datetime | None,
    reason: str | None,
) -> BorrowRequest:
    authorize(actor, Transition.CREATE_BORROW)
    requested = _normalize_lines(lines)
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Reason is required')
    system = get_system_settings(db)
    start, end = validate_period(start_date, end_date, max_days=system.max_borrow_days)

    for item_id, quantity in requested:
        item = db.get(Item, item_id)
        if item is None:
            raise NotFound('One or more items not found')
        if item.status != ItemStatus.AVAILABLE:
            raise PreconditionFailed(f'Item {item.product_code} is not available for borrowing')
        stock = get_stock(db, item_id=item_id)
        if stock is None or stock.in_storage < quantity:
            raise PreconditionFailed(f'Insufficient stock for item {item.product_code}')

    if actor.role == Role.USER:
        status, line_status = BorrowRequestStatus.PENDING_MANAGER, BorrowRequestItemStatus.PENDING_MANAGER
    else:
        status, line_status = BorrowRequestStatus.PENDING_STORAGE, BorrowRequestItemStatus.PENDING_STORAGE

    borrow_request = BorrowRequest(
        user_id=actor.id,
        quantity=sum(quantity for _, quantity in requested),
        status=status,
        reason=clean_reason,
        start_date=start,
        end_date=end,
        stock_reserved=system.reserve_stock_on_borrow_request,
    )
    db.add(borrow_request)
    db.flush()

    for item_id, quantity in requested:
        db.add(
            BorrowRequestItem(
                borrow_request_id=borrow_request.id,
                item_id=item_id,
                quantity=quantity,
                status=line_status,
            )
        )
        if system.reserve_stock_on_borrow_request:
            move_stock(
                db,
                item_id=item_id,
                quantity=quantity,
                from_state=StockState.STORAGE,
                to_state=StockState.RESERVED,
                performed_by=actor.id,
                reference_id=borrow_request.id,
                reference_type='borrow_request',
                movement_type='reserve',
            )
    db.flush()
    logger.info('Borrow request %s created by user=%s status=%s', borrow_request.id, actor.id, status.value)
    return borrow_request


def list_borrow_requests(db: Session, *, actor: Principal, status: str | None = None) -> list[dict]:
    query = select(BorrowRequest).join(User, User.id == BorrowRequest.user_id)
    if actor.role == Role.MANAGER:
        if actor.department_id is None:
            return []
        query = query.where(User.department_id == actor.department_id)
    elif actor.role not in FULL_VISIBILITY_ROLES:
        query = query.where(BorrowRequest.user_id == actor.id)

    if status:
        try:
            query = query.where(BorrowRequest.status == BorrowRequestStatus(status))
        except ValueError as exc:
            raise PreconditionFailed(f'Unknown status: {status}') from exc

    requests = db.execute(query.order_by(BorrowRequest.requested_at.asc(), BorrowRequest.id.asc())).scalars().all()
    lines = get_lines_by_request(db, [borrow_request.id for borrow_request in requests])
    return [borrow_request_payload(borrow_request, lines[borrow_request.id]) for borrow_request in requests]


def approve_borrow_request(db: Session, *, actor: Principal, request_id: int, stage: str | None) -> BorrowRequest:
    rules = _stage_rules(stage)
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Borrow request')
    authorize(actor, rules['approve'], subject_for_user(db, borrow_request.user_id))
    stamp = now()

    if rules['approve'] == Transition.MANAGER_APPROVE_BORROW:
        transition(
            db,
            borrow_request,
            expected=rules['expected'],
            values={
                'status': BorrowRequestStatus.PENDING_STORAGE,
                'manager_approved': True,
                'manager_approved_by': actor.id,
                'manager_approved_at': stamp,
                'updated_at': stamp,
            },
            message=rules['message'],
        )
        _set_line_status(
            db,
            borrow_request.id,
            expected=BorrowRequestItemStatus.PENDING_MANAGER,
            status=BorrowRequestItemStatus.PENDING_STORAGE,
        )
        logger.info('Borrow request %s manager-approved by user=%s', borrow_request.id, actor.id)
        return borrow_request

    max_days = get_system_settings(db).max_borrow_days
    transition(
        db,
        borrow_request,
        expected=rules['expected'],
        values={
            'status': BorrowRequestStatus.ACTIVE,
            'storage_approved_by': actor.id,
            'storage_approved_at': stamp,
            'start_date': stamp,
            'end_date': stamp + timedelta(days=max_days),
            'updated_at': stamp,
        },
        message=rules['message'],
    )
    source = StockState.RESERVED if borrow_request.stock_reserved else StockState.STORAGE
    for line in get_lines(db, borrow_request.id):
        move_stock(
            db,
            item_id=line.item_id,
            quantity=line.quantity,
            from_state=source,
            to_state=StockState.BORROWED,
            performed_by=actor.id,
            reference_id=borrow_request.id,
            reference_type='borrow_request',
            movement_type='borrow',
        )
    _set_line_status(
        db,
        borrow_request.id,
        expected=BorrowRequestItemStatus.PENDING_STORAGE,
        status=BorrowRequestItemStatus.ACTIVE,
    )
    logger.info('Borrow request %s storage-approved by user=%s', borrow_request.id, actor.id)
    return borrow_request


def _set_line_status(
    db: Session,
    borrow_request_id: int,
    *,
    expected: BorrowRequestItemStatus | tuple,
    status: BorrowRequestItemStatus,
) -> None:
    expected_statuses = expected if isinstance(expected, tuple) else (expected,)
    db.execute(
        update(BorrowRequestItem)
        .where(
            BorrowRequestItem.borrow_request_id == borrow_request_id,
            BorrowRequestItem.status.in_(expected_statuses),
        )
        .values(status=status)
        .execution_options(synchronize_session=False)
    )


def reject_borrow_request(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    stage: str | None,
    reason: str | None,
) -> BorrowRequest:
    """Reject at the manager or storage gate.

    A request that reserved stock at creation hands the reservation back to
    storage; otherwise rejection has no stock effect.
    """
    rules = _stage_rules(stage)
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Borrow request')
    authorize(actor, rules['reject'], subject_for_user(db, borrow_request.user_id))
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Rejection reason is required')

    stamp = now()
    values = {'status': BorrowRequestStatus.REJECTED, 'updated_at': stamp}
    if rules['reject'] == Transition.MANAGER_REJECT_BORROW:
        values.update(
            manager_approved_by=actor.id, manager_approved_at=stamp, manager_rejection_reason=clean_reason
        )
    else:
        values.update(
            storage_approved_by=actor.id, storage_approved_at=stamp, storage_rejection_reason=clean_reason
        )
    transition(db, borrow_request, expected=rules['expected'], values=values, message=rules['message'])

    if borrow_request.stock_reserved:
        for line in get_lines(db, borrow_request.id):
            move_stock(
                db,
                item_id=line.item_id,
                quantity=line.quantity,
                from_state=StockState.RESERVED,
                to_state=StockState.STORAGE,
                performed_by=actor.id,
                reference_id=borrow_request.id,
                reference_type='borrow_request',
                movement_type='release',
                notes=clean_reason,
            )
    _set_line_status(
        db,
        borrow_request.id,
        expected=(BorrowRequestItemStatus.PENDING_MANAGER, BorrowRequestItemStatus.PENDING_STORAGE),
        status=BorrowRequestItemStatus.REJECTED,
    )
    logger.info('Borrow request %s rejected by user=%s at %s stage', borrow_request.id, actor.id, stage)
    return borrow_request


def request_return(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    return_condition: str | None,
    reason: str | None,
    return_notes: str | None = None,
) -> ReturnRequest:
    clean_condition = (return_condition or '').strip().lower()
    clean_reason = (reason or '').strip()
    if not clean_condition or not clean_reason:
        raise PreconditionFailed('Return condition and reason are required')
    if clean_condition not in RETURN_CONDITIONS:
        raise PreconditionFailed(f'Return condition must be one of: {", ".join(RETURN_CONDITIONS)}')

    borrow_request = lock_row(db, BorrowRequest, request_id, label='Request')
    authorize(actor, Transition.REQUEST_RETURN, Subject(owner_id=borrow_request.user_id))
    if borrow_request.return_requested_at is not None:
        raise PreconditionFailed('A return has already been requested')

    stamp = now()
    transition(
        db,
        borrow_request,
        expected=(BorrowRequestStatus.ACTIVE, BorrowRequestStatus.APPROVED),
        values={'status': BorrowRequestStatus.PENDING_RETURN, 'return_requested_at': stamp, 'updated_at': stamp},
        message='Request is not in active status',
        conditions=(BorrowRequest.return_requested_at.is_(None),),
    )

    return_request = ReturnRequest(
        borrow_request_id=borrow_request.id,
        item_id=borrow_request.item_id,
        user_id=actor.id,
        reason=clean_reason,
        return_condition=clean_condition,
        return_notes=(return_notes or '').strip() or None,
        status=ReturnRequestStatus.PENDING,
    )
    db.add(return_request)
    db.flush()
    logger.info('Return requested for borrow request %s by user=%s', borrow_request.id, actor.id)
    return return_request


def approve_return(db: Session, *, actor: Principal, request_id: int) -> BorrowRequest:
    authorize(actor, Transition.APPROVE_RETURN)
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Request')
    if borrow_request.return_requested_at is None:
        raise PreconditionFailed('No return request found')
    if borrow_request.return_approved_at is not None:
        raise PreconditionFailed('Return has already been approved')

    stamp = now()
    transition(
        db,
        borrow_request,
        expected=BorrowRequestStatus.PENDING_RETURN,
        values={
            'status': BorrowRequestStatus.RETURNED,
            'return_approved_by': actor.id,
            'return_approved_at': stamp,
            'updated_at': stamp,
        },
        message='Request is not awaiting return approval',
        conditions=(BorrowRequest.return_approved_at.is_(None),),
    )
    db.execute(
        update(ReturnRequest)
        .where(
            ReturnRequest.borrow_request_id == borrow_request.id,
            ReturnRequest.status == ReturnRequestStatus.PENDING,
        )
        .values(status=ReturnRequestStatus.APPROVED, approved_by=actor.id, approved_at=stamp)
        .execution_options(synchronize_session=False)
    )
    logger.info('Return approved for borrow request %s by user=%s', borrow_request.id, actor.id)
    return borrow_request


def receive_item(db: Session, *, actor: Principal, request_id: int, notes: str | None = None) -> BorrowRequest:
    """Book a returned borrow back into stock.

    Multi-item requests move each active line from borrowed back to storage.
    Single-item requests restore the size's ``available`` count, or the
    item's legacy ``inventory`` when no size is attached.
    """
    authorize(actor, Transition.RECEIVE_ITEM)
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Request')
    if borrow_request.return_approved_at is None:
        raise PreconditionFailed('Return has not been approved yet')
    if borrow_request.received_at is not None:
        raise PreconditionFailed('Item has already been received')

    stamp = now()
    transition(
        db,
        borrow_request,
        expected=BorrowRequestStatus.RETURNED,
        values={'received_at': stamp, 'receive_notes': (notes or '').strip() or None, 'updated_at': stamp},
        message='Request is not in returned status',
        conditions=(BorrowRequest.received_at.is_(None),),
    )

    return_request = db.execute(
        select(ReturnRequest).where(ReturnRequest.borrow_request_id == borrow_request.id)
    ).scalar_one_or_none()
    lines = [line for line in get_lines(db, borrow_request.id) if line.status == BorrowRequestItemStatus.ACTIVE]
    for line in lines:
        move_stock(
            db,
            item_id=line.item_id,
            quantity=line.quantity,
            from_state=StockState.BORROWED,
            to_state=StockState.STORAGE,
            performed_by=actor.id,
            reference_id=borrow_request.id,
            reference_type='borrow_request',
            movement_type='return',
            notes=notes,
        )
        compare_and_set(
            db,
            BorrowRequestItem,
            row_id=line.id,
            expected=BorrowRequestItemStatus.ACTIVE,
            values={
                'status': BorrowRequestItemStatus.COMPLETE,
                'return_condition': return_request.return_condition if return_request else None,
                'return_notes': return_request.return_notes if return_request else None,
                'completed_by': actor.id,
                'completed_at': stamp,
            },
            message='Borrow request item changed while receiving',
        )

    if not lines and borrow_request.item_size_id is not None:
        db.execute(
            update(ItemSize)
            .where(ItemSize.id == borrow_request.item_size_id)
            .values(available=ItemSize.available + borrow_request.quantity, updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
    elif not lines and borrow_request.item_id is not None:
        db.execute(
            update(Item)
            .where(Item.id == borrow_request.item_id, Item.inventory.is_not(None))
            .values(inventory=Item.inventory + borrow_request.quantity, updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
    logger.info('Borrow request %s received by user=%s', borrow_request.id, actor.id)
    return borrow_request


def _validate_outcomes(lines: list[BorrowRequestItem], outcomes: list[dict] | None) -> dict[int, dict]:
    if not outcomes:
        raise PreconditionFailed('Items completion data is required')
    by_line: dict[int, dict] = {}
    for outcome in outcomes:
        line_id = outcome.get('borrow_request_item_id')
        status = (outcome.get('status') or '').strip().lower()
        if isinstance(line_id, bool) or not isinstance(line_id, int) or not status:
            raise PreconditionFailed('Each item must have borrow_request_item_id and status (complete or seeded)')
        if status not in LINE_OUTCOMES:
            raise PreconditionFailed('Status must be either "complete" or "seeded"')
        if line_id in by_line:
            raise PreconditionFailed(f'Borrow request item {line_id} listed more than once')
        clean = {'status': status, 'return_notes': (outcome.get('return_notes') or '').strip() or None}
        if status == 'complete':
            condition = (outcome.get('return_condition') or '').strip().lower()
            if condition not in RETURN_CONDITIONS:
                raise PreconditionFailed(
                    'Return condition is required for completed items and must be one of: '
                    + ', '.join(RETURN_CONDITIONS)
                )
            clean['return_condition'] = condition
        else:
            reason = (outcome.get('reason') or '').strip()
            if not reason:
                raise PreconditionFailed('A reason is required for seeded items')
            clean['reason'] = reason
        by_line[line_id] = clean

    line_ids = {line.id for line in lines}
    unknown = set(by_line) - line_ids
    if unknown:
        raise NotFound(f'Borrow request item {min(unknown)} not found')
    if set(by_line) != line_ids:
        raise PreconditionFailed('Every item in the request must be completed or seeded')
    return by_line


def complete_borrow_request(
    db: Session,
    *,
    actor: Principal,
    request_id: int,
    outcomes: list[dict] | None,
) -> BorrowRequest:
    """Close an active borrow line by line.

    Each line either comes back to storage (``complete``) or is written off as
    seeded, which books a seeding clearance against the item. The request ends
    ``complete`` when at least one line came back, otherwise ``seeded``.
    """
    authorize(actor, Transition.COMPLETE_BORROW)
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Borrow request')
    if borrow_request.status != BorrowRequestStatus.ACTIVE:
        raise PreconditionFailed('Only active borrow requests can be completed')
    lines = get_lines(db, borrow_request.id)
    if not lines:
        raise PreconditionFailed('This request has no items to complete')
    if any(line.status != BorrowRequestItemStatus.ACTIVE for line in lines):
        raise PreconditionFailed('All items must be active to complete the request')
    by_line = _validate_outcomes(lines, outcomes)

    stamp = now()
    any_completed = False
    for line in lines:
        outcome = by_line[line.id]
        if outcome['status'] == 'complete':
            any_completed = True
            move_stock(
                db,
                item_id=line.item_id,
                quantity=line.quantity,
                from_state=StockState.BORROWED,
                to_state=StockState.STORAGE,
                performed_by=actor.id,
                reference_id=line.id,
                reference_type='borrow_request_item',
                movement_type='complete',
                notes=f'Item returned in {outcome["return_condition"]} condition',
            )
            values = {
                'status': BorrowRequestItemStatus.COMPLETE,
                'return_condition': outcome['return_condition'],
                'return_notes': outcome['return_notes'],
                'completed_by': actor.id,
                'completed_at': stamp,
            }
        else:
            move_stock(
                db,
                item_id=line.item_id,
                quantity=line.quantity,
                from_state=StockState.BORROWED,
                to_state=StockState.SEEDED,
                performed_by=actor.id,
                reference_id=line.id,
                reference_type='borrow_request_item',
                movement_type='seeded',
                notes=outcome['reason'],
            )
            record_clearance(
                db,
                item_id=line.item_id,
                quantity=line.quantity,
                reason=outcome['reason'],
                kind=Seeding(original_quantity=line.quantity, borrow_request_id=borrow_request.id),
                actor_id=actor.id,
            )
            values = {
                'status': BorrowRequestItemStatus.SEEDED,
                'return_notes': outcome['return_notes'],
                'seeded_by': actor.id,
                'seeded_at': stamp,
            }
        compare_and_set(
            db,
            BorrowRequestItem,
            row_id=line.id,
            expected=BorrowRequestItemStatus.ACTIVE,
            values=values,
            message='Borrow request item changed while completing',
        )

    final_status = BorrowRequestStatus.COMPLETE if any_completed else BorrowRequestStatus.SEEDED
    transition(
        db,
        borrow_request,
        expected=BorrowRequestStatus.ACTIVE,
        values={'status': final_status, 'completed_by': actor.id, 'completed_at': stamp, 'updated_at': stamp},
        message='Only active borrow requests can be completed',
    )
    logger.info('Borrow request %s closed as %s by user=%s', borrow_request.id, final_status.value, actor.id)
    return borrow_request
