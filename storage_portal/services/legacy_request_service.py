from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from storage_portal.auth import Principal, Role
from storage_portal.errors import InsufficientQuantity, PreconditionFailed
from storage_portal.models import BorrowRequest, BorrowRequestStatus, Item, ItemSize, ItemStatus
from storage_portal.policy import Transition, authorize
from storage_portal.services.system_settings_service import get_system_settings
from storage_portal.services.transitions import as_utc, lock_row, now, transition
from storage_portal.services.user_service import subject_for_user

logger = logging.getLogger(__name__)

BORROWABLE_ITEM_STATUSES = frozenset({ItemStatus.AVAILABLE, ItemStatus.ACTIVE})
# Requests from these roles need only the admin-side approval.
ADMIN_APPROVAL_ONLY = frozenset({Role.MANAGER, Role.ADMIN, Role.SUPERADMIN})
NOT_PENDING = 'Request is no longer pending'


def _validate_dates(
    start_date: datetime | None, end_date: datetime | None, *, max_days: int
) -> tuple[datetime, datetime]:
    if start_date is None or end_date is None:
        raise PreconditionFailed('Start date and end date are required')
    start = as_utc(start_date)
    end = as_utc(end_date)
    if start.date() < now().date():
        raise PreconditionFailed('Start date cannot be in the past')
    if end < start:
        raise PreconditionFailed('End date cannot be before start date')
    if (end.date() - start.date()).days > max_days:
        raise PreconditionFailed(f'Borrow period cannot exceed {max_days} days')
    return start, end


def create_legacy_request(
    db: Session,
    *,
    actor: Principal,
    item_size_id: int,
    quantity: int,
    start_date: datetime | None,
    end_date: datetime | None,
    reason: str | None,
) -> BorrowRequest:
    authorize(actor, Transition.CREATE_LEGACY_REQUEST)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise PreconditionFailed('Quantity must be a positive integer')
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Reason is required')
    start, end = _validate_dates(start_date, end_date, max_days=get_system_settings(db).max_borrow_days)

    size = lock_row(db, ItemSize, item_size_id, label='Item size')
    item = lock_row(db, Item, size.item_id, label='Item')
    if item.status not in BORROWABLE_ITEM_STATUSES:
        raise PreconditionFailed('Item is not available for borrowing')

    result = db.execute(
        update(ItemSize)
        .where(ItemSize.id == size.id, ItemSize.available >= quantity)
        .values(available=ItemSize.available - quantity, updated_at=now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientQuantity('Insufficient available quantity')

    borrow_request = BorrowRequest(
        user_id=actor.id,
        item_id=item.id,
        item_size_id=size.id,
        quantity=quantity,
        status=BorrowRequestStatus.PENDING,
        reason=clean_reason,
        start_date=start,
        end_date=end,
    )
    db.add(borrow_request)
    db.flush()
    logger.info(
        'Legacy request %s created by user=%s for size=%s qty=%s', borrow_request.id, actor.id, size.id, quantity
    )
    return borrow_request


def approve_legacy_request(db: Session, *, actor: Principal, request_id: int) -> tuple[BorrowRequest, bool]:
    """Record one side of the two-party approval.

    Returns the request and whether it is now fully approved. Managers sign
    for their department's users; admins sign the other side, which alone is
    enough when the requester is a manager or an administrator.
    """
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Request')
    subject = subject_for_user(db, borrow_request.user_id)
    authorize(actor, Transition.APPROVE_LEGACY_REQUEST, subject)

    stamp = now()
    values: dict = {'updated_at': stamp}
    manager_approved = borrow_request.manager_approved
    admin_approved = borrow_request.admin_approved
    if actor.role == Role.MANAGER:
        if manager_approved:
            raise PreconditionFailed('Request has already been approved by a manager')
        manager_approved = True
        values.update(manager_approved=True, manager_approved_by=actor.id, manager_approved_at=stamp)
    else:
        if admin_approved:
            raise PreconditionFailed('Request has already been approved by an admin')
        admin_approved = True
        values.update(admin_approved=True, admin_approved_by=actor.id, admin_approved_at=stamp)

    fully_approved = admin_approved and (subject.owner_role in ADMIN_APPROVAL_ONLY or manager_approved)
    if fully_approved:
        values['status'] = BorrowRequestStatus.APPROVED

    transition(db, borrow_request, expected=BorrowRequestStatus.PENDING, values=values, message=NOT_PENDING)
    logger.info(
        'Legacy request %s approved by user=%s (%s), fully_approved=%s',
        borrow_request.id,
        actor.id,
        actor.role.value,
        fully_approved,
    )
    return borrow_request, fully_approved


def reject_legacy_request(db: Session, *, actor: Principal, request_id: int, reason: str | None) -> BorrowRequest:
    borrow_request = lock_row(db, BorrowRequest, request_id, label='Request')
    authorize(actor, Transition.REJECT_LEGACY_REQUEST, subject_for_user(db, borrow_request.user_id))
    clean_reason = (reason or '').strip()
    if not clean_reason:
        raise PreconditionFailed('Rejection reason is required')

    stamp = now()
    transition(
        db,
        borrow_request,
        expected=BorrowRequestStatus.PENDING,
        values={'status': BorrowRequestStatus.REJECTED, 'rejection_reason': clean_reason, 'updated_at': stamp},
        message='Request has already been processed',
    )
    if borrow_request.item_size_id is not None:
        db.execute(
            update(ItemSize)
            .where(ItemSize.id == borrow_request.item_size_id)
            .values(available=ItemSize.available + borrow_request.quantity, updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
    logger.info('Legacy request %s rejected by user=%s', borrow_request.id, actor.id)
    return borrow_request
