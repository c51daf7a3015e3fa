from __future__ import annotations

import unittest

from portal_fixtures import PortalTestCase, days_from_now
from storage_portal.errors import Forbidden, InsufficientQuantity, PreconditionFailed
from storage_portal.models import BorrowRequestStatus, ItemSize, ItemStatus, UserRole
from storage_portal.services.borrow_service import approve_return, receive_item, request_return
from storage_portal.services.legacy_request_service import (
    approve_legacy_request,
    create_legacy_request,
    reject_legacy_request,
)


class LegacyRequestServiceTests(PortalTestCase):
    def setUp(self) -> None:
        super().setUp()
        marketing = self.make_department('Marketing')
        self.requester = self.actor(self.make_user(UserRole.USER, marketing))
        self.manager = self.actor(self.make_user(UserRole.MANAGER, marketing))
        self.peer_manager = self.actor(self.make_user(UserRole.MANAGER, marketing))
        self.admin = self.actor(self.make_user(UserRole.ADMIN))
        self.item = self.make_item('SKU-L', in_storage=None, status=ItemStatus.ACTIVE)
        self.size = self.make_size(self.item, available=4)

    def available(self) -> int:
        self.db.expire_all()
        return self.db.get(ItemSize, self.size.id).available

    def create(self, actor=None, quantity: int = 2):
        return create_legacy_request(
            self.db,
            actor=actor or self.requester,
            item_size_id=self.size.id,
            quantity=quantity,
            start_date=days_from_now(1),
            end_date=days_from_now(4),
            reason='Trade show',
        )

    def test_create_holds_size_quantity(self) -> None:
        borrow_request = self.create()

        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING)
        self.assertEqual(self.available(), 2)
        with self.assertRaises(InsufficientQuantity):
            self.create(quantity=3)
        self.assertEqual(self.available(), 2)

    def test_user_request_needs_both_sides(self) -> None:
        borrow_request = self.create()

        _, fully_approved = approve_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertFalse(fully_approved)
        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING)
        with self.assertRaises(PreconditionFailed):
            approve_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id)

        _, fully_approved = approve_legacy_request(self.db, actor=self.manager, request_id=borrow_request.id)
        self.assertTrue(fully_approved)
        self.assertEqual(borrow_request.status, BorrowRequestStatus.APPROVED)

    def test_manager_request_needs_admin_only(self) -> None:
        borrow_request = self.create(actor=self.manager)

        with self.assertRaises(Forbidden):
            approve_legacy_request(self.db, actor=self.peer_manager, request_id=borrow_request.id)
        _, fully_approved = approve_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertTrue(fully_approved)

    def test_reject_restocks_size(self) -> None:
        borrow_request = self.create()

        with self.assertRaises(PreconditionFailed):
            reject_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id, reason=' ')
        reject_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id, reason='Not this month')

        self.assertEqual(borrow_request.status, BorrowRequestStatus.REJECTED)
        self.assertEqual(self.available(), 4)
        with self.assertRaises(PreconditionFailed) as ctx:
            reject_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id, reason='again')
        self.assertEqual(str(ctx.exception), 'Request has already been processed')

    def test_requester_reject_is_refused_before_reason_check(self) -> None:
        borrow_request = self.create()

        with self.assertRaises(Forbidden):
            reject_legacy_request(self.db, actor=self.requester, request_id=borrow_request.id, reason='')
        self.assertEqual(self.available(), 2)

    def test_receive_returns_quantity_to_size(self) -> None:
        borrow_request = self.create(actor=self.manager)
        approve_legacy_request(self.db, actor=self.admin, request_id=borrow_request.id)

        request_return(
            self.db, actor=self.manager, request_id=borrow_request.id, return_condition='excellent', reason='Done'
        )
        approve_return(self.db, actor=self.admin, request_id=borrow_request.id)
        receive_item(self.db, actor=self.admin, request_id=borrow_request.id)

        self.assertEqual(self.available(), 4)

    def test_dates_are_checked(self) -> None:
        with self.assertRaises(PreconditionFailed):
            create_legacy_request(
                self.db,
                actor=self.requester,
                item_size_id=self.size.id,
                quantity=1,
                start_date=days_from_now(-2),
                end_date=days_from_now(1),
                reason='x',
            )
        with self.assertRaises(PreconditionFailed):
            create_legacy_request(
                self.db,
                actor=self.requester,
                item_size_id=self.size.id,
                quantity=1,
                start_date=days_from_now(1),
                end_date=days_from_now(30),
                reason='x',
            )


if __name__ == '__main__':
    unittest.main()
