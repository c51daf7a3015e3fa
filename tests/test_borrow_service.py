from __future__ import annotations

import unittest

from sqlalchemy import select

from portal_fixtures import PortalTestCase, days_from_now
from storage_portal.errors import Forbidden, NotFound, PreconditionFailed
from storage_portal.models import (
    BorrowRequestItemStatus,
    BorrowRequestStatus,
    ClearanceStatus,
    ItemClearance,
    ReturnRequest,
    ReturnRequestStatus,
    UserRole,
)
from storage_portal.services.borrow_service import (
    approve_borrow_request,
    approve_return,
    complete_borrow_request,
    create_borrow_request,
    get_lines,
    list_borrow_requests,
    receive_item,
    reject_borrow_request,
    request_return,
    validate_period,
)
from storage_portal.services.system_settings_service import update_system_settings


class BorrowServiceTestCase(PortalTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.marketing = self.make_department('Marketing')
        self.sales = self.make_department('Sales')
        self.requester = self.actor(self.make_user(UserRole.USER, self.marketing))
        self.manager = self.actor(self.make_user(UserRole.MANAGER, self.marketing))
        self.other_manager = self.actor(self.make_user(UserRole.MANAGER, self.sales))
        self.storage = self.actor(self.make_user(UserRole.STORAGE_MASTER, self.marketing))
        self.admin = self.actor(self.make_user(UserRole.ADMIN))
        self.superadmin = self.actor(self.make_user(UserRole.SUPERADMIN))
        self.jacket = self.make_item('SKU-J', in_storage=5)
        self.boots = self.make_item('SKU-B', in_storage=4)

    def borrow(self, *lines: tuple, actor=None):
        return create_borrow_request(
            self.db,
            actor=actor or self.requester,
            lines=[{'item_id': item.id, 'quantity': quantity} for item, quantity in lines],
            start_date=days_from_now(1),
            end_date=days_from_now(3),
            reason='Photo shoot',
        )

    def activate(self, *lines: tuple):
        borrow_request = self.borrow(*lines)
        approve_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='manager')
        approve_borrow_request(self.db, actor=self.storage, request_id=borrow_request.id, stage='storage')
        return borrow_request


class CreateBorrowRequestTests(BorrowServiceTestCase):
    def test_user_requests_start_at_manager_gate(self) -> None:
        borrow_request = self.borrow((self.jacket, 2), (self.boots, 1))

        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING_MANAGER)
        self.assertEqual(borrow_request.quantity, 3)
        lines = get_lines(self.db, borrow_request.id)
        self.assertEqual([line.status for line in lines], [BorrowRequestItemStatus.PENDING_MANAGER] * 2)
        self.assertEqual(self.stock(self.jacket.id).in_storage, 5)

    def test_other_roles_skip_manager_gate(self) -> None:
        borrow_request = self.borrow((self.jacket, 1), actor=self.manager)

        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING_STORAGE)

    def test_validation(self) -> None:
        with self.assertRaises(PreconditionFailed):
            self.borrow()
        with self.assertRaises(PreconditionFailed):
            self.borrow((self.jacket, 1), (self.jacket, 1))
        with self.assertRaises(PreconditionFailed) as ctx:
            self.borrow((self.jacket, 6))
        self.assertEqual(str(ctx.exception), 'Insufficient stock for item SKU-J')
        with self.assertRaises(NotFound):
            create_borrow_request(
                self.db,
                actor=self.requester,
                lines=[{'item_id': 999, 'quantity': 1}],
                start_date=days_from_now(1),
                end_date=days_from_now(2),
                reason='x',
            )

    def test_period_rules(self) -> None:
        with self.assertRaises(PreconditionFailed):
            validate_period(days_from_now(-1), days_from_now(2), max_days=14)
        with self.assertRaises(PreconditionFailed):
            validate_period(days_from_now(3), days_from_now(2), max_days=14)
        with self.assertRaises(PreconditionFailed) as ctx:
            validate_period(days_from_now(1), days_from_now(20), max_days=14)
        self.assertEqual(str(ctx.exception), 'Borrow period cannot exceed 14 days')

    def test_reservation_setting_holds_stock(self) -> None:
        update_system_settings(self.db, actor=self.superadmin, changes={'reserve_stock_on_borrow_request': True})

        borrow_request = self.borrow((self.jacket, 2))

        self.assertTrue(borrow_request.stock_reserved)
        stock = self.stock(self.jacket.id)
        self.assertEqual((stock.in_storage, stock.reserved), (3, 2))

        approve_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='manager')
        reject_borrow_request(
            self.db, actor=self.storage, request_id=borrow_request.id, stage='storage', reason='Damaged'
        )
        stock = self.stock(self.jacket.id)
        self.assertEqual((stock.in_storage, stock.reserved), (5, 0))


class ApprovalTests(BorrowServiceTestCase):
    def test_dual_approval_moves_stock_to_borrowed(self) -> None:
        borrow_request = self.activate((self.jacket, 2), (self.boots, 1))

        self.assertEqual(borrow_request.status, BorrowRequestStatus.ACTIVE)
        self.assertTrue(borrow_request.manager_approved)
        self.assertEqual(borrow_request.storage_approved_by, self.storage.id)
        self.assertEqual([line.status for line in get_lines(self.db, borrow_request.id)],
                         [BorrowRequestItemStatus.ACTIVE] * 2)
        jacket = self.stock(self.jacket.id)
        self.assertEqual((jacket.in_storage, jacket.on_borrow), (3, 2))

    def test_stage_order_is_enforced(self) -> None:
        borrow_request = self.borrow((self.jacket, 1))

        with self.assertRaises(PreconditionFailed) as ctx:
            approve_borrow_request(self.db, actor=self.storage, request_id=borrow_request.id, stage='storage')
        self.assertEqual(str(ctx.exception), 'This request is not waiting for storage approval')
        with self.assertRaises(PreconditionFailed):
            approve_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='finance')

        approve_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='manager')
        with self.assertRaises(PreconditionFailed):
            approve_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='manager')

    def test_manager_from_other_department_cannot_reject(self) -> None:
        borrow_request = self.borrow((self.jacket, 1))

        with self.assertRaises(Forbidden):
            reject_borrow_request(
                self.db, actor=self.other_manager, request_id=borrow_request.id, stage='manager', reason='no'
            )
        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING_MANAGER)

    def test_forbidden_reject_is_refused_before_reason_check(self) -> None:
        borrow_request = self.borrow((self.jacket, 1))

        with self.assertRaises(Forbidden):
            reject_borrow_request(
                self.db, actor=self.other_manager, request_id=borrow_request.id, stage='manager', reason=''
            )

    def test_manager_rejection_has_no_stock_effect(self) -> None:
        borrow_request = self.borrow((self.jacket, 3))

        reject_borrow_request(
            self.db, actor=self.manager, request_id=borrow_request.id, stage='manager', reason='duplicate'
        )

        self.assertEqual(borrow_request.status, BorrowRequestStatus.REJECTED)
        self.assertEqual(borrow_request.manager_rejection_reason, 'duplicate')
        self.assertEqual(self.stock(self.jacket.id).in_storage, 5)
        self.assertEqual(get_lines(self.db, borrow_request.id)[0].status, BorrowRequestItemStatus.REJECTED)

    def test_rejection_requires_reason(self) -> None:
        borrow_request = self.borrow((self.jacket, 1))

        with self.assertRaises(PreconditionFailed) as ctx:
            reject_borrow_request(self.db, actor=self.manager, request_id=borrow_request.id, stage='manager', reason='')
        self.assertEqual(str(ctx.exception), 'Rejection reason is required')

    def test_list_is_scoped_by_role(self) -> None:
        self.borrow((self.jacket, 1))
        self.borrow((self.boots, 1), actor=self.other_manager)

        self.assertEqual(len(list_borrow_requests(self.db, actor=self.requester)), 1)
        self.assertEqual(len(list_borrow_requests(self.db, actor=self.manager)), 1)
        self.assertEqual(len(list_borrow_requests(self.db, actor=self.other_manager)), 1)
        self.assertEqual(len(list_borrow_requests(self.db, actor=self.storage)), 2)
        self.assertEqual(len(list_borrow_requests(self.db, actor=self.admin, status='pending_storage')), 1)

    def test_list_groups_lines_under_their_request(self) -> None:
        first = self.borrow((self.jacket, 1), (self.boots, 2))
        second = self.borrow((self.boots, 1))

        listing = list_borrow_requests(self.db, actor=self.storage)

        self.assertEqual([row['id'] for row in listing], [first.id, second.id])
        self.assertEqual([line['item_id'] for line in listing[0]['items']], [self.jacket.id, self.boots.id])
        self.assertEqual([(line['item_id'], line['quantity']) for line in listing[1]['items']], [(self.boots.id, 1)])
        self.assertEqual(list_borrow_requests(self.db, actor=self.storage, status='rejected'), [])


class ReturnFlowTests(BorrowServiceTestCase):
    def test_return_approve_receive(self) -> None:
        borrow_request = self.activate((self.jacket, 2))

        return_request = request_return(
            self.db, actor=self.requester, request_id=borrow_request.id, return_condition='Good', reason='Done'
        )
        self.assertEqual(borrow_request.status, BorrowRequestStatus.PENDING_RETURN)
        self.assertEqual(return_request.return_condition, 'good')
        with self.assertRaises(PreconditionFailed):
            request_return(
                self.db, actor=self.requester, request_id=borrow_request.id, return_condition='good', reason='Again'
            )

        approve_return(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertEqual(borrow_request.status, BorrowRequestStatus.RETURNED)
        self.db.expire_all()
        stored = self.db.execute(select(ReturnRequest)).scalar_one()
        self.assertEqual(stored.status, ReturnRequestStatus.APPROVED)

        receive_item(self.db, actor=self.admin, request_id=borrow_request.id, notes='All there')
        self.assertIsNotNone(borrow_request.received_at)
        jacket = self.stock(self.jacket.id)
        self.assertEqual((jacket.in_storage, jacket.on_borrow), (5, 0))
        line = get_lines(self.db, borrow_request.id)[0]
        self.assertEqual((line.status, line.return_condition), (BorrowRequestItemStatus.COMPLETE, 'good'))

        with self.assertRaises(PreconditionFailed) as ctx:
            receive_item(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertEqual(str(ctx.exception), 'Item has already been received')

    def test_return_guards(self) -> None:
        borrow_request = self.activate((self.jacket, 1))

        with self.assertRaises(PreconditionFailed):
            request_return(
                self.db, actor=self.requester, request_id=borrow_request.id, return_condition='mint', reason='x'
            )
        with self.assertRaises(Forbidden):
            request_return(
                self.db, actor=self.manager, request_id=borrow_request.id, return_condition='good', reason='x'
            )
        with self.assertRaises(PreconditionFailed) as ctx:
            approve_return(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertEqual(str(ctx.exception), 'No return request found')
        with self.assertRaises(PreconditionFailed) as ctx:
            receive_item(self.db, actor=self.admin, request_id=borrow_request.id)
        self.assertEqual(str(ctx.exception), 'Return has not been approved yet')


class CompletionTests(BorrowServiceTestCase):
    def test_mixed_outcomes_complete_the_request(self) -> None:
        borrow_request = self.activate((self.jacket, 2), (self.boots, 1))
        jacket_line, boots_line = get_lines(self.db, borrow_request.id)

        complete_borrow_request(
            self.db,
            actor=self.storage,
            request_id=borrow_request.id,
            outcomes=[
                {'borrow_request_item_id': jacket_line.id, 'status': 'complete', 'return_condition': 'fair'},
                {'borrow_request_item_id': boots_line.id, 'status': 'seeded', 'reason': 'Given to influencer'},
            ],
        )

        self.assertEqual(borrow_request.status, BorrowRequestStatus.COMPLETE)
        jacket = self.stock(self.jacket.id)
        boots = self.stock(self.boots.id)
        self.assertEqual((jacket.in_storage, jacket.on_borrow), (5, 0))
        self.assertEqual((boots.in_storage, boots.on_borrow, boots.seeded), (3, 0, 1))
        clearance = self.db.execute(select(ItemClearance)).scalar_one()
        self.assertEqual(clearance.status, ClearanceStatus.COMPLETED)
        self.assertEqual(
            clearance.meta, {'type': 'seeding', 'originalQuantity': 1, 'borrowRequestId': borrow_request.id}
        )

    def test_all_seeded_marks_request_seeded(self) -> None:
        borrow_request = self.activate((self.jacket, 2))
        line = get_lines(self.db, borrow_request.id)[0]

        complete_borrow_request(
            self.db,
            actor=self.storage,
            request_id=borrow_request.id,
            outcomes=[{'borrow_request_item_id': line.id, 'status': 'seeded', 'reason': 'Kept for campaign'}],
        )

        self.assertEqual(borrow_request.status, BorrowRequestStatus.SEEDED)

    def test_outcomes_must_cover_every_line(self) -> None:
        borrow_request = self.activate((self.jacket, 1), (self.boots, 1))
        jacket_line, _ = get_lines(self.db, borrow_request.id)
        complete = {'borrow_request_item_id': jacket_line.id, 'status': 'complete', 'return_condition': 'good'}

        with self.assertRaises(PreconditionFailed) as ctx:
            complete_borrow_request(self.db, actor=self.storage, request_id=borrow_request.id, outcomes=[complete])
        self.assertEqual(str(ctx.exception), 'Every item in the request must be completed or seeded')
        with self.assertRaises(NotFound):
            complete_borrow_request(
                self.db,
                actor=self.storage,
                request_id=borrow_request.id,
                outcomes=[complete, {'borrow_request_item_id': 999, 'status': 'seeded', 'reason': 'x'}],
            )
        with self.assertRaises(PreconditionFailed):
            complete_borrow_request(
                self.db,
                actor=self.storage,
                request_id=borrow_request.id,
                outcomes=[{**complete, 'return_condition': None}],
            )
        self.assertEqual(self.stock(self.jacket.id).on_borrow, 1)

    def test_only_active_requests_complete(self) -> None:
        borrow_request = self.borrow((self.jacket, 1))

        with self.assertRaises(PreconditionFailed) as ctx:
            complete_borrow_request(self.db, actor=self.storage, request_id=borrow_request.id, outcomes=[])
        self.assertEqual(str(ctx.exception), 'Only active borrow requests can be completed')


if __name__ == '__main__':
    unittest.main()
