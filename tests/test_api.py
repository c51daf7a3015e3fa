from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select, update

from portal_fixtures import PortalTestCase, days_from_now
from storage_portal.auth import get_current_principal
from storage_portal.db import get_db
from storage_portal.main import app
from storage_portal.models import (
    AuditLog,
    AuthEvent,
    BorrowRequest,
    BorrowRequestItemStatus,
    BorrowRequestStatus,
    ItemStock,
    StockMovement,
    UserRole,
)
from storage_portal.services.borrow_service import create_borrow_request, get_lines
from storage_portal.services.catalog_factory import get_item_catalog
from storage_portal.services.mock_catalog_client import MockCatalog
from storage_portal.services.user_service import create_department, create_user


class ApiTestCase(PortalTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.current = None

        def override_get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_principal] = lambda: self.current
        app.dependency_overrides[get_item_catalog] = MockCatalog
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        super().tearDown()

    def login_as(self, role: UserRole, department=None):
        user = self.make_user(role, department)
        self.db.commit()
        self.current = self.actor(user)
        return self.current


class ErrorMappingTests(ApiTestCase):
    def test_health(self) -> None:
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})

    def test_forbidden_is_403_with_error_body(self) -> None:
        self.login_as(UserRole.USER, self.make_department('Marketing'))

        response = self.client.get('/admin/settings')

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {'error': 'Forbidden'})

    def test_not_found_is_404(self) -> None:
        self.login_as(UserRole.STORAGE_MASTER, self.make_department('Warehouse'))

        response = self.client.post('/item-requests/999/approve', json={'location': 'Storage 1'})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'error': 'Item request not found'})

    def test_validation_error_is_400(self) -> None:
        self.login_as(UserRole.STORAGE_MASTER, self.make_department('Warehouse'))

        response = self.client.post('/items/clearance', json={'item_id': 'abc', 'quantity': 1})

        self.assertEqual(response.status_code, 400)
        self.assertTrue(response.json()['error'].startswith('item_id:'))

    def test_unknown_route_uses_error_body(self) -> None:
        response = self.client.get('/nowhere')

        self.assertEqual(response.status_code, 404)
        self.assertIn('error', response.json())

    def test_unexpected_error_is_500(self) -> None:
        self.login_as(UserRole.SUPERADMIN)
        client = TestClient(app, raise_server_exceptions=False)

        with patch('storage_portal.routers.admin.get_system_settings', side_effect=RuntimeError('boom')):
            with self.assertLogs('storage_portal.main', level='ERROR'):
                response = client.get('/admin/settings')

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {'error': 'Internal server error'})


class WorkflowApiTests(ApiTestCase):
    def test_intake_then_borrow_through_the_api(self) -> None:
        marketing = self.make_department('Marketing')
        requester = self.make_user(UserRole.USER, marketing)
        manager = self.make_user(UserRole.MANAGER, marketing)
        storage = self.make_user(UserRole.STORAGE_MASTER, marketing)
        self.db.commit()

        self.current = self.actor(requester)
        created = self.client.post('/item-requests', json={'product_code': 'SKU-API', 'total_stock': 3})
        self.assertEqual(created.status_code, 201)
        item_id = created.json()['item_id']

        self.current = self.actor(storage)
        approved = self.client.post(f'/item-requests/{created.json()["id"]}/approve', json={'location': 'Storage 1'})
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()['status'], 'approved')

        self.current = self.actor(requester)
        borrow = self.client.post(
            '/borrow-requests',
            json={
                'items': [{'item_id': item_id, 'quantity': 2}],
                'start_date': days_from_now(1).isoformat(),
                'end_date': days_from_now(2).isoformat(),
                'reason': 'Shoot',
            },
        )
        self.assertEqual(borrow.status_code, 201)
        self.assertEqual(borrow.json()['status'], 'pending_manager')
        borrow_id = borrow.json()['id']

        early = self.client.post(f'/borrow-requests/{borrow_id}/approve', json={'stage': 'manager'})
        self.assertEqual(early.status_code, 403)

        self.current = self.actor(manager)
        self.assertEqual(
            self.client.post(f'/borrow-requests/{borrow_id}/approve', json={'stage': 'manager'}).status_code, 200
        )
        self.current = self.actor(storage)
        active = self.client.post(f'/borrow-requests/{borrow_id}/approve', json={'stage': 'storage'})
        self.assertEqual(active.json()['status'], 'active')

        self.db.expire_all()
        actions = set(self.db.execute(select(AuditLog.action)).scalars())
        self.assertTrue({'ITEM_REQUEST_CREATED', 'ITEM_REQUEST_APPROVED', 'BORROW_REQUEST_APPROVED'} <= actions)

    def test_precondition_failure_is_400(self) -> None:
        self.login_as(UserRole.STORAGE_MASTER, self.make_department('Warehouse'))
        item = self.make_item('SKU-Q', in_storage=1)
        self.db.commit()

        response = self.client.post('/items/revert-from-clearance', json={'item_id': item.id, 'quantity': 2})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Insufficient clearance quantity'})

    def test_failed_storage_approval_rolls_back_every_line(self) -> None:
        warehouse = self.make_department('Warehouse')
        manager = self.make_user(UserRole.MANAGER, warehouse)
        storage = self.make_user(UserRole.STORAGE_MASTER, warehouse)
        jacket = self.make_item('SKU-R1', in_storage=5)
        boots = self.make_item('SKU-R2', in_storage=4)
        borrow_request = create_borrow_request(
            self.db,
            actor=self.actor(manager),
            lines=[{'item_id': jacket.id, 'quantity': 2}, {'item_id': boots.id, 'quantity': 3}],
            start_date=days_from_now(1),
            end_date=days_from_now(2),
            reason='Launch',
        )
        self.db.execute(update(ItemStock).where(ItemStock.item_id == boots.id).values(in_storage=1))
        movements = self.db.execute(select(func.count()).select_from(StockMovement)).scalar_one()
        self.db.commit()

        self.current = self.actor(storage)
        response = self.client.post(f'/borrow-requests/{borrow_request.id}/approve', json={'stage': 'storage'})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {'error': 'Insufficient storage quantity'})
        jacket_stock = self.stock(jacket.id)
        self.assertEqual((jacket_stock.in_storage, jacket_stock.on_borrow), (5, 0))
        self.assertEqual(self.db.get(BorrowRequest, borrow_request.id).status, BorrowRequestStatus.PENDING_STORAGE)
        lines = get_lines(self.db, borrow_request.id)
        self.assertEqual({line.status for line in lines}, {BorrowRequestItemStatus.PENDING_STORAGE})
        self.assertEqual(self.db.execute(select(func.count()).select_from(StockMovement)).scalar_one(), movements)
        actions = set(self.db.execute(select(AuditLog.action)).scalars())
        self.assertNotIn('BORROW_REQUEST_APPROVED', actions)

    def test_bulk_approve_then_read_movements(self) -> None:
        warehouse = self.make_department('Warehouse')
        requester = self.make_user(UserRole.USER, warehouse)
        storage = self.make_user(UserRole.STORAGE_MASTER, warehouse)
        self.db.commit()

        self.current = self.actor(requester)
        ids = [
            self.client.post('/item-requests', json={'product_code': code, 'total_stock': 2}).json()['id']
            for code in ('SKU-M1', 'SKU-M2')
        ]

        self.current = self.actor(storage)
        response = self.client.post(
            '/item-requests/bulk-approve', json={'request_ids': [*ids, 404], 'location': 'Storage 2'}
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['approved_count'], 2)
        self.assertEqual(body['failed'], [{'id': 404, 'error': 'Item request not found'}])

        movements = self.client.get('/item-movements', params={'movement_type': 'intake_approved'})
        self.assertEqual(movements.status_code, 200)
        self.assertEqual([row['quantity'] for row in movements.json()], [2, 2])
        self.assertEqual({row['to_state'] for row in movements.json()}, {'storage'})

        self.db.expire_all()
        approvals = self.db.execute(
            select(AuditLog).where(AuditLog.action == 'ITEM_REQUEST_APPROVED')
        ).scalars().all()
        self.assertEqual(len(approvals), 2)

        self.current = self.actor(requester)
        self.assertEqual(self.client.get('/item-movements').status_code, 403)

    def test_settings_round_trip(self) -> None:
        self.login_as(UserRole.SUPERADMIN)

        response = self.client.put('/admin/settings', json={'max_borrow_days': 21})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get('/admin/settings').json()['max_borrow_days'], 21)
        self.assertEqual(self.client.put('/admin/settings', json={'max_borrow_days': -1}).status_code, 400)

    def test_validate_sku(self) -> None:
        self.login_as(UserRole.USER, self.make_department('Marketing'))

        known = self.client.post('/catalog/validate-sku', json={'sku': 'SKU-1'}).json()
        unknown = self.client.post('/catalog/validate-sku', json={'sku': 'UNKNOWN-1'}).json()

        self.assertTrue(known['exists'])
        self.assertFalse(unknown['exists'])
        self.assertEqual(self.client.post('/catalog/validate-sku', json={}).status_code, 400)


class SessionApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        del app.dependency_overrides[get_current_principal]
        app.state.session_factory = self.session_factory
        department = create_department(self.db, name='Marketing')
        create_user(
            self.db,
            name='Ana',
            email='ana@example.com',
            password='changeme123',
            role=UserRole.USER,
            department_id=department.id,
        )
        self.db.commit()

    def tearDown(self) -> None:
        del app.state.session_factory
        super().tearDown()

    def test_login_me_logout(self) -> None:
        self.assertEqual(self.client.get('/auth/me').status_code, 401)

        response = self.client.post('/auth/login', json={'email': 'ANA@example.com', 'password': 'changeme123'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['role'], 'user')

        me = self.client.get('/auth/me')
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()['name'], 'Ana')

        self.assertEqual(self.client.post('/auth/logout').status_code, 200)
        self.assertEqual(self.client.get('/auth/me').status_code, 401)

    def test_bad_password_is_logged(self) -> None:
        response = self.client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'wrong'})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {'error': 'Invalid email or password'})
        self.db.expire_all()
        event = self.db.execute(select(AuthEvent)).scalar_one()
        self.assertEqual((event.success, event.failure_reason), (False, 'BAD_PASSWORD'))


if __name__ == '__main__':
    unittest.main()
