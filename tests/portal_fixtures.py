from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storage_portal.auth import Principal
from storage_portal.models import Base, Department, Item, ItemSize, ItemStatus, ItemStock, User, UserRole
from storage_portal.security.sessions import principal_from_user


def make_engine():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)

    @event.listens_for(engine, 'connect')
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        dbapi_connection.execute('PRAGMA foreign_keys=ON')

    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def days_from_now(days: int) -> datetime:
    return datetime.now(tz=timezone.utc) + timedelta(days=days)


class PortalTestCase(unittest.TestCase):
    """In-memory database plus builders for the rows most tests need."""

    def setUp(self) -> None:
        self.engine = make_engine()
        self.session_factory = make_session_factory(self.engine)
        self.db = self.session_factory()
        self._emails = 0

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def make_department(self, name: str) -> Department:
        department = Department(name=name)
        self.db.add(department)
        self.db.flush()
        return department

    def make_user(self, role: UserRole, department: Department | None = None, name: str | None = None) -> User:
        self._emails += 1
        user = User(
            name=name or f'{role.value} {self._emails}',
            email=f'user{self._emails}@example.com',
            password_hash='not-a-real-hash',
            role=role,
            department_id=department.id if department else None,
            active=True,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def actor(self, user: User) -> Principal:
        return principal_from_user(user)

    def make_item(
        self,
        product_code: str,
        *,
        in_storage: int | None = 10,
        status: ItemStatus = ItemStatus.AVAILABLE,
        inventory: int | None = None,
        **counters,
    ) -> Item:
        item = Item(product_code=product_code, status=status, inventory=inventory, total_stock=in_storage or 0)
        self.db.add(item)
        self.db.flush()
        if in_storage is not None:
            self.db.add(ItemStock(item_id=item.id, in_storage=in_storage, **counters))
            self.db.flush()
        return item

    def make_size(self, item: Item, *, available: int, size: str = 'M') -> ItemSize:
        item_size = ItemSize(item_id=item.id, size=size, quantity=available, available=available)
        self.db.add(item_size)
        self.db.flush()
        return item_size

    def stock(self, item_id: int) -> ItemStock:
        self.db.expire_all()
        return self.db.query(ItemStock).filter(ItemStock.item_id == item_id).one()
