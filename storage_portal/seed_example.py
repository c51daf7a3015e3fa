from sqlalchemy import select

from storage_portal.db import SessionLocal, engine
from storage_portal.models import Base, Department, Item, ItemSize, ItemStatus, User, UserRole
from storage_portal.services.ledger_service import StockState, get_stock, move_stock, open_stock
from storage_portal.services.user_service import create_department, create_user

DEMO_PASSWORD = 'changeme123'

DEMO_USERS = [
    ('Super Admin', 'superadmin@example.com', UserRole.SUPERADMIN, None),
    ('Admin', 'admin@example.com', UserRole.ADMIN, None),
    ('Marketing Manager', 'manager@example.com', UserRole.MANAGER, 'Marketing'),
    ('Marketing User', 'user@example.com', UserRole.USER, 'Marketing'),
    ('Storage Master', 'storage@example.com', UserRole.STORAGE_MASTER, 'Warehouse'),
]

DEMO_ITEMS = [
    ('SKU-1001', 'Demo jacket', 8),
    ('SKU-1002', 'Demo sneakers', 5),
]


def seed(session_factory=SessionLocal) -> None:
    with session_factory() as db:
        departments: dict[str, Department] = {}
        for name in sorted({dept for *_, dept in DEMO_USERS if dept}):
            department = db.execute(select(Department).where(Department.name == name)).scalar_one_or_none()
            departments[name] = department or create_department(db, name=name)

        for name, email, role, dept_name in DEMO_USERS:
            if db.execute(select(User).where(User.email == email)).scalar_one_or_none():
                continue
            create_user(
                db,
                name=name,
                email=email,
                password=DEMO_PASSWORD,
                role=role,
                department_id=departments[dept_name].id if dept_name else None,
            )

        storage_master = db.execute(select(User).where(User.email == 'storage@example.com')).scalar_one()
        for product_code, description, quantity in DEMO_ITEMS:
            item = db.execute(select(Item).where(Item.product_code == product_code)).scalar_one_or_none()
            if not item:
                item = Item(
                    product_code=product_code,
                    description=description,
                    status=ItemStatus.AVAILABLE,
                    location='Storage 1',
                    total_stock=quantity,
                    created_by=storage_master.id,
                    approved_by=storage_master.id,
                )
                db.add(item)
                db.flush()
            if get_stock(db, item_id=item.id) is None:
                open_stock(db, item_id=item.id, quantity=quantity, performed_by=storage_master.id)
                move_stock(
                    db,
                    item_id=item.id,
                    quantity=quantity,
                    from_state=StockState.PENDING,
                    to_state=StockState.STORAGE,
                    performed_by=storage_master.id,
                    movement_type='seed',
                )
            size = db.execute(select(ItemSize).where(ItemSize.item_id == item.id)).scalars().first()
            if not size:
                db.add(ItemSize(item_id=item.id, size='M', quantity=quantity, available=quantity))

        db.commit()


if __name__ == '__main__':
    Base.metadata.create_all(bind=engine)
    seed()
