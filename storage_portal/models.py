from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class UserRole(str, Enum):
    SUPERADMIN = 'superadmin'
    ADMIN = 'admin'
    MANAGER = 'manager'
    STORAGE_MASTER = 'storage-master'
    STORAGE_MASTER_MANAGER = 'storage-master-manager'
    STORAGE_MANAGER = 'storage-manager'
    USER = 'user'


class ItemStatus(str, Enum):
    PENDING = 'pending'
    AVAILABLE = 'available'
    REJECTED = 'rejected'
    ACTIVE = 'active'
    ARCHIVED = 'archived'


class ItemRequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class BorrowRequestStatus(str, Enum):
    PENDING = 'pending'
    PENDING_MANAGER = 'pending_manager'
    PENDING_STORAGE = 'pending_storage'
    APPROVED = 'approved'
    ACTIVE = 'active'
    REJECTED = 'rejected'
    PENDING_RETURN = 'pending_return'
    RETURNED = 'returned'
    COMPLETE = 'complete'
    SEEDED = 'seeded'


class BorrowRequestItemStatus(str, Enum):
    PENDING_MANAGER = 'pending_manager'
    PENDING_STORAGE = 'pending_storage'
    ACTIVE = 'active'
    REJECTED = 'rejected'
    COMPLETE = 'complete'
    SEEDED = 'seeded'


class ReturnRequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'


class ClearanceStatus(str, Enum):
    COMPLETED = 'completed'
    REVERTED = 'reverted'


class Department(Base):
    __tablename__ = 'departments'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole, 'user_role'), nullable=False, default=UserRole.USER, server_default='user'
    )
    department_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('departments.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Item(Base):
    __tablename__ = 'items'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    product_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    brand_code: Mapped[str | None] = mapped_column(Text)
    product_division: Mapped[str | None] = mapped_column(Text)
    product_category: Mapped[str | None] = mapped_column(Text)
    unit_of_measure: Mapped[str | None] = mapped_column(Text)
    condition: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ItemStatus] = mapped_column(
        _enum(ItemStatus, 'item_status'), nullable=False, default=ItemStatus.PENDING, server_default='pending'
    )
    # Legacy scalar count; items tracked through item_stock leave it NULL.
    inventory: Mapped[int | None] = mapped_column(Integer)
    total_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    archived_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    archive_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ItemStock(Base):
    __tablename__ = 'item_stock'
    __table_args__ = (
        UniqueConstraint('item_id', name='item_stock_item_id_key'),
        CheckConstraint('pending >= 0', name='item_stock_pending_non_negative_ck'),
        CheckConstraint('in_storage >= 0', name='item_stock_in_storage_non_negative_ck'),
        CheckConstraint('reserved >= 0', name='item_stock_reserved_non_negative_ck'),
        CheckConstraint('on_borrow >= 0', name='item_stock_on_borrow_non_negative_ck'),
        CheckConstraint('in_clearance >= 0', name='item_stock_in_clearance_non_negative_ck'),
        CheckConstraint('seeded >= 0', name='item_stock_seeded_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id'), nullable=False)
    pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    in_storage: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    on_borrow: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    in_clearance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    seeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockMovement(Base):
    __tablename__ = 'stock_movements'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='stock_movements_positive_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id'), nullable=False)
    stock_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('item_stock.id'))
    movement_type: Mapped[str] = mapped_column(String(32), nullable=False)
    from_state: Mapped[str | None] = mapped_column(String(32))
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    performed_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    reference_id: Mapped[str | None] = mapped_column(String(64))
    reference_type: Mapped[str | None] = mapped_column(String(32))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ItemImage(Base):
    __tablename__ = 'item_images'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id'), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str | None] = mapped_column(Text)
    mime_type: Mapped[str | None] = mapped_column(String(128))
    size: Mapped[int | None] = mapped_column(Integer)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ItemRequest(Base):
    __tablename__ = 'item_requests'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    # Cleared when a rejected intake cascades the item away.
    item_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('items.id', ondelete='SET NULL'))
    product_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[ItemRequestStatus] = mapped_column(
        _enum(ItemRequestStatus, 'item_request_status'),
        nullable=False,
        default=ItemRequestStatus.PENDING,
        server_default='pending',
    )
    requested_by: Mapped[int] = mapped_column(BigIntId, ForeignKey('users.id'), nullable=False)
    approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    location: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ItemSize(Base):
    __tablename__ = 'item_sizes'
    __table_args__ = (
        CheckConstraint('available >= 0', name='item_sizes_available_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id', ondelete='CASCADE'), nullable=False)
    size: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    available: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BorrowRequest(Base):
    __tablename__ = 'borrow_requests'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('users.id'), nullable=False)
    # Legacy single-item header; dual-approval requests carry borrow_request_items instead.
    item_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('items.id'))
    item_size_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('item_sizes.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    status: Mapped[BorrowRequestStatus] = mapped_column(
        _enum(BorrowRequestStatus, 'borrow_request_status'),
        nullable=False,
        default=BorrowRequestStatus.PENDING_MANAGER,
        server_default='pending_manager',
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    stock_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')

    manager_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    manager_approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    manager_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manager_rejection_reason: Mapped[str | None] = mapped_column(Text)
    storage_approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    storage_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    storage_rejection_reason: Mapped[str | None] = mapped_column(Text)
    admin_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    admin_approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    admin_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    return_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    return_approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    return_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    receive_notes: Mapped[str | None] = mapped_column(Text)
    completed_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class BorrowRequestItem(Base):
    __tablename__ = 'borrow_request_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='borrow_request_items_positive_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    borrow_request_id: Mapped[int] = mapped_column(
        BigIntId, ForeignKey('borrow_requests.id', ondelete='CASCADE'), nullable=False
    )
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BorrowRequestItemStatus] = mapped_column(
        _enum(BorrowRequestItemStatus, 'borrow_request_item_status'), nullable=False
    )
    return_condition: Mapped[str | None] = mapped_column(String(16))
    return_notes: Mapped[str | None] = mapped_column(Text)
    completed_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    seeded_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    seeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReturnRequest(Base):
    __tablename__ = 'return_requests'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    borrow_request_id: Mapped[int] = mapped_column(
        BigIntId, ForeignKey('borrow_requests.id', ondelete='CASCADE'), nullable=False, unique=True
    )
    item_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('items.id'))
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('users.id'), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    return_condition: Mapped[str] = mapped_column(String(16), nullable=False)
    return_notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ReturnRequestStatus] = mapped_column(
        _enum(ReturnRequestStatus, 'return_request_status'),
        nullable=False,
        default=ReturnRequestStatus.PENDING,
        server_default='pending',
    )
    approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ItemClearance(Base):
    __tablename__ = 'item_clearances'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('items.id'), nullable=False)
    # Positive clears stock out, negative records a revert.
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ClearanceStatus] = mapped_column(
        _enum(ClearanceStatus, 'clearance_status'),
        nullable=False,
        default=ClearanceStatus.COMPLETED,
        server_default='completed',
    )
    meta: Mapped[dict | None] = mapped_column('metadata', JSON)
    requested_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    approved_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reverted_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    reverted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revert_reason: Mapped[str | None] = mapped_column(Text)


class SystemSetting(Base):
    __tablename__ = 'system_settings'

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[object] = mapped_column(JSON, nullable=False)
    updated_by: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    attempted_email: Mapped[str] = mapped_column(String(320), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_user_id: Mapped[int | None] = mapped_column(BigIntId, ForeignKey('users.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(32))
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey('users.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
