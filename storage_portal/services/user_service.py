from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from storage_portal.errors import NotFound, PreconditionFailed
from storage_portal.models import Department, User, UserRole
from storage_portal.policy import Subject
from storage_portal.security.passwords import hash_password

# Every other role belongs to a department.
DEPARTMENTLESS_ROLES = frozenset({UserRole.SUPERADMIN, UserRole.ADMIN})


def create_department(db: Session, *, name: str, description: str | None = None) -> Department:
    clean_name = (name or '').strip()
    if not clean_name:
        raise PreconditionFailed('Department name is required')
    existing = db.execute(select(Department).where(Department.name == clean_name)).scalar_one_or_none()
    if existing:
        raise PreconditionFailed('Department already exists')

    department = Department(name=clean_name, description=description.strip() if description else None)
    db.add(department)
    db.flush()
    return department


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: UserRole,
    department_id: int | None = None,
    active: bool = True,
) -> User:
    clean_name = (name or '').strip()
    clean_email = (email or '').strip().lower()
    if not clean_name:
        raise PreconditionFailed('Name is required')
    if not clean_email:
        raise PreconditionFailed('Email is required')
    if not password or not password.strip():
        raise PreconditionFailed('Password is required')

    role = UserRole(role)
    if role not in DEPARTMENTLESS_ROLES:
        if department_id is None:
            raise PreconditionFailed('Department is required for this role')
        if db.get(Department, department_id) is None:
            raise NotFound('Department not found')

    existing = db.execute(select(User).where(User.email == clean_email)).scalar_one_or_none()
    if existing:
        raise PreconditionFailed('Email is already in use by another account')

    user = User(
        name=clean_name,
        email=clean_email,
        password_hash=hash_password(password),
        role=role,
        department_id=department_id,
        active=active,
    )
    db.add(user)
    db.flush()
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    return user


def find_user_by_email(db: Session, email: str) -> User | None:
    clean_email = (email or '').strip().lower()
    if not clean_email:
        return None
    return db.execute(select(User).where(User.email == clean_email)).scalar_one_or_none()


def subject_for_user(db: Session, user_id: int) -> Subject:
    user = get_user(db, user_id)
    return Subject(owner_id=user.id, owner_role=UserRole(user.role), owner_department_id=user.department_id)
