"""Authorization policy.

Every transition the services expose is listed here with the roles that may
invoke it. Some transitions add a scope on top of the role check:

* department scope: a manager may only act on requests raised by users of
  their own department;
* peer scope: a manager may not approve another manager's legacy request;
* ownership scope: the requester may act on their own request whatever
  their role.

Superadmin is listed explicitly wherever it is granted; there is no bypass.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from storage_portal.auth import Principal, Role
from storage_portal.errors import Forbidden


class Transition(str, Enum):
    CREATE_INTAKE = 'create_intake'
    VIEW_INTAKE = 'view_intake'
    APPROVE_INTAKE = 'approve_intake'
    REJECT_INTAKE = 'reject_intake'
    CREATE_BORROW = 'create_borrow'
    MANAGER_APPROVE_BORROW = 'manager_approve_borrow'
    MANAGER_REJECT_BORROW = 'manager_reject_borrow'
    STORAGE_APPROVE_BORROW = 'storage_approve_borrow'
    STORAGE_REJECT_BORROW = 'storage_reject_borrow'
    COMPLETE_BORROW = 'complete_borrow'
    CREATE_LEGACY_REQUEST = 'create_legacy_request'
    APPROVE_LEGACY_REQUEST = 'approve_legacy_request'
    REJECT_LEGACY_REQUEST = 'reject_legacy_request'
    REQUEST_RETURN = 'request_return'
    APPROVE_RETURN = 'approve_return'
    RECEIVE_ITEM = 'receive_item'
    CREATE_CLEARANCE = 'create_clearance'
    VIEW_CLEARANCE = 'view_clearance'
    REVERT_CLEARANCE = 'revert_clearance'
    VIEW_SEEDING = 'view_seeding'
    REVERT_SEEDING = 'revert_seeding'
    VIEW_STOCK_MOVEMENTS = 'view_stock_movements'
    ARCHIVE_ITEM = 'archive_item'
    VIEW_SETTINGS = 'view_settings'
    UPDATE_SETTINGS = 'update_settings'


@dataclass(frozen=True)
class Subject:
    """The requester behind the entity being acted on."""

    owner_id: int | None = None
    owner_role: Role | None = None
    owner_department_id: int | None = None


_EVERYONE = frozenset(Role)
_INTAKE_APPROVERS = frozenset({Role.SUPERADMIN, Role.STORAGE_MASTER, Role.STORAGE_MASTER_MANAGER})
_STORAGE_GATE = frozenset({Role.SUPERADMIN, Role.STORAGE_MASTER, Role.STORAGE_MASTER_MANAGER})
_ADMINS = frozenset({Role.SUPERADMIN, Role.ADMIN})

ROLE_RULES: dict[Transition, frozenset[Role]] = {
    Transition.CREATE_INTAKE: _EVERYONE,
    Transition.VIEW_INTAKE: _INTAKE_APPROVERS | {Role.STORAGE_MANAGER, Role.ADMIN},
    Transition.APPROVE_INTAKE: _INTAKE_APPROVERS,
    Transition.REJECT_INTAKE: _INTAKE_APPROVERS,
    Transition.CREATE_BORROW: _EVERYONE,
    Transition.MANAGER_APPROVE_BORROW: frozenset({Role.SUPERADMIN, Role.MANAGER}),
    Transition.MANAGER_REJECT_BORROW: frozenset({Role.SUPERADMIN, Role.MANAGER}),
    Transition.STORAGE_APPROVE_BORROW: _STORAGE_GATE,
    Transition.STORAGE_REJECT_BORROW: _STORAGE_GATE,
    Transition.COMPLETE_BORROW: _STORAGE_GATE,
    Transition.CREATE_LEGACY_REQUEST: _EVERYONE,
    Transition.APPROVE_LEGACY_REQUEST: frozenset({Role.SUPERADMIN, Role.ADMIN, Role.MANAGER}),
    Transition.REJECT_LEGACY_REQUEST: frozenset({Role.SUPERADMIN, Role.ADMIN, Role.MANAGER}),
    Transition.REQUEST_RETURN: _ADMINS,
    Transition.APPROVE_RETURN: _ADMINS,
    Transition.RECEIVE_ITEM: _ADMINS,
    Transition.CREATE_CLEARANCE: _STORAGE_GATE,
    Transition.VIEW_CLEARANCE: _STORAGE_GATE | {Role.STORAGE_MANAGER, Role.ADMIN},
    Transition.REVERT_CLEARANCE: frozenset({Role.SUPERADMIN, Role.STORAGE_MASTER, Role.STORAGE_MANAGER}),
    Transition.VIEW_SEEDING: _STORAGE_GATE,
    Transition.REVERT_SEEDING: frozenset({Role.SUPERADMIN}),
    Transition.VIEW_STOCK_MOVEMENTS: frozenset({Role.SUPERADMIN, Role.STORAGE_MASTER, Role.STORAGE_MANAGER}),
    Transition.ARCHIVE_ITEM: _ADMINS,
    Transition.VIEW_SETTINGS: _ADMINS,
    Transition.UPDATE_SETTINGS: frozenset({Role.SUPERADMIN}),
}

DEPARTMENT_SCOPED = frozenset(
    {
        Transition.MANAGER_APPROVE_BORROW,
        Transition.MANAGER_REJECT_BORROW,
        Transition.APPROVE_LEGACY_REQUEST,
        Transition.REJECT_LEGACY_REQUEST,
    }
)
NO_MANAGER_PEERS = frozenset({Transition.APPROVE_LEGACY_REQUEST})
OWNER_ALLOWED = frozenset({Transition.REQUEST_RETURN})


def denial_reason(actor: Principal, transition: Transition, subject: Subject | None = None) -> str | None:
    if transition in OWNER_ALLOWED and subject is not None and subject.owner_id == actor.id:
        return None

    if actor.role not in ROLE_RULES[transition]:
        if transition in OWNER_ALLOWED:
            return 'You can only act on your own requests'
        return 'Forbidden'

    if actor.role == Role.MANAGER and transition in NO_MANAGER_PEERS:
        if subject is None or subject.owner_role == Role.MANAGER:
            return 'Managers cannot approve requests from other managers'

    if actor.role == Role.MANAGER and transition in DEPARTMENT_SCOPED:
        if actor.department_id is None:
            return 'Manager department not found'
        if subject is None or subject.owner_department_id != actor.department_id:
            return 'You can only act on requests from users in your department'

    return None


def can_perform(actor: Principal, transition: Transition, subject: Subject | None = None) -> bool:
    return denial_reason(actor, transition, subject) is None


def authorize(actor: Principal, transition: Transition, subject: Subject | None = None) -> None:
    reason = denial_reason(actor, transition, subject)
    if reason is not None:
        raise Forbidden(reason)
