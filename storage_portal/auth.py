from dataclasses import dataclass

from fastapi import Request

from storage_portal.errors import Forbidden, Unauthorized
from storage_portal.models import UserRole

Role = UserRole


@dataclass
class Principal:
    id: int
    name: str
    role: Role
    department_id: int | None
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise Unauthorized("Unauthorized")
    if not principal.active:
        raise Forbidden("Account is inactive")
    return principal
