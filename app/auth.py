from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    SHOP = "shop"
    MANAGER = "manager"
    ADMIN = "admin"


@dataclass
class Principal:
    id: int
    username: str
    role: Role
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


staff_access = require_role(Role.SHOP, Role.MANAGER, Role.ADMIN)
management_access = require_role(Role.MANAGER, Role.ADMIN)
admin_access = require_role(Role.ADMIN)
