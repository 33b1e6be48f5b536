from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


@dataclass(frozen=True)
class Principal:
    id: str
    display_name: str
    email: str | None
    role: Role
    active: bool = True

    @property
    def attribution(self) -> str:
        return self.email or self.display_name or "Unknown"


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def is_elevated_role(role: Role) -> bool:
    return role in {Role.ADMIN, Role.EDITOR}


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep
