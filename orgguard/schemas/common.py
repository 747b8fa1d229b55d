from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


ADMIN_ROLES: tuple[Role, ...] = (Role.SUPER_ADMIN, Role.ADMIN)
ALL_ROLES: tuple[Role, ...] = tuple(Role)


class ErrorBody(BaseModel):
    code: str
    message: str
    status: int


class ErrorResponse(BaseModel):
    error: ErrorBody
    details: Optional[object] = None
