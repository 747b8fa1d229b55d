"""Organization user management schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from .common import Role


class UserRoleUpdateRequest(BaseModel):
    role: Role


class OrgUserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Role
    joined_at: datetime


class OrgUserListResponse(BaseModel):
    data: List[OrgUserResponse]
