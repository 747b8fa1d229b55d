"""Session (active organization) schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .common import Role


class SessionResponse(BaseModel):
    """The caller's resolved organization context."""
    user_id: str
    email: Optional[str] = None
    organization_id: Optional[str] = None
    role: Optional[Role] = None


class SessionSwitchRequest(BaseModel):
    """Change the caller's active organization."""
    organization_id: str = Field(min_length=1, max_length=64)


class MembershipResponse(BaseModel):
    organization_id: str
    name: str
    slug: str
    role: Role
    active: bool = False


class MembershipListResponse(BaseModel):
    data: List[MembershipResponse]
