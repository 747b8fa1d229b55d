"""
Organization user endpoints.

GET     /api/v1/users                 - Members of the caller's organization
PATCH   /api/v1/users/{user_id}/role  - Change a member's role (super_admin only)
DELETE  /api/v1/users/{user_id}       - Remove a member (super_admin only)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.authorization import require_member, require_super_admin
from orgguard.core.database import get_session
from orgguard.core.decisions import Authorized
from orgguard.core.rate_limit import RateLimitResult, api_rate_limit
from orgguard.schemas.users import OrgUserListResponse, OrgUserResponse, UserRoleUpdateRequest
from orgguard.services import users as user_service

router = APIRouter()


@router.get("", response_model=OrgUserListResponse)
async def list_users(
    auth: Authorized = Depends(require_member),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """List all members of the caller's organization."""
    items = await user_service.list_org_users(auth.organization_id, db)
    return OrgUserListResponse(data=[OrgUserResponse(**item) for item in items])


@router.patch("/{user_id}/role")
async def update_user_role(
    user_id: str,
    body: UserRoleUpdateRequest,
    auth: Authorized = Depends(require_super_admin),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """Change a member's role. The last super_admin cannot be demoted."""
    await user_service.update_user_role(auth, user_id, body.role, db)
    return {"success": True, "message": "User role updated successfully"}


@router.delete("/{user_id}")
async def remove_user(
    user_id: str,
    auth: Authorized = Depends(require_super_admin),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """Remove a member. Self-removal and removing the last super_admin are refused."""
    await user_service.remove_user(auth, user_id, db)
    return {"success": True}
