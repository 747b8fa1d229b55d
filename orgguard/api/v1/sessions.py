"""
Session endpoints.

GET  /api/v1/session                - Caller's active organization and role
PUT  /api/v1/session                - Switch active organization
GET  /api/v1/session/organizations  - Organizations the caller belongs to
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.auth import Identity
from orgguard.core.authorization import require_identity, require_member
from orgguard.core.database import get_session
from orgguard.core.decisions import Authorized, Denied, DenialKind
from orgguard.core.errors import AccessDenied
from orgguard.core.rate_limit import RateLimit, RateLimitResult, api_rate_limit
from orgguard.schemas.sessions import (
    MembershipListResponse,
    MembershipResponse,
    SessionResponse,
    SessionSwitchRequest,
)
from orgguard.services import sessions as session_service

router = APIRouter()


@router.get("", response_model=SessionResponse)
async def get_current_session(
    auth: Authorized = Depends(require_member),
    _limit: RateLimitResult = Depends(api_rate_limit),
):
    """Return the caller's resolved organization context."""
    return SessionResponse(
        user_id=auth.user_id,
        email=auth.email,
        organization_id=auth.organization_id,
        role=auth.role,
    )


@router.put(
    "",
    response_model=SessionResponse,
    dependencies=[Depends(RateLimit("auth_attempts"))],
)
async def switch_organization(
    body: SessionSwitchRequest,
    identity: Identity = Depends(require_identity),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """Make ``organization_id`` the caller's active organization."""
    role = await session_service.set_active_organization(
        identity.user_id, body.organization_id, db
    )
    if role is None:
        raise AccessDenied(Denied.of(DenialKind.CROSS_ORGANIZATION_ACCESS))
    return SessionResponse(
        user_id=identity.user_id,
        email=identity.email,
        organization_id=body.organization_id,
        role=role,
    )


@router.get("/organizations", response_model=MembershipListResponse)
async def list_my_organizations(
    identity: Identity = Depends(require_identity),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """List the caller's memberships, marking the active one."""
    ctx = await session_service.resolve_session_and_role(identity.user_id, db)
    active = ctx.session.organization_id if ctx.session else None
    items = await session_service.list_user_organizations(identity.user_id, db)
    return MembershipListResponse(
        data=[
            MembershipResponse(**item, active=item["organization_id"] == active)
            for item in items
        ]
    )
