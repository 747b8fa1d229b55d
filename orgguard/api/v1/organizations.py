"""
Organization API endpoints.

GET    /api/v1/organizations/{organization_id}  - Organization details (members of it only)
PATCH  /api/v1/organizations/{organization_id}  - Rename (admin or super_admin)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.authorization import check_role, require_organization_access
from orgguard.core.database import get_session
from orgguard.core.decisions import Authorized, Denied
from orgguard.core.errors import AccessDenied
from orgguard.core.rate_limit import RateLimitResult, api_rate_limit
from orgguard.schemas.common import ADMIN_ROLES
from orgguard.schemas.organizations import OrganizationResponse, OrganizationUpdateRequest
from orgguard.services import organizations as org_service

router = APIRouter()


def _to_response(org) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        slug=org.slug,
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization_id: str,
    auth: Authorized = Depends(require_organization_access),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """Get organization details. Only the caller's active organization is visible."""
    org = await org_service.get_org(auth.organization_id, db)
    return _to_response(org)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
async def update_organization(
    organization_id: str,
    body: OrganizationUpdateRequest,
    auth: Authorized = Depends(require_organization_access),
    _limit: RateLimitResult = Depends(api_rate_limit),
    db: AsyncSession = Depends(get_session),
):
    """Update the organization (admin or super_admin of that organization)."""
    decision = check_role(auth, ADMIN_ROLES)
    if isinstance(decision, Denied):
        raise AccessDenied(decision)
    org = await org_service.get_org(auth.organization_id, db)
    org = await org_service.update_org(org, body, db)
    return _to_response(org)
