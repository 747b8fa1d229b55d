"""
Organization service - reading and renaming the caller's organization.
"""

from __future__ import annotations

import structlog
from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from orgguard.core.errors import StoreUnavailable
from orgguard.models.base import utcnow
from orgguard.models.organization import Organization
from orgguard.schemas.organizations import OrganizationUpdateRequest

log = structlog.get_logger()


async def get_org(organization_id: str, db: AsyncSession) -> Organization:
    """Get an organization by id; raises 404 if it is gone."""
    try:
        result = await db.execute(
            select(Organization).where(Organization.id == organization_id)
        )
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Organization store unavailable") from exc
    org = result.scalar_one_or_none()
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


async def update_org(
    org: Organization,
    req: OrganizationUpdateRequest,
    db: AsyncSession,
) -> Organization:
    if req.name is not None:
        org.name = req.name

    org.updated_at = utcnow()
    db.add(org)
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Failed to update organization") from exc

    log.info("org.updated", organization_id=org.id)
    return org
