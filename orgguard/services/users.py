"""
Organization user management: listing members, changing roles, removing users.

Every mutation here runs after the gate has authorized the caller. The
last-super_admin rule is checked before anything is written.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import HTTPException
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from orgguard.core.decisions import Authorized, Denied, DenialKind
from orgguard.core.errors import AccessDenied, StoreUnavailable
from orgguard.models.base import utcnow
from orgguard.models.membership import OrganizationUser
from orgguard.models.user import User
from orgguard.models.user_session import UserSession
from orgguard.schemas.common import Role

log = structlog.get_logger()


async def count_super_admins(
    organization_id: str, db: AsyncSession, *, lock: bool = False
) -> int:
    """Count the organization's super_admins.

    With ``lock=True`` the super_admin rows are selected ``FOR UPDATE`` so a
    concurrent demotion or removal in another transaction waits for this one
    and then counts again.
    """
    stmt = select(OrganizationUser.id).where(
        OrganizationUser.organization_id == organization_id,
        OrganizationUser.role == Role.SUPER_ADMIN.value,
    )
    if lock:
        # Row locks cannot be combined with count(); fetch the ids instead.
        stmt = stmt.with_for_update()
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Failed to count super admins") from exc
    return len(result.scalars().all())


async def ensure_not_last_super_admin(
    organization_id: str,
    target_role: Role,
    new_role: Optional[Role],
    db: AsyncSession,
) -> None:
    """Refuse to delete (``new_role=None``) or demote the only super_admin.

    Must run in the same transaction as the mutation it guards: the count
    holds row locks on the super_admins until that transaction ends.

    Raises HTTPException(400) when the operation would leave the organization
    with no super_admin.
    """
    if target_role is not Role.SUPER_ADMIN or new_role is Role.SUPER_ADMIN:
        return
    if await count_super_admins(organization_id, db, lock=True) > 1:
        return

    action = "delete" if new_role is None else "change the role of"
    log.info("user.last_super_admin_protected", organization_id=organization_id, action=action)
    raise HTTPException(
        status_code=400,
        detail=(
            f"Cannot {action} the last super admin. "
            "Please assign another super admin first."
        ),
    )


async def _get_target_membership(
    caller: Authorized, user_id: str, db: AsyncSession
) -> OrganizationUser:
    """Find the target's membership in the caller's organization.

    Unknown users and users who belong only to other organizations get the
    same cross-organization denial, so ids from other tenants cannot be
    enumerated.
    """
    try:
        result = await db.execute(
            select(OrganizationUser).where(
                OrganizationUser.user_id == user_id,
                OrganizationUser.organization_id == caller.organization_id,
            )
        )
        membership = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Membership store unavailable") from exc

    if membership is None:
        raise AccessDenied(Denied.of(DenialKind.CROSS_ORGANIZATION_ACCESS))
    return membership


async def list_org_users(organization_id: str, db: AsyncSession) -> list[dict]:
    """List all users in an organization with their role."""
    try:
        result = await db.execute(
            select(OrganizationUser, User)
            .outerjoin(User, User.id == OrganizationUser.user_id)
            .where(OrganizationUser.organization_id == organization_id)
            .order_by(OrganizationUser.created_at)
        )
        rows = result.all()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Membership store unavailable") from exc

    return [
        {
            "id": membership.user_id,
            "email": user.email if user else None,
            "full_name": user.full_name if user else None,
            "role": membership.role,
            "joined_at": membership.created_at,
        }
        for membership, user in rows
    ]


async def update_user_role(
    caller: Authorized, user_id: str, new_role: Role, db: AsyncSession
) -> OrganizationUser:
    """Change a member's role inside the caller's organization."""
    membership = await _get_target_membership(caller, user_id, db)
    current_role = Role(membership.role)
    if current_role is new_role:
        return membership

    await ensure_not_last_super_admin(caller.organization_id, current_role, new_role, db)

    membership.role = new_role.value
    membership.updated_at = utcnow()
    db.add(membership)
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Failed to update role") from exc

    log.info(
        "user.role_changed",
        user_id=user_id,
        organization_id=caller.organization_id,
        old_role=current_role.value,
        new_role=new_role.value,
        by=caller.user_id,
    )
    return membership


async def remove_user(caller: Authorized, user_id: str, db: AsyncSession) -> None:
    """Remove a user from the caller's organization.

    The membership goes, and so does the user's session if it pointed at this
    organization.
    """
    if user_id == caller.user_id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")

    membership = await _get_target_membership(caller, user_id, db)
    await ensure_not_last_super_admin(caller.organization_id, Role(membership.role), None, db)

    try:
        await db.delete(membership)
        await db.execute(
            delete(UserSession).where(
                UserSession.user_id == user_id,
                UserSession.organization_id == caller.organization_id,
            )
        )
        await db.flush()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Failed to remove user") from exc

    log.info(
        "user.removed",
        user_id=user_id,
        organization_id=caller.organization_id,
        by=caller.user_id,
    )
