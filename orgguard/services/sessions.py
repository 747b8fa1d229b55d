"""
Session & role resolution.

Answers "which organization is this user acting in, and with what role?"
from the ``user_sessions`` and ``organization_users`` tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from orgguard.core.errors import StoreUnavailable
from orgguard.models.base import utcnow
from orgguard.models.membership import OrganizationUser
from orgguard.models.organization import Organization
from orgguard.models.user_session import UserSession
from orgguard.schemas.common import Role

log = structlog.get_logger()


@dataclass(frozen=True)
class SessionInfo:
    organization_id: str


@dataclass(frozen=True)
class ResolvedContext:
    session: Optional[SessionInfo]
    role: Optional[Role]
    organization_id: Optional[str]
    membership_count: int = 0
    session_mismatch: bool = False


async def _load_session_and_memberships(
    user_id: str, db: AsyncSession
) -> tuple[Optional[str], dict[str, str]]:
    """Read the session pointer and every membership in one statement.

    A one-row anchor is left-joined to both tables so a user with a session but
    no memberships (or the reverse) still yields a row.
    """
    anchor = sa.select(sa.literal(user_id, type_=sa.String).label("user_id")).subquery("anchor")
    stmt = (
        sa.select(
            UserSession.organization_id.label("session_org_id"),
            OrganizationUser.organization_id.label("member_org_id"),
            OrganizationUser.role,
        )
        .select_from(anchor)
        .outerjoin(UserSession, UserSession.user_id == anchor.c.user_id)
        .outerjoin(OrganizationUser, OrganizationUser.user_id == anchor.c.user_id)
    )
    rows = (await db.execute(stmt)).all()

    session_org_id = rows[0].session_org_id if rows else None
    memberships = {
        row.member_org_id: row.role for row in rows if row.member_org_id is not None
    }
    return session_org_id, memberships


async def _upsert_session(user_id: str, organization_id: str, db: AsyncSession) -> None:
    """Point the user's session at ``organization_id``; overwrites any previous pointer."""
    dialect = db.bind.dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    now = utcnow()
    stmt = insert(UserSession).values(
        user_id=user_id, organization_id=organization_id, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={"organization_id": organization_id, "updated_at": now},
    )
    await db.execute(stmt)
    await db.flush()


def _parse_role(raw: str, user_id: str, organization_id: str) -> Role:
    try:
        return Role(raw)
    except ValueError:
        # An unknown role string in the table is corrupt data, not "no role".
        log.error("session.unknown_role", user_id=user_id, organization_id=organization_id, role=raw)
        raise StoreUnavailable(f"Unrecognised role value {raw!r}") from None


async def resolve_session_and_role(user_id: str, db: AsyncSession) -> ResolvedContext:
    """Resolve the user's active organization and role in it.

    - No memberships: role and organization are None.
    - One membership, no session: a session is created for that organization.
    - Several memberships, no session: nothing is picked; session stays None.
    - Session pointing at an organization the user has left: flagged as
      ``session_mismatch`` with no role. It is not repaired here.

    Raises StoreUnavailable when the database cannot answer.
    """
    try:
        session_org_id, memberships = await _load_session_and_memberships(user_id, db)

        if not memberships:
            return ResolvedContext(
                session=SessionInfo(session_org_id) if session_org_id else None,
                role=None,
                organization_id=None,
            )

        if session_org_id is None:
            if len(memberships) > 1:
                log.info("session.ambiguous_default", user_id=user_id, memberships=len(memberships))
                return ResolvedContext(
                    session=None,
                    role=None,
                    organization_id=None,
                    membership_count=len(memberships),
                )
            (org_id, raw_role), = memberships.items()
            await _upsert_session(user_id, org_id, db)
            log.info("session.created", user_id=user_id, organization_id=org_id)
            return ResolvedContext(
                session=SessionInfo(org_id),
                role=_parse_role(raw_role, user_id, org_id),
                organization_id=org_id,
                membership_count=1,
            )

        raw_role = memberships.get(session_org_id)
        if raw_role is None:
            log.warning(
                "session.membership_mismatch",
                user_id=user_id,
                session_org_id=session_org_id,
                memberships=len(memberships),
            )
            return ResolvedContext(
                session=SessionInfo(session_org_id),
                role=None,
                organization_id=None,
                membership_count=len(memberships),
                session_mismatch=True,
            )

        return ResolvedContext(
            session=SessionInfo(session_org_id),
            role=_parse_role(raw_role, user_id, session_org_id),
            organization_id=session_org_id,
            membership_count=len(memberships),
        )
    except SQLAlchemyError as exc:
        log.error("session.store_error", user_id=user_id, error=str(exc))
        raise StoreUnavailable("Session store unavailable") from exc


async def set_active_organization(
    user_id: str, organization_id: str, db: AsyncSession
) -> Optional[Role]:
    """Switch the user's active organization.

    Returns the user's role there, or None if they are not a member (the
    session is left untouched in that case).
    """
    try:
        result = await db.execute(
            select(OrganizationUser.role).where(
                OrganizationUser.user_id == user_id,
                OrganizationUser.organization_id == organization_id,
            )
        )
        raw_role = result.scalar_one_or_none()
        if raw_role is None:
            return None
        await _upsert_session(user_id, organization_id, db)
    except SQLAlchemyError as exc:
        log.error("session.store_error", user_id=user_id, error=str(exc))
        raise StoreUnavailable("Session store unavailable") from exc

    log.info("session.switched", user_id=user_id, organization_id=organization_id)
    return _parse_role(raw_role, user_id, organization_id)


async def list_user_organizations(user_id: str, db: AsyncSession) -> list[dict]:
    """List all organizations a user belongs to, with their role."""
    try:
        result = await db.execute(
            select(Organization, OrganizationUser.role)
            .join(OrganizationUser, OrganizationUser.organization_id == Organization.id)
            .where(OrganizationUser.user_id == user_id)
            .order_by(Organization.name)
        )
        rows = result.all()
    except SQLAlchemyError as exc:
        raise StoreUnavailable("Membership store unavailable") from exc

    return [
        {
            "organization_id": org.id,
            "name": org.name,
            "slug": org.slug,
            "role": role,
        }
        for org, role in rows
    ]
