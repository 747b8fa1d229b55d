"""
Authorization gate.

Per request the caller moves through
    Unauthenticated -> Authenticated -> Scoped -> Authorized | Denied
strictly in that order; the first failing stage ends evaluation.

The functions here return ``Authorized`` or ``Denied`` values. The FastAPI
dependencies at the bottom are the only place a denial becomes an exception.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orgguard.core.auth import Identity, get_identity
from orgguard.core.database import get_session
from orgguard.core.decisions import Authorized, Decision, Denied, DenialKind
from orgguard.core.errors import AccessDenied, StoreUnavailable
from orgguard.schemas.common import ADMIN_ROLES, ALL_ROLES, Role
from orgguard.services.sessions import ResolvedContext, resolve_session_and_role

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Stage transitions
# ---------------------------------------------------------------------------

def scope(identity: Identity, ctx: ResolvedContext) -> Decision:
    """Authenticated -> Scoped."""
    if ctx.membership_count == 0 and ctx.role is None:
        return Denied.of(DenialKind.NO_ROLE)
    if ctx.session is None:
        return Denied.of(DenialKind.NO_ACTIVE_ORGANIZATION)
    if ctx.session_mismatch:
        return Denied.of(DenialKind.SESSION_MISMATCH)
    if ctx.role is None or ctx.organization_id is None:
        return Denied.of(DenialKind.NO_ROLE)
    return Authorized(
        user_id=identity.user_id,
        email=identity.email,
        role=ctx.role,
        organization_id=ctx.organization_id,
    )


def role_allows(role: Role, required: frozenset[Role]) -> bool:
    """Membership test with an explicit case per role so none slips through."""
    match role:
        case Role.SUPER_ADMIN:
            return Role.SUPER_ADMIN in required
        case Role.ADMIN:
            return Role.ADMIN in required
        case Role.MEMBER:
            return Role.MEMBER in required
        case Role.VIEWER:
            return Role.VIEWER in required
        case _:
            raise AssertionError(f"Unhandled role: {role!r}")


def check_role(auth: Authorized, required: Iterable[Role]) -> Decision:
    """Scoped -> Authorized, role mode."""
    required = frozenset(required)
    if role_allows(auth.role, required):
        return auth
    names = ", ".join(r.value for r in sorted(required, key=ALL_ROLES.index))
    return Denied.of(
        DenialKind.INSUFFICIENT_ROLE,
        f"This action requires one of the following roles: {names}",
    )


def check_organization(auth: Authorized, organization_id: str) -> Decision:
    """Scoped -> Authorized, organization-scope mode."""
    if auth.organization_id != organization_id:
        return Denied.of(DenialKind.CROSS_ORGANIZATION_ACCESS)
    return auth


async def authorize(
    identity: Optional[Identity],
    db: AsyncSession,
    *,
    roles: Optional[Iterable[Role]] = None,
    organization_id: Optional[str] = None,
) -> Decision:
    """Run the full state machine for one request.

    ``roles`` selects role mode, ``organization_id`` selects organization-scope
    mode; both may be given, in which case the role check runs first.
    """
    if identity is None:
        decision: Decision = Denied.of(DenialKind.NO_AUTH)
        _log_denial(None, decision)
        return decision

    try:
        ctx = await resolve_session_and_role(identity.user_id, db)
    except StoreUnavailable:
        # Fail closed: infrastructure trouble is never "no role".
        decision = Denied.of(DenialKind.STORE_UNAVAILABLE)
        _log_denial(identity, decision)
        return decision

    decision = scope(identity, ctx)
    if isinstance(decision, Authorized) and roles is not None:
        decision = check_role(decision, roles)
    if isinstance(decision, Authorized) and organization_id is not None:
        decision = check_organization(decision, organization_id)

    if isinstance(decision, Denied):
        _log_denial(identity, decision)
    return decision


def _log_denial(identity: Optional[Identity], denied: Denied) -> None:
    user_id = identity.user_id if identity else None
    if denied.kind is DenialKind.STORE_UNAVAILABLE:
        log.error("auth.denied", kind=denied.kind.value, user_id=user_id)
    else:
        log.info("auth.denied", kind=denied.kind.value, user_id=user_id)


def _admit(request: Request, decision: Decision) -> Authorized:
    """Raise on denial; otherwise record the decision for later dependencies."""
    if isinstance(decision, Denied):
        raise AccessDenied(decision)
    request.state.authorized = decision
    return decision


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def require_roles(*roles: Role):
    """Dependency factory: caller must hold one of ``roles`` in their active organization."""
    required = frozenset(roles)

    async def dependency(
        request: Request,
        identity: Optional[Identity] = Depends(get_identity),
        db: AsyncSession = Depends(get_session),
    ) -> Authorized:
        return _admit(request, await authorize(identity, db, roles=required))

    return dependency


require_member = require_roles(*ALL_ROLES)
require_admin = require_roles(*ADMIN_ROLES)
require_super_admin = require_roles(Role.SUPER_ADMIN)


async def require_organization_access(
    organization_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    db: AsyncSession = Depends(get_session),
) -> Authorized:
    """The ``organization_id`` path parameter must be the caller's active organization."""
    return _admit(request, await authorize(identity, db, organization_id=organization_id))


async def require_identity(
    identity: Optional[Identity] = Depends(get_identity),
) -> Identity:
    """Authenticated stage only; for routes that work before an organization is chosen."""
    if identity is None:
        decision = Denied.of(DenialKind.NO_AUTH)
        _log_denial(None, decision)
        raise AccessDenied(decision)
    return identity
