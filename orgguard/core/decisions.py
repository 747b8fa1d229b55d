"""
Authorization outcomes.

The gate never raises for an expected denial; it returns one of these values
and the route boundary decides how to render it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from orgguard.schemas.common import Role


class DenialKind(str, Enum):
    NO_AUTH = "NoAuth"
    NO_ACTIVE_ORGANIZATION = "NoActiveOrganization"
    SESSION_MISMATCH = "SessionMismatch"
    NO_ROLE = "NoRole"
    INSUFFICIENT_ROLE = "InsufficientRole"
    CROSS_ORGANIZATION_ACCESS = "CrossOrganizationAccess"
    STORE_UNAVAILABLE = "StoreUnavailable"


DENIAL_STATUS: dict[DenialKind, int] = {
    DenialKind.NO_AUTH: 401,
    DenialKind.NO_ACTIVE_ORGANIZATION: 400,
    DenialKind.SESSION_MISMATCH: 409,
    DenialKind.NO_ROLE: 403,
    DenialKind.INSUFFICIENT_ROLE: 403,
    DenialKind.CROSS_ORGANIZATION_ACCESS: 403,
    DenialKind.STORE_UNAVAILABLE: 500,
}

# Messages name the remediation, never whether a resource exists.
DENIAL_MESSAGES: dict[DenialKind, str] = {
    DenialKind.NO_AUTH: "Authentication required. Please sign in again.",
    DenialKind.NO_ACTIVE_ORGANIZATION: (
        "No active organization session. Please select an organization or sign in again."
    ),
    DenialKind.SESSION_MISMATCH: (
        "Your active organization is no longer available. "
        "Please select an organization or sign in again."
    ),
    DenialKind.NO_ROLE: "User role not found. Please contact an administrator.",
    DenialKind.INSUFFICIENT_ROLE: "You do not have permission to perform this action.",
    DenialKind.CROSS_ORGANIZATION_ACCESS: "Access denied.",
    DenialKind.STORE_UNAVAILABLE: (
        "Authorization is temporarily unavailable. Please try again later."
    ),
}


@dataclass(frozen=True)
class Denied:
    kind: DenialKind
    status_code: int
    message: str

    @classmethod
    def of(cls, kind: DenialKind, message: Optional[str] = None) -> "Denied":
        return cls(kind=kind, status_code=DENIAL_STATUS[kind], message=message or DENIAL_MESSAGES[kind])


@dataclass(frozen=True)
class Authorized:
    user_id: str
    role: Role
    organization_id: str
    email: Optional[str] = None


Decision = Union[Authorized, Denied]
