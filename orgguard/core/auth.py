"""
Identity extraction.

Authentication itself belongs to the external identity provider. This module
only verifies the provider's signed access token and turns it into an
``Identity``; everything after that is the gate's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from orgguard.core.config import get_settings

log = structlog.get_logger()
settings = get_settings()

authorization_header = APIKeyHeader(name="Authorization", auto_error=False)


@dataclass(frozen=True)
class Identity:
    """The authenticated principal. Read-only to this layer."""

    user_id: str
    email: Optional[str] = None


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_access_token(
    user_id: str,
    email: str | None = None,
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint a token the way the identity provider does (local tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    """Decode and verify a token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
    )


def identity_from_token(token: str) -> Identity | None:
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError as exc:
        log.info("auth.token_rejected", reason=type(exc).__name__)
        return None

    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        log.info("auth.token_rejected", reason="missing_sub")
        return None
    return Identity(user_id=sub, email=payload.get("email"))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_identity(
    request: Request,
    authorization: Optional[str] = Depends(authorization_header),
) -> Identity | None:
    """Resolve the caller's identity, or None if there isn't a valid one.

    Absence is not an error here: the gate turns it into a NoAuth denial.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None
    identity = identity_from_token(authorization[7:].strip())
    if identity is not None:
        request.state.identity = identity
        structlog.contextvars.bind_contextvars(user_id=identity.user_id)
    return identity
