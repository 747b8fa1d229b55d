"""
API v1 Router

Routes authorize first, then count against the caller's rate limit budget.
"""

from fastapi import APIRouter

from . import organizations, sessions, users

router = APIRouter()

router.include_router(sessions.router, prefix="/session", tags=["Session"])
router.include_router(organizations.router, prefix="/organizations", tags=["Organizations"])
router.include_router(users.router, prefix="/users", tags=["Users"])


@router.get("/", tags=["API"])
async def api_root():
    """API root - returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/session",
            "/session/organizations",
            "/organizations/{organization_id}",
            "/users",
        ],
    }
