"""
Exceptions raised at the route boundary and their JSON rendering.

Every error response uses the same envelope:
    {"error": {"code": ..., "message": ..., "status": ...}}
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from orgguard.core.decisions import Denied, DenialKind
from orgguard.schemas.common import ErrorBody, ErrorResponse

log = structlog.get_logger()


class StoreUnavailable(Exception):
    """The session/membership store could not be reached or answered garbage."""


class AccessDenied(Exception):
    """Raised by FastAPI dependencies when the gate returns a denial."""

    def __init__(self, denied: Denied):
        super().__init__(denied.message)
        self.denied = denied


class RateLimitExceeded(Exception):
    """A named rate limit rejected the request."""

    def __init__(self, limit_name: str, headers: dict[str, str]):
        super().__init__(f"Rate limit '{limit_name}' exceeded")
        self.limit_name = limit_name
        self.headers = headers


def error_response(
    status: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, status=status))
    return JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


async def _access_denied_handler(request: Request, exc: AccessDenied) -> JSONResponse:
    denied = exc.denied
    return error_response(denied.status_code, denied.kind.value, denied.message)


async def _store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    log.error("store.unavailable", path=request.url.path, error=str(exc))
    return error_response(
        500,
        DenialKind.STORE_UNAVAILABLE.value,
        Denied.of(DenialKind.STORE_UNAVAILABLE).message,
    )


async def _rate_limited_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return error_response(
        429,
        "RateLimitExceeded",
        "Too many requests. Please wait before retrying.",
        headers=exc.headers,
    )


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(
        exc.status_code,
        "HTTPError",
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessDenied, _access_denied_handler)
    app.add_exception_handler(StoreUnavailable, _store_unavailable_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limited_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
