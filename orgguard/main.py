"""
orgguard API Server

Entry point for the FastAPI application.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orgguard.api.v1 import router as api_v1_router
from orgguard.core.config import get_settings
from orgguard.core.database import ping_db
from orgguard.core.errors import register_exception_handlers
from orgguard.core.logging import configure_logging
from orgguard.core.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from orgguard.core.rate_limit import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from orgguard.core.redis import close_redis, get_redis

settings = get_settings()
log = structlog.get_logger()


def build_rate_limiter() -> RateLimiter:
    """The process-wide limiter; its memory store lives exactly as long as the app."""
    fallback = MemoryRateLimitStore(cleanup_probability=settings.rate_limit_cleanup_probability)
    redis_client = get_redis()
    primary = RedisRateLimitStore(redis_client) if redis_client is not None else None
    if primary is None:
        log.warning("rate_limit.no_shared_store", detail="Redis not configured; limits are per process")
    return RateLimiter(fallback=fallback, primary=primary)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("orgguard.starting")
    yield
    log.info("orgguard.shutting_down")
    await close_redis()


def create_app(rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="orgguard",
        description="Authorization and rate limiting for multi-tenant organization APIs.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.rate_limiter = rate_limiter or build_rate_limiter()

    # Middleware (order matters - the last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
            "X-Request-ID",
        ],
    )
    app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Liveness check."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: database must answer; Redis is reported but optional."""
        checks = {"database": "ok", "redis": "disabled"}
        try:
            await ping_db()
        except Exception as exc:
            log.error("ready.database_unavailable", error=str(exc))
            checks["database"] = "unavailable"

        limiter = app.state.rate_limiter
        if limiter.primary is not None:
            try:
                await limiter.primary.redis.ping()
                checks["redis"] = "ok"
            except Exception as exc:
                log.warning("ready.redis_unavailable", error=str(exc))
                checks["redis"] = "degraded"

        if checks["database"] != "ok":
            return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})
        return {"status": "ready", "checks": checks}

    return app


app = create_app()
