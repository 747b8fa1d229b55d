"""
Fixed-window rate limiting.

Counters live in Redis, updated atomically by a Lua script so concurrent
instances cannot race each other. When Redis is missing or misbehaves the
same algorithm runs against a process-local ``MemoryRateLimitStore``. That
fallback is per process and not atomic across instances; every use of it is
logged and flagged on the result so operators can see rate limiting is
degraded.

Algorithm, for ``identifier`` with ``(max_requests, window_ms)``:
    1. no record, or reset_at <= now  -> count=1, reset_at=now+window_ms, allowed
    2. count >= max_requests          -> denied, remaining=0, reset_at unchanged
    3. otherwise                      -> count += 1, allowed
"""

from __future__ import annotations

import math
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, Request, Response
from redis.exceptions import RedisError

from orgguard.core.auth import Identity, get_identity
from orgguard.core.errors import RateLimitExceeded

log = structlog.get_logger()

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch milliseconds
    degraded: bool = False


HOUR_MS = 60 * 60 * 1000

RATE_LIMITS: dict[str, RateLimitRule] = {
    "sms_send": RateLimitRule(max_requests=100, window_ms=HOUR_MS),  # per organization
    "api_general": RateLimitRule(max_requests=1000, window_ms=HOUR_MS),  # per user
    "file_upload": RateLimitRule(max_requests=50, window_ms=HOUR_MS),  # per user
    "auth_attempts": RateLimitRule(max_requests=10, window_ms=15 * 60 * 1000),
}


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------

class MemoryRateLimitStore:
    """Process-local counters. Owned by whoever builds it; never shared across processes."""

    def __init__(
        self,
        cleanup_probability: float = 0.01,
        rng: Optional[random.Random] = None,
    ):
        self._records: dict[str, tuple[int, int]] = {}
        self._cleanup_probability = cleanup_probability
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._records

    def sweep(self, now: int) -> int:
        """Drop every record whose window has ended. Returns how many were removed."""
        expired = [key for key, (_, reset_at) in self._records.items() if reset_at <= now]
        for key in expired:
            del self._records[key]
        return len(expired)

    def check(self, identifier: str, max_requests: int, window_ms: int, now: int) -> RateLimitResult:
        if self._rng.random() < self._cleanup_probability:
            removed = self.sweep(now)
            if removed:
                log.debug("rate_limit.memory_swept", removed=removed, remaining=len(self._records))

        record = self._records.get(identifier)
        if record is None or record[1] <= now:
            reset_at = now + window_ms
            self._records[identifier] = (1, reset_at)
            return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=reset_at)

        count, reset_at = record
        if count >= max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        count += 1
        self._records[identifier] = (count, reset_at)
        return RateLimitResult(allowed=True, remaining=max_requests - count, reset_at=reset_at)


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

# KEYS[1] = counter hash; ARGV = max_requests, window_ms, now, now + window_ms
# Returns {allowed (0|1), remaining, reset_at}.
FIXED_WINDOW_LUA = """
local key = KEYS[1]
local max_requests = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local fields = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(fields[1])
local reset_at = tonumber(fields[2])

if count == nil or reset_at == nil or reset_at <= now then
    redis.call('HSET', key, 'count', 1, 'reset_at', ARGV[4])
    redis.call('PEXPIRE', key, window_ms)
    return {1, max_requests - 1, tonumber(ARGV[4])}
end

if count >= max_requests then
    return {0, 0, reset_at}
end

count = redis.call('HINCRBY', key, 'count', 1)
return {1, max_requests - count, reset_at}
"""


class RedisRateLimitStore:
    """Shared counters in Redis. Each check is a single atomic script call."""

    def __init__(self, redis_client, key_prefix: str = "orgguard:ratelimit:"):
        self.redis = redis_client
        self._key_prefix = key_prefix
        self._script = redis_client.register_script(FIXED_WINDOW_LUA)

    async def check(
        self, identifier: str, max_requests: int, window_ms: int, now: int
    ) -> RateLimitResult:
        reply = await self._script(
            keys=[f"{self._key_prefix}{identifier}"],
            args=[max_requests, window_ms, now, now + window_ms],
        )
        return self._parse_reply(reply)

    @staticmethod
    def _parse_reply(reply) -> RateLimitResult:
        if not isinstance(reply, (list, tuple)) or len(reply) != 3:
            raise ValueError(f"Malformed rate limit reply: {reply!r}")
        allowed, remaining, reset_at = (int(v) for v in reply)
        if allowed not in (0, 1) or remaining < 0:
            raise ValueError(f"Malformed rate limit reply: {reply!r}")
        return RateLimitResult(allowed=bool(allowed), remaining=remaining, reset_at=reset_at)


# ---------------------------------------------------------------------------
# Accountant
# ---------------------------------------------------------------------------

class RateLimiter:
    """Answers "may ``identifier`` make one more request?" and never raises doing so."""

    def __init__(
        self,
        fallback: MemoryRateLimitStore,
        primary: Optional[RedisRateLimitStore] = None,
        clock: Clock = now_ms,
    ):
        self.primary = primary
        self.fallback = fallback
        self._clock = clock

    def now(self) -> int:
        return self._clock()

    async def check(
        self, identifier: str, rule: RateLimitRule, now: Optional[int] = None
    ) -> RateLimitResult:
        """``now`` defaults to the limiter's clock; pass it to share one reading with the caller."""
        if now is None:
            now = self._clock()
        if self.primary is not None:
            try:
                return await self.primary.check(identifier, rule.max_requests, rule.window_ms, now)
            except (RedisError, OSError, ValueError, TypeError) as exc:
                log.warning(
                    "rate_limit.fallback_active",
                    identifier=identifier,
                    error=f"{type(exc).__name__}: {exc}",
                )

        result = self.fallback.check(identifier, rule.max_requests, rule.window_ms, now)
        return replace(result, degraded=True)


def rate_limit_headers(result: RateLimitResult, rule: RateLimitRule, now: int) -> dict[str, str]:
    """Response headers for ``result``; ``now`` must come from the clock that produced it."""
    reset = datetime.fromtimestamp(result.reset_at / 1000, tz=timezone.utc)
    headers = {
        "X-RateLimit-Limit": str(rule.max_requests),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }
    if not result.allowed:
        retry_after_ms = max(0, result.reset_at - now)
        headers["Retry-After"] = str(math.ceil(retry_after_ms / 1000))
    return headers


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


class RateLimit:
    """Route dependency applying one named limit.

    ``scope`` picks the identifier namespace:

    - ``"user"`` keys on the caller's identity, falling back to the client
      address when anonymous.
    - ``"organization"`` keys on the organization the gate authorized; it must be
      declared after a ``require_*`` dependency on the same route.
    - ``"client"`` always keys on the client address.
    """

    SCOPES = ("user", "organization", "client")

    def __init__(self, name: str, scope: str = "user"):
        if name not in RATE_LIMITS:
            raise KeyError(f"Unknown rate limit: {name}")
        if scope not in self.SCOPES:
            raise ValueError(f"Unknown rate limit scope: {scope}")
        self.name = name
        self.rule = RATE_LIMITS[name]
        self.scope = scope

    def identifier(self, request: Request, identity: Optional[Identity]) -> str:
        if self.scope == "organization":
            authorized = getattr(request.state, "authorized", None)
            if authorized is None:
                raise RuntimeError(
                    f"Rate limit '{self.name}' is organization-scoped but the route "
                    "has no authorization dependency before it"
                )
            return f"{self.name}:org:{authorized.organization_id}"
        if self.scope == "user" and identity is not None:
            return f"{self.name}:user:{identity.user_id}"
        host = request.client.host if request.client else "unknown"
        return f"{self.name}:client:{host}"

    async def __call__(
        self,
        request: Request,
        response: Response,
        identity: Optional[Identity] = Depends(get_identity),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        now = limiter.now()
        result = await limiter.check(self.identifier(request, identity), self.rule, now=now)
        headers = rate_limit_headers(result, self.rule, now)
        if not result.allowed:
            log.info("rate_limit.exceeded", limit=self.name, reset_at=result.reset_at)
            raise RateLimitExceeded(self.name, headers)
        response.headers.update(headers)
        return result


api_rate_limit = RateLimit("api_general")
