"""
Rate limiting: the fixed-window algorithm on both stores, fallback when Redis
misbehaves, and the HTTP surface (headers and 429s).
"""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
from fastapi import Depends, Request
from redis.exceptions import ConnectionError as RedisConnectionError

from orgguard.core.authorization import require_admin
from orgguard.core.decisions import Authorized
from orgguard.core.rate_limit import (
    RATE_LIMITS,
    MemoryRateLimitStore,
    RateLimit,
    RateLimiter,
    RateLimitResult,
    RateLimitRule,
    RedisRateLimitStore,
    rate_limit_headers,
)

from .conftest import auth_headers

T0 = 1_700_000_000_000


class FixedClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now


class AlwaysSweep(random.Random):
    def random(self) -> float:
        return 0.0


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def redis_store(redis_client):
    return RedisRateLimitStore(redis_client)


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------

class TestMemoryStore:

    def test_first_request_opens_window(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        result = store.check("k", 3, 1000, T0)
        assert result == RateLimitResult(allowed=True, remaining=2, reset_at=T0 + 1000)

    def test_counts_down_then_denies(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        results = [store.check("k", 3, 1000, T0 + i) for i in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        # reset_at is fixed by the first request of the window
        assert {r.reset_at for r in results} == {T0 + 1000}

    def test_hundred_sms_per_hour_for_an_organization(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        rule = RATE_LIMITS["sms_send"]
        for i in range(rule.max_requests):
            result = store.check("sms:org-1", rule.max_requests, rule.window_ms, T0 + i)
            assert result.allowed is True
        assert result.remaining == 0

        denied = store.check("sms:org-1", rule.max_requests, rule.window_ms, T0 + 5_000)
        assert denied == RateLimitResult(allowed=False, remaining=0, reset_at=T0 + rule.window_ms)

    def test_window_resets_at_reset_time(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        for _ in range(3):
            store.check("k", 3, 1000, T0)
        assert store.check("k", 3, 1000, T0 + 999).allowed is False

        result = store.check("k", 3, 1000, T0 + 1000)
        assert result.allowed is True
        assert result.remaining == 2
        assert result.reset_at == T0 + 2000

    def test_identifiers_are_independent(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        store.check("a", 1, 1000, T0)
        assert store.check("a", 1, 1000, T0).allowed is False
        assert store.check("b", 1, 1000, T0).allowed is True

    def test_sweep_removes_only_expired(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0)
        store.check("old", 5, 100, T0)
        store.check("fresh", 5, 10_000, T0)
        assert store.sweep(T0 + 100) == 1
        assert "old" not in store
        assert "fresh" in store

    def test_probabilistic_sweep_runs_before_check(self):
        store = MemoryRateLimitStore(cleanup_probability=0.5, rng=AlwaysSweep())
        store.check("stale", 5, 100, T0)
        store.check("other", 5, 100, T0 + 500)
        assert "stale" not in store
        assert len(store) == 1

    def test_no_sweep_when_probability_zero(self):
        store = MemoryRateLimitStore(cleanup_probability=0.0, rng=AlwaysSweep())
        store.check("stale", 5, 100, T0)
        store.check("other", 5, 100, T0 + 500)
        assert "stale" in store


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

class TestRedisStore:

    async def test_counts_down_then_denies(self, redis_store):
        results = [await redis_store.check("k", 3, 1000, T0) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert {r.reset_at for r in results} == {T0 + 1000}

    async def test_window_resets(self, redis_store):
        await redis_store.check("k", 1, 1000, T0)
        assert (await redis_store.check("k", 1, 1000, T0 + 1)).allowed is False
        result = await redis_store.check("k", 1, 1000, T0 + 1000)
        assert result.allowed is True
        assert result.reset_at == T0 + 2000

    async def test_key_is_prefixed_and_expires(self, redis_client, redis_store):
        await redis_store.check("api_general:user:u1", 10, 60_000, T0)
        key = "orgguard:ratelimit:api_general:user:u1"
        assert await redis_client.hget(key, "count") == "1"
        ttl = await redis_client.pttl(key)
        assert 0 < ttl <= 60_000

    async def test_matches_memory_store(self, redis_store):
        memory = MemoryRateLimitStore(cleanup_probability=0.0)
        steps = [0, 10, 20, 30, 999, 1000, 1001, 1500, 2000, 2001]
        for step in steps:
            expected = memory.check("k", 3, 1000, T0 + step)
            actual = await redis_store.check("k", 3, 1000, T0 + step)
            assert actual == expected, f"diverged at +{step}ms"

    async def test_malformed_reply_raises(self, redis_store):
        redis_store._script = AsyncMock(return_value=[1, 2])
        with pytest.raises(ValueError):
            await redis_store.check("k", 3, 1000, T0)


# ---------------------------------------------------------------------------
# RateLimiter fallback
# ---------------------------------------------------------------------------

class TestRateLimiter:

    async def test_uses_redis_when_healthy(self, redis_store):
        fallback = MemoryRateLimitStore(cleanup_probability=0.0)
        limiter = RateLimiter(fallback=fallback, primary=redis_store, clock=FixedClock())
        result = await limiter.check("k", RateLimitRule(5, 1000))
        assert result.allowed is True
        assert result.degraded is False
        assert len(fallback) == 0

    async def test_falls_back_when_redis_down(self, redis_store):
        redis_store._script = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        fallback = MemoryRateLimitStore(cleanup_probability=0.0)
        limiter = RateLimiter(fallback=fallback, primary=redis_store, clock=FixedClock())
        rule = RateLimitRule(2, 1000)

        results = [await limiter.check("k", rule) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert all(r.degraded for r in results)
        assert "k" in fallback

    async def test_falls_back_on_garbage_reply(self, redis_store):
        redis_store._script = AsyncMock(return_value="OK")
        limiter = RateLimiter(
            fallback=MemoryRateLimitStore(cleanup_probability=0.0),
            primary=redis_store,
            clock=FixedClock(),
        )
        result = await limiter.check("k", RateLimitRule(5, 1000))
        assert result.allowed is True
        assert result.degraded is True

    async def test_without_primary_is_degraded(self):
        limiter = RateLimiter(fallback=MemoryRateLimitStore(cleanup_probability=0.0))
        result = await limiter.check("k", RateLimitRule(5, 1000))
        assert result.allowed is True
        assert result.degraded is True


# ---------------------------------------------------------------------------
# Headers and configuration
# ---------------------------------------------------------------------------

def test_headers_for_allowed_request():
    rule = RateLimitRule(10, 1000)
    headers = rate_limit_headers(RateLimitResult(True, 7, T0), rule, now=T0 - 500)
    assert headers == {
        "X-RateLimit-Limit": "10",
        "X-RateLimit-Remaining": "7",
        "X-RateLimit-Reset": "2023-11-14T22:13:20.000Z",
    }


def test_retry_after_counts_from_the_given_time():
    rule = RateLimitRule(10, 60_000)
    headers = rate_limit_headers(RateLimitResult(False, 0, T0), rule, now=T0 - 1_500)
    assert headers["X-RateLimit-Remaining"] == "0"
    # rounded up to whole seconds
    assert headers["Retry-After"] == "2"


def test_retry_after_never_negative():
    headers = rate_limit_headers(RateLimitResult(False, 0, T0), RateLimitRule(10, 1000), now=T0 + 10)
    assert headers["Retry-After"] == "0"


def test_configured_limits():
    assert RATE_LIMITS["sms_send"] == RateLimitRule(100, 3_600_000)
    assert RATE_LIMITS["api_general"] == RateLimitRule(1000, 3_600_000)
    assert RATE_LIMITS["file_upload"] == RateLimitRule(50, 3_600_000)
    assert RATE_LIMITS["auth_attempts"] == RateLimitRule(10, 900_000)


def test_unknown_limit_name_rejected():
    with pytest.raises(KeyError):
        RateLimit("does_not_exist")


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestRateLimitedRoutes:

    async def test_successful_response_carries_headers(self, client, seed):
        org = await seed.org("Acme")
        user = await seed.user("a@example.com")
        await seed.member(user, org, "member")

        response = await client.get("/api/v1/session", headers=auth_headers(user.id))

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"
        assert response.headers["X-RateLimit-Reset"].endswith("Z")

    async def test_exhausted_budget_returns_429(self, client, seed, rate_limiter):
        org = await seed.org("Acme")
        user = await seed.user("a@example.com")
        await seed.member(user, org, "member")
        rule = RATE_LIMITS["api_general"]
        # Burn the budget directly so the test does not make a thousand requests.
        for _ in range(rule.max_requests):
            await rate_limiter.check(f"api_general:user:{user.id}", rule)

        response = await client.get("/api/v1/session", headers=auth_headers(user.id))

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "RateLimitExceeded"
        assert body["error"]["status"] == 429
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0

    async def test_retry_after_follows_limiter_clock(self, app, client, seed):
        limiter = RateLimiter(fallback=MemoryRateLimitStore(cleanup_probability=0.0), clock=FixedClock())
        app.state.rate_limiter = limiter
        org = await seed.org("Acme")
        user = await seed.user("a@example.com")
        await seed.member(user, org, "member")
        rule = RATE_LIMITS["api_general"]
        for _ in range(rule.max_requests):
            await limiter.check(f"api_general:user:{user.id}", rule)

        response = await client.get("/api/v1/session", headers=auth_headers(user.id))

        assert response.status_code == 429
        # the window opened at T0 and the clock has not moved
        assert response.headers["Retry-After"] == str(rule.window_ms // 1000)
        assert response.headers["X-RateLimit-Reset"] == "2023-11-14T23:13:20.000Z"

    async def test_denied_request_does_not_consume_budget(self, client, rate_limiter):
        response = await client.get("/api/v1/session")
        assert response.status_code == 401
        assert len(rate_limiter.fallback) == 0

    async def test_switch_session_counts_against_auth_attempts(self, client, seed, rate_limiter):
        org = await seed.org("Acme")
        user = await seed.user("a@example.com")
        await seed.member(user, org, "member")
        await seed.session(user, org)

        for _ in range(10):
            response = await client.put(
                "/api/v1/session",
                json={"organization_id": org.id},
                headers=auth_headers(user.id),
            )
            assert response.status_code == 200

        response = await client.put(
            "/api/v1/session",
            json={"organization_id": org.id},
            headers=auth_headers(user.id),
        )
        assert response.status_code == 429
        assert f"auth_attempts:user:{user.id}" in rate_limiter.fallback

    async def test_organization_scope_is_shared_by_members(self, app, client, seed, rate_limiter):
        sms_limit = RateLimit("sms_send", scope="organization")

        @app.post("/sms")
        async def send_sms(
            auth: Authorized = Depends(require_admin),
            _limit: RateLimitResult = Depends(sms_limit),
        ):
            return {"organization_id": auth.organization_id}

        org = await seed.org("Acme")
        alice = await seed.user("alice@acme.test")
        bob = await seed.user("bob@acme.test")
        await seed.member(alice, org, "admin")
        await seed.member(bob, org, "super_admin")
        rule = RATE_LIMITS["sms_send"]
        for _ in range(rule.max_requests - 1):
            await rate_limiter.check(f"sms_send:org:{org.id}", rule)

        first = await client.post("/sms", headers=auth_headers(alice.id))
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Remaining"] == "0"

        second = await client.post("/sms", headers=auth_headers(bob.id))
        assert second.status_code == 429

    def test_organization_scope_requires_the_gate(self):
        request = Request({"type": "http", "method": "POST", "path": "/sms", "headers": []})
        with pytest.raises(RuntimeError):
            RateLimit("sms_send", scope="organization").identifier(request, None)
