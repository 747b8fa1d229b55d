"""
Shared fixtures: an in-memory SQLite database, seed helpers and an app wired
to an in-process rate limiter.
"""

from __future__ import annotations

from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from orgguard.core.auth import create_access_token
from orgguard.core.database import get_session
from orgguard.core.rate_limit import MemoryRateLimitStore, RateLimiter
from orgguard.main import create_app
from orgguard.models import Organization, OrganizationUser, User, UserSession


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Seeder:
    """Inserts rows and commits, so the HTTP layer sees them on its own session."""

    def __init__(self, session_factory):
        self._factory = session_factory

    async def _add(self, obj):
        async with self._factory() as session:
            session.add(obj)
            await session.commit()
        return obj

    async def org(self, name: str = "Acme", slug: Optional[str] = None) -> Organization:
        return await self._add(Organization(name=name, slug=slug or name.lower().replace(" ", "-")))

    async def user(self, email: Optional[str] = None, full_name: Optional[str] = None) -> User:
        return await self._add(User(email=email, full_name=full_name))

    async def member(self, user: User, org: Organization, role: str = "member") -> OrganizationUser:
        return await self._add(OrganizationUser(user_id=user.id, organization_id=org.id, role=role))

    async def session(self, user: User, org: Organization) -> UserSession:
        return await self._add(UserSession(user_id=user.id, organization_id=org.id))


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(fallback=MemoryRateLimitStore(cleanup_probability=0.0))


@pytest.fixture
def app(session_factory, rate_limiter):
    app = create_app(rate_limiter=rate_limiter)

    async def _get_test_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _get_test_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: str, email: Optional[str] = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, email)}"}
