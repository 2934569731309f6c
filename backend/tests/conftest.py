"""
Pytest configuration and fixtures.
"""
import asyncio
import uuid
from datetime import datetime

import pytest

from app.auth.models import Role, User
from app.config import Settings
from app.core.exceptions import RoomCreationFailed, RoomDeletionFailed, TokenIssuanceFailed
from app.core.realtime import ChangeFeed
from app.database import Base, build_engine, build_session_factory
from app.meetings.providers import (
    JoinToken,
    ProviderRoom,
    RoomCapabilities,
    RoomProvider,
    generate_room_name,
    room_window,
)
from app.meetings.quota import QuotaEnforcer
from app.meetings.service import MeetingAdapter
from app.tenancy.models import SubscriptionPlan, Tenant

# Import all models so Base.metadata knows about them
import app.activity.models  # noqa: F401
import app.meetings.models  # noqa: F401


# ============================================
# TEST CONFIGURATION
# ============================================

@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'meetings.db'}",
        secret_key="test-secret-key",
        public_base_url="https://app.example.com",
        video_provider="livekit",
        livekit_url="wss://livekit.example.com",
        livekit_api_key="APItestkey",
        livekit_api_secret="test-livekit-secret-with-enough-length",
        daily_api_key="daily-test-key",
        daily_api_url="https://api.daily.test/v1",
        scheduler_enabled=False,
    )


# ============================================
# DATABASE FIXTURES
# ============================================

@pytest.fixture
async def test_engine(test_settings):
    """File-backed SQLite so concurrent sessions really contend."""
    engine = build_engine(test_settings.database_url, busy_timeout=30.0)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================
# FAKE PROVIDER
# ============================================

class FakeRoomProvider(RoomProvider):
    """In-memory room provider that records every call."""

    name = "fake"

    def __init__(self):
        self.created: list[dict] = []
        self.deleted: list[str] = []
        self.tokens: list[dict] = []
        self.fail_create = False
        self.fail_token = False
        self.fail_delete = False

    async def create_room(
        self,
        title: str,
        max_participants: int,
        capabilities: RoomCapabilities,
        start_time: datetime | None = None,
        duration_minutes: int | None = None,
    ) -> ProviderRoom:
        if self.fail_create:
            raise RoomCreationFailed("room quota exceeded at provider")
        name = generate_room_name()
        not_before, expires_at = room_window(start_time, duration_minutes)
        self.created.append(
            {
                "name": name,
                "title": title,
                "max_participants": max_participants,
                "capabilities": capabilities,
                "duration_minutes": duration_minutes,
            }
        )
        return ProviderRoom(
            name=name,
            url=f"https://rooms.example.com/{name}",
            not_before=not_before,
            expires_at=expires_at,
        )

    async def issue_join_token(
        self,
        room_name: str,
        user_name: str,
        is_owner: bool,
        identity: str | None = None,
        expires_at: datetime | None = None,
    ) -> JoinToken:
        # Yield so concurrent joins interleave.
        await asyncio.sleep(0)
        if self.fail_token:
            raise TokenIssuanceFailed("provider unavailable")
        self.tokens.append(
            {"room": room_name, "user_name": user_name, "is_owner": is_owner, "identity": identity}
        )
        return JoinToken(token=f"token-{room_name}-{identity}", expires_at=expires_at)

    async def delete_room(self, room_name: str) -> None:
        if self.fail_delete:
            raise RoomDeletionFailed("provider unavailable")
        self.deleted.append(room_name)


@pytest.fixture
def fake_provider():
    return FakeRoomProvider()


@pytest.fixture
def change_feed():
    return ChangeFeed()


@pytest.fixture
def adapter(test_settings, fake_provider, change_feed):
    return MeetingAdapter(
        settings=test_settings,
        provider=fake_provider,
        quota=QuotaEnforcer(test_settings),
        feed=change_feed,
    )


# ============================================
# TENANTS AND USERS
# ============================================

async def create_tenant(session_factory, plan=SubscriptionPlan.FREE, is_default=False) -> Tenant:
    tenant = Tenant(
        name=f"{plan.value.title()} Co",
        slug=f"{plan.value}-{uuid.uuid4().hex[:8]}",
        plan=plan,
        is_default=is_default,
    )
    async with session_factory() as session:
        session.add(tenant)
        await session.commit()
    return tenant


async def create_user(session_factory, name="Test User", role=Role.MEMBER, tenant=None) -> User:
    user = User(
        email=f"{uuid.uuid4().hex[:10]}@example.com",
        full_name=name,
        role=role,
        tenant_id=tenant.id if tenant else None,
        is_active=True,
    )
    async with session_factory() as session:
        session.add(user)
        await session.commit()
    return user


@pytest.fixture
async def free_tenant(session_factory):
    return await create_tenant(session_factory, SubscriptionPlan.FREE)


@pytest.fixture
async def unlimited_tenant(session_factory):
    """The operator's own tenant: no plan limits."""
    return await create_tenant(session_factory, SubscriptionPlan.FREE, is_default=True)


@pytest.fixture
async def host(session_factory, unlimited_tenant):
    return await create_user(session_factory, "Alice Host", Role.MEMBER, unlimited_tenant)


@pytest.fixture
async def free_host(session_factory, free_tenant):
    return await create_user(session_factory, "Frank Free", Role.MEMBER, free_tenant)


@pytest.fixture
async def guest(session_factory):
    return await create_user(session_factory, "Bob Guest", Role.CLIENT)


@pytest.fixture
async def stranger(session_factory):
    return await create_user(session_factory, "Sam Stranger", Role.CLIENT)


@pytest.fixture
async def admin(session_factory):
    return await create_user(session_factory, "Ada Admin", Role.ADMIN)
