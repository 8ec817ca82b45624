"""Pytest configuration and shared fixtures.

Each test that touches the database gets a fresh SQLite file, created from
the model metadata. Notification delivery is captured in memory.
"""

import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

# Set testing mode BEFORE importing the app so the engine uses NullPool
os.environ["TESTING"] = "true"
os.environ.setdefault("SECRET_KEY", "linkloop-test-secret-key-0123456789abcdef")

from linkloop.config import settings

settings.testing = True
settings.cgm_sync_enabled = False
settings.stale_data_check_enabled = False
settings.daily_summary_enabled = False
settings.feed_retry_delay_seconds = 0
settings.notification_webhook_url = ""

from linkloop.database import create_all, get_session_maker, reset_database
from linkloop.main import app
from linkloop.models.account import Account, AccountRole
from linkloop.models.circle import CircleMembership, MembershipStatus
from linkloop.services.notification_dispatcher import Notification, dispatcher


class RecordingBackend:
    """Delivery backend that keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def for_recipient(self, account_id: uuid.UUID) -> list[Notification]:
        return [n for n in self.sent if n.recipient_id == account_id]

    def recipients(self) -> set[uuid.UUID]:
        return {n.recipient_id for n in self.sent}

    def clear(self) -> None:
        self.sent.clear()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[None, None]:
    """Point the engine at a fresh SQLite file and create the schema."""
    original_url = settings.database_url
    settings.database_url = f"sqlite+aiosqlite:///{tmp_path / 'linkloop.db'}"
    await reset_database()
    await create_all()
    yield
    await dispatcher.drain()
    await reset_database()
    settings.database_url = original_url


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def notifications() -> RecordingBackend:
    """Capture notifications instead of logging them."""
    backend = RecordingBackend()
    dispatcher.backend = backend
    yield backend
    dispatcher.backend = None


@pytest_asyncio.fixture
async def client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Accounts and circles
# ---------------------------------------------------------------------------


@pytest.fixture
def make_account(db_session) -> Callable[..., Awaitable[Account]]:
    async def _make(
        role: AccountRole = AccountRole.PRIMARY,
        name: str | None = None,
        **fields,
    ) -> Account:
        account = Account(id=uuid.uuid4(), role=role, display_name=name, **fields)
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _make


@pytest.fixture
def add_member(db_session) -> Callable[..., Awaitable[CircleMembership]]:
    """Attach a member account to an owner's circle as an active member."""

    async def _add(
        owner: Account,
        member: Account,
        status: MembershipStatus = MembershipStatus.ACTIVE,
        view_glucose: bool = True,
        receive_low_alerts: bool = True,
        receive_high_alerts: bool = True,
    ) -> CircleMembership:
        membership = CircleMembership(
            owner_id=owner.id,
            member_id=member.id,
            status=status,
            view_glucose=view_glucose,
            receive_low_alerts=receive_low_alerts,
            receive_high_alerts=receive_high_alerts,
            joined_at=datetime.now(timezone.utc),
        )
        member.linked_owner_id = owner.id
        db_session.add(membership)
        await db_session.commit()
        await db_session.refresh(membership)
        return membership

    return _add


@pytest_asyncio.fixture
async def owner(make_account) -> Account:
    return await make_account(AccountRole.PRIMARY, "Sam")


@pytest_asyncio.fixture
async def member(make_account) -> Account:
    return await make_account(AccountRole.MEMBER, "Alex")


def make_token(
    account_id: uuid.UUID,
    role: AccountRole | str = AccountRole.PRIMARY,
    name: str | None = None,
    token_type: str = "access",
    expires_in: timedelta = timedelta(minutes=15),
) -> str:
    """Mint a JWT the way the identity collaborator does."""
    payload = {
        "sub": str(account_id),
        "role": getattr(role, "value", role),
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def auth_headers(account: Account) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {make_token(account.id, account.role, account.display_name)}"
    }
