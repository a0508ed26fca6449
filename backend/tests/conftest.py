"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; configure before importing the app
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL_OVERRIDE"] = "sqlite+aiosqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "development"

import pytest
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID

import httpx
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import create_access_token
from app.db.base import Base
from app.db.models import Admin, Client, ClientCoach, ClientCoachStatus, Coach, EmailAccount, UserType
from app.db.session import get_db
from app.main import app
from app.services.gmail import GmailClient


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # aiosqlite needs explicit BEGIN handling for SAVEPOINT to work
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging data and calling services directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI endpoints."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


# =============================================================================
# USERS
# =============================================================================


@pytest.fixture
async def coach(db: AsyncSession) -> Coach:
    coach = Coach(first_name="Dana", last_name="Reyes", email="coach@example.com")
    db.add(coach)
    await db.commit()
    return coach


@pytest.fixture
async def other_coach(db: AsyncSession) -> Coach:
    coach = Coach(first_name="Sam", last_name="Okafor", business_name="Okafor Coaching", email="sam@example.com")
    db.add(coach)
    await db.commit()
    return coach


@pytest.fixture
async def admin(db: AsyncSession) -> Admin:
    admin = Admin(name="Support Admin", email="admin@example.com")
    db.add(admin)
    await db.commit()
    return admin


async def _make_client(db: AsyncSession, email: str, coach: Coach | None, status: str = "active") -> Client:
    first, _, last = email.partition("@")[0].partition(".")
    client = Client(first_name=first.title(), last_name=(last or "client").title(), email=email)
    db.add(client)
    await db.flush()
    if coach is not None:
        db.add(ClientCoach(client_id=client.id, coach_id=coach.id, status=status))
    await db.commit()
    return client


@pytest.fixture
async def client_a(db: AsyncSession, coach: Coach) -> Client:
    """Active client of `coach`."""
    return await _make_client(db, "alex.morgan@example.com", coach)


@pytest.fixture
async def client_b(db: AsyncSession, coach: Coach) -> Client:
    """Another active client of `coach`."""
    return await _make_client(db, "blair.kim@example.com", coach)


@pytest.fixture
async def outsider_client(db: AsyncSession, other_coach: Coach) -> Client:
    """Active client of `other_coach` only."""
    return await _make_client(db, "casey.lee@example.com", other_coach)


@pytest.fixture
async def inactive_client(db: AsyncSession, coach: Coach) -> Client:
    """Client whose relationship with `coach` is inactive."""
    return await _make_client(db, "drew.park@example.com", coach, status=ClientCoachStatus.INACTIVE.value)


@pytest.fixture
async def gmail_account(db: AsyncSession, coach: Coach) -> EmailAccount:
    account = EmailAccount(
        user_id=coach.id,
        provider="google",
        email_address="dana.inbox@gmail.com",
        access_token="access-1",
        refresh_token="refresh-1",
    )
    db.add(account)
    await db.commit()
    return account


# =============================================================================
# AUTH
# =============================================================================


@pytest.fixture
def auth_headers() -> Callable[[UUID, UserType], dict[str, str]]:
    """Build an Authorization header for a user id and type."""

    def _headers(user_id: UUID, user_type: UserType) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, user_type)}"}

    return _headers


# =============================================================================
# GMAIL
# =============================================================================


class FakeGmail:
    """In-memory Gmail mailbox served through httpx.MockTransport."""

    def __init__(self):
        self.messages: dict[str, dict] = {}
        self.order: list[str] = []  # newest first, like Gmail
        self.valid_tokens = {"access-1", "access-2"}
        self.refresh_grant: str | None = None
        self.broken_tokens: set[str] = set()
        self.failing_ids: set[str] = set()
        self.fail_listing = False
        self.list_queries: list[str] = []
        self.fetched: list[str] = []
        self.base_time = datetime.now(timezone.utc) - timedelta(hours=1)

    def add(self, message_id: str, sender: str, thread_id: str = "thread-1", subject: str = "Check-in") -> datetime:
        sent_at = self.base_time + timedelta(minutes=len(self.order))
        self.messages[message_id] = {
            "id": message_id,
            "threadId": thread_id,
            "snippet": f"snippet {message_id}",
            "internalDate": str(int(sent_at.timestamp() * 1000)),
            "payload": {
                "headers": [
                    {"name": "From", "value": sender},
                    {"name": "To", "value": "dana.inbox@gmail.com"},
                    {"name": "Subject", "value": subject},
                ],
                "body": {"size": 0},
            },
        }
        self.order.insert(0, message_id)
        return datetime.fromtimestamp(int(sent_at.timestamp() * 1000) / 1000, tz=timezone.utc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            if self.refresh_grant is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.valid_tokens.add(self.refresh_grant)
            return httpx.Response(200, json={"access_token": self.refresh_grant})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token not in self.valid_tokens:
            return httpx.Response(401)

        if request.url.path.endswith("/messages"):
            self.list_queries.append(request.url.params["q"])
            if self.fail_listing:
                return httpx.Response(500)
            refs = [{"id": i, "threadId": self.messages[i]["threadId"]} for i in self.order]
            return httpx.Response(200, json={"messages": refs})

        message_id = request.url.path.rsplit("/", 1)[1]
        self.fetched.append(message_id)
        if message_id in self.failing_ids:
            return httpx.Response(503)
        if token in self.broken_tokens:
            return httpx.Response(200, content=b"not json")
        return httpx.Response(200, json=self.messages[message_id])

    def client(self) -> GmailClient:
        return GmailClient(
            base_url="https://gmail.test/gmail/v1/users/me",
            token_url="https://gmail.test/token",
            client_id="cid",
            client_secret="secret",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def gmail() -> FakeGmail:
    return FakeGmail()

