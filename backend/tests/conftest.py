"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory async SQLite database (no server needed for tests)
- AsyncSession factory
- Fake notifier and frozen clock for deterministic step timing
- Engine / SLA tracker wired to the above
- FastAPI test client (httpx.AsyncClient) and auth helpers (JWT tokens)
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_WAKEUP", "false")

from db.base import Base  # noqa: E402
from core.exceptions import TransportError  # noqa: E402
from core.security import create_access_token  # noqa: E402
from notifications.channels import DeliveryAck  # noqa: E402
from notifications.directory import RoleDirectory  # noqa: E402

T0 = datetime(2026, 3, 2, 9, 0, 0)

ROLE_CONTACTS = {
    "analyst": "analyst@example.com",
    "manager": "manager@example.com",
    "executive": "executive@example.com",
    "compliance": "compliance@example.com",
    "stakeholder": "stakeholder@example.com",
    "risk_officer": "risk@example.com",
    "risk_committee": "committee@example.com",
    "board": "board@example.com",
}


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeNotifier:
    """Records every send; can be told to fail or hang for given recipients."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()
        self.hang_for: set[str] = set()
        self.fail_all = False

    async def send(self, to, subject, body_template_id, data=None, urgency="medium", organization_id=None):
        if to in self.hang_for:
            await asyncio.sleep(3600)
        if self.fail_all or to in self.fail_for:
            raise TransportError(f"Mailbox unavailable: {to}", recipient=to)
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "template": body_template_id,
                "data": data or {},
                "urgency": getattr(urgency, "value", urgency),
                "organization_id": organization_id,
            }
        )
        return DeliveryAck(
            channel="fake",
            recipient=to,
            message_id=f"msg-{len(self.sent)}",
            delivered_at=T0.isoformat(),
        )


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(hours=hours, minutes=minutes)
        return self.now


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; StaticPool keeps one shared connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session; the engine under test commits on it."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def directory() -> RoleDirectory:
    return RoleDirectory(contacts=ROLE_CONTACTS)


@pytest.fixture
def wakeups() -> list:
    return []


@pytest.fixture
def engine(db_session, notifier, directory, clock, wakeups):
    from workflow.engine import ExecutionEngine

    return ExecutionEngine(
        db_session,
        notifier=notifier,
        directory=directory,
        clock=clock,
        wakeup=lambda timer_id, fire_at: wakeups.append((timer_id, fire_at)),
    )


@pytest.fixture
def tracker(db_session, notifier, directory, clock):
    from workflow.sla import SLATracker

    return SLATracker(db_session, notifier=notifier, directory=directory, clock=clock)


@pytest.fixture
def org_id() -> str:
    return f"org-{uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, notifier, directory):
    """Create a FastAPI app instance wired to the test database and fakes."""
    # Patch the database module to use our test engine
    import db.database as db_mod
    original_engine = db_mod.engine
    original_session = db_mod.AsyncSessionLocal

    db_mod.engine = db_engine
    db_mod.AsyncSessionLocal = session_factory

    from app.dependencies import get_notifier, get_role_directory
    from app.main import create_app

    test_app = create_app()
    test_app.dependency_overrides[get_notifier] = lambda: notifier
    test_app.dependency_overrides[get_role_directory] = lambda: directory

    yield test_app

    # Restore originals
    db_mod.engine = original_engine
    db_mod.AsyncSessionLocal = original_session


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


@pytest.fixture
def auth_headers(org_id) -> dict:
    """Generate Authorization headers with a valid JWT token."""
    token = create_access_token(user_id=f"user-{uuid4().hex[:8]}", org_id=org_id)
    return {"Authorization": f"Bearer {token}"}
