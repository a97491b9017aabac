"""Shared test fixtures — a fresh SQLite file database for every test.

A file database (rather than shared in-memory + StaticPool) gives every
session its own connection, so concurrent claims really race on the guarded
update instead of sharing one transaction.
"""
from __future__ import annotations

import os
import tempfile

# Keep the app's default engine and evidence dir away from the working tree
_scratch = tempfile.mkdtemp(prefix="modqueue-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_scratch}/default.db")
os.environ.setdefault("EVIDENCE_DIR", os.path.join(_scratch, "evidence"))
os.environ.setdefault("FANOUT_SWEEP_INTERVAL_MINUTES", "0")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.engine import get_session, get_session_factory, import_all_tables
from src.db.tables import Base
from src.db.user_tables import UserRow
from src.models.moderation import Actor, Role
from src.services.claim_coordinator import ClaimCoordinator
from src.services.evidence import LocalEvidenceStorage
from src.services.moderation_log import ModerationLog
from src.services.notification_fanout import NotificationFanout
from src.services.realtime import RealtimeBus
from src.services.report_store import ReportStore

# Import app BEFORE any test module so overrides apply everywhere
from src.api.main import app  # noqa: E402
from src.api import deps  # noqa: E402


class FakeRoster:
    """In-memory staff roster; tests edit ``ids`` between operations."""

    def __init__(self, ids=()):
        self.ids = list(ids)
        self.calls = 0

    async def staff_ids(self) -> list[str]:
        self.calls += 1
        return list(self.ids)


def staff(actor_id: str, role: Role = Role.MODERATOR) -> Actor:
    return Actor(id=actor_id, roles=frozenset({role}))


def member(actor_id: str) -> Actor:
    return Actor(id=actor_id, roles=frozenset({Role.USER}))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'modqueue-test.db'}",
        connect_args={"timeout": 15},
    )
    import_all_tables()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    yield factory
    await engine.dispose()


@pytest.fixture
def realtime_bus():
    return RealtimeBus(queue_size=64)


@pytest.fixture
def roster():
    return FakeRoster(["staff-a", "staff-b", "staff-c"])


@pytest.fixture
def evidence_store(tmp_path):
    return LocalEvidenceStorage(tmp_path / "evidence", max_bytes=1024)


@pytest.fixture
def store(session_factory):
    return ReportStore(session_factory, read_attempts=2, base_delay=0)


@pytest.fixture
def mod_log(session_factory):
    return ModerationLog(session_factory)


@pytest.fixture
def fanout(session_factory, roster, realtime_bus):
    return NotificationFanout(session_factory, roster, realtime_bus)


@pytest.fixture
def coordinator(store, mod_log, fanout, realtime_bus, evidence_store):
    return ClaimCoordinator(store, mod_log, fanout, bus=realtime_bus, evidence=evidence_store)


@pytest_asyncio.fixture
async def client(session_factory, realtime_bus, evidence_store):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_bus] = lambda: realtime_bus
    app.dependency_overrides[deps.get_evidence_storage] = lambda: evidence_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client, session_factory):
    """Sign up a user (optionally promoting them) and return (user_id, auth headers)."""

    async def _make(email: str, role: str = "user", password: str = "pass12345"):
        resp = await client.post("/api/v1/auth/signup", json={
            "email": email, "password": password, "display_name": email.split("@")[0],
        })
        assert resp.status_code == 200, resp.text
        data = resp.json()
        user_id = data["user"]["id"]
        if role != "user":
            async with session_factory() as session:
                await session.execute(update(UserRow).where(UserRow.id == user_id).values(role=role))
                await session.commit()
        return user_id, {"Authorization": f"Bearer {data['access_token']}"}

    return _make
