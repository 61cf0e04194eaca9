"""
Test configuration for simportal tests.

Every test gets a fresh SQLite database file (aiosqlite) created from
Base.metadata, so the partial unique index on training_runs raises a real
unique violation. The pool holds a single connection: concurrent store calls
queue for it instead of tripping SQLite's lock handling. Time is driven by
FrozenClock; Redis is a MagicMock with an AsyncMock SET.

Run from the repository root: pytest -v
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import simportal.models  # noqa: F401  registers tables on Base.metadata
from simportal.auth.schemas import (
    Identity,
    PlatformContext,
    Provenance,
    Role,
    SessionClaims,
)
from simportal.auth.session_store import SessionStore, session_type_for
from simportal.auth.token_codec import TokenCodec
from simportal.config import Settings
from simportal.database import Base, create_engine_and_sessionmaker
from simportal.store import KeyedStore, StoreError, StoreResult
from simportal.training.engine import TrainingEngine

TEST_SECRET = "simportal-test-secret-key-with-at-least-32-chars"
SESSION_COOKIE = "session_token"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def cookie_header(token: str, name: str = SESSION_COOKIE) -> dict:
    return {"Cookie": f"{name}={token}"}


def session_cookie(response, name: str = SESSION_COOKIE) -> Optional[str]:
    """Value of the session cookie in a response's Set-Cookie headers, if any."""
    for header in response.headers.get_list("set-cookie"):
        key, _, rest = header.partition("=")
        if key.strip() == name:
            return rest.split(";", 1)[0].strip('"')
    return None


def down_store() -> MagicMock:
    """KeyedStore stand-in where every call reports an infrastructure failure."""
    down = StoreResult(error=StoreError("connection refused"))
    store = MagicMock()
    store.find_one = AsyncMock(return_value=down)
    store.find_all = AsyncMock(return_value=down)
    store.insert = AsyncMock(return_value=down)
    store.update_where = AsyncMock(return_value=down)
    store.count_where = AsyncMock(return_value=down)
    return store


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    """(engine, sessionmaker) over a throwaway SQLite file."""
    engine, sessionmaker = create_engine_and_sessionmaker(
        f"sqlite+aiosqlite:///{tmp_path / 'simportal-test.db'}",
        pool_size=1,
        max_overflow=0,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, sessionmaker
    await engine.dispose()


@pytest.fixture
def store(db) -> KeyedStore:
    return KeyedStore(db[1], timeout_seconds=5.0)


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def session_store(store, codec, clock) -> SessionStore:
    return SessionStore(
        store, codec, duration_seconds=3600, refresh_threshold_seconds=300, clock=clock
    )


@pytest.fixture
def training_engine(store, clock) -> TrainingEngine:
    return TrainingEngine(store, clock=clock)


@pytest.fixture
def make_identity(clock):
    """Factory for Identity objects without going through a token."""

    def _make(
        email: str = "aroha@example.ac.nz",
        session_id: str = "sess_1",
        role: Role = Role.learner,
        provenance: Provenance = Provenance.platform,
        full_name: Optional[str] = "Aroha Ngata",
        institution: Optional[str] = "Wellington Polytechnic",
        user_id: str = "lms-user-1",
    ) -> Identity:
        claims = SessionClaims(
            session_id=session_id,
            user_id=user_id,
            email=email,
            role=role,
            session_type=session_type_for(role, provenance),
            is_platform_launched=provenance == Provenance.platform,
            issued_at=clock(),
            expires_at=clock() + timedelta(hours=1),
        )
        context = PlatformContext(full_name=full_name, institution=institution)
        return Identity.from_claims(claims, context=context)

    return _make


@pytest.fixture
def redis() -> MagicMock:
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    return client


@pytest_asyncio.fixture
async def app(db, clock, redis):
    """The real FastAPI app wired to the test database, clock and Redis mock."""
    from simportal.main import app as fastapi_app, init_services

    config = Settings(secret_key=TEST_SECRET, session_cookie_name=SESSION_COOKIE)
    init_services(fastapi_app, db[0], db[1], config=config, clock=clock)
    fastapi_app.state.redis = redis
    yield fastapi_app


@pytest_asyncio.fixture
async def client(app):
    """Async httpx client using ASGI transport — no live server needed."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
