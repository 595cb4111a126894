import os

# Must be set before anything imports core.config
os.environ.update({
    "ENV": "testing",
    "DATABASE_URL": "sqlite:///./test.db",
    "SECRET_KEY": "test-secret-key-not-for-production",
    "ALGORITHM": "HS256",
    "ACCESS_TOKEN_EXPIRE_MINUTES": "15",
    "REFRESH_TOKEN_EXPIRE_DAYS": "7",
    "REFRESH_LEEWAY_SECONDS": "60",
    "TOKEN_STORE_BACKEND": "memory",
    "LOCK_BACKEND": "local",
    "INTERNAL_API_KEY": "test-internal-key",
    "SESSION_SWEEP_INTERVAL_SECONDS": "0",
    "LOG_DIR": "",
})

import threading
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from main import app
from core.database import Base
from services.lock_provider import LocalLockProvider, SessionLeases
from services.rotation_cache import InMemoryRotationCache
from services.rotation_service import RotationArbiter
from services.session_service import SessionService
from services.token_service import TokenIssuer
from services.token_store import InMemoryTokenStore, SqlAlchemyTokenStore
from utils.deps import TokenServices, get_services

SECRET_KEY = os.environ["SECRET_KEY"]
INTERNAL_API_KEY = os.environ["INTERNAL_API_KEY"]
LEEWAY = timedelta(seconds=60)


class FakeClock:
    """Controllable UTC clock shared by every component under test."""

    def __init__(self):
        self._now = datetime.now(timezone.utc).replace(microsecond=0)
        self._mutex = threading.Lock()

    def __call__(self) -> datetime:
        with self._mutex:
            return self._now

    def advance(self, seconds: float):
        with self._mutex:
            self._now += timedelta(seconds=seconds)


class CountingStore(InMemoryTokenStore):
    """In-memory store that records how many writes it received."""

    def __init__(self):
        super().__init__()
        self.puts = 0

    def put(self, record):
        self.puts += 1
        super().put(record)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issuer(clock) -> TokenIssuer:
    return TokenIssuer(
        signing_key=SECRET_KEY,
        algorithm="HS256",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def cache(clock) -> InMemoryRotationCache:
    return InMemoryRotationCache(clock=clock)


@pytest.fixture
def leases() -> SessionLeases:
    return SessionLeases(LocalLockProvider(), ttl_ms=5000, timeout_seconds=0.3,
                         retry_base_ms=5, retry_max_ms=50)


@pytest.fixture
def arbiter(issuer, store, leases, cache, clock) -> RotationArbiter:
    return RotationArbiter(issuer, store, leases, cache, leeway=LEEWAY, clock=clock)


@pytest.fixture
def sessions(issuer, store, leases, cache, clock) -> SessionService:
    return SessionService(issuer, store, leases, cache, clock=clock)


@pytest.fixture
def services(issuer, store, leases, cache, arbiter, sessions) -> TokenServices:
    return TokenServices(issuer, store, leases, cache, arbiter, sessions)


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Fresh SQLite schema for each test, dropped afterwards.
    """
    engine = create_engine("sqlite:///./test_sessions.db", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlAlchemyTokenStore:
    return SqlAlchemyTokenStore(session_factory)


@pytest.fixture
async def client(services):
    """
    HTTP client against the app with the test service container injected.
    """
    app.dependency_overrides[get_services] = lambda: services

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict:
    return {"X-Internal-Api-Key": INTERNAL_API_KEY}


@pytest.fixture
async def signed_in(client, internal_headers) -> dict:
    """A session for subject user-1 started through the API."""
    response = await client.post(
        "/auth/sessions",
        json={"subject_id": "user-1", "claims": {"role": "customer"}},
        headers=internal_headers,
    )
    assert response.status_code == 201
    return response.json()
