"""
tests/conftest.py -- Shared test fixtures for Zorem unit and integration tests.

This module provides:
  - make_settings(): Settings with a fixed secret and no .env file
  - clock: FakeClock every service reads time through
  - engine: isolated named shared-memory SQLite DB per test
  - room_service / viewer_service / auth_service / upload_bridge: services
    wired exactly like the lifespan wires them
  - storage / mailer: recording fakes for S3 and Resend
  - client: TestClient over create_app() with the same fakes injected

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG is set before any application import so a stray get_settings() call
auto-generates SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from dataclasses import dataclass, field

# Set DEBUG before any core import so get_settings() can auto-generate
# SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService
from core.clock import FakeClock
from core.config import Settings
from core.database import create_db_engine
from core.mailer import Mailer
from core.ratelimit import MemoryBucketStore, RateLimiter
from media.uploads import UploadBridge
from rooms.service import RoomService
from rooms.store import RoomStore
from rooms.viewers import ViewerService

TEST_SECRET = "test-secret-key-with-at-least-32-characters!!"


def memory_db_url() -> str:
    return f"sqlite:///file:zorem_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Settings for tests. Generous sensitive limit unless a test overrides it."""
    values = {
        "secret_key": TEST_SECRET,
        "debug": True,
        "database_url": memory_db_url(),
        "frontend_url": "http://frontend.example.com",
        "rate_limit_sensitive": "50/15 minutes",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeStorage:
    """ObjectStorage that signs nothing and remembers what it was asked for."""

    puts: list[tuple[str, str, int]] = field(default_factory=list)
    gets: list[tuple[str, int]] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def presign_put(self, key: str, content_type: str, ttl: int) -> str:
        self.puts.append((key, content_type, ttl))
        return f"https://bucket.example.com/{key}?X-Amz-Expires={ttl}&method=PUT"

    def presign_get(self, key: str, ttl: int) -> str:
        self.gets.append((key, ttl))
        return f"https://bucket.example.com/{key}?X-Amz-Expires={ttl}"

    def delete(self, key: str) -> None:
        self.deleted.append(key)


@dataclass
class RecordingTransport:
    sent: list[dict] = field(default_factory=list)
    fail: bool = False

    def deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if self.fail:
            raise ConnectionError("resend unreachable")
        self.sent.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body})


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(settings: Settings):
    eng = create_db_engine(settings.database_url)
    yield eng
    eng.dispose()


@pytest.fixture
def limiter(settings: Settings, clock: FakeClock) -> RateLimiter:
    return RateLimiter.from_settings(settings, store=MemoryBucketStore(), clock=clock)


@pytest.fixture
def room_store(engine) -> RoomStore:
    return RoomStore(engine)


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def room_service(room_store: RoomStore, settings: Settings, limiter: RateLimiter, clock: FakeClock) -> RoomService:
    return RoomService(room_store, settings, limiter=limiter, clock=clock)


@pytest.fixture
def viewer_service(room_store: RoomStore, room_service: RoomService, clock: FakeClock) -> ViewerService:
    return ViewerService(room_store, room_service, clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def mailer(transport: RecordingTransport) -> Mailer:
    return Mailer(transport)


@pytest.fixture
def auth_service(
    user_store: UserStore,
    settings: Settings,
    mailer: Mailer,
    limiter: RateLimiter,
    clock: FakeClock,
) -> AuthService:
    return AuthService(user_store, TokenService(settings), settings, mailer=mailer, limiter=limiter, clock=clock)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def upload_bridge(room_store: RoomStore, storage: FakeStorage, settings: Settings, clock: FakeClock) -> UploadBridge:
    return UploadBridge(room_store, storage, settings, clock=clock)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app_settings() -> Settings:
    """Settings for the HTTP app. Override in a module to tighten limits."""
    return make_settings()


@pytest.fixture
def client(
    app_settings: Settings,
    clock: FakeClock,
    storage: FakeStorage,
    mailer: Mailer,
) -> Generator[TestClient, None, None]:
    """TestClient over a fresh app: real routes, fake clock, storage and email."""
    app = create_app(app_settings, clock=clock, storage=storage, mailer=mailer, bucket_store=MemoryBucketStore())
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


def sign_up(client: TestClient, email: str = "owner@example.com", password: str = "correct-horse-1") -> dict:
    """Register an owner and return {"Authorization": "Bearer ..."} headers."""
    resp = client.post("/api/v1/auth/sign-up", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def owner_headers(client: TestClient) -> dict:
    return sign_up(client)


@pytest.fixture
def register(client: TestClient):
    """Return a helper that registers another owner on the same app."""

    def _register(email: str, password: str = "correct-horse-1") -> dict:
        return sign_up(client, email, password)

    return _register
