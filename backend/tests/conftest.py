"""
Shared pytest fixtures for the chunked uploads backend tests.

Provides:
- In-memory backends (blob store, session store, notifier) with a coordinator
- Redis-backed stores on FakeRedis (Lua scripting enabled)
- FastAPI test client wired to in-memory backends
- Sample chunk payloads
"""

import os
from typing import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from minio.error import S3Error

# Set test environment variables BEFORE importing app modules
# Only set defaults if not already set (allows overriding via environment)
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("MINIO_HOST", "localhost")
os.environ.setdefault("MINIO_PORT", "9000")
os.environ.setdefault("MINIO_ACCESS_KEY", "test")
os.environ.setdefault("MINIO_SECRET_KEY", "test")
os.environ.setdefault("BACKEND", "memory")
os.environ.setdefault("DEBUG", "false")

from chunked_uploads.config import Settings
from chunked_uploads.services.container import ServiceContainer
from chunked_uploads.services.coordinator import UploadCoordinator
from chunked_uploads.services.memory import (
    InMemoryBlobStore,
    InMemoryNotifier,
    InMemorySessionStore,
)
from chunked_uploads.services.notifier import RedisStreamNotifier
from chunked_uploads.services.retry import RetryProfile
from chunked_uploads.services.session_store import RedisSessionStore

# No sleeping between attempts in tests
FAST_PROFILE = RetryProfile(max_attempts=3, base_delay=0.0, max_delay=0.0)


# ─── Test Settings ───────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Test settings with predictable values."""
    return Settings(
        redis_host="localhost",
        redis_port=6379,
        redis_password="",
        minio_host="localhost",
        minio_port=9000,
        minio_access_key="test",
        minio_secret_key="test",
        backend="memory",
        debug=False,
    )


# ─── In-memory Backends ──────────────────────────────────────────────────────


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def coordinator(blob_store, session_store, notifier) -> UploadCoordinator:
    return UploadCoordinator(blob_store, session_store, notifier)


@pytest.fixture
def services(blob_store, session_store, notifier) -> ServiceContainer:
    return ServiceContainer.from_backends(blob_store, session_store, notifier)


# ─── Redis-backed Stores (FakeRedis) ─────────────────────────────────────────


@pytest.fixture
def fake_redis():
    """Provide an isolated async FakeRedis instance (needs lupa for scripts)."""
    import fakeredis

    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_session_store(fake_redis) -> RedisSessionStore:
    return RedisSessionStore(fake_redis, profile=FAST_PROFILE, health_profile=FAST_PROFILE)


@pytest.fixture
def redis_notifier(fake_redis) -> RedisStreamNotifier:
    return RedisStreamNotifier(
        fake_redis,
        "test:notifications",
        dedup_window_seconds=300,
        profile=FAST_PROFILE,
        health_profile=FAST_PROFILE,
    )


# ─── MinIO Errors ────────────────────────────────────────────────────────────


class FakeS3Error(S3Error):
    """Real S3Error subclass that skips the client-version-specific constructor."""

    def __init__(self, code: str, status: int):
        Exception.__init__(self, code)
        self._fake_code = code
        self._fake_status = status

    @property
    def code(self):
        return self._fake_code

    @property
    def response(self):
        return MagicMock(status=self._fake_status)

    def __str__(self) -> str:
        return f"S3 operation failed; code: {self._fake_code}, status: {self._fake_status}"


@pytest.fixture
def make_s3_error():
    """Factory for S3 errors with a given code and HTTP status."""
    return FakeS3Error


# ─── FastAPI Test Client ─────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client whose app uses the in-memory backends."""
    from chunked_uploads.main import create_app
    from chunked_uploads.rate_limit import limiter

    app = create_app(services=services)
    limiter.enabled = False

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    limiter.enabled = True


# ─── Sample Data ─────────────────────────────────────────────────────────────


@pytest.fixture
def chunks() -> list[bytes]:
    """Three distinct chunk payloads."""
    return [bytes([i]) * 1024 + f"chunk-{i}".encode() for i in range(3)]


@pytest.fixture
def anyio_backend():
    """Specify the async backend for pytest-asyncio."""
    return "asyncio"
