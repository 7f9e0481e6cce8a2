"""
Pytest configuration and shared fixtures.

Settings are read from the environment when despachante.config is first
imported, so the test database, uploads directory and disabled outbound
integrations are set here before any despachante import.
"""

import os
import tempfile

TEST_DIR = tempfile.mkdtemp(prefix="despachante-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(TEST_DIR, 'test.db')}"
os.environ["UPLOADS_DIR"] = os.path.join(TEST_DIR, "uploads")
os.environ["DRIVE_TOKEN_PATH"] = os.path.join(TEST_DIR, "drive-token.json")
os.environ["RESPONSE_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
for key in (
    "ZAPI_INSTANCE_ID",
    "ZAPI_TOKEN",
    "ZAPI_API_URL",
    "ZAPI_CLIENT_TOKEN",
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "PIX_KEY",
):
    os.environ.pop(key, None)

import httpx  # noqa: E402
import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from despachante.config import get_settings  # noqa: E402
get_settings.cache_clear()

from despachante import models  # noqa: E402,F401
from despachante.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture
def db():
    """Fresh tables and a session for repository-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it answered."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)


def mock_http(handler) -> tuple[httpx.AsyncClient, RecordingTransport]:
    """AsyncClient whose requests are answered by handler."""
    transport = RecordingTransport(handler)
    return httpx.AsyncClient(transport=transport), transport


@pytest.fixture(name="mock_http")
def mock_http_fixture():
    """Factory for AsyncClients backed by a request handler."""
    return mock_http


@pytest.fixture
def client():
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient

    from despachante.main import app

    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)
