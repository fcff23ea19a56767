"""Shared fixtures: app client, tokens and Cassandra mocks."""

from unittest.mock import AsyncMock, Mock
from uuid import UUID, uuid4

import pytest
from cassandra.cluster import Session
from fastapi.testclient import TestClient

from src.auth.permissions import UserRole
from src.main import app as fastapi_app

from .factories import FakeResult, bearer


SERVICE_NAMES = ("tracking_service", "security_service", "alert_service", "video_cache")


@pytest.fixture
def mock_session():
    """Mock Cassandra session."""
    session = Mock(spec=Session)
    # Prepared statements are opaque to the services under test
    session.prepare = Mock(return_value=Mock())
    # Make aexecute awaitable (cassandra-asyncio-driver)
    session.aexecute = AsyncMock(return_value=FakeResult())
    return session


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def video_lesson_id() -> UUID:
    return uuid4()


@pytest.fixture
def admin_id() -> UUID:
    return uuid4()


@pytest.fixture
def app():
    """Application without lifespan; tests install services on ``app.state``."""
    for name in SERVICE_NAMES:
        if hasattr(fastapi_app.state, name):
            delattr(fastapi_app.state, name)
    yield fastapi_app
    for name in SERVICE_NAMES:
        if hasattr(fastapi_app.state, name):
            delattr(fastapi_app.state, name)


@pytest.fixture
def client(app) -> TestClient:
    """Test client (lifespan not started, so no database connections)."""
    return TestClient(app)


@pytest.fixture
def student_headers(user_id) -> dict[str, str]:
    return bearer(user_id)


@pytest.fixture
def admin_headers(admin_id) -> dict[str, str]:
    return bearer(admin_id, UserRole.ADMIN)
