import sys
import os
from contextlib import contextmanager

# Ensure src directory is in Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from pulsewatch.config import Settings
from pulsewatch.database import Base, get_db
from pulsewatch.main import app, build_services
from pulsewatch.models.monitor import Monitor
from pulsewatch.models.user import User
from pulsewatch.models.workspace import Workspace, WorkspaceMember


# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False)
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

# Every session shares one in-memory connection, so jobs run one at a time
TEST_SETTINGS = Settings(
    check_retry_delay_seconds=0,
    queue_retry_backoff_seconds=0,
    worker_concurrency=1,
    run_scheduler=False,
    run_workers=False,
    smtp_host="smtp.example.com",
    twilio_account_sid="",
    twilio_auth_token="",
    telegram_bot_token="",
)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db():
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def session_factory():
    return test_session_factory


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest_asyncio.fixture
async def services():
    """Queue, worker, incident manager and friends wired against the test database."""
    build_services(app, test_session_factory, TEST_SETTINGS)
    await app.state.queue.open(start_workers=False)
    yield app.state
    await app.state.queue.close()


@pytest_asyncio.fixture
async def client(services):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def authenticated_client(client: AsyncClient):
    """Create a user and return an authenticated client."""
    signup_data = {
        "name": "Test User",
        "email": "test@example.com",
        "password": "testpassword123",
        "workspace_slug": "test-workspace",
    }
    response = await client.post("/auth/signup", json=signup_data)
    assert response.status_code == 201

    # Extract cookies from signup response
    cookies = response.cookies
    client.cookies.update(cookies)
    return client


@pytest_asyncio.fixture
async def workspace():
    """A workspace with a single owner, created straight in the database."""
    async with test_session_factory() as db:
        user = User(email="owner@example.com", password_hash="not-a-real-hash", name="Owner")
        ws = Workspace(name="Acme", slug="acme")
        db.add_all([user, ws])
        await db.flush()
        db.add(WorkspaceMember(workspace_id=ws.id, user_id=user.id, role="owner"))
        await db.commit()
    return ws


@pytest.fixture
def make_monitor(workspace):
    async def _make(**fields) -> Monitor:
        data = {
            "name": "Example",
            "type": "http",
            "url": "https://example.com",
            "retry_count": 1,
            **fields,
        }
        async with test_session_factory() as db:
            monitor = Monitor(workspace_id=workspace.id, **data)
            db.add(monitor)
            await db.commit()
        return monitor

    return _make


def http_response(status_code: int = 200, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


@contextmanager
def _patched_httpx(module: str, response=None, side_effect=None):
    with patch(f"{module}.httpx.AsyncClient") as MockClient:
        mock_client_instance = AsyncMock()
        mock_client_instance.request = AsyncMock(return_value=response, side_effect=side_effect)
        mock_client_instance.post = AsyncMock(return_value=response, side_effect=side_effect)
        mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
        mock_client_instance.__aexit__ = AsyncMock(return_value=False)
        MockClient.return_value = mock_client_instance
        yield mock_client_instance


@pytest.fixture
def mock_httpx():
    """``with mock_httpx("pulsewatch.checker", http_response(500)) as client: ...``"""
    return _patched_httpx


@pytest.fixture
def make_response():
    return http_response
