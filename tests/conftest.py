# tests/conftest.py
import os
from typing import AsyncGenerator

# Settings are read once at import time, so the test environment goes in first.
TEST_ENV = {
    "PROJECT_NAME": "OpsConsole Test",
    "API_V1_STR": "/api/v1",
    "LOG_LEVEL": "DEBUG",
    "MONGODB_URI": "mongodb://localhost:27017/opsconsole_test",
    "SECRET_KEY": "test-secret-key",
    "ALGORITHM": "HS256",
    "APP_TIMEZONE": "Africa/Nairobi",
    "OLLAMA_BASE_URL": "http://ollama.internal",
    "OLLAMA_MODEL": "test-model",
    "OLLAMA_CONTEXT_WINDOW": "1000",
    "AGENT_PLANNER_ENABLED": "false",
    "WHATSAPP_PROVIDER": "custom",
    "WHATSAPP_CUSTOM_BASE_URL": "https://wa.internal/api",
    "WHATSAPP_CUSTOM_API_KEY": "test-wa-key",
    "SENDGRID_API_KEY": "test-sendgrid-key",
    "SENDGRID_FROM_EMAIL": "noreply@realdeal.co.ke",
    "RATE_LIMIT_ENABLED": "false",
}
os.environ.update(TEST_ENV)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from opsconsole.core import security
from opsconsole.core.database import get_database
from opsconsole.modules.users.models import UserInDB
from opsconsole.modules.users.repository import UserRepository
from opsconsole.modules.users.services import UserService

TEST_PASSWORD = "s3cret-pass"


@pytest.fixture(scope="function")
def db_client():
    client = AsyncMongoMockClient()
    db_name = f"test_db_{os.urandom(4).hex()}"
    yield client[db_name]


@pytest.fixture(scope="function")
def app(db_client):
    from opsconsole.main import app as fastapi_app

    async def override_get_database():
        return db_client

    fastapi_app.dependency_overrides[get_database] = override_get_database
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest_asyncio.fixture(scope="function")
async def test_user(db_client) -> UserInDB:
    return await UserService().register("ops@realdeal.co.ke", TEST_PASSWORD, UserRepository(db_client), name="Ops")


@pytest_asyncio.fixture(scope="function")
async def other_user(db_client) -> UserInDB:
    return await UserService().register("agent@realdeal.co.ke", TEST_PASSWORD, UserRepository(db_client), name="Agent")


def _auth_headers(user: UserInDB) -> dict:
    token = security.create_access_token(data={"sub": user.email, "uid": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_for():
    return _auth_headers


@pytest_asyncio.fixture(scope="function")
async def authenticated_client(test_client, test_user) -> AsyncClient:
    test_client.headers.update(_auth_headers(test_user))
    return test_client


class RecordingDispatcher:
    """Collects task dispatches instead of enqueueing Celery jobs."""

    def __init__(self):
        self.calls = []

    def __call__(self, task_id, eta=None):
        self.calls.append((task_id, eta))


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def no_sleep():
    async def sleep(_seconds: float) -> None:
        return None

    return sleep
