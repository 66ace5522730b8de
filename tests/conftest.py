import os
import tempfile

# Settings are read when main is imported, so the environment goes first
_UPLOAD_DIR = tempfile.mkdtemp(prefix="drivertasks-uploads-")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-that-is-long-enough-123456")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["UPLOAD_DIR"] = _UPLOAD_DIR
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-password-123"
os.environ["REDIS_ENABLED"] = "false"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["LOG_FORMAT"] = "console"
os.environ["LOG_LEVEL"] = "WARNING"

from typing import Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from core.config import Settings
from core.container import container
from core.database import Database

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-password-123"


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def client() -> Iterator[TestClient]:
    """App client with a fresh in-memory database and cache per test."""
    container.reset_singletons()
    from main import app

    with TestClient(app) as test_client:
        yield test_client
    container.reset_singletons()


def login(client: TestClient, username: str, password: str) -> str:
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client) -> Dict[str, str]:
    return bearer(login(client, ADMIN_USERNAME, ADMIN_PASSWORD))


def create_user(client: TestClient, admin_headers: Dict[str, str], username: str,
                role: str = "data_manager", password: str = "user-password-123") -> Dict:
    response = client.post("/api/users", headers=admin_headers, json={
        "username": username,
        "email": f"{username}@example.com",
        "password": password,
        "role": role,
    })
    assert response.status_code == 201, response.text
    return response.json()["user"]
