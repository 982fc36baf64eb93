"""
Shared pytest fixtures.

Every test gets its own pair of SQLite files under tmp_path.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from notes_backend.config import Settings
from notes_backend.history import HistoryStore
from notes_backend.main import create_app
from notes_backend.services import AuthService, Notebook, Storage


def run(coro):
    """Drive a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        users_db_path=str(tmp_path / "users.db"),
        notes_db_path=str(tmp_path / "notes.db"),
    )


@pytest.fixture
def auth(settings):
    return AuthService(settings.users_db_path)


@pytest.fixture
def storage(settings):
    return Storage(settings.notes_db_path)


@pytest.fixture
def notebook(storage):
    return Notebook(storage)


@pytest.fixture
def history(auth, storage):
    return HistoryStore(auth, storage)


@pytest.fixture
def user_id(auth):
    return auth.add_user("alice@mail.com", "secret123")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def signup(client, email="alice@mail.com", password="secret123"):
    """Register and log in, returning request headers for the new session."""
    r = client.post("/register", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    r = client.post("/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def headers(client):
    return signup(client)
