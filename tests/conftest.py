from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from main import app, create_access_token, get_db, get_nasa_client, hash_password

USER_EMAIL = "vera@example.com"
USER_PASSWORD = "stargazer42"


@pytest.fixture(scope="session")
def password_hash():
    return hash_password(USER_PASSWORD)


@pytest.fixture
def user_doc(password_hash):
    return {
        "_id": "64f0c0ffee",
        "name": "Vera Rubin",
        "email": USER_EMAIL,
        "photo_url": "https://example.com/vera.png",
        "password_hash": password_hash,
        "joining_date": datetime(2025, 1, 2, 3, 4, 5),
        "saved_asteroids": [],
    }


@pytest.fixture
def mock_db(user_doc):
    db = MagicMock()

    async def find_user(query, *args, **kwargs):
        return user_doc if query.get("email") == user_doc["email"] else None

    db.users.find_one = AsyncMock(side_effect=find_user)
    db.users.insert_one = AsyncMock(return_value=MagicMock(inserted_id="new-user"))
    db.users.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1))
    db.messages.insert_one = AsyncMock(return_value=MagicMock(inserted_id="msg-1"))
    db.messages.find.return_value.sort.return_value.limit.return_value.to_list = AsyncMock(return_value=[])
    return db


@pytest.fixture
def nasa_client():
    client = MagicMock()
    client.get_feed = AsyncMock()
    client.get_neo_lookup = AsyncMock()
    return client


@pytest.fixture
def make_test_client(mock_db, nasa_client):
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_nasa_client] = lambda: nasa_client

    def factory(email=None):
        cookies = {"user": create_access_token({"sub": email})} if email else None
        return TestClient(app, cookies=cookies)

    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_test_client):
    return make_test_client()


@pytest.fixture
def auth_client(make_test_client):
    return make_test_client(USER_EMAIL)
