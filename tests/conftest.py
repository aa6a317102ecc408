"""Shared fixtures: an app wired to an in-memory store, tokens and seed documents."""

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import issue_token
from config import Settings
from database import MemoryStore
from main import create_app


@pytest.fixture
def settings():
    return Settings(secret_key="test-secret", log_file=None)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def app(settings, store):
    return create_app(settings, store)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_token(settings):
    return issue_token(settings, str(ObjectId()), is_admin=True)


@pytest.fixture
def user_token(settings):
    return issue_token(settings, str(ObjectId()), is_admin=False)


@pytest.fixture
def genre(store):
    return store.insert("genres", {"name": "genre1"})


@pytest.fixture
def customer(store):
    return store.insert("customers", {"name": "customer1", "phone": "12345", "isGold": False})


@pytest.fixture
def movie(store, genre):
    return store.insert("movies", {
        "title": "movie1",
        "genre": {"_id": genre["_id"], "name": genre["name"]},
        "numberInStock": 1,
        "dailyRentalRate": 2,
    })
