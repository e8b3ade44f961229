import os

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SEED_ENABLED"] = "1"
os.environ["JWT_SECRET"] = "test-secret"

import mongomock
import pytest

import database

# must be in place before main/auth import `db`
database.db = mongomock.MongoClient()["storefront_test"]

from fastapi.testclient import TestClient

import main
from auth import create_token, hash_password
from database import create_document
from schemas import Product, User


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(main.app)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _make_user(name, email, role="user"):
    user_id = create_document("user", User(name=name, email=email, password_hash=hash_password("secret1"), role=role))
    return user_id, bearer(create_token(user_id))


@pytest.fixture
def user():
    """(user_id, auth headers) for a regular shopper."""
    return _make_user("Asha", "asha@example.com")


@pytest.fixture
def other_user():
    return _make_user("Ravi", "ravi@example.com")


@pytest.fixture
def admin():
    return _make_user("Admin", "admin@example.com", role="admin")


@pytest.fixture
def make_product():
    def _make(**overrides):
        data = {
            "name": "USB-C Charger",
            "description": "65W fast charger",
            "price": 1000.0,
            "category": "Electronics",
            "image": "https://example.com/charger.jpg",
            "stock": 5,
        }
        data.update(overrides)
        return create_document("product", Product(**data))
    return _make
