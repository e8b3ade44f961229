from datetime import timedelta

import jwt
from pymongo.errors import DuplicateKeyError

from config import JWT_ALGORITHM, JWT_SECRET
from database import utcnow


def register(client, email="meera@example.com", password="secret1"):
    return client.post("/api/auth/register", json={"name": "Meera", "email": email, "password": password})


def test_register_returns_token_and_user(client, db):
    resp = register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["token"]
    assert body["data"]["user"]["role"] == "user"
    assert "password_hash" not in body["data"]["user"]

    stored = db["user"].find_one({"email": "meera@example.com"})
    assert stored["password_hash"] != "secret1"


def test_register_duplicate_email_is_case_insensitive(client):
    register(client)
    resp = register(client, email="Meera@Example.com")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "User already exists"}


def test_register_rejects_short_password(client):
    resp = register(client, password="123")
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert "password" in resp.json()["message"]


def test_login(client):
    register(client)
    resp = client.post("/api/auth/login", json={"email": "meera@example.com", "password": "secret1"})
    assert resp.status_code == 200
    token = resp.json()["data"]["token"]

    profile = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["data"]["email"] == "meera@example.com"


def test_login_wrong_password(client):
    register(client)
    resp = client.post("/api/auth/login", json={"email": "meera@example.com", "password": "nope123"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid email or password"


def test_profile_requires_token(client):
    resp = client.get("/api/auth/profile")
    assert resp.status_code == 401
    assert resp.json()["message"] == "Not authorized, no token"


def test_profile_rejects_bad_token(client):
    resp = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Not authorized, token failed"


def test_profile_rejects_expired_token(client, user):
    user_id, _ = user
    token = jwt.encode(
        {"sub": user_id, "exp": utcnow() - timedelta(minutes=1)}, JWT_SECRET, algorithm=JWT_ALGORITHM,
    )
    resp = client.get("/api/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_token_for_deleted_user(client, db, user):
    user_id, headers = user
    db["user"].delete_many({})
    assert client.get("/api/auth/profile", headers=headers).status_code == 401


def test_update_profile(client, user):
    _, headers = user
    resp = client.put("/api/auth/profile", json={"name": "Asha K", "password": "newpass1"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["name"] == "Asha K"

    login = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "newpass1"})
    assert login.status_code == 200


def test_update_profile_email_taken(client, user, other_user):
    _, headers = user
    resp = client.put("/api/auth/profile", json={"email": "ravi@example.com"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email already in use"


def test_admin_route_forbidden_for_shoppers(client, user):
    _, headers = user
    resp = client.get("/api/orders", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["message"] == "Not authorized as admin"


def test_register_race_on_unique_email(client, monkeypatch):
    import main

    def insert_conflict(collection_name, data):
        raise DuplicateKeyError("E11000 duplicate key error")

    monkeypatch.setattr(main, "create_document", insert_conflict)
    resp = register(client)
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "User already exists"}


def test_profile_email_race(client, user, monkeypatch):
    import main
    _, headers = user

    def update_conflict(collection_name, id_str, changes):
        raise DuplicateKeyError("E11000 duplicate key error")

    monkeypatch.setattr(main, "update_document", update_conflict)
    resp = client.put("/api/auth/profile", json={"email": "late@example.com"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email already in use"
