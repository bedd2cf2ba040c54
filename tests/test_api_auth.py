from __future__ import annotations

from detailpage_genai.auth import decode_access_token


def test_register_creates_user_and_returns_token(client, store):
    resp = client.post("/api/auth/register", json={"email": "dave@example.com", "password": "pw-1234", "name": "Dave"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["user"]["email"] == "dave@example.com"
    assert "password_hash" not in body["user"]
    assert decode_access_token(body["token"]).id == body["user"]["id"]
    stored = store.users[body["user"]["id"]]
    assert stored["password_hash"] != "pw-1234"


def test_register_rejects_existing_email(client, user):
    resp = client.post("/api/auth/register", json={"email": user.email, "password": "x"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "User already exists"


def test_register_requires_email_and_password(client):
    resp = client.post("/api/auth/register", json={"email": "only@example.com"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Email and password are required"


def test_login_with_valid_credentials(client, user):
    resp = client.post("/api/auth/login", json={"email": user.email, "password": "secret-pw"})
    assert resp.status_code == 200
    assert resp.json()["user"]["id"] == user.id


def test_login_rejects_bad_password_and_unknown_user(client, user):
    assert client.post("/api/auth/login", json={"email": user.email, "password": "wrong"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "x"}).status_code == 401


def test_me_requires_token(client, auth_headers, user):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 401

    resp = client.get("/api/auth/me", headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json() == {"id": user.id, "email": user.email, "name": "alice", "role": "user"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
