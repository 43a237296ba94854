from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, USER

from src.claims_api.auth_utils import (
    create_user_access_token,
    decode_user_id,
    hash_password,
    hash_reset_token,
    new_reset_token,
    verify_password,
)


@pytest.fixture(scope="module")
def stored_hash():
    return hash_password("correct-horse")


def user_row(**extra):
    row = dict(USER)
    row.update(extra)
    return row


class TestTokens:
    def test_round_trip_user_id(self):
        assert decode_user_id(create_user_access_token(42, "admin", "a@example.com")) == 42

    def test_garbage_token(self):
        with pytest.raises(ValueError):
            decode_user_id("not.a.jwt")

    def test_password_hashing(self, stored_hash):
        assert stored_hash != "correct-horse"
        assert verify_password("correct-horse", stored_hash)
        assert not verify_password("wrong", stored_hash)

    def test_reset_token_digest(self):
        token, digest, expires_at = new_reset_token()
        assert digest == hash_reset_token(token)
        assert token not in digest
        assert expires_at > datetime.now(timezone.utc)


class TestEndpoints:
    def test_health(self, client):
        assert client.get("/").json() == {"message": "Welcome to the Insurance Claims API"}

    def test_register(self, client, fake_db):
        fake_db.on("INSERT INTO users", lambda params: user_row(email=params[0], first_name=params[2]))
        response = client.post(
            "/api/auth/register",
            json={"email": "New@Example.com", "password": "longenough", "first_name": "Nia", "last_name": "N"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["email"] == "new@example.com"
        assert body["role"] == "user"
        assert decode_user_id(body["access_token"]) == USER["id"]
        [(_, params)] = fake_db.executed("INSERT INTO users")
        assert params[1] != "longenough"
        [(_, profile_params)] = fake_db.executed("INSERT INTO user_profiles")
        assert profile_params[1].adapted == {"name": "Nia N"}
        assert profile_params[2].adapted["status"] == "active"

    def test_register_existing(self, client, fake_db):
        fake_db.on("SELECT id FROM users WHERE email", {"id": 2})
        response = client.post(
            "/api/auth/register",
            json={"email": "user@example.com", "password": "longenough", "first_name": "U", "last_name": "U"},
        )
        assert response.status_code == 409

    def test_register_short_password(self, client, fake_db):
        response = client.post(
            "/api/auth/register",
            json={"email": "x@example.com", "password": "short", "first_name": "U", "last_name": "U"},
        )
        assert response.status_code == 422

    def test_login(self, client, fake_db, stored_hash):
        fake_db.on("password_hash FROM users WHERE email", user_row(password_hash=stored_hash))
        response = client.post("/api/auth/login", json={"email": "user@example.com", "password": "correct-horse"})
        assert response.status_code == 200
        assert response.json()["token_type"] == "bearer"
        assert fake_db.executed("SET last_login_at=NOW()")

    def test_login_wrong_password(self, client, fake_db, stored_hash):
        fake_db.on("password_hash FROM users WHERE email", user_row(password_hash=stored_hash))
        response = client.post("/api/auth/login", json={"email": "user@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"
        assert not fake_db.executed("SET last_login_at=NOW()")

    def test_login_inactive(self, client, fake_db, stored_hash):
        fake_db.on("password_hash FROM users WHERE email", user_row(password_hash=stored_hash, is_active=False))
        response = client.post("/api/auth/login", json={"email": "user@example.com", "password": "correct-horse"})
        assert response.status_code == 401

    def test_me_with_real_token(self, client, fake_db):
        fake_db.on("FROM users WHERE id=%s", lambda params: user_row() if params[0] == USER["id"] else None)
        token = create_user_access_token(USER["id"], "user", USER["email"])
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["email"] == USER["email"]

    def test_me_unknown_user(self, client, fake_db):
        token = create_user_access_token(77, "user", "ghost@example.com")
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "User inactive or not found"

    def test_me_bad_token(self, client, fake_db):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_change_password(self, client, fake_db, as_user, stored_hash):
        fake_db.on("SELECT password_hash FROM users WHERE id", {"password_hash": stored_hash})
        bad = client.put(
            "/api/auth/change-password",
            json={"current_password": "wrong", "new_password": "another-one"},
        )
        assert bad.status_code == 401
        ok = client.put(
            "/api/auth/change-password",
            json={"current_password": "correct-horse", "new_password": "another-one"},
        )
        assert ok.status_code == 200
        assert len(fake_db.executed("UPDATE users SET password_hash")) == 1

    def test_forgot_password_same_answer_for_unknown_email(self, client, fake_db):
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        fake_db.on("SELECT id FROM users WHERE email", {"id": 2})
        known = client.post("/api/auth/forgot-password", json={"email": "user@example.com"})
        assert unknown.json() == known.json()
        [(_, params)] = fake_db.executed("SET reset_token_hash=%s")
        assert len(params[0]) == 64

    def test_reset_password(self, client, fake_db):
        token = "reset-me"
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        fake_db.on(
            "WHERE reset_token_hash=%s",
            lambda params: {"id": 2, "reset_token_expires_at": expires} if params[0] == hash_reset_token(token) else None,
        )
        response = client.post("/api/auth/reset-password", json={"token": token, "new_password": "brand-new-pw"})
        assert response.status_code == 200
        [(sql, _)] = fake_db.executed("reset_token_hash=NULL")
        assert sql.startswith("UPDATE users")

        wrong = client.post("/api/auth/reset-password", json={"token": "other", "new_password": "brand-new-pw"})
        assert wrong.status_code == 400
        assert wrong.json()["detail"] == "Invalid or expired token"

    def test_reset_password_expired(self, client, fake_db):
        fake_db.on("WHERE reset_token_hash=%s", {"id": 2, "reset_token_expires_at": NOW})
        response = client.post("/api/auth/reset-password", json={"token": "t", "new_password": "brand-new-pw"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Reset token has expired"
        assert not fake_db.executed("reset_token_hash=NULL")
