import pytest

from conftest import ADMIN, NOW, USER


def profile_row(profile_id=5, user=USER, **extra):
    row = {
        "id": profile_id,
        "user_id": user["id"],
        "data": {"name": "Uma User", "phone": "555-0100"},
        "metadata": {"registered_at": "2024-05-01T12:00:00+00:00", "status": "active"},
        "created_at": NOW,
        "updated_at": NOW,
        "email": user["email"],
        "role": user["role"],
        "first_name": user["first_name"],
        "last_name": user["last_name"],
    }
    row.update(extra)
    return row


@pytest.fixture
def own_profile(fake_db):
    fake_db.on("WHERE p.user_id=%s", lambda params: profile_row() if params[0] == USER["id"] else None)
    fake_db.on("WHERE p.id=%s", lambda params: profile_row() if params[0] == 5 else None)
    return fake_db


class TestMyProfile:
    def test_get_my_profile(self, client, own_profile, as_user):
        response = client.get("/api/user-profiles/me")
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == USER["email"]
        assert body["data"]["phone"] == "555-0100"
        assert own_profile.executed("INSERT INTO user_profiles") == []

    def test_requires_authentication(self, client, fake_db):
        assert client.get("/api/user-profiles/me").status_code == 401

    def test_missing_profile_is_created(self, client, fake_db, as_user):
        created = []
        fake_db.on("INSERT INTO user_profiles", lambda params: created.append(params) or 1)
        fake_db.on("WHERE p.user_id=%s", lambda params: profile_row(data={"name": "Uma User"}) if created else None)
        response = client.get("/api/user-profiles/me")
        assert response.status_code == 200
        [params] = created
        assert params[0] == USER["id"]
        assert params[1].adapted == {"name": "Uma User"}
        assert params[2].adapted["status"] == "active"

    def test_update_merges_data(self, client, own_profile, as_user):
        response = client.put("/api/user-profiles/me", json={"name": "Uma U.", "data": {"city": "Oslo"}})
        assert response.status_code == 200
        assert response.json()["message"] == "User profile updated successfully"
        [(_, params)] = own_profile.executed("UPDATE user_profiles SET data=%s")
        assert params[0].adapted == {"name": "Uma U.", "phone": "555-0100", "city": "Oslo"}
        assert params[1].adapted["status"] == "active"
        assert "last_updated" in params[1].adapted
        assert params[2] == 5

    def test_delete_my_account(self, client, own_profile, as_user):
        assert client.delete("/api/user-profiles/me").json() == {"message": "Account deleted successfully"}
        [(_, params)] = own_profile.executed("DELETE FROM users")
        assert params == [USER["id"]]


class TestSettings:
    def test_defaults(self, client, own_profile, as_user):
        assert client.get("/api/user-profiles/me/settings").json() == {
            "notifications": {"email": True, "app": True},
            "theme": "light",
            "language": "en",
            "timezone": "UTC",
        }

    def test_stored_values_win(self, client, fake_db, as_user):
        stored = {"status": "active", "theme": "dark", "notifications": {"email": False, "app": True}}
        fake_db.on("WHERE p.user_id=%s", profile_row(metadata=stored))
        body = client.get("/api/user-profiles/me/settings").json()
        assert body["theme"] == "dark"
        assert body["notifications"] == {"email": False, "app": True}
        assert body["language"] == "en"

    def test_update_only_changes_given_settings(self, client, own_profile, as_user):
        response = client.put("/api/user-profiles/me/settings", json={"theme": "dark", "timezone": "Europe/Oslo"})
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Profile settings updated successfully"
        assert body["settings"]["theme"] == "dark"
        assert body["settings"]["language"] == "en"
        [(_, params)] = own_profile.executed("UPDATE user_profiles SET data=%s")
        metadata = params[1].adapted
        assert metadata["timezone"] == "Europe/Oslo"
        assert metadata["status"] == "active"
        assert "settings_updated_at" in metadata
        assert "language" not in metadata


class TestPasswordRoutes:
    def test_change_password_under_profile(self, client, fake_db, as_user):
        fake_db.on("SELECT password_hash FROM users WHERE id", None)
        response = client.post(
            "/api/user-profiles/me/change-password",
            json={"current_password": "wrong", "new_password": "another-one"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Current password is incorrect"

    def test_request_reset_under_profile(self, client, fake_db, as_user):
        response = client.post("/api/user-profiles/me/request-reset", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert fake_db.executed("SET reset_token_hash=%s") == []

    def test_reset_password_rejects_unknown_token(self, client, fake_db, as_user):
        response = client.post(
            "/api/user-profiles/me/reset-password", json={"token": "nope", "new_password": "another-one"}
        )
        assert response.status_code == 400


class TestAdmin:
    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/user-profiles"),
            ("get", "/api/user-profiles/5"),
            ("put", "/api/user-profiles/5"),
            ("delete", "/api/user-profiles/5"),
        ],
    )
    def test_admin_only(self, client, own_profile, as_user, method, path):
        kwargs = {"json": {}} if method == "put" else {}
        response = getattr(client, method)(path, **kwargs)
        assert response.status_code == 403

    def test_list(self, client, fake_db, as_admin):
        fake_db.on("ORDER BY p.created_at DESC LIMIT", [profile_row(5), profile_row(6, user=ADMIN)])
        fake_db.on("SELECT COUNT(*) AS count FROM user_profiles", 2)
        body = client.get("/api/user-profiles", params={"search": "ada"}).json()
        assert [p["id"] for p in body["data"]] == [5, 6]
        assert body["pagination"]["total"] == 2
        [(_, params)] = fake_db.executed("LIMIT %s OFFSET %s")
        assert params == ["%ada%"] * 3 + [10, 0]

    def test_get_by_id(self, client, own_profile, as_admin):
        assert client.get("/api/user-profiles/5").json()["user_id"] == USER["id"]
        missing = client.get("/api/user-profiles/99")
        assert missing.status_code == 404
        assert missing.json()["detail"] == "User profile not found"

    def test_create(self, client, fake_db, as_admin):
        fake_db.on("INSERT INTO users", lambda params: dict(USER, id=9, email=params[0], role=params[4]))
        fake_db.on("WHERE p.user_id=%s", lambda params: profile_row(9, user=dict(USER, id=params[0], role="admin")))
        response = client.post(
            "/api/user-profiles",
            json={
                "email": "Staff@Example.com",
                "password": "longenough",
                "first_name": "Sam",
                "last_name": "Staff",
                "role": "admin",
                "data": {"department": "claims"},
            },
        )
        assert response.status_code == 201
        assert response.json()["user"]["role"] == "admin"
        [(_, params)] = fake_db.executed("INSERT INTO users")
        assert params[0] == "staff@example.com"
        assert params[4] == "admin"
        [(_, profile_params)] = fake_db.executed("INSERT INTO user_profiles")
        assert profile_params[1].adapted == {"name": "Sam Staff", "department": "claims"}

    def test_create_duplicate_email(self, client, fake_db, as_admin):
        fake_db.on("SELECT id FROM users WHERE email", {"id": 2})
        response = client.post(
            "/api/user-profiles",
            json={"email": "user@example.com", "password": "longenough", "first_name": "U", "last_name": "U"},
        )
        assert response.status_code == 409
        assert fake_db.executed("INSERT INTO users") == []

    def test_update_role_and_data(self, client, own_profile, as_admin):
        response = client.put("/api/user-profiles/5", json={"role": "admin", "data": {"phone": "555-0199"}})
        assert response.status_code == 200
        [(_, role_params)] = own_profile.executed("UPDATE users SET role")
        assert role_params == ["admin", USER["id"]]
        [(_, params)] = own_profile.executed("UPDATE user_profiles SET data=%s")
        assert params[0].adapted == {"name": "Uma User", "phone": "555-0199"}

    def test_update_without_role_leaves_account(self, client, own_profile, as_admin):
        client.put("/api/user-profiles/5", json={"data": {"city": "Bergen"}})
        assert own_profile.executed("UPDATE users SET role") == []

    def test_delete(self, client, own_profile, as_admin):
        response = client.delete("/api/user-profiles/5")
        assert response.json() == {"message": "User profile deleted successfully"}
        [(_, params)] = own_profile.executed("DELETE FROM users")
        assert params == [USER["id"]]
        assert client.delete("/api/user-profiles/99").status_code == 404
