"""Integration tests for the authentication API.

Tests the complete HTTP flow including:
- Registration of public roles
- Login gated by account status
- Token refresh and revocation
- Relationship-scoped user reads
- Admin status changes and forced logout
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from schoolgate import app as app_module
from schoolgate.durations import utcnow
from schoolgate.service.auth import ProfileInput
from schoolgate.service.runtime import get_runtime
from schoolgate.storage.models import Role, UserStatus

PASSWORD = "Abcdef12"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email, role="STUDENT"):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": PASSWORD,
            "role": role,
            "profile": {"first_name": "Grace", "last_name": "Hopper"},
        },
    )


def _activate(email):
    store = get_runtime().store
    user = store.get_user_by_email(email)
    store.update_user(user.id, status=UserStatus.ACTIVE)
    return user.id


def _login(client, email, password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _provision(email, role):
    runtime = get_runtime()
    return asyncio.run(
        runtime.auth.provision_user(email, PASSWORD, ProfileInput("Op", "Erator"), role)
    )


class TestRegistration:
    """Tests for self-registration."""

    def test_register_returns_pending_user_and_tokens(self, client):
        response = _register(client, "new@example.com")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["user"]["status"] == "PENDING"
        assert data["user"]["role"] == "STUDENT"
        assert data["user"]["profile"]["first_name"] == "Grace"
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert "password_hash" not in data["user"]

    def test_duplicate_email_conflicts(self, client):
        _register(client, "dup@example.com")

        response = _register(client, "DUP@example.com", role="PARENT")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_teacher_role_is_rejected(self, client):
        response = _register(client, "teacher@example.com", role="TEACHER")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_profile_is_rejected(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "x@example.com", "password": PASSWORD, "role": "STUDENT"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"]["errors"]


class TestLogin:
    """Tests for password login."""

    def test_pending_account_cannot_log_in(self, client):
        _register(client, "pending@example.com")

        response = _login(client, "pending@example.com")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "verify email"
        assert error["details"] == {"reason": "email_not_verified"}

    def test_activated_account_logs_in(self, client):
        _register(client, "active@example.com")
        _activate("active@example.com")

        response = _login(client, "active@example.com")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["status"] == "ACTIVE"

    def test_wrong_password(self, client):
        _register(client, "wrong@example.com")
        _activate("wrong@example.com")

        response = _login(client, "wrong@example.com", "Nope1234")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid email or password"

    def test_suspended_account_is_blocked(self, client):
        _register(client, "sus@example.com")
        user_id = _activate("sus@example.com")
        get_runtime().store.update_user(user_id, status=UserStatus.SUSPENDED)

        response = _login(client, "sus@example.com")

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "account_blocked"}


class TestTokens:
    """Tests for token use, rotation and revocation."""

    def test_users_me(self, client):
        _register(client, "me@example.com", role="PARENT")
        user_id = _activate("me@example.com")
        tokens = _login(client, "me@example.com").json()["data"]

        response = client.get("/v1/users/me", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == user_id
        assert data["role_data"]["child_user_ids"] == []

    def test_users_me_without_token(self, client):
        response = client.get("/v1/users/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_reports_reason(self, client):
        response = client.get("/v1/users/me", headers=_bearer("not.a.jwt"))

        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "token_malformed"

    def test_refresh_token_is_single_use(self, client):
        _register(client, "rot@example.com")
        _activate("rot@example.com")
        first = _login(client, "rot@example.com").json()["data"]["refresh_token"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": first})
        replay = client.post("/v1/auth/refresh", json={"refresh_token": first})

        assert rotated.status_code == 200
        assert rotated.json()["data"]["refresh_token"] != first
        assert replay.status_code == 401

    def test_expired_refresh_looks_like_unknown_refresh(self, client):
        _register(client, "stale@example.com")
        _activate("stale@example.com")
        token = _login(client, "stale@example.com").json()["data"]["refresh_token"]
        store = get_runtime().store
        session_id = store.get_refresh_token(token).id
        store.refresh_tokens[session_id].expires_at = utcnow() - timedelta(seconds=1)

        expired = client.post("/v1/auth/refresh", json={"refresh_token": token})
        unknown = client.post("/v1/auth/refresh", json={"refresh_token": "unknown-token"})

        assert expired.status_code == unknown.status_code == 401
        assert expired.json()["error"] == unknown.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid refresh token",
            "details": None,
        }
        assert session_id not in store.refresh_tokens

    def test_logout_revokes_one_session(self, client):
        _register(client, "out@example.com")
        _activate("out@example.com")
        refresh = _login(client, "out@example.com").json()["data"]["refresh_token"]

        response = client.post("/v1/auth/logout", json={"refresh_token": refresh})
        again = client.post("/v1/auth/logout", json={"refresh_token": refresh})

        assert response.status_code == 200
        assert again.status_code == 401

    def test_logout_all(self, client):
        _register(client, "all@example.com")
        _activate("all@example.com")
        first = _login(client, "all@example.com").json()["data"]
        _login(client, "all@example.com")

        response = client.post("/v1/auth/logout-all", headers=_bearer(first["access_token"]))

        assert response.status_code == 200
        # Two logins plus the session created at registration
        assert response.json()["data"]["tokens_removed"] == 3
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert refresh.status_code == 401

    def test_change_password_revokes_sessions(self, client):
        _register(client, "pw@example.com")
        _activate("pw@example.com")
        tokens = _login(client, "pw@example.com").json()["data"]

        response = client.post(
            "/v1/users/me/password",
            json={"current_password": PASSWORD, "new_password": "Changed99"},
            headers=_bearer(tokens["access_token"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["tokens_removed"] == 2
        assert _login(client, "pw@example.com", "Changed99").status_code == 200


class TestUserAccess:
    """Tests for relationship-scoped reads."""

    def test_student_cannot_read_another_student(self, client):
        _register(client, "s1@example.com")
        _activate("s1@example.com")
        _register(client, "s2@example.com")
        other_id = _activate("s2@example.com")
        token = _login(client, "s1@example.com").json()["data"]["access_token"]

        response = client.get(f"/v1/users/{other_id}", headers=_bearer(token))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_parent_reads_linked_child(self, client):
        _register(client, "mum@example.com", role="PARENT")
        parent_id = _activate("mum@example.com")
        _register(client, "kid@example.com")
        child_id = _activate("kid@example.com")
        get_runtime().store.link_parent_child(parent_id, child_id, is_primary=True)
        token = _login(client, "mum@example.com").json()["data"]["access_token"]

        response = client.get(f"/v1/users/{child_id}", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "kid@example.com"

    def test_home_teacher_reads_class_student(self, client):
        teacher = _provision("teach@example.com", Role.TEACHER)
        _register(client, "pupil@example.com")
        pupil_id = _activate("pupil@example.com")
        store = get_runtime().store
        home = store.create_class("3C", home_teacher_user_id=teacher.id)
        store.assign_student_class(pupil_id, home.id)
        token = _login(client, "teach@example.com").json()["data"]["access_token"]

        response = client.get(f"/v1/users/{pupil_id}", headers=_bearer(token))

        assert response.status_code == 200


class TestAdmin:
    """Tests for admin-only routes."""

    def test_admin_suspends_user(self, client):
        _provision("admin@example.com", Role.ADMIN)
        _register(client, "target@example.com")
        target_id = _activate("target@example.com")
        target_tokens = _login(client, "target@example.com").json()["data"]
        admin_token = _login(client, "admin@example.com").json()["data"]["access_token"]

        response = client.patch(
            f"/v1/admin/users/{target_id}/status",
            json={"status": "SUSPENDED"},
            headers=_bearer(admin_token),
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "SUSPENDED"
        me = client.get("/v1/users/me", headers=_bearer(target_tokens["access_token"]))
        assert me.status_code == 401

    def test_admin_cannot_suspend_self(self, client):
        admin = _provision("self@example.com", Role.ADMIN)
        token = _login(client, "self@example.com").json()["data"]["access_token"]

        response = client.patch(
            f"/v1/admin/users/{admin.id}/status",
            json={"status": "INACTIVE"},
            headers=_bearer(token),
        )

        assert response.status_code == 403

    def test_non_admin_is_forbidden(self, client):
        _register(client, "plain@example.com")
        user_id = _activate("plain@example.com")
        token = _login(client, "plain@example.com").json()["data"]["access_token"]

        response = client.post(
            f"/v1/admin/users/{user_id}/logout-all", headers=_bearer(token)
        )

        assert response.status_code == 403

    def test_admin_force_logout(self, client):
        _provision("ops@example.com", Role.ADMIN)
        _register(client, "victim@example.com")
        victim_id = _activate("victim@example.com")
        _login(client, "victim@example.com")
        token = _login(client, "ops@example.com").json()["data"]["access_token"]

        response = client.post(
            f"/v1/admin/users/{victim_id}/logout-all", headers=_bearer(token)
        )

        assert response.status_code == 200
        assert response.json()["data"]["tokens_removed"] == 2

    def test_unknown_status_value_is_rejected(self, client):
        _provision("admin2@example.com", Role.ADMIN)
        token = _login(client, "admin2@example.com").json()["data"]["access_token"]

        response = client.patch(
            "/v1/admin/users/anything/status",
            json={"status": "DELETED"},
            headers=_bearer(token),
        )

        assert response.status_code == 400


class TestPlumbing:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/v1/users/me", headers={"X-Request-ID": "req-456"})

        assert response.json()["request_id"] == "req-456"

    def test_healthz_with_memory_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert response.headers["Cache-Control"].startswith("no-store")
