"""
tests/test_api_routes.py -- Integration tests for the /api/v1 routes.

These tests exercise the full stack: FastAPI routing -> authorization
dependency -> services/repositories -> response model serialization -> the
error envelope. Unit testing individual route functions would miss the
dependency injection and exception handlers.

Coverage:
  - Auth failures: 401 without/with malformed Authorization header
  - Register / login / refresh / logout / me happy paths and failures
  - Permission gates: 403 for a plain user on admin routes
  - Role CRUD, grants and assignments
  - Error envelope shape for AppError and request validation

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- admin access token (admin + user roles)
"""

from __future__ import annotations

from fastapi.testclient import TestClient

API = "/api/v1"


def _register_and_login(client: TestClient, username: str, password: str = "secret123") -> tuple[int, dict]:
    email = f"{username}@example.com"
    resp = client.post(f"{API}/auth/register", json={"username": username, "email": email, "password": password})
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["data"]["id"]
    resp = client.post(f"{API}/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return user_id, resp.json()


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401 envelopes."""

    def test_me_without_header(self, api_client: tuple[TestClient, str, int]) -> None:
        """GET /auth/me without Authorization must return 401 with the reason."""
        client, _token, _uid = api_client
        resp = client.get(f"{API}/auth/me")
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["errors"][0]["code"] == 401
        assert body["errors"][0]["message"] == "Authorization header is required"

    def test_me_with_malformed_header(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get(f"{API}/auth/me", headers={"Authorization": "Token abc"})
        assert resp.status_code == 401
        assert resp.json()["errors"][0]["message"] == "Invalid authorization header format"

    def test_roles_with_garbage_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get(f"{API}/roles", headers=_auth("garbage"))
        assert resp.status_code == 401

    def test_logout_requires_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        assert client.post(f"{API}/auth/logout").status_code == 401


class TestAuthRoutes:
    """Register, login, refresh, logout and me over HTTP."""

    def test_register_returns_201_without_hash(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            f"{API}/auth/register",
            json={"username": "reg-user", "email": "reg-user@example.com", "password": "secret123"},
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["username"] == "reg-user"
        assert "hashed_password" not in body["data"]

    def test_register_duplicate_email_409(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        payload = {"username": "dup-1", "email": "dup@example.com", "password": "secret123"}
        assert client.post(f"{API}/auth/register", json=payload).status_code == 201
        payload["username"] = "dup-2"
        resp = client.post(f"{API}/auth/register", json=payload)
        assert resp.status_code == 409
        codes = [e["code"] for e in resp.json()["errors"]]
        assert codes == [409, 500]

    def test_register_invalid_email_400(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            f"{API}/auth/register",
            json={"username": "bad-mail", "email": "not-an-email", "password": "secret123"},
        )
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["message"] == "Invalid email format"

    def test_missing_field_is_400_envelope(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post(f"{API}/auth/login", json={"email": "x@example.com"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert any("password" in e["message"] for e in body["errors"])

    def test_login_returns_pair_no_store(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _uid2, body = _register_and_login(client, "login-ok")
        assert body["success"] is True
        assert body["access_token"]
        assert body["refresh_token"]
        resp = client.post(f"{API}/auth/login", json={"email": "login-ok@example.com", "password": "secret123"})
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_wrong_password_401(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _register_and_login(client, "login-bad")
        resp = client.post(f"{API}/auth/login", json={"email": "login-bad@example.com", "password": "nope"})
        assert resp.status_code == 401
        assert resp.json()["errors"][0]["message"] == "Invalid credentials"

    def test_password_whitespace_is_kept(self, api_client: tuple[TestClient, str, int]) -> None:
        """Surrounding spaces are part of the password; the email is trimmed."""
        client, _token, _uid = api_client
        resp = client.post(
            f"{API}/auth/register",
            json={"username": " spaced ", "email": " spaced@example.com ", "password": "  pw123  "},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["data"]["username"] == "spaced"
        assert resp.json()["data"]["email"] == "spaced@example.com"

        stripped = client.post(f"{API}/auth/login", json={"email": "spaced@example.com", "password": "pw123"})
        assert stripped.status_code == 401
        exact = client.post(f"{API}/auth/login", json={"email": " spaced@example.com", "password": "  pw123  "})
        assert exact.status_code == 200, exact.text

    def test_me_for_plain_user(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        user_id, tokens = _register_and_login(client, "me-user")
        resp = client.get(f"{API}/auth/me", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["data"]["id"] == user_id
        assert body["roles"] == ["user"]
        assert sorted(body["permissions"]) == ["user:me", "user:read"]

    def test_refresh_rotation(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _user_id, first = _register_and_login(client, "rotator")
        resp = client.post(f"{API}/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200, resp.text
        second = resp.json()

        reused = client.post(f"{API}/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["errors"][0]["message"] == "Refresh token mismatch (Reuse detected?)"

        assert client.post(f"{API}/auth/refresh", json={"refresh_token": second["refresh_token"]}).status_code == 200

    def test_logout_then_refresh_fails(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        _user_id, tokens = _register_and_login(client, "leaver")
        resp = client.post(f"{API}/auth/logout", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 200
        resp = client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json()["errors"][0]["message"] == "Refresh token not found"


class TestRoleRoutes:
    """Permission-gated role management."""

    def test_plain_user_cannot_create_role(self, api_client: tuple[TestClient, str, int]) -> None:
        """An access token without role:create gets 403 on POST /roles."""
        client, _token, _uid = api_client
        _user_id, tokens = _register_and_login(client, "alice")
        resp = client.post(f"{API}/roles", json={"name": "sneaky"}, headers=_auth(tokens["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["errors"][0]["message"] == "Insufficient permissions"

    def test_admin_role_lifecycle(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        headers = _auth(token)

        resp = client.post(f"{API}/roles", json={"name": "auditor"}, headers=headers)
        assert resp.status_code == 201, resp.text
        role_id = resp.json()["data"]["id"]

        assert client.post(f"{API}/roles", json={"name": "auditor"}, headers=headers).status_code == 409

        listing = client.get(f"{API}/roles", params={"per_page": 100}, headers=headers)
        assert listing.status_code == 200
        assert "auditor" in [r["name"] for r in listing.json()["data"]]

        assert client.get(f"{API}/roles/{role_id}", headers=headers).json()["data"]["name"] == "auditor"

        assert client.delete(f"{API}/roles/{role_id}", headers=headers).status_code == 200
        missing = client.get(f"{API}/roles/{role_id}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["errors"][0]["message"] == "Role not found"

    def test_grant_permission_to_role(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        state = client.app.state
        headers = _auth(token)
        role_id = client.post(f"{API}/roles", json={"name": "reader"}, headers=headers).json()["data"]["id"]
        perm = state.permissions.get_by_key("role", "read")

        resp = client.post(f"{API}/roles/{role_id}/permissions", json={"permission_id": perm.id}, headers=headers)
        assert resp.status_code == 201, resp.text
        assert resp.json()["data"]["permission_id"] == perm.id

        again = client.post(f"{API}/roles/{role_id}/permissions", json={"permission_id": perm.id}, headers=headers)
        assert again.status_code == 409

        unknown = client.post(f"{API}/roles/{role_id}/permissions", json={"permission_id": 99999}, headers=headers)
        assert unknown.status_code == 404

    def test_assigned_role_applies_after_refresh(self, api_client: tuple[TestClient, str, int]) -> None:
        """A new assignment is invisible to the old access token and visible after refresh."""
        client, token, _uid = api_client
        state = client.app.state
        user_id, tokens = _register_and_login(client, "promoted")
        admin_role = state.roles.get_by_name("admin")

        resp = client.post(f"{API}/users/{user_id}/roles", json={"role_id": admin_role.id}, headers=_auth(token))
        assert resp.status_code == 201, resp.text

        stale = client.post(f"{API}/roles", json={"name": "stale-try"}, headers=_auth(tokens["access_token"]))
        assert stale.status_code == 403

        rotated = client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).json()
        fresh = client.post(f"{API}/roles", json={"name": "fresh-try"}, headers=_auth(rotated["access_token"]))
        assert fresh.status_code == 201

    def test_assign_role_to_missing_user(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.post(f"{API}/users/99999/roles", json={"role_id": 1}, headers=_auth(token))
        assert resp.status_code == 404
