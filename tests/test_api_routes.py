"""
tests/test_api_routes.py -- Integration tests for the session and directory routes.

These tests exercise the full stack: FastAPI routing -> route policy
interceptor -> AuthService/UserStore operations -> response model
serialization -> error envelope. Unit testing individual route functions
would miss middleware, dependency injection, and response model validation.

Coverage:
  - Session lifecycle over HTTP: register, profile, refresh, reuse, change
    password, delete account (one-step and two-step)
  - Error envelope shape and status codes (401 with WWW-Authenticate, 403,
    404, 409, 422 without echoed input, 429 with Retry-After)
  - Directory administration with the seeded admin
  - Any-of permission enforcement with a custom role

Fixtures used (from conftest.py):
  - client: TestClient over the real app with a seeded shared-memory store
  - admin_headers: Bearer header for user "admin" (all default permissions)
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.store import UserStore


API = "/api/v1"


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, username: str = "alice", password: str = "p@ssw0rd-1", **extra) -> dict:
    resp = client.post(f"{API}/auth/register", json={"username": username, "password": password, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _assert_error(resp, status: int, code: str) -> dict:
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert set(body) == {"error"}
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    return body["error"]


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    def test_register_returns_token_pair(self, client: TestClient) -> None:
        resp = client.post(f"{API}/auth/register", json={"username": "Alice", "password": "p@ssw0rd-1"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["accessToken"] and body["refreshToken"]
        assert body["tokenType"] == "bearer"
        assert body["expiresIn"] == 900
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_conflict_case_insensitive(self, client: TestClient) -> None:
        _register(client, "alice")
        resp = client.post(f"{API}/auth/register", json={"username": "ALICE", "password": "p@ssw0rd-2"})
        _assert_error(resp, 409, "conflict")

    def test_register_short_password(self, client: TestClient) -> None:
        resp = client.post(f"{API}/auth/register", json={"username": "alice", "password": "xQz7"})
        err = _assert_error(resp, 422, "validation_error")
        assert "xQz7" not in (err["detail"] or "")

    def test_register_password_over_72_bytes(self, client: TestClient) -> None:
        # 40 two-byte characters: within the character limit, over bcrypt's 72 bytes
        resp = client.post(f"{API}/auth/register", json={"username": "alice", "password": "\u00e9" * 40})
        _assert_error(resp, 422, "validation_error")
        resp = client.post(f"{API}/auth/register", json={"username": "alice", "password": "p" * 73})
        _assert_error(resp, 422, "validation_error")

    def test_password_whitespace_is_preserved(self, client: TestClient) -> None:
        _register(client, "  Alice  ", password="  P@ssw0rd1  ")
        resp = client.post(f"{API}/auth/login", json={"username": "alice", "password": "P@ssw0rd1"})
        _assert_error(resp, 401, "unauthorized")
        resp = client.post(f"{API}/auth/login", json={"username": "alice ", "password": "  P@ssw0rd1  "})
        assert resp.status_code == 200, resp.text

    def test_profile_has_no_secrets(self, client: TestClient) -> None:
        tokens = _register(client, "Alice")
        resp = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"]))
        assert resp.status_code == 200
        body = resp.json()
        assert body["username"] == "alice"
        assert set(body) == {"id", "username", "roles", "createdAt", "updatedAt"}

    def test_profile_without_token(self, client: TestClient) -> None:
        resp = client.get(f"{API}/auth/profile")
        _assert_error(resp, 401, "invalid_token")
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_profile_with_refresh_token(self, client: TestClient) -> None:
        tokens = _register(client)
        resp = client.get(f"{API}/auth/profile", headers=bearer(tokens["refreshToken"]))
        _assert_error(resp, 401, "invalid_token")

    def test_login(self, client: TestClient) -> None:
        _register(client)
        resp = client.post(f"{API}/auth/login", json={"username": "ALICE", "password": "p@ssw0rd-1"})
        assert resp.status_code == 200
        assert resp.json()["accessToken"]

    def test_login_failures_are_indistinguishable(self, client: TestClient) -> None:
        _register(client)
        wrong_pw = client.post(f"{API}/auth/login", json={"username": "alice", "password": "nope-nope"})
        no_user = client.post(f"{API}/auth/login", json={"username": "bob", "password": "nope-nope"})
        assert _assert_error(wrong_pw, 401, "unauthorized") == _assert_error(no_user, 401, "unauthorized")

    def test_refresh_rotation_over_http(self, client: TestClient) -> None:
        tokens = _register(client)
        first = client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"]))
        assert first.status_code == 200
        reuse = client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"]))
        _assert_error(reuse, 401, "unauthorized")
        second = client.post(f"{API}/auth/refresh", headers=bearer(first.json()["refreshToken"]))
        assert second.status_code == 200

    def test_refresh_without_header(self, client: TestClient) -> None:
        _assert_error(client.post(f"{API}/auth/refresh"), 401, "invalid_token")

    def test_change_password_revokes_refresh(self, client: TestClient) -> None:
        tokens = _register(client)
        resp = client.patch(
            f"{API}/auth/change-password",
            headers=bearer(tokens["accessToken"]),
            json={"currentPassword": "p@ssw0rd-1", "newPassword": "n3w-p@ssword"},
        )
        assert resp.status_code == 200
        stale = client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"]))
        _assert_error(stale, 401, "unauthorized")
        fresh = client.post(f"{API}/auth/refresh", headers=bearer(resp.json()["refreshToken"]))
        assert fresh.status_code == 200

    def test_change_password_wrong_current(self, client: TestClient) -> None:
        tokens = _register(client)
        resp = client.patch(
            f"{API}/auth/change-password",
            headers=bearer(tokens["accessToken"]),
            json={"currentPassword": "wrong-pass", "newPassword": "n3w-p@ssword"},
        )
        _assert_error(resp, 401, "unauthorized")

    def test_delete_account_one_step(self, client: TestClient, store: UserStore) -> None:
        tokens = _register(client)
        resp = client.request(
            "DELETE",
            f"{API}/auth/delete-account",
            headers=bearer(tokens["accessToken"]),
            json={"password": "p@ssw0rd-1", "confirmation": "DELETE"},
        )
        assert resp.status_code == 200
        assert resp.content == b""
        assert store.get_by_username("alice") is None
        # The still-unexpired access token no longer resolves to a user.
        gone = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"]))
        _assert_error(gone, 401, "unauthorized")
        login = client.post(f"{API}/auth/login", json={"username": "alice", "password": "p@ssw0rd-1"})
        _assert_error(login, 401, "unauthorized")

    def test_delete_account_bad_confirmation(self, client: TestClient, store: UserStore) -> None:
        tokens = _register(client)
        resp = client.request(
            "DELETE",
            f"{API}/auth/delete-account",
            headers=bearer(tokens["accessToken"]),
            json={"password": "p@ssw0rd-1", "confirmation": "yes"},
        )
        _assert_error(resp, 422, "validation_error")
        assert store.get_by_username("alice") is not None

    def test_delete_account_two_step(self, client: TestClient, store: UserStore) -> None:
        tokens = _register(client)
        headers = bearer(tokens["accessToken"])
        req = client.post(f"{API}/auth/delete-account/request", headers=headers, json={"password": "p@ssw0rd-1"})
        assert req.status_code == 200
        assert req.headers["Cache-Control"] == "no-store"
        body = req.json()
        assert body["expiresIn"] == 300

        resp = client.request(
            "DELETE",
            f"{API}/auth/delete-account",
            headers=headers,
            json={"password": "p@ssw0rd-1", "confirmation": "DELETE", "deletionToken": body["deletionToken"]},
        )
        assert resp.status_code == 200
        assert store.get_by_username("alice") is None

    def test_delete_account_bogus_token(self, client: TestClient, store: UserStore) -> None:
        tokens = _register(client)
        resp = client.request(
            "DELETE",
            f"{API}/auth/delete-account",
            headers=bearer(tokens["accessToken"]),
            json={"password": "p@ssw0rd-1", "confirmation": "DELETE", "deletionToken": "del_bogus"},
        )
        _assert_error(resp, 401, "unauthorized")
        assert store.get_by_username("alice") is not None

    def test_full_scenario(self, client: TestClient) -> None:
        """register -> profile -> refresh -> reuse rejected -> delete -> login rejected."""
        tokens = _register(client, "Alice")
        profile = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"]))
        assert profile.json()["username"] == "alice"

        rotated = client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"])).json()
        assert client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"])).status_code == 401

        deleted = client.request(
            "DELETE",
            f"{API}/auth/delete-account",
            headers=bearer(rotated["accessToken"]),
            json={"password": "p@ssw0rd-1"},
        )
        assert deleted.status_code == 200
        login = client.post(f"{API}/auth/login", json={"username": "alice", "password": "p@ssw0rd-1"})
        assert login.status_code == 401


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimits:
    def test_refresh_limited_to_five_per_minute(self, client: TestClient) -> None:
        statuses = [client.post(f"{API}/auth/refresh", headers=bearer("junk")).status_code for _ in range(6)]
        assert statuses[:5] == [401] * 5
        assert statuses[5] == 429

    def test_rate_limit_envelope(self, client: TestClient) -> None:
        for _ in range(5):
            client.post(f"{API}/auth/refresh")
        resp = client.post(f"{API}/auth/refresh")
        _assert_error(resp, 429, "rate_limited")
        assert "Retry-After" in resp.headers


# ---------------------------------------------------------------------------
# Directory administration
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_regular_user_forbidden(self, client: TestClient) -> None:
        tokens = _register(client)
        resp = client.get(f"{API}/users", headers=bearer(tokens["accessToken"]))
        _assert_error(resp, 403, "forbidden")

    def test_admin_lists_users(self, client: TestClient, admin_headers: dict) -> None:
        _register(client, "alice")
        _register(client, "bob")
        resp = client.get(f"{API}/users", headers=admin_headers, params={"page": 1, "limit": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert body["page"] == 1 and body["limit"] == 2
        assert [u["username"] for u in body["data"]] == ["admin", "alice"]

    def test_admin_page_size_capped(self, client: TestClient, admin_headers: dict) -> None:
        resp = client.get(f"{API}/users", headers=admin_headers, params={"limit": 1000})
        _assert_error(resp, 422, "validation_error")

    def test_admin_get_missing_user(self, client: TestClient, admin_headers: dict) -> None:
        _assert_error(client.get(f"{API}/users/999", headers=admin_headers), 404, "not_found")

    def test_admin_creates_user_with_role(self, client: TestClient, admin_headers: dict, store: UserStore) -> None:
        role_id = store.get_role_by_name("user").id
        resp = client.post(
            f"{API}/users",
            headers=admin_headers,
            json={"username": "Erin", "password": "erin-pass-1", "roleIds": [role_id]},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["username"] == "erin"
        assert [r["name"] for r in body["roles"]] == ["user"]
        dup = client.post(f"{API}/users", headers=admin_headers, json={"username": "ERIN", "password": "x" * 10})
        _assert_error(dup, 409, "conflict")

    def test_admin_password_reset_revokes_sessions(self, client: TestClient, admin_headers: dict) -> None:
        tokens = _register(client)
        uid = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"])).json()["id"]
        resp = client.patch(f"{API}/users/{uid}", headers=admin_headers, json={"password": "reset-pass-1"})
        assert resp.status_code == 200
        stale = client.post(f"{API}/auth/refresh", headers=bearer(tokens["refreshToken"]))
        _assert_error(stale, 401, "unauthorized")

    def test_admin_patch_without_fields(self, client: TestClient, admin_headers: dict) -> None:
        tokens = _register(client)
        uid = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"])).json()["id"]
        _assert_error(client.patch(f"{API}/users/{uid}", headers=admin_headers, json={}), 422, "validation_error")

    def test_admin_deletes_user(self, client: TestClient, admin_headers: dict, store: UserStore) -> None:
        tokens = _register(client)
        uid = client.get(f"{API}/auth/profile", headers=bearer(tokens["accessToken"])).json()["id"]
        resp = client.delete(f"{API}/users/{uid}", headers=admin_headers)
        assert resp.status_code == 204
        assert store.get_by_id(uid) is None
        _assert_error(client.delete(f"{API}/users/{uid}", headers=admin_headers), 404, "not_found")

    def test_admin_cannot_delete_self(self, client: TestClient, admin_headers: dict, store: UserStore) -> None:
        admin_id = store.get_by_username("admin").id
        _assert_error(client.delete(f"{API}/users/{admin_id}", headers=admin_headers), 409, "conflict")

    def test_role_crud(self, client: TestClient, admin_headers: dict) -> None:
        perms = {p["name"]: p["id"] for p in client.get(f"{API}/permissions", headers=admin_headers).json()}
        assert len(perms) == 8

        created = client.post(
            f"{API}/roles",
            headers=admin_headers,
            json={"name": "auditor", "description": "Read-only", "permissionIds": [perms["user_read"]]},
        )
        assert created.status_code == 201
        role_id = created.json()["id"]
        _assert_error(client.post(f"{API}/roles", headers=admin_headers, json={"name": "auditor"}), 409, "conflict")

        patched = client.patch(
            f"{API}/roles/{role_id}",
            headers=admin_headers,
            json={"permissionIds": [perms["user_read"], perms["role_read"]]},
        )
        assert {p["name"] for p in patched.json()["permissions"]} == {"user_read", "role_read"}

        assert client.delete(f"{API}/roles/{role_id}", headers=admin_headers).status_code == 204
        _assert_error(client.get(f"{API}/roles/{role_id}", headers=admin_headers), 404, "not_found")

    def test_any_of_permissions(self, client: TestClient, admin_headers: dict, store: UserStore) -> None:
        """A role_read holder reaches role routes but not user routes."""
        role_read = store.get_permission_by_name("role_read").id
        role = store.create_role("viewer", permission_ids=[role_read])
        tokens = _register(client, "vic", roleIds=[role.id])
        headers = bearer(tokens["accessToken"])

        assert client.get(f"{API}/roles", headers=headers).status_code == 200
        assert client.get(f"{API}/permissions", headers=headers).status_code == 200
        _assert_error(client.get(f"{API}/users", headers=headers), 403, "forbidden")

        # Revocation applies to the same, still-valid access token.
        store.update_role(role.id, permission_ids=[])
        _assert_error(client.get(f"{API}/roles", headers=headers), 403, "forbidden")
