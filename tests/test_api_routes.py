"""
tests/test_api_routes.py -- Integration tests for the auth and admin API routes.

These tests exercise the full stack: FastAPI routing -> session dependency
injection -> AuthService -> CredentialStore -> response model serialization
and the error envelope. Unit testing individual route functions would miss
middleware, cookies, dependency injection, and exception handlers --
integration tests are the right tool here.

Coverage:
  - Auth failures: 401 on session and admin routes without a token
  - Password flow: sign-up 201 + cookie, sign-in, session via cookie, sign-out;
    a Bearer-authenticated session read does not rewrite the cookie
  - Failures: wrong password and unknown email return the same 401 body
  - One-time codes: send + verify, cooldown 429 with Retry-After, password reset
  - Admin: list, role, ban (live effect), sessions, 403 for plain users
  - Impersonation: cookie swap on start and restore on stop, also after the
    impersonation session stopped validating
  - OAuth: providers list, unknown provider 404, callback opens a session
  - /docs requires an admin session

Fixtures used (from conftest.py):
  - api_client: (client, token, channel) -- TestClient, admin session token
    for admin@example.com, and the RecordingChannel that receives every email.

The client shares one cookie jar across the module. Bearer headers win over
the cookie, so admin calls pass the header; tests that need an anonymous
caller clear the jar first.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from api.models import OtpSendRequest, SetRoleRequest
from auth.models import ChallengePurpose, Role
from core.config import Settings

ApiClient = tuple[TestClient, str, Any]


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _sign_up(client: TestClient, email: str, password: str = "pw123456", name: str = "Test") -> dict:
    resp = client.post("/api/v1/auth/sign-up", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401."""

    def test_session_unauthenticated(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/auth/session")
        assert resp.status_code == 401, f"Expected 401, got {resp.status_code}"
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_admin_users_unauthenticated(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/admin/users")
        assert resp.status_code == 401, f"Expected 401, got {resp.status_code}"

    def test_garbled_bearer_token(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        resp = client.get("/api/v1/auth/session", headers=_bearer("not-a-jwt"))
        assert resp.status_code == 401

    def test_unknown_route_uses_error_envelope(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        resp = client.get("/api/v1/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "http_404"

    def test_docs_require_admin(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        client.cookies.clear()
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers=_bearer(token)).status_code == 200


class TestApiPasswordFlow:
    def test_sign_up_sets_cookie(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        client.cookies.clear()
        resp = client.post(
            "/api/v1/auth/sign-up",
            json={"email": "Signup@Example.com", "password": "pw123456", "name": "Sign Up"},
        )
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        data = resp.json()
        assert data["user"]["email"] == "signup@example.com"
        assert data["user"]["role"] == "user"
        assert data["is_new_user"] is True
        assert "hashed_password" not in data["user"]
        assert resp.cookies.get("session_token") == data["token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_duplicate_sign_up_conflicts(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        _sign_up(client, "dupe@example.com")
        resp = client.post(
            "/api/v1/auth/sign-up",
            json={"email": "dupe@example.com", "password": "pw123456", "name": "Again"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_sign_up_validation(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        resp = client.post("/api/v1/auth/sign-up", json={"email": "not-an-email", "password": "x", "name": "X"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_sign_in_then_session_by_cookie(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        user = _sign_up(client, "cookie@example.com")["user"]
        client.cookies.clear()

        resp = client.post(
            "/api/v1/auth/sign-in/password",
            json={"email": "cookie@example.com", "password": "pw123456"},
            headers={"User-Agent": "pytest-browser"},
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"

        session = client.get("/api/v1/auth/session")
        assert session.status_code == 200, f"Expected 200, got {session.status_code}: {session.text}"
        data = session.json()
        assert data["user"]["id"] == user["id"]
        assert data["session"]["user_agent"] == "pytest-browser"

    def test_bearer_session_read_leaves_cookie_alone(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        client.cookies.clear()
        first = _sign_up(client, "two-sessions@example.com")["token"]
        second = client.post(
            "/api/v1/auth/sign-in/password", json={"email": "two-sessions@example.com", "password": "pw123456"}
        ).json()["token"]
        assert client.cookies.get("session_token") == second

        by_header = client.get("/api/v1/auth/session", headers=_bearer(first))
        assert by_header.status_code == 200
        assert "set-cookie" not in by_header.headers
        assert client.cookies.get("session_token") == second

        by_cookie = client.get("/api/v1/auth/session")
        assert by_cookie.cookies.get("session_token") == second

    def test_wrong_password_and_unknown_email_look_the_same(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        _sign_up(client, "same@example.com")
        wrong = client.post("/api/v1/auth/sign-in/password", json={"email": "same@example.com", "password": "nope-nope"})
        unknown = client.post(
            "/api/v1/auth/sign-in/password", json={"email": "ghost@example.com", "password": "pw123456"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_sign_out_revokes_and_clears_cookie(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        token = _sign_up(client, "bye@example.com")["token"]

        resp = client.post("/api/v1/auth/sign-out")
        assert resp.status_code == 200
        assert "session_token" not in client.cookies

        assert client.get("/api/v1/auth/session", headers=_bearer(token)).status_code == 401
        # Signing out again is still a 200.
        assert client.post("/api/v1/auth/sign-out", headers=_bearer(token)).status_code == 200


class TestApiOneTimeCodes:
    def test_send_and_verify(self, api_client: ApiClient) -> None:
        client, _token, channel = api_client
        resp = client.post("/api/v1/auth/otp/send", json={"email": "otp@example.com"})
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"

        resp = client.post(
            "/api/v1/auth/otp/verify",
            json={"email": "otp@example.com", "code": channel.last_code("otp@example.com")},
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        data = resp.json()
        assert data["is_new_user"] is True
        assert data["user"]["email_verified"] is True

    def test_resend_cooldown(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        assert client.post("/api/v1/auth/otp/send", json={"email": "cool@example.com"}).status_code == 200
        resp = client.post("/api/v1/auth/otp/send", json={"email": "cool@example.com"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert 0 < int(resp.headers["Retry-After"]) <= 60

    def test_wrong_code(self, api_client: ApiClient) -> None:
        client, _token, channel = api_client
        client.post("/api/v1/auth/otp/send", json={"email": "wrong@example.com"})
        code = channel.last_code("wrong@example.com")
        bad = "".join("1" if c != "1" else "2" for c in code)
        resp = client.post("/api/v1/auth/otp/verify", json={"email": "wrong@example.com", "code": bad})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "code_mismatch"

    def test_unknown_email_reset_gets_same_reply(self, api_client: ApiClient) -> None:
        client, _token, channel = api_client
        before = len(channel.messages)
        resp = client.post("/api/v1/auth/otp/send", json={"email": "nobody@example.com", "purpose": "password-reset"})
        assert resp.status_code == 200
        assert len(channel.messages) == before

    def test_password_reset(self, api_client: ApiClient) -> None:
        client, _token, channel = api_client
        old_token = _sign_up(client, "reset@example.com")["token"]
        client.post("/api/v1/auth/otp/send", json={"email": "reset@example.com", "purpose": "password-reset"})

        resp = client.post(
            "/api/v1/auth/otp/reset-password",
            json={
                "email": "reset@example.com",
                "code": channel.last_code("reset@example.com"),
                "new_password": "brand-new-pw",
            },
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert client.get("/api/v1/auth/session", headers=_bearer(old_token)).status_code == 401
        resp = client.post(
            "/api/v1/auth/sign-in/password", json={"email": "reset@example.com", "password": "brand-new-pw"}
        )
        assert resp.status_code == 200


class TestApiAdminRoutes:
    def test_list_users(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        resp = client.get("/api/v1/admin/users", headers=_bearer(token))
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert "admin@example.com" in {u["email"] for u in resp.json()}

    def test_plain_user_is_forbidden(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        user_token = _sign_up(client, "plain@example.com")["token"]
        resp = client.get("/api/v1/admin/users", headers=_bearer(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_set_role_is_live(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        signed_up = _sign_up(client, "promote@example.com")
        resp = client.post(
            f"/api/v1/admin/users/{signed_up['user']['id']}/role",
            json={"role": "admin"},
            headers=_bearer(token),
        )
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        session = client.get("/api/v1/auth/session", headers=_bearer(signed_up["token"])).json()
        assert session["user"]["role"] == "admin"

    def test_admin_cannot_grant_super_admin(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        user_id = _sign_up(client, "climber@example.com")["user"]["id"]
        resp = client.post(f"/api/v1/admin/users/{user_id}/role", json={"role": "super-admin"}, headers=_bearer(token))
        assert resp.status_code == 403

    def test_role_values_come_from_domain(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        user_id = _sign_up(client, "odd-role@example.com")["user"]["id"]
        resp = client.post(f"/api/v1/admin/users/{user_id}/role", json={"role": "owner"}, headers=_bearer(token))
        assert resp.status_code == 422
        assert [SetRoleRequest(role=r.value).role for r in Role] == list(Role)
        assert [OtpSendRequest(email="a@example.com", purpose=p.value).purpose for p in ChallengePurpose] == list(
            ChallengePurpose
        )

    def test_ban_and_unban(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        signed_up = _sign_up(client, "banned@example.com")
        user_id = signed_up["user"]["id"]

        resp = client.post(f"/api/v1/admin/users/{user_id}/ban", json={"reason": "terms"}, headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["ban_reason"] == "terms"

        blocked = client.get("/api/v1/auth/session", headers=_bearer(signed_up["token"]))
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "user_banned"
        assert "terms" in blocked.json()["error"]["detail"]

        assert client.post(f"/api/v1/admin/users/{user_id}/unban", headers=_bearer(token)).status_code == 200
        assert client.get("/api/v1/auth/session", headers=_bearer(signed_up["token"])).status_code == 200

    def test_sessions_list_and_revoke(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        signed_up = _sign_up(client, "sessions@example.com")
        user_id = signed_up["user"]["id"]

        listed = client.get(f"/api/v1/admin/users/{user_id}/sessions", headers=_bearer(token))
        assert listed.status_code == 200
        assert [s["user_id"] for s in listed.json()] == [user_id]

        session_id = listed.json()[0]["id"]
        assert client.delete(f"/api/v1/admin/sessions/{session_id}", headers=_bearer(token)).status_code == 204
        assert client.get("/api/v1/auth/session", headers=_bearer(signed_up["token"])).status_code == 401

        resp = client.delete(f"/api/v1/admin/users/{user_id}/sessions", headers=_bearer(token))
        assert resp.json() == {"revoked": 0}

    def test_remove_user(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        user_id = _sign_up(client, "gone@example.com")["user"]["id"]
        assert client.delete(f"/api/v1/admin/users/{user_id}", headers=_bearer(token)).status_code == 204
        assert client.delete(f"/api/v1/admin/users/{user_id}", headers=_bearer(token)).status_code == 404

    def test_create_user(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        resp = client.post(
            "/api/v1/admin/users",
            json={"email": "made@example.com", "name": "Made", "password": "pw123456"},
            headers=_bearer(token),
        )
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        assert resp.json()["role"] == "user"

    def test_has_permission(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        user_token = _sign_up(client, "perm@example.com")["token"]
        body = {"resource": "user", "action": "ban"}
        assert client.post("/api/v1/admin/has-permission", json=body, headers=_bearer(token)).json() == {
            "allowed": True
        }
        assert client.post("/api/v1/admin/has-permission", json=body, headers=_bearer(user_token)).json() == {
            "allowed": False
        }


class TestApiImpersonation:
    def test_impersonate_and_restore(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        target = _sign_up(client, "target@example.com")["user"]
        client.cookies.clear()
        admin = client.post(
            "/api/v1/auth/sign-in/password", json={"email": "admin@example.com", "password": "password123"}
        )
        admin_token = admin.json()["token"]

        resp = client.post(f"/api/v1/admin/users/{target['id']}/impersonate")
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        assert resp.json()["user"]["id"] == target["id"]
        assert client.cookies.get("admin_session_token") == admin_token

        session = client.get("/api/v1/auth/session").json()
        assert session["user"]["id"] == target["id"]
        assert session["session"]["impersonated_by"] is not None

        # Admin routes are closed from inside an impersonation session.
        assert client.get("/api/v1/admin/users").status_code == 403

        stop = client.post("/api/v1/admin/stop-impersonating")
        assert stop.status_code == 200, f"Expected 200, got {stop.status_code}: {stop.text}"
        assert stop.json()["admin_session_restored"] is True
        assert "admin_session_token" not in client.cookies

        assert client.get("/api/v1/auth/session").json()["user"]["email"] == "admin@example.com"

    def test_stop_after_target_banned_still_restores(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        target = _sign_up(client, "banned-target@example.com")["user"]
        client.cookies.clear()
        admin_token = client.post(
            "/api/v1/auth/sign-in/password", json={"email": "admin@example.com", "password": "password123"}
        ).json()["token"]
        assert client.post(f"/api/v1/admin/users/{target['id']}/impersonate").status_code == 200

        ban = client.post(f"/api/v1/admin/users/{target['id']}/ban", json={}, headers=_bearer(admin_token))
        assert ban.status_code == 200
        assert client.get("/api/v1/auth/session").json()["error"]["code"] == "user_banned"

        stop = client.post("/api/v1/admin/stop-impersonating")
        assert stop.status_code == 200, f"Expected 200, got {stop.status_code}: {stop.text}"
        assert stop.json()["admin_session_restored"] is True
        assert client.cookies.get("session_token") == admin_token
        assert client.get("/api/v1/auth/session").json()["user"]["email"] == "admin@example.com"

    def test_stop_without_impersonation_session(self, api_client: ApiClient) -> None:
        client, token, _ = api_client
        assert client.post("/api/v1/admin/stop-impersonating", headers=_bearer(token)).status_code == 403
        client.cookies.clear()
        assert client.post("/api/v1/admin/stop-impersonating").status_code == 401


class TestApiOAuth:
    def test_providers_public(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert isinstance(resp.json(), list)

    def test_unknown_provider(self, api_client: ApiClient) -> None:
        client, _token, _ = api_client
        resp = client.get("/api/v1/auth/oauth/myspace")
        assert resp.status_code == 404

    def test_redirect_uses_configured_base_url(self, api_client: ApiClient, monkeypatch) -> None:
        client, _token, _ = api_client
        state = client.app.state
        monkeypatch.setattr(
            state,
            "settings",
            Settings(
                _env_file=None,
                debug=True,
                base_url="https://id.example.com/",
                google_client_id="gid",
                google_client_secret="gsecret",
            ),
        )
        provider = MagicMock()
        provider.authorize_redirect = AsyncMock(return_value=RedirectResponse("https://accounts.example.com/auth"))
        oauth = MagicMock()
        oauth.create_client.return_value = provider
        monkeypatch.setattr(state, "oauth", oauth)

        resp = client.get("/api/v1/auth/oauth/google", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "https://accounts.example.com/auth"
        redirect_uri = provider.authorize_redirect.call_args.args[1]
        assert redirect_uri == "https://id.example.com/api/v1/auth/oauth/google/callback"

    def test_callback_opens_session(self, api_client: ApiClient, monkeypatch) -> None:
        client, _token, _ = api_client
        state = client.app.state
        monkeypatch.setattr(
            state,
            "settings",
            Settings(_env_file=None, debug=True, google_client_id="gid", google_client_secret="gsecret"),
        )
        provider = MagicMock()
        provider.authorize_access_token = AsyncMock(
            return_value={
                "access_token": "at",
                "userinfo": {"sub": "g-77", "email": "oauth@example.com", "email_verified": True, "name": "O"},
            }
        )
        oauth = MagicMock()
        oauth.create_client.return_value = provider
        monkeypatch.setattr(state, "oauth", oauth)

        resp = client.get("/api/v1/auth/oauth/google/callback?code=abc&state=xyz")
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        data = resp.json()
        assert data["user"]["email"] == "oauth@example.com"
        assert data["is_new_user"] is True
        assert resp.cookies.get("session_token") == data["token"]

        again = client.get("/api/v1/auth/oauth/google/callback?code=def&state=xyz")
        assert again.json()["user"]["id"] == data["user"]["id"]
        assert again.json()["is_new_user"] is False
