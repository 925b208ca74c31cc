"""
tests/test_api_auth.py -- Integration tests for the auth routes, the envelope and rate limiting.

These tests exercise the full stack: global rate-limit middleware -> routing
-> guard() pipeline -> CredentialAuthenticator / TokenIssuer -> envelope
rendering. Every test uses its own client IP (fresh_ip) so rate windows never
leak between tests.

Coverage:
  - Register: 201 with token pair, duplicate email 409, validation 422 without echo
  - Login: success envelope + no-store, generic 401, lockout after 5 failures
  - Login rate class: 6th attempt from one IP is 429 with Retry-After
  - Refresh: rotation, reuse revokes every session
  - Logout, /auth/me, admin revoke-sessions
  - Global rate class and fail-closed counter store (503)

Fixtures used (from conftest.py):
  - api: ApiHarness -- TestClient, stores, admin token
  - fresh_ip / ip_factory: unused client IPs for X-Forwarded-For
"""

from __future__ import annotations

from unittest.mock import patch

import redis

from services.notifications import ACCOUNT_LOCKED

PASSWORD = "correct-horse-1"


def _ip(fresh_ip: str) -> dict[str, str]:
    return {"X-Forwarded-For": fresh_ip}


def _bearer(token: str, ip: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", "X-Forwarded-For": ip}


def _login(api, email: str, password: str, ip: str):
    return api.client.post("/api/v1/auth/login", json={"email": email, "password": password}, headers=_ip(ip))


class TestRegister:
    def test_register_returns_token_pair(self, api, fresh_ip) -> None:
        email = api.new_email()
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": PASSWORD, "name": "Ada Parent"},
            headers=_ip(fresh_ip),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["statusCode"] == 201
        assert body["timestamp"]
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["access_token"] and data["refresh_token"]
        assert data["account"]["email"] == email
        assert data["account"]["role"] == "user"
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["RateLimit-Limit"] == "3"

    def test_duplicate_email_is_409(self, api, fresh_ip) -> None:
        email = api.new_email()
        api.register(fresh_ip, email=email)
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"email": email.upper(), "password": PASSWORD},
            headers=_ip(fresh_ip),
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "email_taken"

    def test_short_password_is_422_without_echo(self, api, fresh_ip) -> None:
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"email": api.new_email(), "password": "short7!"},
            headers=_ip(fresh_ip),
        )
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "validation_error"
        assert body["data"][0]["loc"][-1] == "password"
        assert "short7!" not in resp.text

    def test_fourth_registration_from_one_ip_is_429(self, api, fresh_ip) -> None:
        for _ in range(3):
            api.register(fresh_ip)
        resp = api.client.post(
            "/api/v1/auth/register",
            json={"email": api.new_email(), "password": PASSWORD},
            headers=_ip(fresh_ip),
        )
        assert resp.status_code == 429
        assert resp.json()["code"] == "rate_limited"


class TestLogin:
    def test_login_success(self, api, fresh_ip) -> None:
        resp = _login(api, api.admin_email, api.admin_password, fresh_ip)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["account"]["role"] == "admin"
        assert body["data"]["account"]["last_login"] is not None
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.headers["RateLimit-Remaining"] == "4"

    def test_unknown_email_and_wrong_password_look_identical(self, api, fresh_ip) -> None:
        unknown = _login(api, "ghost@campusguard.test", PASSWORD, fresh_ip)
        wrong = _login(api, api.admin_email, "wrong-password", fresh_ip)
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["code"] == wrong.json()["code"] == "invalid_credentials"
        assert unknown.json()["message"] == wrong.json()["message"] == "Invalid email or password"
        assert unknown.headers["Cache-Control"] == "no-store"

    def test_lockout_after_five_failures(self, api, fresh_ip, ip_factory) -> None:
        """Scenario: 5 wrong passwords lock the account; the right one is refused until the lock expires."""
        email = api.new_email()
        account_id = api.register(fresh_ip, email=email)["account"]["id"]
        codes = [_login(api, email, "wrong-password", fresh_ip).json()["code"] for _ in range(5)]
        assert codes == ["invalid_credentials"] * 4 + ["account_locked"]
        assert (account_id, ACCOUNT_LOCKED) in api.notifier.sent

        locked = _login(api, email, PASSWORD, ip_factory())
        assert locked.status_code == 401
        assert locked.json()["code"] == "account_locked"

        api.clock.advance(minutes=30)
        assert _login(api, email, PASSWORD, ip_factory()).status_code == 200

    def test_sixth_attempt_from_one_ip_is_rate_limited(self, api, fresh_ip) -> None:
        """Scenario: 6 login attempts from one IP inside 5 minutes."""
        statuses = [_login(api, "nobody@campusguard.test", "whatever", fresh_ip).status_code for _ in range(5)]
        assert statuses == [401] * 5

        resp = _login(api, "nobody@campusguard.test", "whatever", fresh_ip)
        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "rate_limited"
        assert body["statusCode"] == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert body["data"]["retry_after"] == int(resp.headers["Retry-After"])
        assert resp.headers["RateLimit-Remaining"] == "0"

        # Correct credentials are throttled too.
        assert _login(api, api.admin_email, api.admin_password, fresh_ip).status_code == 429


class TestRefresh:
    def test_refresh_rotates(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        resp = api.client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}, headers=_ip(fresh_ip)
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["refresh_token"] != tokens["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_reused_refresh_token_revokes_all_sessions(self, api, fresh_ip) -> None:
        """Scenario: refresh T1 -> T2, present T1 again, then T2 is dead too."""
        t1 = api.register(fresh_ip)["refresh_token"]
        t2 = api.client.post("/api/v1/auth/refresh", json={"refresh_token": t1}, headers=_ip(fresh_ip)).json()["data"][
            "refresh_token"
        ]

        reuse = api.client.post("/api/v1/auth/refresh", json={"refresh_token": t1}, headers=_ip(fresh_ip))
        assert reuse.status_code == 401
        assert reuse.json()["code"] == "token_reused"

        after = api.client.post("/api/v1/auth/refresh", json={"refresh_token": t2}, headers=_ip(fresh_ip))
        assert after.status_code == 401
        assert after.json()["code"] == "token_reused"

    def test_garbage_refresh_token(self, api, fresh_ip) -> None:
        resp = api.client.post("/api/v1/auth/refresh", json={"refresh_token": "abc.def.ghi"}, headers=_ip(fresh_ip))
        assert resp.status_code == 401
        assert resp.json()["code"] == "token_invalid"


class TestSession:
    def test_me_requires_bearer(self, api, fresh_ip) -> None:
        resp = api.client.get("/api/v1/auth/me", headers=_ip(fresh_ip))
        assert resp.status_code == 401
        assert resp.json()["code"] == "token_invalid"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me_returns_account(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        resp = api.client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"], fresh_ip))
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == tokens["account"]["id"]

    def test_expired_access_token(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        api.clock.advance(minutes=16)
        resp = api.client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"], fresh_ip))
        assert resp.status_code == 401
        assert resp.json()["code"] == "token_expired"

    def test_logout_revokes_refresh_token(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        resp = api.client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_bearer(tokens["access_token"], fresh_ip),
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        again = api.client.post(
            "/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}, headers=_ip(fresh_ip)
        )
        assert again.status_code == 401

    def test_disabled_account_is_refused(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        api.auth_store.update_account(tokens["account"]["id"], is_active=False)
        resp = api.client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"], fresh_ip))
        assert resp.status_code == 403
        assert resp.json()["code"] == "account_disabled"


class TestAdminRevokeSessions:
    def test_admin_revokes_every_session(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        account_id = tokens["account"]["id"]
        resp = api.client.post(
            f"/api/v1/auth/accounts/{account_id}/revoke-sessions", headers=api.admin_headers(fresh_ip)
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {"account_id": account_id, "revoked": 1}
        assert api.auth_store.count_active_refresh_tokens(account_id) == 0

    def test_non_admin_is_forbidden(self, api, fresh_ip) -> None:
        tokens = api.register(fresh_ip)
        resp = api.client.post(
            f"/api/v1/auth/accounts/{api.admin_id}/revoke-sessions",
            headers=_bearer(tokens["access_token"], fresh_ip),
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

    def test_unknown_account_is_404(self, api, fresh_ip) -> None:
        resp = api.client.post("/api/v1/auth/accounts/999999/revoke-sessions", headers=api.admin_headers(fresh_ip))
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"


class TestGlobalRateLimit:
    def test_non_get_requests_share_a_global_budget(self, api, fresh_ip) -> None:
        for _ in range(100):
            assert api.client.post("/api/v1/auth/logout", json={}, headers=_ip(fresh_ip)).status_code != 429
        resp = api.client.post("/api/v1/auth/logout", json={}, headers=_ip(fresh_ip))
        assert resp.status_code == 429
        assert resp.json()["code"] == "rate_limited"
        assert "Retry-After" in resp.headers

    def test_get_requests_are_exempt(self, api, fresh_ip) -> None:
        resp = api.client.get("/api/v1/health", headers=_ip(fresh_ip))
        assert "RateLimit-Limit" not in resp.headers

    def test_unreachable_counter_store_fails_closed(self, api, fresh_ip) -> None:
        limiter = api.client.app.state.rate_limiter
        with patch.object(limiter.strategy, "hit", side_effect=redis.ConnectionError("redis down")):
            resp = _login(api, api.admin_email, api.admin_password, fresh_ip)
        assert resp.status_code == 503
        assert resp.json()["code"] == "service_unavailable"
        assert "Retry-After" in resp.headers


class TestErrorEnvelope:
    def test_unknown_route_uses_envelope(self, api) -> None:
        resp = api.client.get("/api/v1/nope")
        assert resp.status_code == 404
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "http_404"
        assert set(body) >= {"success", "statusCode", "message", "data", "code", "timestamp"}
