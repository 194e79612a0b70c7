"""End-to-end HTTP tests for the auth API.

These exercise the FastAPI app with the in-memory store and in-process
cache that TEST_MODE selects, and check both behavior and the response
envelope.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from pixora_auth.app import app
from pixora_auth.service.runtime import get_runtime
from pixora_auth.service.totp import generate_totp
from pixora_auth.storage.errors import StorageUnavailable
from pixora_auth.storage.redis_cache import MemoryCache

from conftest import PASSWORD, RecordingEmailService

NEW_PASSWORD = "N3w@Passw0rd!"


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def mail(client):
    recorder = RecordingEmailService()
    get_runtime().notifier.email = recorder
    return recorder


def _wait_for_mail(mail, count, timeout=5.0):
    # Notifications are delivered by background tasks on the app's loop
    deadline = time.monotonic() + timeout
    while len(mail.outbox) < count and time.monotonic() < deadline:
        time.sleep(0.01)
    assert len(mail.outbox) >= count, f"expected {count} emails, got {len(mail.outbox)}"


def _register(client, email="a@x.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "firstName": "Ada", "lastName": "Lovelace"},
    )


def _login(client, email="a@x.com", password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    def test_register_returns_envelope(self, client, mail):
        resp = _register(client)

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["request_id"] == resp.headers["X-Request-ID"]
        user = body["data"]["user"]
        assert user["email"] == "a@x.com"
        assert user["email_verified"] is False
        assert "email_verification_token" not in user

    def test_duplicate_email_conflict(self, client, mail):
        _register(client)
        resp = _register(client, email="A@X.com")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_email"

    def test_weak_password_rejected(self, client):
        resp = _register(client, password="password")

        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "validation_error"
        assert any("password" in err["loc"] for err in body["error"]["details"])

    def test_verify_email_link(self, client, mail):
        _register(client)
        _wait_for_mail(mail, 1)

        resp = client.post("/v1/auth/verify-email", json={"token": mail.last_token()})
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email_verified"] is True

        again = client.post("/v1/auth/verify-email", json={"token": mail.last_token()})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_or_expired_token"


class TestLoginFlow:
    def test_login_me_refresh_logout(self, client, mail):
        _register(client)
        login = _login(client)
        assert login.status_code == 200
        tokens = login.json()["data"]["tokens"]
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 900

        me = client.get("/v1/auth/me", headers=_bearer(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "a@x.com"

        refreshed = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]["tokens"]
        assert new_tokens["session_id"] == tokens["session_id"]

        stale = client.get("/v1/auth/me", headers=_bearer(tokens))
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "token_revoked"

        out = client.post("/v1/auth/logout", json={"refresh_token": new_tokens["refresh_token"]})
        assert out.status_code == 200
        after = client.get("/v1/auth/me", headers=_bearer(new_tokens))
        assert after.status_code == 401

    def test_rotated_refresh_token_rejected(self, client, mail):
        _register(client)
        tokens = _login(client).json()["data"]["tokens"]
        client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        reuse = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] in {"token_revoked", "session_invalid"}

    def test_bad_credentials_are_indistinguishable(self, client, mail):
        _register(client)
        wrong = _login(client, password="Wr0ng@Password")
        unknown = _login(client, email="nobody@x.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_after_five_failures(self, client, mail):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wr0ng@Password").status_code == 401

        locked = _login(client)
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert "locked_until" in locked.json()["error"]["details"]

    def test_logout_without_body_succeeds(self, client):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_missing_bearer_token(self, client):
        resp = client.get("/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_sessions_listing_and_revocation(self, client, mail):
        _register(client)
        first = _login(client).json()["data"]["tokens"]
        second = _login(client).json()["data"]["tokens"]

        listing = client.get("/v1/auth/sessions", headers=_bearer(first)).json()["data"]["items"]
        assert {s["id"] for s in listing} == {first["session_id"], second["session_id"]}
        current = [s for s in listing if s["current"]]
        assert [s["id"] for s in current] == [first["session_id"]]

        resp = client.delete(f"/v1/auth/sessions/{second['session_id']}", headers=_bearer(first))
        assert resp.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(second)).status_code == 401

    def test_logout_all(self, client, mail):
        _register(client)
        first = _login(client).json()["data"]["tokens"]
        second = _login(client).json()["data"]["tokens"]

        resp = client.post("/v1/auth/logout-all", headers=_bearer(first))

        assert resp.json()["data"]["sessions_revoked"] == 2
        assert client.get("/v1/auth/me", headers=_bearer(second)).status_code == 401


class TestPasswordFlows:
    def test_forgot_password_response_does_not_leak(self, client, mail):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "a@x.com"}).json()
        unknown = client.post("/v1/auth/forgot-password", json={"email": "zz@x.com"}).json()

        for body in (known, unknown):
            body.pop("request_id")
        assert known == unknown

    def test_reset_password_end_to_end(self, client, mail):
        _register(client)
        _wait_for_mail(mail, 1)
        tokens = _login(client).json()["data"]["tokens"]

        client.post("/v1/auth/forgot-password", json={"email": "a@x.com"})
        _wait_for_mail(mail, 2)
        reset_token = mail.last_token()

        resp = client.post(
            "/v1/auth/reset-password", json={"token": reset_token, "new_password": NEW_PASSWORD}
        )
        assert resp.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(tokens)).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200

        reused = client.post(
            "/v1/auth/reset-password", json={"token": reset_token, "password": "An0ther@Passw0rd"}
        )
        assert reused.status_code == 400

    def test_change_password_keeps_current_session(self, client, mail):
        _register(client)
        current = _login(client).json()["data"]["tokens"]
        other = _login(client).json()["data"]["tokens"]

        resp = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
            headers=_bearer(current),
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 1
        assert client.get("/v1/auth/me", headers=_bearer(current)).status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(other)).status_code == 401


class TestTwoFactorApi:
    def test_enrol_and_login_with_code(self, client, mail):
        _register(client)
        tokens = _login(client).json()["data"]["tokens"]

        setup = client.post(
            "/v1/auth/2fa/setup", json={"password": PASSWORD}, headers=_bearer(tokens)
        ).json()["data"]
        code = generate_totp(setup["secret"], time.time())
        verify = client.post("/v1/auth/2fa/verify", json={"code": code}, headers=_bearer(tokens))
        assert verify.status_code == 200
        assert verify.json()["data"]["user"]["two_factor_enabled"] is True

        pending = _login(client).json()
        assert pending["data"]["two_factor_required"] is True
        assert pending["data"]["tokens"] is None

        full = _login(client, twoFactorCode=generate_totp(setup["secret"], time.time()))
        assert full.status_code == 200
        assert full.json()["data"]["tokens"]["access_token"]

    def test_malformed_code_rejected_by_schema(self, client, mail):
        _register(client)
        resp = _login(client, two_factor_code="12")
        assert resp.status_code == 422


class TestAdministration:
    @pytest.fixture
    def admin_tokens(self, client):
        runtime = get_runtime()
        asyncio.run(runtime.auth.create_admin("root@x.com", PASSWORD, "Root", "Admin"))
        return _login(client, email="root@x.com").json()["data"]["tokens"]

    def test_list_users_requires_admin(self, client, mail, admin_tokens):
        _register(client)
        user_tokens = _login(client).json()["data"]["tokens"]

        denied = client.get("/v1/users", headers=_bearer(user_tokens))
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        listing = client.get("/v1/users", headers=_bearer(admin_tokens))
        assert listing.status_code == 200
        assert {u["email"] for u in listing.json()["data"]["items"]} == {"a@x.com", "root@x.com"}

    def test_deactivate_user_signs_them_out(self, client, mail, admin_tokens):
        user_id = _register(client).json()["data"]["user"]["id"]
        user_tokens = _login(client).json()["data"]["tokens"]

        resp = client.patch(
            f"/v1/users/{user_id}/status", json={"isActive": False}, headers=_bearer(admin_tokens)
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["is_active"] is False
        assert client.get("/v1/auth/me", headers=_bearer(user_tokens)).status_code == 401
        assert _login(client).status_code == 403

    def test_change_role(self, client, mail, admin_tokens):
        user_id = _register(client).json()["data"]["user"]["id"]
        user_tokens = _login(client).json()["data"]["tokens"]
        resp = client.patch(
            f"/v1/users/{user_id}/role", json={"role": "editor"}, headers=_bearer(admin_tokens)
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["role"] == "editor"
        assert client.get("/v1/auth/me", headers=_bearer(user_tokens)).status_code == 401


class TestRateLimitsAndAvailability:
    def test_login_rate_limited(self, client, mail, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_window", 2)
        _register(client)

        assert _login(client).status_code == 200
        assert _login(client).status_code == 200
        limited = _login(client)

        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert limited.headers["Retry-After"] == str(get_runtime().settings.rate_limit_window_seconds)

    def test_cache_outage_fails_closed_for_tokens_open_for_limits(self, client, mail):
        class DownCache(MemoryCache):
            async def is_token_blacklisted(self, jti):
                raise StorageUnavailable(backend="redis")

            async def check_rate_limit(self, key, limit, window_seconds):
                raise StorageUnavailable(backend="redis")

        runtime = get_runtime()
        _register(client)
        tokens = _login(client).json()["data"]["tokens"]

        down = DownCache()
        runtime.cache = down
        runtime.auth.cache = down

        # Rate limiting fails open, so login still works
        assert _login(client).status_code == 200
        resp = client.get("/v1/auth/me", headers=_bearer(tokens))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "storage_unavailable"
        assert resp.headers["Retry-After"] == "5"


class TestHealthAndHeaders:
    def test_healthz(self, client):
        resp = client.get("/healthz")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "MemoryStore"
        assert body["checks"]["cache"]["type"] == "MemoryCache"

    def test_security_headers(self, client):
        resp = client.post("/v1/auth/logout", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in resp.headers["Cache-Control"]
        assert resp.headers["API-Version"]
