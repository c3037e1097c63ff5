"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* through the ASGI stack.

Coverage:
  - POST /auth/telegram/webapp: new user, cookie attributes, error mapping,
    per-IP rate limit
  - GET /auth/session and POST /auth/logout
  - POST /auth/transfer/create + /auth/transfer/consume: full hand-off to a
    second device, single use (410 on reuse), unknown token (400), auth
    required (401), TTL clamping, per-user rate limit
  - 503 storage_unavailable when the store is down
  - GET /transfer landing page headers

A "second device" is the same TestClient with its cookie jar cleared: the
server only ever sees the cookie, so that is indistinguishable from another
browser.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from auth.errors import StorageUnavailable

WEBAPP = "/api/v1/auth/telegram/webapp"
SESSION = "/api/v1/auth/session"
LOGOUT = "/api/v1/auth/logout"
CREATE = "/api/v1/auth/transfer/create"
CONSUME = "/api/v1/auth/transfer/consume"


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


def _set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]


def _token_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["t"][0]


class TestWebAppLogin:
    def test_new_user_login_sets_session_cookie(self, api_client, login) -> None:
        client, _ = api_client
        resp = login(4242, username="ada_tutor", first_name="Ada")
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_new_user"] is True
        assert data["user"]["telegram_user_id"] == 4242
        assert data["user"]["username"] == "ada_tutor"
        assert resp.headers["cache-control"] == "no-store"

        expires_at = datetime.fromisoformat(data["session"]["expires_at"])
        expected = datetime.now(timezone.utc) + timedelta(minutes=1440)
        assert abs((expires_at - expected).total_seconds()) < 60

        cookie = _set_cookie_headers(resp)[0].lower()
        assert cookie.startswith("session_id=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "secure" in cookie
        assert "path=/" in cookie
        assert "max-age=86400" in cookie

    def test_second_login_is_not_new(self, login) -> None:
        assert login(4242).json()["is_new_user"] is True
        assert login(4242).json()["is_new_user"] is False

    def test_empty_init_data_is_400(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(WEBAPP, json={"initData": ""})
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_init_data"

    def test_missing_body_field_is_400(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(WEBAPP, json={})
        assert resp.status_code == 400

    def test_bad_signature_is_401(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        resp = client.post(WEBAPP, json={"initData": signed_init_data(1, bot_token="1:wrong")})
        assert resp.status_code == 401
        assert _error_code(resp) == "signature_invalid"
        assert resp.json()["error"]["message"] == "Please sign in again."
        assert _set_cookie_headers(resp) == []

    def test_stale_auth_date_is_401(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        resp = client.post(WEBAPP, json={"initData": signed_init_data(1, auth_date=int(time.time()) - 3600)})
        assert resp.status_code == 401
        assert _error_code(resp) == "auth_date_expired"

    def test_replay_is_400(self, api_client, login, signed_init_data) -> None:
        client, _ = api_client
        assert login(4242).status_code == 200
        old = signed_init_data(4242, auth_date=int(time.time()) - 120)
        resp = client.post(WEBAPP, json={"initData": old})
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_init_data"

    def test_rate_limited_per_ip(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        bad = {"initData": signed_init_data(1, bot_token="1:wrong")}
        statuses = [client.post(WEBAPP, json=bad).status_code for _ in range(31)]
        assert statuses[:30] == [401] * 30
        assert statuses[30] == 429
        limited = client.post(WEBAPP, json=bad)
        assert _error_code(limited) == "rate_limited"
        assert limited.headers["retry-after"] == "60"

    def test_rate_limit_keyed_on_forwarded_ip(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        bad = {"initData": signed_init_data(1, bot_token="1:wrong")}
        for _ in range(30):
            client.post(WEBAPP, json=bad, headers={"X-Forwarded-For": "203.0.113.1"})
        assert client.post(WEBAPP, json=bad, headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429
        assert client.post(WEBAPP, json=bad, headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 401


class TestSessionAndLogout:
    def test_session_requires_cookie(self, api_client) -> None:
        client, _ = api_client
        resp = client.get(SESSION)
        assert resp.status_code == 401
        assert _error_code(resp) == "unauthorized"

    def test_session_returns_current_user(self, api_client, login) -> None:
        client, _ = api_client
        login(4242, username="ada_tutor")
        resp = client.get(SESSION)
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "ada_tutor"

    def test_logout_revokes_and_clears_cookie(self, api_client, login) -> None:
        client, _ = api_client
        login(4242)
        raw = client.cookies.get("session_id")
        resp = client.post(LOGOUT)
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert any("max-age=0" in h.lower() for h in _set_cookie_headers(resp))

        # The old cookie value is dead server-side too.
        client.cookies.clear()
        assert client.get(SESSION, headers={"Cookie": f"session_id={raw}"}).status_code == 401

    def test_logout_without_session_is_ok(self, api_client) -> None:
        client, _ = api_client
        assert client.post(LOGOUT).status_code == 200


class TestTransferHandoff:
    def test_full_handoff_single_use(self, api_client, login) -> None:
        client, _ = api_client
        user_id = login(4242).json()["user"]["id"]
        device_a_cookie = client.cookies.get("session_id")

        created = client.post(CREATE, json={"ttl_seconds": 90})
        assert created.status_code == 200
        assert created.headers["cache-control"] == "no-store"
        body = created.json()
        assert body["expires_in"] == 90
        assert body["url"].startswith("https://testserver/transfer?t=")
        token = _token_from_url(body["url"])

        # Device B: no cookies at all.
        client.cookies.clear()
        assert client.get(SESSION).status_code == 401
        consumed = client.post(CONSUME, json={"token": token})
        assert consumed.status_code == 200
        assert consumed.json()["redirect_url"] == "/dashboard"
        device_b_cookie = client.cookies.get("session_id")
        assert device_b_cookie and device_b_cookie != device_a_cookie
        assert client.get(SESSION).json()["user"]["id"] == user_id

        # Third attempt with the same raw token.
        client.cookies.clear()
        again = client.post(CONSUME, json={"token": token})
        assert again.status_code == 410
        assert _error_code(again) == "token_expired_or_used"
        assert again.json()["error"]["message"] == "This link has expired. Request a new one."

    def test_create_requires_session(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(CREATE, json={})
        assert resp.status_code == 401

    def test_create_without_body_uses_default_ttl(self, api_client, login) -> None:
        client, _ = api_client
        login(4242)
        assert client.post(CREATE).json()["expires_in"] == 120

    def test_create_clamps_ttl(self, api_client, login) -> None:
        client, _ = api_client
        login(4242)
        assert client.post(CREATE, json={"ttl_seconds": 5}).json()["expires_in"] == 30

    def test_create_rate_limited_per_user(self, api_client, login) -> None:
        client, _ = api_client
        login(4242)
        statuses = [client.post(CREATE, json={}).status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]

    def test_unknown_token_is_400(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(CONSUME, json={"token": "not-a-real-token"})
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_token"

    def test_empty_token_is_400(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(CONSUME, json={"token": ""})
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_token"

    def test_consume_rate_limited_per_token(self, api_client) -> None:
        client, _ = api_client
        statuses = [
            client.post(CONSUME, json={"token": "guess"}, headers={"X-Forwarded-For": f"198.51.100.{i}"}).status_code
            for i in range(6)
        ]
        assert statuses == [400] * 5 + [429]


class TestStorageOutage:
    def test_store_failure_maps_to_503(self, api_client, login, monkeypatch) -> None:
        client, _ = api_client
        login(4242)

        def down(*args, **kwargs):
            raise StorageUnavailable()

        monkeypatch.setattr(client.app.state.transfer_service.store, "get_transfer_token_by_hash", down)
        resp = client.post(CONSUME, json={"token": "anything"})
        assert resp.status_code == 503
        assert _error_code(resp) == "storage_unavailable"
        assert "retry-after" in resp.headers


class TestTransferPage:
    def test_page_is_not_cached_and_sends_no_referrer(self, api_client) -> None:
        client, _ = api_client
        resp = client.get("/transfer", params={"t": "some-token"})
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["referrer-policy"] == "no-referrer"
        assert "/api/v1/auth/transfer/consume" in resp.text
        assert "some-token" not in resp.text

    def test_page_without_token_shows_expired_message(self, api_client) -> None:
        client, _ = api_client
        resp = client.get("/transfer")
        assert resp.status_code == 200
        assert "This link has expired" in resp.text

    def test_page_does_not_consume_token(self, api_client, login) -> None:
        client, _ = api_client
        login(4242)
        token = _token_from_url(client.post(CREATE, json={}).json()["url"])
        client.get("/transfer", params={"t": token})
        client.cookies.clear()
        assert client.post(CONSUME, json={"token": token}).status_code == 200


def test_client_fixture_is_https(api_client) -> None:
    client, _ = api_client
    assert isinstance(client, TestClient)
    assert str(client.base_url).startswith("https://")


class TestLocalBypass:
    """LOCAL_AUTH_BYPASS signs localhost requests in as the configured dev user."""

    def test_bypass_signs_in_local_user(self, api_client, monkeypatch) -> None:
        from auth import dependencies
        from core.config import Settings

        monkeypatch.setattr(
            dependencies,
            "get_settings",
            lambda: Settings(debug=True, local_auth_bypass=True, local_dev_telegram_id=123_000),
        )
        client, _ = api_client
        resp = client.get(SESSION, headers={"X-Forwarded-Host": "localhost:8000"})
        assert resp.status_code == 200
        assert resp.json()["user"]["telegram_user_id"] == 123_000
        cookie = _set_cookie_headers(resp)[0].lower()
        assert cookie.startswith("session_id=")
        assert "secure" not in cookie

    def test_bypass_ignores_non_local_hosts(self, api_client, monkeypatch) -> None:
        from auth import dependencies
        from core.config import Settings

        monkeypatch.setattr(dependencies, "get_settings", lambda: Settings(debug=True, local_auth_bypass=True))
        client, _ = api_client
        assert client.get(SESSION).status_code == 401

    def test_bypass_requires_exact_local_hostname(self, api_client, monkeypatch) -> None:
        from auth import dependencies
        from core.config import Settings

        monkeypatch.setattr(dependencies, "get_settings", lambda: Settings(debug=True, local_auth_bypass=True))
        client, _ = api_client
        for host in ("app.localhost.example.com", "localhost.evil.test", "127.0.0.1.nip.io"):
            assert client.get(SESSION, headers={"X-Forwarded-Host": host}).status_code == 401, host

    def test_bypass_accepts_loopback_addresses(self, api_client, monkeypatch) -> None:
        from auth import dependencies
        from core.config import Settings

        monkeypatch.setattr(dependencies, "get_settings", lambda: Settings(debug=True, local_auth_bypass=True))
        client, _ = api_client
        for host in ("127.0.0.1:8000", "[::1]:8000", "LOCALHOST"):
            client.cookies.clear()
            assert client.get(SESSION, headers={"X-Forwarded-Host": host}).status_code == 200, host


class TestCookieSecureFlag:
    def test_lookalike_local_host_keeps_secure_cookie(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        resp = client.post(
            WEBAPP,
            json={"initData": signed_init_data(4242)},
            headers={"X-Forwarded-Host": "app.localhost.example.com"},
        )
        assert resp.status_code == 200
        assert "secure" in _set_cookie_headers(resp)[0].lower()

    def test_localhost_cookie_is_not_secure(self, api_client, signed_init_data) -> None:
        client, _ = api_client
        resp = client.post(
            WEBAPP,
            json={"initData": signed_init_data(4242)},
            headers={"X-Forwarded-Host": "localhost:8000"},
        )
        assert resp.status_code == 200
        assert "secure" not in _set_cookie_headers(resp)[0].lower()
