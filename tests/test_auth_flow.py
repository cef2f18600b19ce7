"""
tests/test_auth_flow.py -- Identity callback, sign-out and session introspection.

The OAuth client is a mock (see conftest._patch_lifespan); everything after
the code exchange runs for real: claim checks, session creation, cookies,
audit entries, redirect safety.
"""

from __future__ import annotations

from unittest.mock import AsyncMock
from urllib.parse import urlparse

import pytest
from authlib.integrations.starlette_client import OAuthError

import web.routes
from api.limiter import limiter
from auth.tokens import access_cookie_name, refresh_cookie_names

_GOOGLE = [{"name": "google", "label": "Google"}]


@pytest.fixture()
def google(console, monkeypatch):
    """Enable a mocked Google provider and return the mocked OAuth client."""
    limiter.reset()
    monkeypatch.setattr(web.routes, "get_enabled_providers", lambda: _GOOGLE)
    client = console.state.oauth.create_client.return_value
    client.authorize_access_token = AsyncMock()
    return client


def _userinfo(email: str, verified: bool = True, sub: str = "google-sub-1") -> dict:
    return {"userinfo": {"email": email, "email_verified": verified, "sub": sub}}


class TestCallback:
    def test_successful_callback_sets_session_and_redirects_to_next(self, console, google) -> None:
        console.allow("callback@example.com")
        google.authorize_access_token.return_value = _userinfo("Callback@Example.com")

        resp = console.client.get("/auth/callback/google?next=/customers")
        assert resp.status_code == 302
        assert resp.headers["location"] == "http://testserver/customers"
        assert resp.headers["cache-control"] == "no-store"

        names = {h.split("=", 1)[0] for h in resp.headers.get_list("set-cookie")}
        assert access_cookie_name() in names
        assert refresh_cookie_names()[0] in names

        entries = console.audit_actions("LOGIN_SUCCESS")
        assert entries[0].email == "callback@example.com"
        assert entries[0].user_id == "google-sub-1"

        # The new session opens protected pages.
        follow = console.client.get("/customers")
        assert follow.status_code == 200

    def test_offsite_next_is_replaced_with_root(self, console, google) -> None:
        google.authorize_access_token.return_value = _userinfo("offsite@example.com")
        resp = console.client.get("/auth/callback/google?next=https://evil.example.net/")
        assert resp.status_code == 302
        assert resp.headers["location"] == "http://testserver/"

    def test_callback_does_not_check_allow_list(self, console, google) -> None:
        """The gate denies a non-listed email on the next request, not the callback."""
        google.authorize_access_token.return_value = _userinfo("unlisted@example.com")
        resp = console.client.get("/auth/callback/google")
        assert resp.status_code == 302
        assert urlparse(resp.headers["location"]).path == "/"

        follow = console.client.get("/accounts")
        assert follow.status_code == 302
        assert urlparse(follow.headers["location"]).query == "error=email_not_allowed"

    def test_unverified_email_fails(self, console, google) -> None:
        google.authorize_access_token.return_value = _userinfo("unverified@example.com", verified=False)
        resp = console.client.get("/auth/callback/google")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=auth_error"
        assert access_cookie_name() not in {h.split("=", 1)[0] for h in resp.headers.get_list("set-cookie")}

    def test_code_exchange_failure(self, console, google) -> None:
        google.authorize_access_token.side_effect = OAuthError(error="invalid_grant")
        resp = console.client.get("/auth/callback/google?code=bad")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=auth_error"

    def test_unknown_provider(self, console, google) -> None:
        resp = console.client.get("/auth/callback/github")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=auth_error"

    def test_login_page_lists_provider(self, console, google) -> None:
        monkey_providers = console.client.get("/login")
        assert monkey_providers.status_code == 200
        assert "/login/oauth/google" in monkey_providers.text

    def test_oauth_redirect_rejects_disabled_provider(self, console, google) -> None:
        resp = console.client.get("/login/oauth/oidc")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oauth_failed"


class TestSignOut:
    def test_api_logout_revokes_session_and_clears_cookies(self, console) -> None:
        identity = console.sign_in_as("leaving@example.com")
        resp = console.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"

        removals = resp.headers.get_list("set-cookie")
        assert any(h.startswith(f"{access_cookie_name()}=") and "max-age=0" in h.lower() for h in removals)
        assert console.state.access_store.get_session(identity.session_id).revoked_at is not None
        assert any(e.email == "leaving@example.com" for e in console.audit_actions("LOGOUT"))

    def test_web_logout_redirects_to_login(self, console) -> None:
        identity = console.sign_in_as("web-leaving@example.com")
        resp = console.client.get("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        assert console.state.access_store.get_session(identity.session_id).revoked_at is not None

    def test_logout_without_session(self, console) -> None:
        resp = console.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200


class TestIntrospection:
    def test_me_reports_owner(self, console) -> None:
        console.sign_in_as("me-owner@example.com", role="owner")
        resp = console.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        body = resp.json()
        assert body["email"] == "me-owner@example.com"
        assert body["role"] == "owner"
        assert body["is_owner"] is True

    def test_me_reports_user(self, console) -> None:
        console.sign_in_as("me-user@example.com", role="user")
        body = console.client.get("/api/v1/auth/me").json()
        assert body["is_owner"] is False

    def test_providers_is_public(self, console) -> None:
        resp = console.client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert isinstance(resp.json(), list)

    def test_health(self, console) -> None:
        resp = console.client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_docs_require_allow_list(self, console) -> None:
        assert console.client.get("/docs").status_code == 401
        console.sign_in_as("docs-reader@example.com")
        assert console.client.get("/docs").status_code == 200
