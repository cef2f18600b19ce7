"""
tests/test_web_pages.py -- Server-rendered pages behind the session gate.

Each page is requested by an allow-listed user after seeding data through the
lifecycle, so the templates render real rows rather than empty states.
"""

from __future__ import annotations

import pytest

from accounts.lifecycle import AccountChanges
from audit.models import Actor

ACTOR = Actor(user_id="sub-pages", email="pages@example.com", role="user")


@pytest.fixture()
def signed_in(console):
    console.sign_in_as("pages@example.com", role="user")
    return console


class TestPages:
    def test_home_lists_accounts(self, signed_in) -> None:
        signed_in.state.lifecycle.create_account(ACTOR, "home-page@icloud.com")
        resp = signed_in.client.get("/")
        assert resp.status_code == 200
        assert "home-page@icloud.com" in resp.text
        assert "Allowed emails" not in resp.text

    def test_account_detail_shows_password_and_history(self, signed_in) -> None:
        lifecycle = signed_in.state.lifecycle
        account = lifecycle.create_account(ACTOR, "detail-page@icloud.com", password="first-pw")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password="second-pw"))
        lifecycle.create_customer(ACTOR, account.id, "Page Customer")

        resp = signed_in.client.get(f"/accounts/{account.id}")
        assert resp.status_code == 200
        assert "second-pw" in resp.text
        assert "first-pw" in resp.text
        assert "Page Customer" in resp.text

    def test_missing_account_renders_error(self, signed_in) -> None:
        resp = signed_in.client.get("/accounts/999999")
        assert resp.status_code == 200
        assert "not found" in resp.text

    def test_trash_page(self, signed_in) -> None:
        lifecycle = signed_in.state.lifecycle
        account = lifecycle.create_account(ACTOR, "trash-page@icloud.com")
        lifecycle.soft_delete(ACTOR, account.id)
        resp = signed_in.client.get("/accounts/trash")
        assert resp.status_code == 200
        assert "trash-page@icloud.com" in resp.text

    def test_customers_page(self, signed_in) -> None:
        lifecycle = signed_in.state.lifecycle
        account = lifecycle.create_account(ACTOR, "customers-page@icloud.com")
        lifecycle.create_customer(ACTOR, account.id, "Listed Customer")
        resp = signed_in.client.get("/customers")
        assert resp.status_code == 200
        assert "Listed Customer" in resp.text

    def test_audit_log_page_filters(self, signed_in) -> None:
        resp = signed_in.client.get("/audit-log", params={"action": "ACCOUNT_CREATED"})
        assert resp.status_code == 200
        assert "ACCOUNT_CREATED" in resp.text

    def test_owner_sees_allow_list_link(self, console) -> None:
        console.sign_in_as("pages-owner@example.com", role="owner")
        resp = console.client.get("/")
        assert "Allowed emails" in resp.text
