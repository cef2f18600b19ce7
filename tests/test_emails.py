"""
tests/test_emails.py -- Allow-list management routes (owner only).

Coverage:
  - Non-owners get 403 on every /api/v1/emails route
  - Add, update, activate/deactivate and delete emit the matching audit tags
  - [M4] Owners cannot lock themselves out, and the last active owner
    cannot be demoted, deactivated or removed
  - Changes take effect on the caller's very next request (gate reads the store)
"""

from __future__ import annotations

from urllib.parse import urlparse

import pytest
from fastapi import HTTPException

from api.routes.v1.emails import _guard_last_owner
from audit.models import Actor
from auth.models import AllowListEntry


@pytest.fixture()
def owner(console):
    console.sign_in_as("chief@example.com", role="owner")
    return console


def _entry_id(console, email: str) -> int:
    return console.state.access_store.get_entry_by_email(email).id


class TestOwnerOnly:
    @pytest.mark.parametrize("role", ["user", "admin"])
    def test_non_owner_forbidden(self, console, role: str) -> None:
        console.sign_in_as(f"{role}-caller@example.com", role=role)
        resp = console.client.get("/api/v1/emails")
        assert resp.status_code == 403
        resp = console.client.post("/api/v1/emails", json={"email": "x@example.com"})
        assert resp.status_code == 403

    def test_owner_lists_entries(self, owner) -> None:
        resp = owner.client.get("/api/v1/emails")
        assert resp.status_code == 200
        assert "chief@example.com" in {e["email"] for e in resp.json()}


class TestManageEntries:
    def test_add_normalizes_and_audits(self, owner) -> None:
        resp = owner.client.post("/api/v1/emails", json={"email": "New.Person@Example.com", "role": "admin"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["email"] == "new.person@example.com"
        assert body["role"] == "admin"
        assert body["added_by"] == "chief@example.com"
        assert any("new.person@example.com" in e.details for e in owner.audit_actions("ALLOWED_EMAIL_ADDED"))

    def test_add_duplicate_is_409(self, owner) -> None:
        owner.client.post("/api/v1/emails", json={"email": "dupe@example.com"})
        resp = owner.client.post("/api/v1/emails", json={"email": "DUPE@example.com"})
        assert resp.status_code == 409

    def test_add_rejects_non_email(self, owner) -> None:
        resp = owner.client.post("/api/v1/emails", json={"email": "not an email"})
        assert resp.status_code == 422

    def test_role_change_audits_update(self, owner) -> None:
        owner.allow("promote-me@example.com", role="user")
        entry_id = _entry_id(owner, "promote-me@example.com")
        resp = owner.client.patch(f"/api/v1/emails/{entry_id}", json={"role": "admin"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        details = owner.audit_actions("ALLOWED_EMAIL_UPDATED")[0].details
        assert "role from 'user' to 'admin'" in details

    def test_deactivate_and_activate(self, owner) -> None:
        owner.allow("toggle@example.com")
        entry_id = _entry_id(owner, "toggle@example.com")

        resp = owner.client.patch(f"/api/v1/emails/{entry_id}", json={"is_active": False})
        assert resp.json()["is_active"] is False
        assert owner.audit_actions("ALLOWED_EMAIL_DEACTIVATED")

        resp = owner.client.patch(f"/api/v1/emails/{entry_id}", json={"is_active": True})
        assert resp.json()["is_active"] is True
        assert owner.audit_actions("ALLOWED_EMAIL_ACTIVATED")

    def test_unchanged_patch_writes_nothing(self, owner) -> None:
        owner.allow("stable@example.com", role="user")
        entry_id = _entry_id(owner, "stable@example.com")
        before = len(owner.audit_actions("ALLOWED_EMAIL_UPDATED"))
        resp = owner.client.patch(f"/api/v1/emails/{entry_id}", json={"role": "user", "is_active": True})
        assert resp.status_code == 200
        assert len(owner.audit_actions("ALLOWED_EMAIL_UPDATED")) == before

    def test_delete(self, owner) -> None:
        owner.allow("remove-me@example.com")
        entry_id = _entry_id(owner, "remove-me@example.com")
        resp = owner.client.delete(f"/api/v1/emails/{entry_id}")
        assert resp.status_code == 204
        assert owner.state.access_store.get_entry(entry_id) is None
        assert owner.audit_actions("ALLOWED_EMAIL_DELETED")

    def test_missing_entry_is_404(self, owner) -> None:
        resp = owner.client.patch("/api/v1/emails/999999", json={"role": "user"})
        assert resp.status_code == 404

    def test_deactivated_user_is_denied_on_next_request(self, owner) -> None:
        owner.allow("soon-gone@example.com")
        entry_id = _entry_id(owner, "soon-gone@example.com")
        owner.client.patch(f"/api/v1/emails/{entry_id}", json={"is_active": False})

        owner.sign_in("soon-gone@example.com")
        resp = owner.client.get("/accounts")
        assert resp.status_code == 302
        assert urlparse(resp.headers["location"]).query == "error=email_not_allowed"


class TestOwnerGuard:
    def test_cannot_deactivate_self(self, owner) -> None:
        resp = owner.client.patch(f"/api/v1/emails/{_entry_id(owner, 'chief@example.com')}", json={"is_active": False})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_lockout"

    def test_cannot_demote_self(self, owner) -> None:
        resp = owner.client.patch(f"/api/v1/emails/{_entry_id(owner, 'chief@example.com')}", json={"role": "admin"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_lockout"

    def test_cannot_delete_self(self, owner) -> None:
        resp = owner.client.delete(f"/api/v1/emails/{_entry_id(owner, 'chief@example.com')}")
        assert resp.status_code == 400

    def test_co_owner_can_be_demoted(self, owner) -> None:
        owner.allow("deputy@example.com", role="owner")
        resp = owner.client.patch(f"/api/v1/emails/{_entry_id(owner, 'deputy@example.com')}", json={"role": "admin"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"

    def test_last_active_owner_guard(self, stores) -> None:
        """Even an actor that is not the target cannot remove the only active owner."""
        entry_id = stores.access.create_entry(AllowListEntry(email="solo@example.com", role="owner"))
        target = stores.access.get_entry(entry_id)
        with pytest.raises(HTTPException) as exc_info:
            _guard_last_owner(stores.access, target, Actor(user_id="cli", email="cli", role="system"))
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["code"] == "last_owner"

    def test_inactive_owner_can_be_removed(self, stores) -> None:
        entry_id = stores.access.create_entry(AllowListEntry(email="dormant@example.com", role="owner", is_active=False))
        _guard_last_owner(stores.access, stores.access.get_entry(entry_id), Actor(user_id="x", email="x@example.com"))
