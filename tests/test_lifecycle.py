"""Unit tests for accounts/lifecycle.py against a real shared-memory store.

Covers:
- Password history: old non-empty passwords are appended, never lost
- Idempotent updates skip both the write and the audit entry
- Password restore pushes the current password onto history
- Trash: soft delete, restore, 30-day purge eligibility
- Two-phase purge continues when the customer delete fails
- Bulk import dedup and the DATA_IMPORTED summary
- customer_count follows customer inserts and deletes
- Customers of a trashed account are read-only
- Trash rows with an unreadable deleted_at are skipped, never purged
"""

from datetime import datetime, timedelta, timezone

import pytest

from accounts.ingest import ImportRow
from accounts.lifecycle import (
    AccountChanges,
    AccountLifecycle,
    AccountNotFoundError,
    AccountStateError,
    CustomerChanges,
    DuplicateUsernameError,
    InvalidHistoryIndexError,
    InvalidStatusError,
    PurgeNotAllowedError,
    is_purge_eligible,
    looks_like_email,
)
from accounts.models import Account
from audit.models import Actor, AuditAction
from core.encryption import decrypt_value, is_encrypted

ACTOR = Actor(user_id="sub-ops", email="ops@example.com", role="admin")


@pytest.fixture()
def lifecycle(stores) -> AccountLifecycle:
    return AccountLifecycle(stores.accounts, stores.audit)


def _actions(stores, action: AuditAction) -> list:
    return stores.audit_store.list_entries(action=action.value)


def _trash_days_ago(stores, lifecycle: AccountLifecycle, account_id: int, days: float) -> None:
    lifecycle.soft_delete(ACTOR, account_id)
    deleted_at = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    stores.accounts.update_account(account_id, deleted_at=deleted_at)


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------


class TestCreateAndUpdate:
    def test_create_encrypts_password_and_audits(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "a@icloud.com", password="P1")
        assert is_encrypted(account.password)
        assert decrypt_value(account.password) == "P1"
        assert account.status == "active"
        assert account.password_history == []
        entries = _actions(stores, AuditAction.ACCOUNT_CREATED)
        assert len(entries) == 1
        assert entries[0].email == "ops@example.com"
        assert "a@icloud.com" in entries[0].details

    def test_duplicate_username_rejected(self, lifecycle) -> None:
        lifecycle.create_account(ACTOR, "dup@icloud.com")
        with pytest.raises(DuplicateUsernameError):
            lifecycle.create_account(ACTOR, "dup@icloud.com")

    def test_password_change_appends_history(self, lifecycle) -> None:
        """Changing P1 to P2 keeps P1 with the timestamp it was current until."""
        account = lifecycle.create_account(ACTOR, "h@icloud.com", password="P1")
        updated = lifecycle.update_account(ACTOR, account.id, AccountChanges(password="P2"))

        assert decrypt_value(updated.password) == "P2"
        assert len(updated.password_history) == 1
        assert decrypt_value(updated.password_history[0].password) == "P1"
        assert updated.password_history[0].changed_at == account.updated_at

    def test_history_only_grows(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "grow@icloud.com", password="P1")
        for new in ("P2", "P3", "P1"):
            lifecycle.update_account(ACTOR, account.id, AccountChanges(password=new))
        stored = lifecycle.get_account(account.id)
        assert [decrypt_value(e.password) for e in stored.password_history] == ["P1", "P2", "P3"]

    def test_empty_old_password_is_not_recorded(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "blank@icloud.com")
        updated = lifecycle.update_account(ACTOR, account.id, AccountChanges(password="first"))
        assert updated.password_history == []

    def test_empty_new_password_keeps_current(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "keep@icloud.com", password="P1")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password=""))
        stored = lifecycle.get_account(account.id)
        assert decrypt_value(stored.password) == "P1"
        assert _actions(stores, AuditAction.ACCOUNT_UPDATED) == []

    def test_identical_update_is_a_no_op(self, stores, lifecycle) -> None:
        """Same password, same phone, same notes: no write and no audit entry."""
        account = lifecycle.create_account(ACTOR, "same@icloud.com", password="P1", phone_number="555", notes="n")
        result = lifecycle.update_account(
            ACTOR,
            account.id,
            AccountChanges(username="same@icloud.com", password="P1", phone_number="555", notes="n"),
        )
        assert result.updated_at == account.updated_at
        assert _actions(stores, AuditAction.ACCOUNT_UPDATED) == []

    def test_blank_and_missing_phone_are_equal(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "nophone@icloud.com")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(phone_number=""))
        assert _actions(stores, AuditAction.ACCOUNT_UPDATED) == []

    def test_audit_details_list_changes_without_password_values(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "diff@icloud.com", password="secret-1", notes="old")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password="secret-2", notes="new"))
        details = _actions(stores, AuditAction.ACCOUNT_UPDATED)[0].details
        assert "notes from 'old' to 'new'" in details
        assert "password changed" in details
        assert "secret-1" not in details
        assert "secret-2" not in details

    def test_trashed_account_cannot_be_edited(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "frozen@icloud.com")
        lifecycle.soft_delete(ACTOR, account.id)
        with pytest.raises(AccountStateError):
            lifecycle.update_account(ACTOR, account.id, AccountChanges(notes="x"))

    def test_missing_account(self, lifecycle) -> None:
        with pytest.raises(AccountNotFoundError):
            lifecycle.update_account(ACTOR, 9999, AccountChanges(notes="x"))


class TestStatus:
    def test_any_status_to_any_status(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "s@icloud.com")
        for status in ("expired_period", "pending", "active", "in_period", "inactive"):
            assert lifecycle.change_status(ACTOR, account.id, status).status == status
        assert len(_actions(stores, AuditAction.ACCOUNT_STATUS_CHANGED)) == 5

    def test_same_status_is_a_no_op(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "s2@icloud.com")
        lifecycle.change_status(ACTOR, account.id, "active")
        assert _actions(stores, AuditAction.ACCOUNT_STATUS_CHANGED) == []

    def test_unknown_status(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "s3@icloud.com")
        with pytest.raises(InvalidStatusError):
            lifecycle.change_status(ACTOR, account.id, "banned")


# ---------------------------------------------------------------------------
# Password history reads and restore
# ---------------------------------------------------------------------------


class TestPasswordRestore:
    def test_detail_history_is_newest_first_with_stored_index(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "d@icloud.com", password="P1")
        stores.accounts.update_account(account.id, updated_at="2024-01-01T00:00:00+00:00")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password="P2"))
        stores.accounts.update_account(account.id, updated_at="2024-02-01T00:00:00+00:00")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password="P3"))

        detail = lifecycle.get_account_detail(account.id)
        assert detail.password == "P3"
        assert [(h.index, h.password) for h in detail.history] == [(1, "P2"), (0, "P1")]

    def test_restore_moves_current_to_history(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "r@icloud.com", password="P1")
        lifecycle.update_account(ACTOR, account.id, AccountChanges(password="P2"))

        restored = lifecycle.restore_password(ACTOR, account.id, 0)
        assert decrypt_value(restored.password) == "P1"
        assert [decrypt_value(e.password) for e in restored.password_history] == ["P1", "P2"]
        assert len(_actions(stores, AuditAction.PASSWORD_RESTORED)) == 1

    def test_restore_bad_index(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "r2@icloud.com", password="P1")
        with pytest.raises(InvalidHistoryIndexError):
            lifecycle.restore_password(ACTOR, account.id, 0)


# ---------------------------------------------------------------------------
# Trash and purge
# ---------------------------------------------------------------------------


class TestTrash:
    def test_soft_delete_and_restore(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "t@icloud.com")
        trashed = lifecycle.soft_delete(ACTOR, account.id)
        assert trashed.is_trashed
        assert trashed.deleted_by == "ops@example.com"
        assert lifecycle.list_accounts() == []
        assert [a.id for a in lifecycle.list_accounts(trashed=True)] == [account.id]

        restored = lifecycle.restore_from_trash(ACTOR, account.id)
        assert not restored.is_trashed
        assert restored.deleted_by is None
        assert len(_actions(stores, AuditAction.ACCOUNT_DELETED)) == 1
        assert len(_actions(stores, AuditAction.ACCOUNT_RESTORED)) == 1

    def test_restore_live_account_rejected(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "live@icloud.com")
        with pytest.raises(AccountStateError):
            lifecycle.restore_from_trash(ACTOR, account.id)

    def test_purge_refused_at_29_days(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "young@icloud.com")
        _trash_days_ago(stores, lifecycle, account.id, 29)
        with pytest.raises(PurgeNotAllowedError):
            lifecycle.purge_account(ACTOR, account.id)
        assert stores.accounts.get_account(account.id) is not None

    def test_purge_allowed_at_31_days(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "old@icloud.com")
        lifecycle.create_customer(ACTOR, account.id, "Customer A")
        lifecycle.create_customer(ACTOR, account.id, "Customer B")
        _trash_days_ago(stores, lifecycle, account.id, 31)

        lifecycle.purge_account(ACTOR, account.id)
        assert stores.accounts.get_account(account.id) is None
        assert stores.accounts.list_customers(account.id) == []
        entries = _actions(stores, AuditAction.ACCOUNT_PERMANENTLY_DELETED)
        assert len(entries) == 1
        assert "old@icloud.com" in entries[0].details

    def test_purge_of_live_account_rejected(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "notrash@icloud.com")
        with pytest.raises(AccountStateError):
            lifecycle.purge_account(ACTOR, account.id)

    def test_purge_eligibility_boundary(self) -> None:
        deleted = datetime(2024, 3, 1, tzinfo=timezone.utc)
        account = Account(username="x@icloud.com", deleted_at=deleted.isoformat())
        assert not is_purge_eligible(account, now=deleted + timedelta(days=30, seconds=-1))
        assert is_purge_eligible(account, now=deleted + timedelta(days=30))
        assert not is_purge_eligible(Account(username="live@icloud.com"), now=deleted)

    def test_purge_continues_when_customer_delete_fails(self, stores, lifecycle, monkeypatch, caplog) -> None:
        account = lifecycle.create_account(ACTOR, "orphan@icloud.com")
        lifecycle.create_customer(ACTOR, account.id, "Left Behind")
        _trash_days_ago(stores, lifecycle, account.id, 31)

        def _boom(account_id: int) -> int:
            raise RuntimeError("customers table locked")

        monkeypatch.setattr(stores.accounts, "delete_customers_for_account", _boom)
        with caplog.at_level("WARNING", logger="sentinel.accounts"):
            lifecycle.purge_account(ACTOR, account.id)

        assert stores.accounts.get_account(account.id) is None
        assert len(stores.accounts.list_customers(account.id)) == 1
        assert "Purge phase 1 failed" in caplog.text
        assert len(_actions(stores, AuditAction.ACCOUNT_PERMANENTLY_DELETED)) == 1

    def test_list_trash_reports_eligibility(self, stores, lifecycle) -> None:
        fresh = lifecycle.create_account(ACTOR, "fresh@icloud.com")
        stale = lifecycle.create_account(ACTOR, "stale@icloud.com")
        _trash_days_ago(stores, lifecycle, fresh.id, 1)
        _trash_days_ago(stores, lifecycle, stale.id, 40)

        items = {i.account.username: i for i in lifecycle.list_trash()}
        assert items["fresh@icloud.com"].purge_eligible is False
        assert items["stale@icloud.com"].purge_eligible is True

    def test_purge_expired_sweeps_only_eligible(self, stores, lifecycle) -> None:
        keep = lifecycle.create_account(ACTOR, "keep-trash@icloud.com")
        drop = lifecycle.create_account(ACTOR, "drop-trash@icloud.com")
        _trash_days_ago(stores, lifecycle, keep.id, 10)
        _trash_days_ago(stores, lifecycle, drop.id, 35)

        assert lifecycle.purge_expired(ACTOR) == ["drop-trash@icloud.com"]
        assert stores.accounts.get_account(keep.id) is not None

    def test_list_trash_skips_unreadable_deleted_at(self, stores, lifecycle, caplog) -> None:
        good = lifecycle.create_account(ACTOR, "readable@icloud.com")
        bad = lifecycle.create_account(ACTOR, "garbled@icloud.com")
        _trash_days_ago(stores, lifecycle, good.id, 2)
        lifecycle.soft_delete(ACTOR, bad.id)
        stores.accounts.update_account(bad.id, deleted_at="yesterday")

        with caplog.at_level("WARNING", logger="sentinel.accounts"):
            items = lifecycle.list_trash()

        assert [i.account.username for i in items] == ["readable@icloud.com"]
        assert "unreadable deleted_at" in caplog.text

    def test_unreadable_deleted_at_is_never_purged(self, stores, lifecycle) -> None:
        bad = lifecycle.create_account(ACTOR, "garbled-purge@icloud.com")
        drop = lifecycle.create_account(ACTOR, "old-enough@icloud.com")
        lifecycle.soft_delete(ACTOR, bad.id)
        stores.accounts.update_account(bad.id, deleted_at="not a date")
        _trash_days_ago(stores, lifecycle, drop.id, 45)

        with pytest.raises(PurgeNotAllowedError):
            lifecycle.purge_account(ACTOR, bad.id)
        assert lifecycle.purge_expired(ACTOR) == ["old-enough@icloud.com"]
        assert stores.accounts.get_account(bad.id) is not None


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    def test_import_skips_duplicates_and_invalid(self, stores, lifecycle) -> None:
        lifecycle.create_account(ACTOR, "a@x.com")
        rows = [
            ImportRow(username="a@x.com", password="p"),
            ImportRow(username="b@x.com", password="p"),
            ImportRow(username="c@x.com"),
        ]
        result = lifecycle.import_accounts(ACTOR, rows)
        assert (result.added, result.skipped) == (2, 1)
        entries = _actions(stores, AuditAction.DATA_IMPORTED)
        assert len(entries) == 1
        assert "2 added / 1 skipped" in entries[0].details

    def test_import_dedups_within_file_and_against_trash(self, lifecycle) -> None:
        trashed = lifecycle.create_account(ACTOR, "trashed@x.com")
        lifecycle.soft_delete(ACTOR, trashed.id)
        rows = [
            ImportRow(username="new@x.com"),
            ImportRow(username="new@x.com"),
            ImportRow(username="trashed@x.com"),
            ImportRow(username="not-an-email"),
            ImportRow(username=""),
        ]
        result = lifecycle.import_accounts(ACTOR, rows)
        assert (result.added, result.skipped) == (1, 4)

    def test_imported_passwords_are_encrypted(self, lifecycle) -> None:
        lifecycle.import_accounts(ACTOR, [ImportRow(username="enc@x.com", password="hunter2")])
        account = lifecycle.list_accounts()[0]
        assert is_encrypted(account.password)
        assert decrypt_value(account.password) == "hunter2"

    def test_email_shape(self) -> None:
        assert looks_like_email("a@b")
        assert not looks_like_email("a b@c.com")
        assert not looks_like_email("a@@b")
        assert not looks_like_email("")


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class TestCustomers:
    def test_customer_count_tracks_inserts_and_deletes(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "count@icloud.com")
        first = lifecycle.create_customer(ACTOR, account.id, "One")
        lifecycle.create_customer(ACTOR, account.id, "Two")
        assert lifecycle.get_account(account.id).customer_count == 2

        lifecycle.delete_customer(ACTOR, first.id)
        assert lifecycle.get_account(account.id).customer_count == 1

    def test_customer_update_is_idempotent(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "cust@icloud.com")
        customer = lifecycle.create_customer(ACTOR, account.id, "Ann", phone="1")
        lifecycle.update_customer(ACTOR, customer.id, CustomerChanges(name="Ann", phone="1"))
        assert _actions(stores, AuditAction.CUSTOMER_UPDATED) == []

        lifecycle.update_customer(ACTOR, customer.id, CustomerChanges(phone="2"))
        details = _actions(stores, AuditAction.CUSTOMER_UPDATED)[0].details
        assert "phone from '1' to '2'" in details

    def test_customer_on_trashed_account_rejected(self, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "closed@icloud.com")
        lifecycle.soft_delete(ACTOR, account.id)
        with pytest.raises(AccountStateError):
            lifecycle.create_customer(ACTOR, account.id, "Late")

    def test_customers_of_trashed_account_are_read_only(self, stores, lifecycle) -> None:
        account = lifecycle.create_account(ACTOR, "frozen@icloud.com")
        customer = lifecycle.create_customer(ACTOR, account.id, "Kept")
        lifecycle.soft_delete(ACTOR, account.id)

        with pytest.raises(AccountStateError):
            lifecycle.update_customer(ACTOR, customer.id, CustomerChanges(phone="9"))
        with pytest.raises(AccountStateError):
            lifecycle.delete_customer(ACTOR, customer.id)
        assert [c.name for c in lifecycle.list_customers(account.id)] == ["Kept"]
        assert _actions(stores, AuditAction.CUSTOMER_DELETED) == []
