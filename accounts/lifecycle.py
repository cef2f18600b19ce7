"""
accounts/lifecycle.py -- Every mutation of accounts and customers goes through here.

AccountLifecycle owns the credential invariants:

  Password history
    Whenever the current password is replaced and the replaced value was
    non-empty, {old password, old updated_at} is appended to
    password_history first. Entries are never removed, edited, or reordered.
    Restoring an old password pushes the current one onto history the same
    way, so nothing is ever lost.

  Idempotent updates
    update_account()/update_customer()/change_status() compare against the
    stored record and skip both the write and the audit entry when nothing
    differs. Passwords are compared after decryption.

  Trash
    soft_delete() sets deleted_at/deleted_by, restore_from_trash() clears
    them. A trashed account becomes purge-eligible exactly
    trash_retention_days (30) after deleted_at.

  Purge (two-phase, best effort, not a transaction)
    Phase 1 deletes the account's customers. If that fails the failure is
    logged and phase 2 still deletes the account, which can leave orphaned
    customer rows behind. Operators find them through the warning
    "Purge phase 1 failed" in the log.

Audit entries are emitted only after the store write succeeded. The emitter
never raises, so audit problems cannot turn a committed mutation into an
error.

Passwords are encrypted on the way in (core/encryption.py) and decrypted only
for comparison and for AccountDetail.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from accounts.ingest import ImportRow
from accounts.models import Account, AccountStatus, Customer, PasswordHistoryEntry
from accounts.store import AccountStore
from audit.emitter import AuditEmitter
from audit.models import Actor, AuditAction
from core.database import parse_iso
from core.encryption import DecryptionError, decrypt_value, encrypt_value

logger = logging.getLogger("sentinel.accounts")

DEFAULT_RETENTION_DAYS = 30

_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AccountError(Exception):
    """Base class for lifecycle errors. code is the machine-readable error code."""

    code = "account_error"


class AccountNotFoundError(AccountError):
    code = "not_found"


class CustomerNotFoundError(AccountError):
    code = "not_found"


class DuplicateUsernameError(AccountError):
    code = "conflict"


class AccountStateError(AccountError):
    """Operation not valid for a live/trashed account (e.g. editing a trashed one)."""

    code = "invalid_state"


class PurgeNotAllowedError(AccountError):
    code = "purge_not_allowed"


class InvalidHistoryIndexError(AccountError):
    code = "invalid_history_index"


class InvalidStatusError(AccountError):
    code = "invalid_status"


class PasswordUnreadableError(AccountError):
    """A stored password cannot be decrypted with the configured ENCRYPTION_KEY."""

    code = "password_unreadable"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class AccountChanges:
    """Requested edits. None means "not provided"; "" clears phone/notes.

    An empty or missing password means "keep the current password".
    """

    username: Optional[str] = None
    password: Optional[str] = None
    phone_number: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class CustomerChanges:
    name: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class HistoryItem:
    """Decrypted history entry. index is its position in stored (insertion) order."""

    index: int
    password: str
    changed_at: str


@dataclass
class AccountDetail:
    account: Account
    password: Optional[str]
    history: list[HistoryItem] = field(default_factory=list)


@dataclass
class TrashItem:
    account: Account
    purge_eligible: bool
    purge_after: str


@dataclass
class ImportResult:
    added: int
    skipped: int


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def looks_like_email(value: str) -> bool:
    return bool(value) and _EMAIL_SHAPE.match(value) is not None


def purge_after(account: Account, retention_days: int = DEFAULT_RETENTION_DAYS) -> Optional[datetime]:
    if account.deleted_at is None:
        return None
    return parse_iso(account.deleted_at) + timedelta(days=retention_days)


def is_purge_eligible(
    account: Account,
    now: Optional[datetime] = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> bool:
    """True iff the account is trashed and now >= deleted_at + retention_days."""
    deadline = purge_after(account, retention_days)
    if deadline is None:
        return False
    return (now or datetime.now(timezone.utc)) >= deadline


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _reveal(value: Optional[str]) -> Optional[str]:
    try:
        return decrypt_value(value)
    except DecryptionError as exc:
        logger.error("Stored password could not be decrypted; check ENCRYPTION_KEY")
        raise PasswordUnreadableError("Stored password cannot be decrypted.") from exc


def _quote(value: Optional[str]) -> str:
    return f"'{value or ''}'"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AccountLifecycle:
    """Usage:
    lifecycle = AccountLifecycle(AccountStore(engine), AuditEmitter(AuditStore(engine)))
    account = lifecycle.create_account(actor, "a@icloud.com", password="P1")
    lifecycle.update_account(actor, account.id, AccountChanges(password="P2"))
    """

    def __init__(
        self,
        store: AccountStore,
        audit: AuditEmitter,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self.store = store
        self.audit = audit
        self.retention_days = retention_days

    def _emit(self, actor: Actor, action: AuditAction, details: str) -> None:
        self.audit.log_action(actor.user_id, actor.email, action, details)

    def _get(self, account_id: int) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found.")
        return account

    def _get_live(self, account_id: int) -> Account:
        account = self._get(account_id)
        if account.is_trashed:
            raise AccountStateError(f"Account {account.username} is in the trash. Restore it first.")
        return account

    def _purge_deadline(self, account: Account) -> Optional[datetime]:
        try:
            return purge_after(account, self.retention_days)
        except ValueError:
            logger.warning(
                "Account %s (id=%s) has an unreadable deleted_at %r; skipping",
                account.username,
                account.id,
                account.deleted_at,
            )
            return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_accounts(self, trashed: bool = False) -> list[Account]:
        return self.store.list_accounts(trashed=trashed)

    def get_account(self, account_id: int) -> Account:
        return self._get(account_id)

    def get_account_detail(self, account_id: int) -> AccountDetail:
        """Account with decrypted password and history (history newest first)."""
        account = self._get(account_id)
        history = [
            HistoryItem(index=i, password=_reveal(e.password) or "", changed_at=e.changed_at)
            for i, e in enumerate(account.password_history)
        ]
        history.sort(key=lambda h: (h.changed_at, h.index), reverse=True)
        return AccountDetail(account=account, password=_reveal(account.password), history=history)

    def list_trash(self, now: Optional[datetime] = None) -> list[TrashItem]:
        """Every trashed account, most recently deleted first, with its purge state.

        Rows whose deleted_at cannot be parsed are logged and left out.
        """
        now = now or datetime.now(timezone.utc)
        items = []
        for account in self.store.list_accounts(trashed=True):
            deadline = self._purge_deadline(account)
            if deadline is None:
                continue
            items.append(
                TrashItem(
                    account=account,
                    purge_eligible=now >= deadline,
                    purge_after=deadline.isoformat(),
                )
            )
        return items

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    def create_account(
        self,
        actor: Actor,
        username: str,
        password: Optional[str] = None,
        phone_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Account:
        username = username.strip()
        if self.store.get_by_username(username) is not None:
            raise DuplicateUsernameError(f"An account named {username} already exists.")
        account = Account(
            username=username,
            password=encrypt_value(password or ""),
            phone_number=_blank_to_none(phone_number),
            notes=_blank_to_none(notes),
            status=AccountStatus.active.value,
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError as exc:
            raise DuplicateUsernameError(f"An account named {username} already exists.") from exc
        self._emit(actor, AuditAction.ACCOUNT_CREATED, f"Created account {username}.")
        return self._get(account_id)

    def update_account(self, actor: Actor, account_id: int, changes: AccountChanges) -> Account:
        """Apply only the fields that differ. Returns the (possibly unchanged) account."""
        account = self._get_live(account_id)
        updates: dict = {}
        diff: list[str] = []

        if changes.username is not None:
            new_username = changes.username.strip()
            if new_username and new_username != account.username:
                updates["username"] = new_username
                diff.append(f"username from {_quote(account.username)} to {_quote(new_username)}")

        for name in ("phone_number", "notes"):
            requested = getattr(changes, name)
            if requested is None:
                continue
            new_value = _blank_to_none(requested)
            old_value = getattr(account, name)
            if (new_value or None) != (old_value or None):
                updates[name] = new_value
                diff.append(f"{name} from {_quote(old_value)} to {_quote(new_value)}")

        if changes.password:
            current = _reveal(account.password)
            if changes.password != current:
                updates["password"] = encrypt_value(changes.password)
                diff.append("password changed")
                if current:
                    updates["password_history"] = account.password_history + [
                        PasswordHistoryEntry(password=encrypt_value(current), changed_at=account.updated_at)
                    ]

        if not updates:
            return account

        try:
            self.store.update_account(account_id, **updates)
        except IntegrityError as exc:
            raise DuplicateUsernameError(f"An account named {updates.get('username')} already exists.") from exc
        self._emit(
            actor,
            AuditAction.ACCOUNT_UPDATED,
            f"Updated account {account.username}. Changes: {', '.join(diff)}.",
        )
        return self._get(account_id)

    def change_status(self, actor: Actor, account_id: int, status: str) -> Account:
        """Set any status from any status. Same status is a no-op."""
        try:
            new_status = AccountStatus(status).value
        except ValueError as exc:
            raise InvalidStatusError(f"Unknown status {status!r}.") from exc
        account = self._get_live(account_id)
        if account.status == new_status:
            return account
        self.store.update_account(account_id, status=new_status)
        self._emit(
            actor,
            AuditAction.ACCOUNT_STATUS_CHANGED,
            f"Changed status of account {account.username} from '{account.status}' to '{new_status}'.",
        )
        return self._get(account_id)

    def restore_password(self, actor: Actor, account_id: int, history_index: int) -> Account:
        """Make history entry history_index (stored order) the current password."""
        account = self._get_live(account_id)
        if not 0 <= history_index < len(account.password_history):
            raise InvalidHistoryIndexError(f"No password history entry at index {history_index}.")
        chosen = account.password_history[history_index]
        current = _reveal(account.password)

        updates: dict = {"password": encrypt_value(_reveal(chosen.password))}
        if current:
            updates["password_history"] = account.password_history + [
                PasswordHistoryEntry(password=encrypt_value(current), changed_at=account.updated_at)
            ]
        self.store.update_account(account_id, **updates)
        self._emit(
            actor,
            AuditAction.PASSWORD_RESTORED,
            f"Restored a previous password for account {account.username}. "
            "The current password was moved to history.",
        )
        return self._get(account_id)

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    def soft_delete(self, actor: Actor, account_id: int) -> Account:
        account = self._get_live(account_id)
        self.store.update_account(
            account_id,
            deleted_at=datetime.now(timezone.utc).isoformat(),
            deleted_by=actor.email,
        )
        self._emit(actor, AuditAction.ACCOUNT_DELETED, f"Moved account {account.username} to the trash.")
        return self._get(account_id)

    def restore_from_trash(self, actor: Actor, account_id: int) -> Account:
        account = self._get(account_id)
        if not account.is_trashed:
            raise AccountStateError(f"Account {account.username} is not in the trash.")
        self.store.update_account(account_id, deleted_at=None, deleted_by=None)
        self._emit(actor, AuditAction.ACCOUNT_RESTORED, f"Restored account {account.username} from the trash.")
        return self._get(account_id)

    def purge_account(self, actor: Actor, account_id: int, now: Optional[datetime] = None) -> None:
        """Permanently delete a trashed account and its customers (two-phase, best effort)."""
        account = self._get(account_id)
        if not account.is_trashed:
            raise AccountStateError(f"Account {account.username} is not in the trash.")
        deadline = self._purge_deadline(account)
        if deadline is None:
            raise PurgeNotAllowedError(f"Account {account.username} has no readable deletion date.")
        if (now or datetime.now(timezone.utc)) < deadline:
            raise PurgeNotAllowedError(
                f"Account {account.username} can be permanently deleted after {deadline.isoformat()}."
            )

        # Phase 1: customers. A failure here must not block phase 2.
        try:
            removed = self.store.delete_customers_for_account(account_id)
            logger.info("Purge phase 1: removed %d customers of %s", removed, account.username)
        except Exception:
            logger.warning(
                "Purge phase 1 failed: customers of account %s (id=%s) were not deleted; "
                "continuing with the account delete",
                account.username,
                account_id,
                exc_info=True,
            )

        # Phase 2: the account itself. Errors here propagate.
        if not self.store.delete_account(account_id):
            raise AccountNotFoundError(f"Account {account_id} not found.")
        self._emit(actor, AuditAction.ACCOUNT_PERMANENTLY_DELETED, f"Permanently deleted account {account.username}.")

    def purge_expired(self, actor: Actor, now: Optional[datetime] = None) -> list[str]:
        """Purge every eligible trashed account. Returns the purged usernames."""
        now = now or datetime.now(timezone.utc)
        purged: list[str] = []
        for item in self.list_trash(now):
            if not item.purge_eligible:
                continue
            try:
                self.purge_account(actor, item.account.id, now)
            except Exception:
                logger.exception("Trash sweep could not purge account %s", item.account.username)
                continue
            purged.append(item.account.username)
        if purged:
            logger.info("Trash sweep purged %d accounts", len(purged))
        return purged

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_accounts(self, actor: Actor, rows: list[ImportRow]) -> ImportResult:
        """Insert email-shaped, previously unknown usernames; skip everything else.

        Duplicates are checked against existing accounts (live and trashed) and
        within the file itself. One DATA_IMPORTED entry summarizes the batch.
        """
        seen = self.store.list_usernames()
        to_add: list[Account] = []
        for row in rows:
            username = row.username.strip()
            if not looks_like_email(username) or username in seen:
                continue
            seen.add(username)
            to_add.append(
                Account(
                    username=username,
                    password=encrypt_value(row.password or ""),
                    phone_number=_blank_to_none(row.phone_number),
                    notes=_blank_to_none(row.notes),
                    status=AccountStatus.active.value,
                )
            )

        added = self.store.create_accounts(to_add)
        skipped = len(rows) - added
        self._emit(
            actor,
            AuditAction.DATA_IMPORTED,
            f"Imported accounts: {added} added / {skipped} skipped (duplicate or invalid).",
        )
        return ImportResult(added=added, skipped=skipped)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def list_customers(self, account_id: Optional[int] = None) -> list[Customer]:
        if account_id is not None:
            self._get(account_id)
        return self.store.list_customers(account_id)

    def _get_customer(self, customer_id: int) -> Customer:
        customer = self.store.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"Customer {customer_id} not found.")
        return customer

    def create_customer(
        self,
        actor: Actor,
        account_id: int,
        name: str,
        phone: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Customer:
        account = self._get_live(account_id)
        customer_id = self.store.create_customer(
            Customer(account_id=account_id, name=name.strip(), phone=_blank_to_none(phone), notes=_blank_to_none(notes))
        )
        self._emit(
            actor,
            AuditAction.CUSTOMER_CREATED,
            f"Added customer '{name.strip()}' to account {account.username}.",
        )
        return self._get_customer(customer_id)

    def update_customer(self, actor: Actor, customer_id: int, changes: CustomerChanges) -> Customer:
        customer = self._get_customer(customer_id)
        account = self._get_live(customer.account_id)
        updates: dict = {}
        diff: list[str] = []

        if changes.name is not None:
            new_name = changes.name.strip()
            if new_name and new_name != customer.name:
                updates["name"] = new_name
                diff.append(f"name from {_quote(customer.name)} to {_quote(new_name)}")
        for name in ("phone", "notes"):
            requested = getattr(changes, name)
            if requested is None:
                continue
            new_value = _blank_to_none(requested)
            old_value = getattr(customer, name)
            if (new_value or None) != (old_value or None):
                updates[name] = new_value
                diff.append(f"{name} from {_quote(old_value)} to {_quote(new_value)}")

        if not updates:
            return customer

        self.store.update_customer(customer_id, **updates)
        self._emit(
            actor,
            AuditAction.CUSTOMER_UPDATED,
            f"Updated customer '{customer.name}' of account {account.username}. Changes: {', '.join(diff)}.",
        )
        return self._get_customer(customer_id)

    def delete_customer(self, actor: Actor, customer_id: int) -> None:
        customer = self._get_customer(customer_id)
        account = self._get_live(customer.account_id)
        if not self.store.delete_customer(customer_id):
            raise CustomerNotFoundError(f"Customer {customer_id} not found.")
        self._emit(actor, AuditAction.CUSTOMER_DELETED, f"Removed customer '{customer.name}' from account {account.username}.")
