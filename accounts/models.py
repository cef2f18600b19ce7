"""
accounts/models.py -- Domain dataclasses for credential accounts and customers.

These are pure data containers with zero logic. All business rules (password
history, trash retention, diffs) live in accounts/lifecycle.py.

Password fields hold whatever the store holds: "enc:"-prefixed ciphertext for
rows written by this application, plain text for legacy rows. The lifecycle
decrypts before comparing or displaying.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AccountStatus(str, Enum):
    """Flat label, not a state machine: any status may change to any other."""

    active = "active"
    inactive = "inactive"
    pending = "pending"
    in_period = "in_period"
    expired_period = "expired_period"


@dataclass
class PasswordHistoryEntry:
    """A password that was current until changed_at.

    The list on Account is append-only and ordered by insertion (oldest
    first). Duplicates are allowed: restoring an old password and changing
    away from it again records it a second time.
    """

    password: str
    changed_at: str  # ISO 8601


@dataclass
class Account:
    """An iCloud-style credential record.

    deleted_at is None for live accounts and set for trashed ones; exactly one
    of those holds at any time. customer_count is maintained by store triggers
    and is read-only from the application's point of view.

    id is None before the record is written to the database.
    """

    username: str
    password: Optional[str] = None
    password_history: list[PasswordHistoryEntry] = field(default_factory=list)
    phone_number: Optional[str] = None
    notes: Optional[str] = None
    status: str = AccountStatus.active.value
    customer_count: int = 0
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    deleted_at: Optional[str] = None
    deleted_by: Optional[str] = None

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Customer:
    """A customer using an account. Lifecycle is tied to the owning account."""

    account_id: int
    name: str
    phone: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
