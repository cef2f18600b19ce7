"""
audit/models.py -- Audit log vocabulary and entry dataclass.

Entries are append-only: inserted by the emitter, read by the audit-log view,
never updated or deleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGOUT = "LOGOUT"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ACCOUNT_UPDATED = "ACCOUNT_UPDATED"
    ACCOUNT_STATUS_CHANGED = "ACCOUNT_STATUS_CHANGED"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"
    ACCOUNT_RESTORED = "ACCOUNT_RESTORED"
    ACCOUNT_PERMANENTLY_DELETED = "ACCOUNT_PERMANENTLY_DELETED"
    PASSWORD_RESTORED = "PASSWORD_RESTORED"
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    CUSTOMER_UPDATED = "CUSTOMER_UPDATED"
    CUSTOMER_DELETED = "CUSTOMER_DELETED"
    DATA_IMPORTED = "DATA_IMPORTED"
    DATA_EXPORTED = "DATA_EXPORTED"
    ALLOWED_EMAIL_ADDED = "ALLOWED_EMAIL_ADDED"
    ALLOWED_EMAIL_UPDATED = "ALLOWED_EMAIL_UPDATED"
    ALLOWED_EMAIL_DELETED = "ALLOWED_EMAIL_DELETED"
    ALLOWED_EMAIL_ACTIVATED = "ALLOWED_EMAIL_ACTIVATED"
    ALLOWED_EMAIL_DEACTIVATED = "ALLOWED_EMAIL_DEACTIVATED"


@dataclass
class AuditLogEntry:
    """One audited action. user_id is the identity provider subject."""

    user_id: str
    email: str
    action: str
    details: str = ""
    id: int | None = None
    timestamp: str | None = None


@dataclass(frozen=True)
class Actor:
    """Who performed a mutation, as recorded in the audit log.

    user_id is the identity provider subject; "system" for the trash sweep.
    """

    user_id: str
    email: str
    role: str = "user"


SYSTEM_ACTOR = Actor(user_id="system", email="system", role="system")
