"""
auth/store.py -- SQLAlchemy Core persistence for the allow-list and sessions.

Pattern: Repository + Data Mapper (same as accounts/store.py).
AccessStore is the repository; _row_to_entry / _row_to_session are the mappers.
Route, gate and policy code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are normalized to lowercase on every write and every lookup, so
  "Alice@Example.com" and "alice@example.com" can never hold two entries.

  [M4] count_active_owners() backs the "last active owner" guard in
  api/routes/v1/emails.py. Without it an owner could lock everyone out of
  allow-list management with no recovery path short of the CLI.

  rotate_refresh() is a compare-and-swap on refresh_generation: two
  concurrent refreshes with the same token cannot both succeed.

Layer rule: no imports from api/, web/, accounts/, audit/, or cache/.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Table, Text, func
from sqlalchemy.engine import Engine

from auth.models import AllowListEntry, Role, Session
from core.database import metadata, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

allowed_emails = Table(
    "allowed_emails",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("role", String(20), nullable=False, server_default=Role.user.value),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("added_by", String(320)),
    Column("added_at", String(32), nullable=False),
    Column("notes", Text),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(320), nullable=False),
    Column("subject", String(255), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("refresh_generation", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccessStore:
    """Repository for AllowListEntry and Session records.

    Usage:
        store = AccessStore(create_db_engine("sqlite:///sentinel.db"))
        store.create_entry(AllowListEntry(email="owner@example.com", role="owner"))
        entry = store.get_active_entry("owner@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[allowed_emails, sessions])

    # ------------------------------------------------------------------
    # Allow-list
    # ------------------------------------------------------------------

    def create_entry(self, entry: AllowListEntry) -> int:
        """Insert a new allow-list entry and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already listed.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                allowed_emails.insert().values(
                    email=normalize_email(entry.email),
                    role=entry.role,
                    is_active=entry.is_active,
                    added_by=entry.added_by,
                    added_at=now_iso(),
                    notes=entry.notes,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_entry(self, entry_id: int) -> AllowListEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(allowed_emails.select().where(allowed_emails.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_entry_by_email(self, email: str) -> AllowListEntry | None:
        """Return the entry for email whether or not it is active."""
        with self.engine.connect() as conn:
            row = conn.execute(
                allowed_emails.select().where(allowed_emails.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_active_entry(self, email: str) -> AllowListEntry | None:
        """Return the active entry for email, or None. The policy's only read."""
        with self.engine.connect() as conn:
            row = conn.execute(
                allowed_emails.select().where(
                    (allowed_emails.c.email == normalize_email(email)) & (allowed_emails.c.is_active.is_(True))
                )
            ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def list_entries(self) -> list[AllowListEntry]:
        """Return all entries, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                allowed_emails.select().order_by(allowed_emails.c.added_at.desc(), allowed_emails.c.id.desc())
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def update_entry(self, entry_id: int, **fields) -> bool:
        """Update mutable fields (email, role, is_active, notes).

        Returns True if a row was updated, False if entry_id was not found.
        Raises IntegrityError when the new email collides with another entry.
        """
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self.engine.connect() as conn:
            result = conn.execute(allowed_emails.update().where(allowed_emails.c.id == entry_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_entry(self, entry_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(allowed_emails.delete().where(allowed_emails.c.id == entry_id))
            conn.commit()
        return result.rowcount > 0

    def count_active_owners(self) -> int:
        """Return the number of active owner entries [M4]."""
        with self.engine.connect() as conn:
            result = conn.execute(
                allowed_emails.select()
                .with_only_columns(func.count())
                .where((allowed_emails.c.role == Role.owner.value) & (allowed_emails.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    email=normalize_email(session.email),
                    subject=session.subject,
                    provider=session.provider,
                    refresh_generation=session.refresh_generation,
                    created_at=now_iso(),
                    expires_at=session.expires_at,
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_refresh(self, session_id: str, expected_generation: int, expires_at: str) -> bool:
        """Advance refresh_generation if it still equals expected_generation.

        Returns False when another rotation already consumed this generation
        or the session has been revoked.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    (sessions.c.id == session_id)
                    & (sessions.c.refresh_generation == expected_generation)
                    & (sessions.c.revoked_at.is_(None))
                )
                .values(refresh_generation=expected_generation + 1, expires_at=expires_at)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                sessions.update()
                .where((sessions.c.id == session_id) & (sessions.c.revoked_at.is_(None)))
                .values(revoked_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def purge_expired_sessions(self, before: str) -> int:
        """Delete sessions that expired or were revoked before the given timestamp."""
        with self.engine.connect() as conn:
            result = conn.execute(
                sessions.delete().where((sessions.c.expires_at < before) | (sessions.c.revoked_at < before))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AllowListEntry:
    return AllowListEntry(
        id=row.id,
        email=row.email,
        role=row.role,
        is_active=bool(row.is_active),
        added_by=row.added_by,
        added_at=row.added_at,
        notes=row.notes,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        email=row.email,
        subject=row.subject,
        provider=row.provider,
        refresh_generation=row.refresh_generation,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )
