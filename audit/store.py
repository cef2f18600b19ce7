"""
audit/store.py -- Append-only audit log persistence.

AuditStore exposes insert and read only. There is deliberately no update or
delete method: the trail is append-only.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine

from audit.models import AuditLogEntry
from core.database import metadata, now_iso

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("email", String(320), nullable=False),
    Column("action", String(50), nullable=False, index=True),
    Column("details", Text, nullable=False, server_default=""),
    Column("timestamp", String(32), nullable=False, index=True),
)


class AuditStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[audit_logs])

    def append(self, entry: AuditLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                audit_logs.insert().values(
                    user_id=entry.user_id,
                    email=entry.email,
                    action=entry.action,
                    details=entry.details,
                    timestamp=entry.timestamp or now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_entries(self, action: str | None = None, limit: int = 500) -> list[AuditLogEntry]:
        """Newest entries first, optionally filtered to one action tag."""
        query = audit_logs.select().order_by(audit_logs.c.timestamp.desc(), audit_logs.c.id.desc()).limit(limit)
        if action:
            query = query.where(audit_logs.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        action=row.action,
        details=row.details,
        timestamp=row.timestamp,
    )
