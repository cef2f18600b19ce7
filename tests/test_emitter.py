"""Tests for audit/emitter.py -- best-effort, non-blocking audit writes."""

import asyncio
import logging

from audit.emitter import AuditEmitter
from audit.models import AuditAction, AuditLogEntry


class _FailingStore:
    def append(self, entry: AuditLogEntry) -> int:
        raise RuntimeError("audit table unavailable")


class _RecordingStore:
    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> int:
        self.entries.append(entry)
        return len(self.entries)


class TestAuditEmitter:
    def test_synchronous_write_when_not_started(self, stores) -> None:
        stores.audit.log_action("sub-1", "a@example.com", AuditAction.ACCOUNT_CREATED, "Created account x.")
        entries = stores.audit_store.list_entries()
        assert len(entries) == 1
        assert entries[0].action == "ACCOUNT_CREATED"
        assert entries[0].user_id == "sub-1"
        assert entries[0].timestamp

    def test_failing_store_never_raises(self, caplog) -> None:
        emitter = AuditEmitter(_FailingStore())
        with caplog.at_level(logging.ERROR, logger="sentinel.audit"):
            emitter.log_action("sub-1", "a@example.com", AuditAction.LOGOUT, "User signed out.")
        assert "Audit write failed" in caplog.text
        assert "LOGOUT" in caplog.text

    def test_missing_actor_is_recorded_empty(self) -> None:
        store = _RecordingStore()
        AuditEmitter(store).log_action(None, None, "LOGIN_SUCCESS")
        assert (store.entries[0].user_id, store.entries[0].email) == ("", "")

    def test_started_emitter_queues_and_flushes(self) -> None:
        store = _RecordingStore()

        async def scenario() -> int:
            emitter = AuditEmitter(store)
            emitter.start()
            assert emitter.started
            for i in range(5):
                emitter.log_action("sub", "a@example.com", AuditAction.ACCOUNT_UPDATED, f"change {i}")
            await emitter.flush()
            written = len(store.entries)
            await emitter.stop()
            assert not emitter.started
            return written

        assert asyncio.run(scenario()) == 5
        assert [e.details for e in store.entries] == [f"change {i}" for i in range(5)]

    def test_started_emitter_accepts_writes_from_threads(self) -> None:
        store = _RecordingStore()

        async def scenario() -> None:
            emitter = AuditEmitter(store)
            emitter.start()
            await asyncio.to_thread(emitter.log_action, "sub", "a@example.com", AuditAction.DATA_EXPORTED, "x")
            await emitter.stop()

        asyncio.run(scenario())
        assert len(store.entries) == 1

    def test_started_emitter_survives_store_failure(self) -> None:
        async def scenario() -> None:
            emitter = AuditEmitter(_FailingStore())
            emitter.start()
            emitter.log_action("sub", "a@example.com", AuditAction.ACCOUNT_DELETED, "x")
            await emitter.stop()

        asyncio.run(scenario())
