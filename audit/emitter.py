"""
audit/emitter.py -- Best-effort, non-blocking audit trail writer.

Contract: log_action() never raises and never delays the caller. It is called
after the mutation it describes has already committed, so an audit failure
can neither roll back nor fail that mutation.

Dispatch:
  Started (inside the FastAPI lifespan): the entry is handed to the event
  loop with call_soon_threadsafe and queued on an asyncio.Queue. A single
  worker task drains the queue, writing through asyncio.to_thread. This works
  the same whether log_action() is called from an async route on the loop
  thread or from a sync route on the threadpool.

  Not started (CLI, tests without a lifespan): the entry is written
  synchronously, still with every error swallowed and logged.

Write failures are logged with the action and actor so operators can
reconstruct what went missing. They are never retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from audit.models import AuditAction, AuditLogEntry
from audit.store import AuditStore
from core.database import now_iso

logger = logging.getLogger("sentinel.audit")


class AuditEmitter:
    """Usage:
    emitter = AuditEmitter(AuditStore(engine))
    emitter.start()                       # inside a running event loop
    emitter.log_action(actor.user_id, actor.email, AuditAction.ACCOUNT_CREATED, "Created account x")
    await emitter.stop()                  # drains pending entries
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[AuditLogEntry] | None = None
        self._worker: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._worker is not None

    def start(self) -> None:
        """Start the background writer. Must be called from a running event loop."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain())

    def log_action(self, actor_id: str | None, actor_email: str | None, action: AuditAction | str, details: str = "") -> None:
        entry = AuditLogEntry(
            user_id=actor_id or "",
            email=actor_email or "",
            action=action.value if isinstance(action, AuditAction) else str(action),
            details=details,
            timestamp=now_iso(),
        )
        if self._loop is not None and self._queue is not None:
            try:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, entry)
                return
            except RuntimeError:
                # Loop already closed (shutdown race); fall back to a direct write.
                logger.warning("Audit queue unavailable, writing %s synchronously", entry.action)
        self._write(entry)

    async def flush(self) -> None:
        """Wait until every queued entry has been written (or failed)."""
        if self._queue is not None:
            # Let call_soon_threadsafe callbacks scheduled before flush() land.
            await asyncio.sleep(0)
            await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue, then cancel the worker."""
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        self._queue = None
        self._loop = None

    def _write(self, entry: AuditLogEntry) -> None:
        try:
            self.store.append(entry)
        except Exception:
            logger.exception("Audit write failed: action=%s actor=%s details=%r", entry.action, entry.email, entry.details)

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            entry = await self._queue.get()
            try:
                await asyncio.to_thread(self._write, entry)
            finally:
                self._queue.task_done()
