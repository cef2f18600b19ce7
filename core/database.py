"""
core/database.py -- Shared SQLAlchemy Core engine and schema registry.

Every store (auth/, accounts/, audit/) declares its tables on the single
`metadata` object defined here and receives the same Engine. Keeping all
tables on one engine is what lets the generic data proxy reflect over them.

SQLite specifics:
  - check_same_thread=False: store calls run on worker threads via
    asyncio.to_thread and on the TestClient thread pool.
  - WAL journal mode is set per connection (PRAGMAs are not inherited).
  - Foreign keys are declared for documentation but NOT enforced: account
    purge is an explicit two-step delete (customers, then account).

Layer rule: core/ is the kernel. No imports outside core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create an Engine for db_url with the SQLite connection policy applied."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string (the storage format for all timestamps)."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
