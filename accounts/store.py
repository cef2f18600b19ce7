"""
accounts/store.py -- SQLAlchemy Core persistence for accounts and customers.

Uses SQLAlchemy Core (not ORM) so the dataclasses in accounts/models.py remain
the authoritative domain representation.

Pattern: Repository + Data Mapper. AccountStore is the repository; the
_row_to_* functions are the mappers. Only accounts/lifecycle.py mutates
accounts through this store; routes read through the lifecycle too.

customer_count:
  Maintained by SQLite triggers on the customers table, registered as DDL
  after_create events on the table. Application code never writes it except
  to initialize 0 on insert.

password_history:
  Stored as a JSON array of {"password", "changed_at"} objects. The store
  round-trips it as list[PasswordHistoryEntry]; it does not know or care that
  the password values are encrypted.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = AccountStore(create_db_engine("sqlite:///sentinel.db"))
    account_id = store.create_account(Account(username="a@icloud.com"))
    store.update_account(account_id, notes="VIP")
"""

from dataclasses import asdict
from typing import Optional

from sqlalchemy import DDL, JSON, Column, ForeignKey, Integer, String, Table, Text, event
from sqlalchemy.engine import Engine

from accounts.models import Account, AccountStatus, Customer, PasswordHistoryEntry
from core.database import metadata, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(320), nullable=False, unique=True),
    Column("password", Text),  # "enc:<fernet>" or legacy plain text
    Column("password_history", JSON, nullable=False, default=list),
    Column("phone_number", String(50)),
    Column("notes", Text),
    Column("status", String(30), nullable=False, server_default=AccountStatus.active.value),
    Column("customer_count", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    Column("deleted_by", String(320)),
)

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("phone", String(50)),
    Column("notes", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_CUSTOMER_COUNT_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS trg_customers_after_insert
    AFTER INSERT ON customers
    BEGIN
        UPDATE accounts SET customer_count = customer_count + 1 WHERE id = NEW.account_id;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_customers_after_delete
    AFTER DELETE ON customers
    BEGIN
        UPDATE accounts SET customer_count = MAX(customer_count - 1, 0) WHERE id = OLD.account_id;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_customers_after_move
    AFTER UPDATE OF account_id ON customers
    WHEN OLD.account_id <> NEW.account_id
    BEGIN
        UPDATE accounts SET customer_count = MAX(customer_count - 1, 0) WHERE id = OLD.account_id;
        UPDATE accounts SET customer_count = customer_count + 1 WHERE id = NEW.account_id;
    END
    """,
)

for _ddl in _CUSTOMER_COUNT_TRIGGERS:
    event.listen(customers, "after_create", DDL(_ddl).execute_if(dialect="sqlite"))

# Columns a caller may change through update_account(). customer_count and
# created_at are deliberately absent.
_ACCOUNT_MUTABLE = {
    "username",
    "password",
    "password_history",
    "phone_number",
    "notes",
    "status",
    "deleted_at",
    "deleted_by",
    "updated_at",
}
_CUSTOMER_MUTABLE = {"name", "phone", "notes", "account_id"}


def _history_to_json(history: list) -> list[dict]:
    return [asdict(e) if isinstance(e, PasswordHistoryEntry) else dict(e) for e in history]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and Customer entities."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine, tables=[accounts, customers])

    # ------------------------------------------------------------------
    # Accounts -- write
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(accounts.insert().values(**self._insert_values(account, now)))
            conn.commit()
            return result.inserted_primary_key[0]

    def create_accounts(self, batch: list[Account]) -> int:
        """Insert many accounts in one transaction. Returns the number inserted."""
        if not batch:
            return 0
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(accounts.insert(), [self._insert_values(a, now) for a in batch])
        return len(batch)

    @staticmethod
    def _insert_values(account: Account, now: str) -> dict:
        return {
            "username": account.username,
            "password": account.password,
            "password_history": _history_to_json(account.password_history),
            "phone_number": account.phone_number,
            "notes": account.notes,
            "status": account.status,
            "customer_count": 0,
            "created_at": now,
            "updated_at": now,
        }

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable account columns. updated_at is stamped unless supplied.

        Returns True if a row was updated, False if account_id was not found.
        Raises ValueError for columns outside _ACCOUNT_MUTABLE.
        """
        unknown = set(fields) - _ACCOUNT_MUTABLE
        if unknown:
            raise ValueError(f"Unknown or read-only account fields: {sorted(unknown)!r}")
        if "password_history" in fields:
            fields["password_history"] = _history_to_json(fields["password_history"])
        fields.setdefault("updated_at", now_iso())
        with self.engine.connect() as conn:
            result = conn.execute(accounts.update().where(accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(accounts.delete().where(accounts.c.id == account_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Accounts -- read
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Optional[Account]:
        """Return an account by ID, live or trashed."""
        with self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(accounts.select().where(accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_usernames(self) -> set[str]:
        """All usernames, live and trashed (the unique constraint covers both)."""
        with self.engine.connect() as conn:
            rows = conn.execute(accounts.select().with_only_columns(accounts.c.username)).fetchall()
        return {r.username for r in rows}

    def list_accounts(self, trashed: bool = False) -> list[Account]:
        """Live accounts newest first, or trashed accounts most recently deleted first."""
        query = accounts.select()
        if trashed:
            query = query.where(accounts.c.deleted_at.is_not(None)).order_by(accounts.c.deleted_at.desc())
        else:
            query = query.where(accounts.c.deleted_at.is_(None)).order_by(
                accounts.c.created_at.desc(), accounts.c.id.desc()
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, customer: Customer) -> int:
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                customers.insert().values(
                    account_id=customer.account_id,
                    name=customer.name,
                    phone=customer.phone,
                    notes=customer.notes,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self.engine.connect() as conn:
            row = conn.execute(customers.select().where(customers.c.id == customer_id)).fetchone()
        return _row_to_customer(row) if row is not None else None

    def list_customers(self, account_id: Optional[int] = None) -> list[Customer]:
        """Customers of one account, or all customers, newest first."""
        query = customers.select().order_by(customers.c.created_at.desc(), customers.c.id.desc())
        if account_id is not None:
            query = query.where(customers.c.account_id == account_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_customer(r) for r in rows]

    def update_customer(self, customer_id: int, **fields) -> bool:
        unknown = set(fields) - _CUSTOMER_MUTABLE
        if unknown:
            raise ValueError(f"Unknown or read-only customer fields: {sorted(unknown)!r}")
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(customers.update().where(customers.c.id == customer_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_customer(self, customer_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(customers.delete().where(customers.c.id == customer_id))
            conn.commit()
        return result.rowcount > 0

    def delete_customers_for_account(self, account_id: int) -> int:
        """Delete every customer of an account. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(customers.delete().where(customers.c.account_id == account_id))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    history = [
        PasswordHistoryEntry(password=e.get("password", ""), changed_at=e.get("changed_at", ""))
        for e in (row.password_history or [])
    ]
    return Account(
        id=row.id,
        username=row.username,
        password=row.password,
        password_history=history,
        phone_number=row.phone_number,
        notes=row.notes,
        status=row.status,
        customer_count=row.customer_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        deleted_by=row.deleted_by,
    )


def _row_to_customer(row) -> Customer:
    return Customer(
        id=row.id,
        account_id=row.account_id,
        name=row.name,
        phone=row.phone,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
