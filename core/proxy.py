"""
core/proxy.py -- Generic table access for POST /api/v1/data.

Translates {table, operation, data, filters, select, orderBy, limit} into one
SQLAlchemy Core statement against the shared metadata. It is a pass-through:
no business rules, no audit entries.

Guard rails (all raise ProxyError, surfaced as 400):
  - table must be in TABLE_OPERATIONS, and the operation allowed for it
    (audit_logs is read-only; accounts cannot be deleted here, only purged
    from the trash by the lifecycle)
  - every column named in select/filters/orderBy/data must exist on the table
  - operators come from _OPERATORS; anything else is rejected
  - MANAGED_COLUMNS can be neither read, filtered nor written here. Password
    material changes only through accounts/lifecycle.py, which keeps the
    history invariant; customer_count is maintained by store triggers;
    deleted_at/deleted_by change only through soft delete and restore.
  - update and delete require at least one filter

Store failures are not caught here: the route maps them to a 500.

Security: values are always bound parameters; column names are resolved
through Table.c, never interpolated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import Table, func
from sqlalchemy.engine import Engine

from core.database import metadata, now_iso

TABLE_OPERATIONS: dict[str, frozenset[str]] = {
    "accounts": frozenset({"select", "insert", "update"}),
    "customers": frozenset({"select", "insert", "update", "delete"}),
    "audit_logs": frozenset({"select"}),
}

MANAGED_COLUMNS: dict[str, frozenset[str]] = {
    "accounts": frozenset(
        {"id", "password", "password_history", "customer_count", "deleted_at", "deleted_by"}
    ),
    "customers": frozenset({"id"}),
    "audit_logs": frozenset(),
}

# Columns that may be read even though they cannot be written.
_READABLE_MANAGED = frozenset({"id", "customer_count", "deleted_at", "deleted_by"})


def _is(col, value):
    return col.is_(value)


def _is_not(col, value):
    return col.is_not(value)


def _in(col, value):
    if not isinstance(value, (list, tuple)):
        raise ProxyError("The 'in' operator needs a list value.")
    return col.in_(list(value))


_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "eq": lambda col, v: col == v,
    "neq": lambda col, v: col != v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "like": lambda col, v: col.like(v),
    "ilike": lambda col, v: col.ilike(v),
    "in": _in,
    "is": _is,
    "isNot": _is_not,
}

# "null"/"true"/"false" as strings are accepted for is/isNot, as the web client sends them.
_IS_VALUES = {None: None, "null": None, True: True, "true": True, False: False, "false": False}


class ProxyError(ValueError):
    """The request cannot be translated into a query."""


@dataclass
class QueryFilter:
    column: str
    operator: str
    value: Any = None


@dataclass
class ProxyResult:
    data: list[dict]
    count: int


class DataProxy:
    """Usage:
    proxy = DataProxy(engine)
    result = proxy.execute("customers", "select", filters=[QueryFilter("account_id", "eq", 3)])
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _table(name: str, operation: str) -> Table:
        allowed = TABLE_OPERATIONS.get(name)
        if allowed is None or name not in metadata.tables:
            raise ProxyError(f"Unknown table {name!r}.")
        if operation not in allowed:
            raise ProxyError(f"Operation {operation!r} is not allowed on {name}.")
        return metadata.tables[name]

    @staticmethod
    def _column(table: Table, name: str, writing: bool = False):
        if name not in table.c:
            raise ProxyError(f"Unknown column {name!r} on {table.name}.")
        managed = MANAGED_COLUMNS.get(table.name, frozenset())
        if name in managed and (writing or name not in _READABLE_MANAGED):
            raise ProxyError(f"Column {name!r} on {table.name} cannot be accessed through this endpoint.")
        return table.c[name]

    def _where(self, table: Table, filters: list[QueryFilter]):
        clauses = []
        for f in filters:
            op = _OPERATORS.get(f.operator)
            if op is None:
                raise ProxyError(f"Unknown operator {f.operator!r}.")
            col = self._column(table, f.column)
            value = f.value
            if f.operator in ("is", "isNot"):
                key = value.lower() if isinstance(value, str) else value
                if key not in _IS_VALUES:
                    raise ProxyError("The 'is' operators accept only null, true or false.")
                value = _IS_VALUES[key]
            clauses.append(op(col, value))
        return clauses

    def _values(self, table: Table, row: dict) -> dict:
        if not isinstance(row, dict) or not row:
            raise ProxyError("Each data row must be a non-empty object.")
        return {self._column(table, name, writing=True).name: value for name, value in row.items()}

    def _readable_columns(self, table: Table, select: Optional[str]):
        if select and select.strip() != "*":
            return [self._column(table, name.strip()) for name in select.split(",") if name.strip()]
        managed = MANAGED_COLUMNS.get(table.name, frozenset()) - _READABLE_MANAGED
        return [c for c in table.c if c.name not in managed]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        table_name: str,
        operation: str,
        data: Optional[dict | list[dict]] = None,
        filters: Optional[list[QueryFilter]] = None,
        select: Optional[str] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
    ) -> ProxyResult:
        table = self._table(table_name, operation)
        where = self._where(table, filters or [])

        if operation == "select":
            return self._select(table, where, select, order_by, ascending, limit)
        if operation == "insert":
            return self._insert(table, data)
        if not where:
            raise ProxyError(f"{operation} requires at least one filter.")
        if operation == "update":
            return self._update(table, where, data)
        return self._delete(table, where)

    def _select(self, table, where, select, order_by, ascending, limit) -> ProxyResult:
        columns = self._readable_columns(table, select)
        stmt = table.select().with_only_columns(*columns)
        count_stmt = table.select().with_only_columns(func.count())
        for clause in where:
            stmt = stmt.where(clause)
            count_stmt = count_stmt.where(clause)
        if order_by:
            col = self._column(table, order_by)
            stmt = stmt.order_by(col.asc() if ascending else col.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = [dict(r._mapping) for r in conn.execute(stmt).fetchall()]
            total = conn.execute(count_stmt).scalar() or 0
        return ProxyResult(data=rows, count=total)

    def _insert(self, table, data) -> ProxyResult:
        if not data:
            raise ProxyError("Missing data for insert operation.")
        rows = data if isinstance(data, list) else [data]
        now = now_iso()
        values = []
        for row in rows:
            v = self._values(table, row)
            if "created_at" in table.c:
                v.setdefault("created_at", now)
            if "updated_at" in table.c:
                v.setdefault("updated_at", now)
            if table.name == "accounts":
                v["password_history"] = []
            values.append(v)
        with self.engine.begin() as conn:
            conn.execute(table.insert(), values)
        return ProxyResult(data=[], count=len(values))

    def _update(self, table, where, data) -> ProxyResult:
        if not data or not isinstance(data, dict):
            raise ProxyError("Missing data for update operation.")
        values = self._values(table, data)
        if "updated_at" in table.c:
            values.setdefault("updated_at", now_iso())
        stmt = table.update().values(**values)
        for clause in where:
            stmt = stmt.where(clause)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return ProxyResult(data=[], count=result.rowcount)

    def _delete(self, table, where) -> ProxyResult:
        stmt = table.delete()
        for clause in where:
            stmt = stmt.where(clause)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return ProxyResult(data=[], count=result.rowcount)
