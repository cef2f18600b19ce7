"""
accounts/ingest.py -- CSV import parsing and CSV export for accounts.

Import:
  parse_import_csv() normalizes a spreadsheet export into ImportRow records.
  Header names vary between the sheets operators keep, so each field accepts
  several aliases (first non-empty alias wins):

    username      <- username, email, Email, Username
    password      <- password, Password
    phone_number  <- phoneNumber, phone, Phone, PhoneNumber
    notes         <- notes, Notes

  Rows are NOT validated here beyond trimming whitespace: the email-shape
  filter and duplicate detection belong to AccountLifecycle.import_accounts(),
  which also needs the row count to report how many were skipped.

Export:
  to_csv() writes live accounts without any password material. Cells that a
  spreadsheet would evaluate as a formula are neutralized (CWE-1236).
"""

import csv
import io
from dataclasses import dataclass
from typing import Optional

from accounts.models import Account

_ALIASES: dict[str, tuple[str, ...]] = {
    "username": ("username", "email", "Email", "Username"),
    "password": ("password", "Password"),
    "phone_number": ("phoneNumber", "phone", "Phone", "PhoneNumber"),
    "notes": ("notes", "Notes"),
}

EXPORT_HEADERS = [
    "id",
    "username",
    "phone_number",
    "status",
    "customer_count",
    "notes",
    "created_at",
    "updated_at",
]

_FORMULA_PREFIXES = ("=", "+", "-", "@")


@dataclass
class ImportRow:
    """One candidate account from an import file."""

    username: str
    password: str = ""
    phone_number: Optional[str] = None
    notes: Optional[str] = None


def _pick(row: dict, field_name: str) -> str:
    for alias in _ALIASES[field_name]:
        value = (row.get(alias) or "").strip()
        if value:
            return value
    return ""


def parse_import_csv(content: str) -> list[ImportRow]:
    """Parse CSV text into ImportRow records, one per data row.

    Blank lines are dropped by csv.DictReader. Every other row is returned,
    including rows with an empty or malformed username, so the caller can
    count them as skipped.
    """
    # Strip a UTF-8 BOM left by spreadsheet exports so the first header matches.
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    rows: list[ImportRow] = []
    for raw in reader:
        rows.append(
            ImportRow(
                username=_pick(raw, "username"),
                password=_pick(raw, "password"),
                phone_number=_pick(raw, "phone_number") or None,
                notes=_pick(raw, "notes") or None,
            )
        )
    return rows


def _sanitize_csv_cell(value) -> str:
    """Prefix formula-looking text with a tab so spreadsheets treat it as text."""
    if value is None:
        return ""
    text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return f"\t{text}"
    return text


def to_csv(accounts: list[Account]) -> str:
    """Render accounts as CSV. Password and password history are never exported."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_HEADERS)
    for a in accounts:
        writer.writerow(
            [
                a.id,
                _sanitize_csv_cell(a.username),
                _sanitize_csv_cell(a.phone_number),
                a.status,
                a.customer_count,
                _sanitize_csv_cell(a.notes),
                a.created_at,
                a.updated_at,
            ]
        )
    return buf.getvalue()
