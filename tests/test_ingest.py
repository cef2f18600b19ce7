"""Tests for accounts/ingest.py -- CSV import parsing and CSV export."""

import csv
import io

from accounts.ingest import EXPORT_HEADERS, parse_import_csv, to_csv
from accounts.models import Account, PasswordHistoryEntry


class TestParseImportCsv:
    def test_canonical_headers(self) -> None:
        content = "username,password,phoneNumber,notes\na@x.com,pw,555-0100,VIP\n"
        rows = parse_import_csv(content)
        assert len(rows) == 1
        row = rows[0]
        assert (row.username, row.password, row.phone_number, row.notes) == ("a@x.com", "pw", "555-0100", "VIP")

    def test_header_aliases(self) -> None:
        content = "Email,Password,Phone,Notes\nb@x.com,pw2,555,hello\n"
        row = parse_import_csv(content)[0]
        assert row.username == "b@x.com"
        assert row.password == "pw2"
        assert row.phone_number == "555"
        assert row.notes == "hello"

    def test_first_non_empty_alias_wins(self) -> None:
        content = "username,email\n,fallback@x.com\n"
        assert parse_import_csv(content)[0].username == "fallback@x.com"

    def test_bom_is_stripped(self) -> None:
        content = "\ufeffemail,password\nbom@x.com,pw\n"
        assert parse_import_csv(content)[0].username == "bom@x.com"

    def test_whitespace_trimmed_and_blanks_are_none(self) -> None:
        content = "email,phone,notes\n  spaced@x.com  ,  ,\n"
        row = parse_import_csv(content)[0]
        assert row.username == "spaced@x.com"
        assert row.phone_number is None
        assert row.notes is None

    def test_invalid_rows_are_kept_for_counting(self) -> None:
        content = "email\nnot-an-email\n\nok@x.com\n"
        rows = parse_import_csv(content)
        assert [r.username for r in rows] == ["not-an-email", "ok@x.com"]

    def test_header_only(self) -> None:
        assert parse_import_csv("email,password\n") == []


class TestToCsv:
    def _account(self, **overrides) -> Account:
        values = dict(
            id=1,
            username="a@icloud.com",
            password="enc:secret",
            password_history=[PasswordHistoryEntry(password="enc:older", changed_at="2024-01-01T00:00:00+00:00")],
            phone_number="555",
            notes="note",
            created_at="2024-01-01T00:00:00+00:00",
            updated_at="2024-01-02T00:00:00+00:00",
        )
        values.update(overrides)
        return Account(**values)

    def test_no_password_material(self) -> None:
        body = to_csv([self._account()])
        assert "secret" not in body
        assert "older" not in body
        header = next(csv.reader(io.StringIO(body)))
        assert header == EXPORT_HEADERS
        assert not any("password" in h for h in header)

    def test_formula_cells_are_neutralized(self) -> None:
        """CWE-1236: a notes cell starting with = must not be evaluated by a spreadsheet."""
        body = to_csv([self._account(notes="=HYPERLINK(\"http://evil\")", phone_number="+15550100")])
        row = list(csv.reader(io.StringIO(body)))[1]
        notes = row[EXPORT_HEADERS.index("notes")]
        phone = row[EXPORT_HEADERS.index("phone_number")]
        assert notes.startswith("\t=")
        assert phone == "\t+15550100"

    def test_none_values_export_empty(self) -> None:
        body = to_csv([self._account(phone_number=None, notes=None)])
        row = list(csv.reader(io.StringIO(body)))[1]
        assert row[EXPORT_HEADERS.index("phone_number")] == ""
        assert row[EXPORT_HEADERS.index("notes")] == ""
