#!/usr/bin/env python3
"""
iCloud Sentinel -- operator CLI for the account console.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py add-owner owner@example.com
  python main.py purge-trash
  python main.py import accounts.csv
  python main.py export --output accounts.csv

Every command reads the same settings as the web app (.env / environment):
  DATABASE_URL     SQLAlchemy URL of the store (default sqlite:///sentinel.db)
  ENCRYPTION_KEY   Fernet key for stored passwords (required unless DEBUG=true)
  SECRET_KEY       Session signing key (required unless DEBUG=true)

Changes made here are audited under the actor "cli".
"""

import argparse
import sys
from pathlib import Path

from sqlalchemy.exc import IntegrityError

from accounts.ingest import parse_import_csv, to_csv
from accounts.lifecycle import AccountLifecycle
from accounts.store import AccountStore
from audit.emitter import AuditEmitter
from audit.models import Actor, AuditAction
from audit.store import AuditStore
from auth.models import AllowListEntry, Role
from auth.store import AccessStore, normalize_email
from core.config import get_settings
from core.database import create_db_engine

CLI_ACTOR = Actor(user_id="cli", email="cli", role="system")

_MAX_IMPORT_BYTES = 1 * 1024 * 1024  # 1 MB, same cap as the upload route


def _lifecycle(engine) -> tuple[AccountLifecycle, AuditEmitter]:
    audit = AuditEmitter(AuditStore(engine))
    lifecycle = AccountLifecycle(AccountStore(engine), audit, retention_days=get_settings().trash_retention_days)
    return lifecycle, audit


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_add_owner(args: argparse.Namespace, engine) -> int:
    """Create (or promote and reactivate) an owner entry. The recovery path when no owner is left."""
    store = AccessStore(engine)
    audit = AuditEmitter(AuditStore(engine))
    email = normalize_email(args.email)
    if "@" not in email:
        print(f"  [!] '{args.email}' is not an email address.")
        return 2

    existing = store.get_entry_by_email(email)
    if existing is None:
        try:
            store.create_entry(AllowListEntry(email=email, role=Role.owner.value, added_by=CLI_ACTOR.email))
        except IntegrityError:
            print(f"  [!] {email} was added concurrently; run the command again.")
            return 1
        audit.log_action(CLI_ACTOR.user_id, CLI_ACTOR.email, AuditAction.ALLOWED_EMAIL_ADDED, f"Added {email} to the allow-list as owner.")
        print(f"  {email} added as owner.")
        return 0

    if existing.role == Role.owner.value and existing.is_active:
        print(f"  {email} is already an active owner.")
        return 0
    store.update_entry(existing.id, role=Role.owner.value, is_active=True)
    audit.log_action(
        CLI_ACTOR.user_id,
        CLI_ACTOR.email,
        AuditAction.ALLOWED_EMAIL_UPDATED,
        f"Updated allow-list entry {email}. Changes: role from '{existing.role}' to 'owner', active.",
    )
    print(f"  {email} promoted to active owner.")
    return 0


def cmd_purge_trash(args: argparse.Namespace, engine) -> int:
    lifecycle, _audit = _lifecycle(engine)
    purged = lifecycle.purge_expired(CLI_ACTOR)
    if not purged:
        print("  Nothing to purge.")
        return 0
    for username in purged:
        print(f"  purged {username}")
    print(f"  {len(purged)} account(s) permanently deleted.")
    return 0


def cmd_import(args: argparse.Namespace, engine) -> int:
    file_path = Path(args.file).resolve()
    if not file_path.is_file():
        print(f"  [!] '{args.file}' is not a readable file.")
        return 2
    if file_path.stat().st_size > _MAX_IMPORT_BYTES:
        print("  [!] Import files must be 1 MB or smaller.")
        return 2
    try:
        content = file_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        print(f"  [!] Could not read file '{args.file}': {e}")
        return 2

    rows = parse_import_csv(content)
    if not rows:
        print("  [!] No data rows found. Expected a CSV with a username or email column.")
        return 1
    lifecycle, _audit = _lifecycle(engine)
    result = lifecycle.import_accounts(CLI_ACTOR, rows)
    print(f"  {result.added} added / {result.skipped} skipped (duplicate or invalid).")
    return 0


def cmd_export(args: argparse.Namespace, engine) -> int:
    lifecycle, audit = _lifecycle(engine)
    accounts = lifecycle.list_accounts()
    body = to_csv(accounts)
    if args.output:
        Path(args.output).write_text(body, encoding="utf-8")
        print(f"  {len(accounts)} account(s) written to {args.output}")
    else:
        sys.stdout.write(body)
    audit.log_action(CLI_ACTOR.user_id, CLI_ACTOR.email, AuditAction.DATA_EXPORTED, f"Exported {len(accounts)} accounts to CSV.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="icloud-sentinel",
        description="Operator commands for the iCloud Sentinel account console.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py add-owner owner@example.com
  python main.py import accounts.csv
  python main.py export --output accounts.csv
  python main.py purge-trash
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the web app with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    owner = sub.add_parser("add-owner", help="Allow-list an email as an active owner")
    owner.add_argument("email", metavar="EMAIL")

    sub.add_parser("purge-trash", help="Permanently delete accounts trashed more than 30 days ago")

    imp = sub.add_parser("import", help="Import accounts from a CSV file")
    imp.add_argument("file", metavar="FILE")

    exp = sub.add_parser("export", help="Export live accounts as CSV (no passwords)")
    exp.add_argument("--output", "-o", metavar="FILE", help="Write to FILE instead of stdout")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return cmd_serve(args)

    engine = create_db_engine(get_settings().database_url)
    try:
        handler = {
            "add-owner": cmd_add_owner,
            "purge-trash": cmd_purge_trash,
            "import": cmd_import,
            "export": cmd_export,
        }[args.command]
        return handler(args, engine)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
