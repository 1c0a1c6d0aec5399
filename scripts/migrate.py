#!/usr/bin/env python
"""Migration CLI: list, apply, rollback migrations for the dashboard DB.

Usage (examples):

python scripts/migrate.py --db state/dashboard.db list
python scripts/migrate.py --db state/dashboard.db apply
python scripts/migrate.py --db state/dashboard.db apply --dry-run
python scripts/migrate.py --db state/dashboard.db rollback --version 2
python scripts/migrate.py --db state/dashboard.db rollback --last --yes

Set DB_ENCRYPTION_PASSWORD (or pass --password) for a sqlcipher database.
"""
import argparse
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `tradedesk` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tradedesk.db_encryption import get_connection
from tradedesk.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # Non-interactive or piped stdin; auto-confirm
        return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage dashboard database migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    parser.add_argument("--password", default=os.getenv("DB_ENCRYPTION_PASSWORD"), help="sqlcipher password")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back without performing it")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation when rolling back")

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 0

    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(str(db), password=args.password)

    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0

        if args.cmd == "apply":
            if args.dry_run:
                pending = pending_versions(conn)
                if pending:
                    print("Pending migrations:", pending)
                else:
                    print("No pending migrations; database up-to-date.")
                return 0
            applied = apply_migrations(conn)
            if applied:
                print("Applied migrations:", applied)
            else:
                print("No migrations applied; database up-to-date.")
            return 0

        if args.cmd == "rollback":
            if args.version:
                target = args.version
            elif args.last:
                applied = applied_versions(conn)
                if not applied:
                    print("No applied migrations to rollback")
                    return 0
                target = max(applied)
            else:
                rb.print_help()
                return 2

            if args.dry_run:
                print(f"Would rollback migration {target} (dry-run)")
                return 0
            if not args.yes and not confirm(
                f"Are you sure you want to rollback migration {target}? This may DROP data. Type 'yes' to continue: "
            ):
                print("Aborted.")
                return 1

            if args.last:
                v = rollback_last(conn)
                print(f"Rolled back migration {v}")
            else:
                rollback_migration(conn, target)
                print(f"Rolled back migration {target}")
            return 0
    finally:
        conn.close()

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
