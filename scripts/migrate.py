#!/usr/bin/env python
"""Migration CLI for the trade log database: list, apply, rollback, encrypt.

Usage (examples):

python scripts/migrate.py --db relay.db list
python scripts/migrate.py --db relay.db apply
python scripts/migrate.py --db relay.db apply --dry-run
python scripts/migrate.py --db relay.db rollback --last --yes
python scripts/migrate.py --db relay.db --password "$RELAY_DB_PASSWORD" list
python scripts/migrate.py --db relay.db --password secret encrypt --output relay.enc.db
"""
import argparse
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `signal_relay` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_relay.db_encryption import encrypt_existing_db, get_connection
from signal_relay.db_migrations import MIGRATIONS, applied_versions, apply_migrations, rollback_last, rollback_migration


def list_migrations(conn):
    applied = set(applied_versions(conn))
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        doc = (MIGRATIONS[v].__doc__ or "").strip().splitlines()
        print(f"  {v}: {status}" + (f" - {doc[0]}" if doc else ""))


def confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} This may DROP data. Type 'yes' to continue: ").strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # non-interactive stdin
        return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage trade log schema migrations")
    parser.add_argument("--db", required=True, help="Path to the trade log database")
    parser.add_argument("--password", default=os.environ.get("RELAY_DB_PASSWORD"), help="sqlcipher password (default: $RELAY_DB_PASSWORD)")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    target = rb.add_mutually_exclusive_group()
    target.add_argument("--version", type=int, help="Rollback a specific migration version")
    target.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    enc = sub.add_parser("encrypt", help="Copy the plaintext database into a new sqlcipher database")
    enc.add_argument("--output", required=True, help="Path of the encrypted copy")

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1

    db = Path(args.db)
    if args.cmd == "encrypt":
        if not args.password:
            print("encrypt needs --password or $RELAY_DB_PASSWORD")
            return 1
        if not db.exists():
            print(f"Database not found: {db}")
            return 1
        try:
            encrypt_existing_db(str(db), args.output, args.password)
        except RuntimeError as e:
            print(f"Encryption failed: {e}")
            return 1
        print(f"Encrypted copy written to {args.output}")
        return 0

    db.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(str(db), args.password)
    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0

        if args.cmd == "apply":
            if args.dry_run:
                applied = set(applied_versions(conn))
                pending = [v for v in sorted(MIGRATIONS) if v not in applied]
                print(f"Pending migrations: {pending}" if pending else "No pending migrations; database up-to-date.")
                return 0
            done = apply_migrations(conn)
            print(f"Applied migrations: {done}" if done else "No migrations applied; database up-to-date.")
            return 0

        # rollback
        if args.version is None and not args.last:
            print("rollback needs --version N or --last")
            return 1
        applied = applied_versions(conn)
        version = args.version if args.version is not None else (applied[-1] if applied else None)
        if version is None or version not in applied:
            print("No applied migrations to rollback" if version is None else f"Migration {version} is not applied")
            return 0
        if args.dry_run:
            print(f"Would rollback migration {version} (dry-run)")
            return 0
        if not args.yes and not confirm(f"Rollback migration {version}?"):
            print("Aborted.")
            return 0
        if args.last:
            version = rollback_last(conn)
        else:
            rollback_migration(conn, version)
        print(f"Rolled back migration {version}")
        return 0
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
