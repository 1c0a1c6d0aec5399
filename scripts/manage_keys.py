#!/usr/bin/env python
"""Key vault CLI: list, add and delete a dashboard user's Coinbase API keys.

Usage (examples):

python scripts/manage_keys.py --db state/dashboard.db list --username alice
python scripts/manage_keys.py --db state/dashboard.db add --username alice --label main
python scripts/manage_keys.py --db state/dashboard.db delete --id 3 --yes

`add` reads the key and secret from --api-key/--api-secret, falling back to
CB_API_KEY/CB_API_SECRET or the credentials file. The vault key comes from
--vault-key or VAULT_KEY and must match the server's.
"""
import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tradedesk.key_vault import KeyVault
from tradedesk.persistence_sqlite import SQLiteStore
from tradedesk.secrets import load_credentials


def _user_id(store: SQLiteStore, username: str) -> int:
    user = store.get_user_by_username(username)
    if not user:
        raise SystemExit(f"Unknown user: {username}")
    return user["id"]


def cmd_list(vault: KeyVault, store: SQLiteStore, args) -> int:
    keys = vault.get_user_keys(_user_id(store, args.username))
    if not keys:
        print("No API keys stored.")
        return 0
    print(f"{'ID':>4}  {'LABEL':<20} {'KEY':<14} {'ACTIVE':<6} {'FAILS':>5}  LAST SUCCESS")
    for k in keys:
        print(
            f"{k['id']:>4}  {(k['label'] or '-'):<20} {k['apiKeyPreview']:<14} "
            f"{'yes' if k['isActive'] else 'no':<6} {k['failCount']:>5}  {k['lastSuccess'] or '-'}"
        )
    return 0


def cmd_add(vault: KeyVault, store: SQLiteStore, args) -> int:
    user_id = _user_id(store, args.username)
    api_key, api_secret = args.api_key, args.api_secret
    if not (api_key and api_secret):
        try:
            creds = load_credentials(args.credentials)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 1
        api_key = api_key or creds.api_key
        api_secret = api_secret or creds.api_secret
    row = vault.store_key(user_id, args.label, api_key, api_secret)
    print(f"Stored API key {row['id']} ({KeyVault.public_view(row)['apiKeyPreview']})")
    return 0


def cmd_delete(vault: KeyVault, store: SQLiteStore, args) -> int:
    if not store.get_api_key(args.id):
        print(f"API key {args.id} not found", file=sys.stderr)
        return 1
    if not args.yes:
        try:
            answer = input(f"Delete API key {args.id}? Type 'yes' to continue: ")
        except (EOFError, BrokenPipeError):
            answer = "yes"
        if answer.strip().lower() != "yes":
            print("Aborted.")
            return 1
    vault.delete_key(args.id)
    print(f"Deleted API key {args.id}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Manage stored Coinbase API keys")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    parser.add_argument("--password", default=os.getenv("DB_ENCRYPTION_PASSWORD"), help="sqlcipher password")
    parser.add_argument("--vault-key", default=os.getenv("VAULT_KEY"), help="Fernet key used by the server's key vault")
    sub = parser.add_subparsers(dest="cmd")

    list_p = sub.add_parser("list")
    list_p.add_argument("--username", required=True)

    add_p = sub.add_parser("add")
    add_p.add_argument("--username", required=True)
    add_p.add_argument("--label", default="Coinbase API Key")
    add_p.add_argument("--api-key")
    add_p.add_argument("--api-secret")
    add_p.add_argument("--credentials", help="Credentials JSON file (defaults to CB_CONFIG_PATH or ~/.coinbase_config.json)")

    del_p = sub.add_parser("delete")
    del_p.add_argument("--id", type=int, required=True)
    del_p.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 0
    if not args.vault_key:
        print("A vault key is required (--vault-key or VAULT_KEY)", file=sys.stderr)
        return 2

    store = SQLiteStore(Path(args.db), password=args.password)
    try:
        vault = KeyVault(store, args.vault_key)
        handlers = {"list": cmd_list, "add": cmd_add, "delete": cmd_delete}
        return handlers[args.cmd](vault, store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
