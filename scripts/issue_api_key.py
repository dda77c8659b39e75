#!/usr/bin/env python3
"""Issue, revoke and list In3D API keys against the configured key store."""

from __future__ import annotations

import argparse
import sys

from services.generation_gateway.app.errors import GatewayError
from services.generation_gateway.app.keys import (
    FileKeyStore,
    KeyStore,
    issue_api_key,
    key_store_from_env,
    revoke_api_key,
)


def _store(keys_file: str | None) -> KeyStore:
    if keys_file:
        return FileKeyStore(keys_file)
    return key_store_from_env()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage In3D API keys.")
    parser.add_argument(
        "--keys-file",
        default=None,
        help="JSON key store path (defaults to KEYS_REDIS_URL / KEYS_FILE)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    issue = commands.add_parser("issue", help="Issue a new key")
    issue.add_argument("--user-id", required=True)
    issue.add_argument("--scope", choices=["read", "full"], default="full")
    issue.add_argument("--label", required=True)

    revoke = commands.add_parser("revoke", help="Revoke an existing key")
    revoke.add_argument("--user-id", required=True)
    revoke.add_argument("--key-id", required=True)

    listing = commands.add_parser("list", help="List a user's keys")
    listing.add_argument("--user-id", required=True)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    store = _store(args.keys_file)
    try:
        if args.command == "issue":
            issued = issue_api_key(store, user_id=args.user_id, scope=args.scope, label=args.label)
            print(f"key_id={issued.record.key_id}")
            print(f"api_key={issued.raw_key}")
            print("Store this key now; it cannot be shown again.")
        elif args.command == "revoke":
            record = revoke_api_key(store, user_id=args.user_id, key_id=args.key_id)
            print(f"REVOKED {record.key_id} {record.key_prefix}")
        else:
            for record in sorted(store.list_keys(args.user_id).values(), key=lambda r: r.created_at or ""):
                state = "revoked" if record.revoked else "active"
                print(f"{record.key_id} {record.key_prefix} {record.scope.value} {state} {record.label}")
    except GatewayError as exc:
        print(f"FAIL: {exc.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
