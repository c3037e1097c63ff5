#!/usr/bin/env python3
"""
tutorauth -- Operator commands for the Telegram Mini App auth service.

Usage:
  python main.py sign --user-id 42 --username alice
  python main.py sign --user-id 42 --auth-date 1700000000 --json
  python main.py verify "query_id=...&user=...&auth_date=...&hash=..."
  python main.py purge

Environment variables (see core/config.py):
  TELEGRAM_BOT_TOKEN   Bot token used to sign and verify initData.
  DATABASE_URL         Store location for `purge` (default: auth/tutorauth.db).
"""

import argparse
import json
import sys
import time
from typing import Optional

from auth.errors import Rejected
from auth.signature import parse_identity, sign_init_data, verify_init_data
from auth.store import _DEFAULT_DB_URL, AuthStore
from auth.transfer import TransferTokenService
from core.config import get_settings


def _resolve_bot_token(explicit: Optional[str]) -> str:
    token = explicit or get_settings().telegram_bot_token
    if not token:
        print("  [!] No bot token. Pass --bot-token or set TELEGRAM_BOT_TOKEN.")
        sys.exit(2)
    return token


def cmd_sign(args: argparse.Namespace) -> int:
    """Print a signed initData string for a local test login."""
    user: dict = {"id": args.user_id}
    if args.username:
        user["username"] = args.username
    if args.first_name:
        user["first_name"] = args.first_name
    fields = {
        "auth_date": str(args.auth_date if args.auth_date is not None else int(time.time())),
        "query_id": args.query_id,
        "user": json.dumps(user, separators=(",", ":")),
    }
    init_data = sign_init_data(fields, _resolve_bot_token(args.bot_token))
    if args.json:
        print(json.dumps({"initData": init_data}))
    else:
        print(init_data)
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Check the signature of an initData string and print the identity it carries.

    Freshness and replay are not checked here; those depend on server state.
    """
    verified = verify_init_data(args.init_data, _resolve_bot_token(args.bot_token))
    if isinstance(verified, Rejected):
        print(f"  [!] Rejected: {verified.code.value}")
        return 1
    identity = parse_identity(verified)
    if isinstance(identity, Rejected):
        print(f"  [!] Rejected: {identity.code.value}")
        return 1
    age = int(time.time()) - identity.auth_date
    print("  Signature OK")
    print(f"  user id    : {identity.user.id}")
    print(f"  username   : {identity.user.username or '-'}")
    print(f"  auth_date  : {identity.auth_date} ({age}s ago)")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Delete used and expired transfer tokens from the store."""
    settings = get_settings()
    store = AuthStore(
        db_url=settings.database_url or _DEFAULT_DB_URL,
        timeout_seconds=settings.store_timeout_seconds,
    )
    try:
        service = TransferTokenService(
            store,
            default_ttl_seconds=settings.transfer_token_ttl_sec,
            min_ttl_seconds=settings.transfer_token_min_ttl_sec,
            max_ttl_seconds=settings.transfer_token_max_ttl_sec,
        )
        removed = service.purge_spent()
    finally:
        store.close()
    print(f"  Purged {removed} spent transfer token(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tutorauth",
        description="Operator commands for the Telegram Mini App auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sign --user-id 42 --username alice
  python main.py verify "$(python main.py sign --user-id 42)"
  python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sign = sub.add_parser("sign", help="Sign an initData payload for local testing")
    sign.add_argument("--user-id", type=int, required=True, help="Telegram user id")
    sign.add_argument("--username", default=None, help="Telegram username")
    sign.add_argument("--first-name", default=None, help="First name")
    sign.add_argument("--auth-date", type=int, default=None, help="Epoch seconds (default: now)")
    sign.add_argument("--query-id", default="local-dev", help="query_id field (default: local-dev)")
    sign.add_argument("--bot-token", default=None, help="Override TELEGRAM_BOT_TOKEN")
    sign.add_argument("--json", action="store_true", help="Print a JSON request body instead")
    sign.set_defaults(func=cmd_sign)

    verify = sub.add_parser("verify", help="Verify the signature of an initData payload")
    verify.add_argument("init_data", help="Raw initData query string")
    verify.add_argument("--bot-token", default=None, help="Override TELEGRAM_BOT_TOKEN")
    verify.set_defaults(func=cmd_verify)

    purge = sub.add_parser("purge", help="Delete used and expired transfer tokens")
    purge.set_defaults(func=cmd_purge)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
