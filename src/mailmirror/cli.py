"""``mailmirror`` command line interface.

Usage:
    mailmirror sync                       # incremental sync (full on first run)
    mailmirror sync --full --limit 500    # full sync of up to 500 messages, no date window
    mailmirror sync --query "from:boss"   # full sync restricted to a search
    mailmirror sync --format json         # machine-readable result
    mailmirror status                     # sync state of every linked account
    mailmirror search "invoice"           # search the local mirror
    mailmirror auth --check               # is there a usable Google token?
    mailmirror auth --user-id u1          # print a Google consent URL for u1
    mailmirror migrate-tokens             # encrypt legacy plaintext tokens
    mailmirror generate-key               # print a new ENCRYPTION_KEY

Exit codes: 0 on success (including a sync that found nothing), 1 on
authentication, sync or configuration failure, 2 on bad arguments.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from mailmirror import __version__
from mailmirror.config import Settings, get_settings
from mailmirror.constants import GOOGLE_PROVIDER
from mailmirror.db import PersistenceError, create_pool
from mailmirror.gmail.auth import OAuthError
from mailmirror.gmail.client import GmailClientError
from mailmirror.gmail.credentials import PostgresCredentialStore, encrypt_legacy_tokens
from mailmirror.gmail.sync import SyncInProgressError
from mailmirror.logging import get_logger, setup_logging
from mailmirror.security import DecryptionError, generate_key
from mailmirror.services import ConfigurationError, Services, build_cipher, open_services

log = get_logger("mailmirror.cli")

EXIT_OK = 0
EXIT_FAILURE = 1

# Failures reported to the user as a clean message and exit code 1.
_RUN_ERRORS = (
    OAuthError,
    GmailClientError,
    SyncInProgressError,
    PersistenceError,
    DecryptionError,
    ConfigurationError,
)


class CliError(Exception):
    """A user-facing failure with a message and no traceback."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailmirror", description="Mirror Gmail mailboxes into PostgreSQL"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Sync one linked Gmail account")
    sync.add_argument(
        "--full",
        action="store_true",
        help="Run a full sync instead of history (no 30-day window, unlike a first run)",
    )
    sync.add_argument("--limit", type=_positive_int, help="Max messages to sync")
    sync.add_argument("--query", help="Gmail search query (implies a full sync)")
    sync.add_argument("--user-id", help="Local user whose account to sync")
    sync.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sync.add_argument("--format", choices=("text", "json"), default="text", help="Output format")

    status = sub.add_parser("status", help="Show sync state of linked accounts")
    status.add_argument("--user-id", help="Only show this user's accounts")
    status.add_argument("--format", choices=("text", "json"), default="text", help="Output format")

    search = sub.add_parser("search", help="Search mirrored messages")
    search.add_argument("query", help="Text to look for in subject, sender, snippet or body")
    search.add_argument("--limit", type=_positive_int, default=20, help="Max results")
    search.add_argument("--source", choices=("gmail",), default="gmail", help="Data source")
    search.add_argument("--user-id", help="Local user whose mirror to search")
    search.add_argument("--format", choices=("text", "json"), default="text", help="Output format")

    auth = sub.add_parser("auth", help="Check or start Google authorization")
    auth.add_argument("--check", action="store_true", help="Only report whether a token works")
    auth.add_argument("--user-id", help="Local user to check or authorize")

    sub.add_parser("migrate-tokens", help="Encrypt plaintext tokens stored before encryption")
    sub.add_parser("generate-key", help="Print a new base64 encryption key")
    return parser


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        print(generate_key())
        return EXIT_OK

    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    if getattr(args, "verbose", False):
        settings.log_level = "DEBUG"
    setup_logging()

    commands = {
        "sync": _sync,
        "status": _status,
        "search": _search,
        "auth": _auth,
    }
    try:
        if args.command in commands:
            return asyncio.run(commands[args.command](settings, args))
        return asyncio.run(_migrate(settings))
    except CliError as exc:
        return _report_failure(args, exc)
    except _RUN_ERRORS as exc:
        log.error("command_failed", command=args.command, error=str(exc))
        return _report_failure(args, exc)


def _report_failure(args: argparse.Namespace, exc: Exception) -> int:
    if getattr(args, "format", "text") == "json":
        print(json.dumps({"success": False, "error": str(exc)}))
    else:
        print(f"Error: {exc}", file=sys.stderr)
    return EXIT_FAILURE


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


async def _sync(settings: Settings, args: argparse.Namespace) -> int:
    limit = args.limit or settings.sync_default_limit

    async with open_services(settings) as services:
        user_id = args.user_id or await _single_user(services)
        profile = await services.client_for(user_id).get_profile()
        if not profile.email_address:
            raise CliError("Gmail profile did not include an email address.")
        engine = services.engine_for(user_id, profile.email_address)

        if args.full or args.query:
            result = await engine.sync_messages(limit, query=args.query)
        else:
            result = await engine.incremental_sync(limit)

    payload = {"success": True, "account_email": engine.account_email, **result.to_dict()}
    if args.format == "json":
        print(json.dumps(payload))
    else:
        print(f"Synced {payload['account_email']} ({result.sync_type})")
        print(f"  new messages:     {result.synced}")
        print(f"  updated messages: {result.updated}")
        print(f"  deleted messages: {result.deleted}")
        print(f"  errors:           {result.errors}")
        if result.history_id:
            print(f"  history id:       {result.history_id}")
    return EXIT_OK


async def _status(settings: Settings, args: argparse.Namespace) -> int:
    rows: list[dict[str, Any]] = []
    async with open_services(settings) as services:
        if args.user_id:
            accounts = await services.credentials.list_for_user(args.user_id)
        else:
            accounts = await services.credentials.list_by_provider(GOOGLE_PROVIDER)
        for credential in accounts:
            if credential.provider != GOOGLE_PROVIDER or not credential.email:
                continue
            engine = services.engine_for_credential(credential)
            rows.append({"user_id": credential.user_id, **await engine.get_status()})

    if args.format == "json":
        print(json.dumps(rows))
    elif not rows:
        print("No linked Gmail accounts.")
    else:
        for row in rows:
            state = "syncing" if row["is_syncing"] else "idle"
            print(f"{row['account_email']} [{row['user_id']}] {state}")
            print(f"  last synced: {row['last_synced_at'] or 'never'}")
            print(f"  history id:  {row['history_id'] or '-'}")
            if row["last_error"]:
                print(f"  last error:  {row['last_error']}")
    return EXIT_OK


async def _search(settings: Settings, args: argparse.Namespace) -> int:
    results: list[dict[str, Any]] = []
    async with open_services(settings) as services:
        user_id = args.user_id or await _single_user(services)
        for credential in await services.credentials.list_for_user(user_id):
            if credential.provider != GOOGLE_PROVIDER or not credential.email:
                continue
            mailbox = services.mailbox_for(user_id, credential.email)
            for row in await mailbox.search_messages(args.query, limit=args.limit):
                results.append({"source": args.source, "account_email": credential.email, **row})

    results.sort(key=lambda r: r["internal_date"], reverse=True)
    results = results[: args.limit]

    if args.format == "json":
        print(json.dumps(results, default=str))
        return EXIT_OK
    if not results:
        print(f'No results found for: "{args.query}"')
        return EXIT_OK

    print(f'Found {len(results)} results for: "{args.query}"\n')
    for row in results:
        print(f"[{row['source']}] {row['subject'] or '(No subject)'}")
        if row["sender"]:
            print(f"  From: {row['sender']}")
        print(f"  Date: {row['internal_date'].isoformat()}")
        if row["snippet"]:
            print(f"  {row['snippet'][:100]}")
        print()
    return EXIT_OK


async def _auth(settings: Settings, args: argparse.Namespace) -> int:
    async with open_services(settings) as services:
        if args.check:
            user_id = args.user_id or await _single_user(services)
            try:
                token = await services.refresher.get_valid_access_token(user_id)
            except OAuthError as exc:
                log.warning("auth_check_failed", user_id=user_id, error=str(exc))
                token = None
            if token is None:
                print(f"Not authenticated with Google for {user_id}")
                print("  Run: mailmirror auth --user-id <id> and open the printed URL")
                return EXIT_FAILURE
            print(f"Authenticated with Google for {user_id}")
            return EXIT_OK

        if not args.user_id:
            raise CliError("Pass --user-id to choose who the Google account is linked to.")
        url, _state = services.auth.generate_auth_url(args.user_id)

    print("Open this URL to link a Google account:")
    print(url)
    return EXIT_OK


async def _migrate(settings: Settings) -> int:
    cipher = build_cipher(settings)
    pool = await create_pool(settings.postgres_dsn)
    try:
        inner = PostgresCredentialStore(pool)
        await inner.ensure_schema()
        stats = await encrypt_legacy_tokens(inner, cipher)
    finally:
        await pool.close()

    print(f"Credentials scanned:     {stats.total}")
    print(f"Rows encrypted:          {stats.encrypted}")
    print(f"Values already encrypted: {stats.already_encrypted}")
    print(f"Errors:                  {stats.errors}")
    for account in stats.failed_accounts:
        print(f"  failed: {account}")
    return EXIT_FAILURE if stats.errors else EXIT_OK


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


async def _single_user(services: Services) -> str:
    """The only local user with a linked Google account."""
    users = {c.user_id for c in await services.credentials.list_by_provider(GOOGLE_PROVIDER)}
    if not users:
        raise CliError("No linked Gmail account. Link one through the web app first.")
    if len(users) > 1:
        raise CliError("Several users have linked accounts; pass --user-id.")
    return users.pop()


if __name__ == "__main__":
    sys.exit(main())
