#!/usr/bin/env python3
"""
tokenward -- operator CLI for the session token store.

Usage:
  python main.py purge
  python main.py sessions 42
  python main.py sessions 42 --json
  python main.py revoke-user 42
  python main.py inspect <refresh-token>

Reads the same environment (.env, DATABASE_URL, SECRET_KEY, ...) as the API,
so it operates on the same database and can recompute refresh-token lookup
hashes. A misconfigured environment prints every problem and exits 2.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from auth.errors import DependencyFailure
from auth.services import AuthServices
from cache.store import EphemeralStoreError
from core.config import ConfigurationError, load_settings

logger = logging.getLogger("tokenward.cli")


def _cmd_purge(services: AuthServices, args: argparse.Namespace) -> int:
    tokens, entries = services.purge_expired()
    print(f"  Purged {tokens} expired refresh token(s) and {entries} ephemeral entr(ies).")
    return 0


def _cmd_sessions(services: AuthServices, args: argparse.Namespace) -> int:
    records = services.tokens.list_active_for_user(args.user_id)
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": r.id,
                        "created_at": r.created_at.isoformat() if r.created_at else None,
                        "expires_at": r.expires_at.isoformat(),
                        "ip_address": r.ip_address,
                        "user_agent": r.user_agent,
                    }
                    for r in records
                ],
                indent=2,
            )
        )
        return 0
    if not records:
        print(f"  No active sessions for user {args.user_id}.")
        return 0
    print(f"  {len(records)} active session(s) for user {args.user_id}:")
    for r in records:
        print(f"  {r.id}  created {r.created_at:%Y-%m-%d %H:%M}  expires {r.expires_at:%Y-%m-%d}  {r.ip_address or '-'}")
    return 0


def _cmd_revoke_user(services: AuthServices, args: argparse.Namespace) -> int:
    revoked = services.rotation.revoke_all(args.user_id)
    logger.warning("Operator revoked %d session(s) of user %s", revoked, args.user_id)
    print(f"  Revoked {revoked} session(s) of user {args.user_id}.")
    return 0


def _cmd_inspect(services: AuthServices, args: argparse.Namespace) -> int:
    state = services.rotation.inspect(args.token)
    if state is None:
        print("  Unknown token.")
        return 1
    print(f"  {state.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenward",
        description="Operator commands for the tokenward session store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py sessions 42 --json
  python main.py revoke-user 42
  python main.py inspect 9f86d081884c7d65...
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    purge = sub.add_parser("purge", help="Delete expired refresh tokens and ephemeral entries")
    purge.set_defaults(handler=_cmd_purge)

    sessions = sub.add_parser("sessions", help="List active sessions of a user, newest first")
    sessions.add_argument("user_id", type=int)
    sessions.add_argument("--json", action="store_true", help="Output structured JSON")
    sessions.set_defaults(handler=_cmd_sessions)

    revoke = sub.add_parser("revoke-user", help="Revoke every active session of a user")
    revoke.add_argument("user_id", type=int)
    revoke.set_defaults(handler=_cmd_revoke_user)

    inspect = sub.add_parser("inspect", help="Show the lifecycle state of a refresh token")
    inspect.add_argument("token")
    inspect.set_defaults(handler=_cmd_inspect)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print("  [!] Invalid configuration:", file=sys.stderr)
        for problem in exc.problems:
            print(f"      - {problem}", file=sys.stderr)
        return 2

    services = AuthServices.from_settings(settings)
    try:
        services.connect()
        return args.handler(services, args)
    except (DependencyFailure, EphemeralStoreError) as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
