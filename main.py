#!/usr/bin/env python3
"""
LibraryAuth -- administrative command line.

Operator tasks that must work without an HTTP session: creating the first
admin, switching accounts on or off, and pruning expired refresh tokens.

Usage:
  python main.py create-admin admin@school.local
  python main.py create-admin admin@school.local --password 'S3cret-pass' --name "Head Librarian"
  python main.py set-active staff1@school.local --inactive
  python main.py set-active staff1@school.local --active
  python main.py purge-tokens

Environment variables:
  DATABASE_URL        SQLAlchemy URL of the auth database (default: auth/libraryauth.db)
  SECRET_KEY          access token signing key (>= 32 chars)
  REFRESH_SECRET_KEY  refresh token hashing key (>= 32 chars, different from SECRET_KEY)
  DEBUG=true          auto-generate both keys for local development
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.ledger import RefreshTokenLedger
from auth.service import SessionManager
from auth.store import UserStore


def _build() -> tuple[UserStore, SessionManager]:
    store = UserStore()
    return store, SessionManager(store, RefreshTokenLedger(store.engine))


def _read_password(given: str | None) -> str:
    """Return --password if given, else prompt twice without echo."""
    if given:
        return given
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="libraryauth",
        description="Administrative tasks for the library authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin admin@school.local
  python main.py set-active staff1@school.local --inactive
  python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command")

    create = sub.add_parser("create-admin", help="Create an admin account")
    create.add_argument("email", help="Email address of the new admin")
    create.add_argument("--password", help="Password (prompted when omitted)")
    create.add_argument("--name", dest="display_name", help="Display name")

    active = sub.add_parser("set-active", help="Activate or deactivate an account")
    active.add_argument("email", help="Email address of the account")
    group = active.add_mutually_exclusive_group(required=True)
    group.add_argument("--active", dest="active", action="store_true", help="Allow the account to log in")
    group.add_argument(
        "--inactive",
        dest="active",
        action="store_false",
        help="Block the account and revoke all of its refresh tokens",
    )

    sub.add_parser("purge-tokens", help="Delete expired refresh token records")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    store, sessions = _build()
    try:
        if args.command == "create-admin":
            user = sessions.create_admin(args.email, _read_password(args.password), args.display_name)
            print(f"  Admin created: {user.email} (id {user.id})")
        elif args.command == "set-active":
            user = sessions.set_active(args.email, args.active)
            state = "active" if user.is_active else "inactive (refresh tokens revoked)"
            print(f"  {user.email} is now {state}")
        elif args.command == "purge-tokens":
            removed = sessions.ledger.purge_expired()
            print(f"  Removed {removed} expired refresh token(s).")
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
