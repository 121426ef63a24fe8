#!/usr/bin/env python3
"""
SimpleAuth -- admin command line.

There is no sign-up flow, so accounts are seeded here. The same module can
run one sweep of the reset-token cleanup for hosts that prefer cron over the
in-process task, and print the resolved access table.

Usage:
  python main.py create-user alice@example.com
  python main.py create-user alice@example.com --password 'correct horse'
  python main.py cleanup-tokens
  python main.py routes

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: auth/simpleauth.db)
  BCRYPT_ROUNDS  bcrypt cost factor for new passwords (default: 12)
"""

import argparse
import getpass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.access import AccessConfigurationError, audit_routes
from auth.cleanup import purge_expired_tokens
from auth.errors import PasswordValidationError
from auth.models import User
from auth.service import Authenticator
from auth.store import AuthStore
from auth.tokens import hash_password


def _read_password(args: argparse.Namespace) -> tuple[str, str]:
    if args.password is not None:
        return args.password, args.password
    password = getpass.getpass("Password: ")
    confirmation = getpass.getpass("Confirm password: ")
    return password, confirmation


def _create_user(args: argparse.Namespace, store: AuthStore) -> int:
    password, confirmation = _read_password(args)
    try:
        Authenticator.validate_new_password(password, confirmation)
    except PasswordValidationError as exc:
        print(f"  [!] {exc.message}")
        return 1
    try:
        user_id = store.create_user(User(email_address=args.email, password_digest=hash_password(password)))
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    print(f"  Created user {user_id} ({args.email.strip().lower()}).")
    return 0


def _cleanup_tokens(args: argparse.Namespace, store: AuthStore) -> int:
    deleted = purge_expired_tokens(store)
    print(f"  Deleted {deleted} expired password reset token(s).")
    return 0


def _print_routes(args: argparse.Namespace, store: AuthStore) -> int:
    from asgi import app

    try:
        table = audit_routes(app)
    except AccessConfigurationError as exc:
        print(f"  [!] {exc}")
        return 1
    for (method, path), requirement in sorted(table.items(), key=lambda item: (item[0][1], item[0][0])):
        print(f"  {method:<7} {path:<32} {requirement.value}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="simple-auth",
        description="SimpleAuth administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice@example.com
  DATABASE_URL=sqlite:////var/lib/app/auth.db python main.py cleanup-tokens
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a user with a password")
    create.add_argument("email", help="Email address (stored lowercased)")
    create.add_argument(
        "--password",
        default=None,
        help="Password; prompted for (twice) when omitted",
    )
    create.set_defaults(handler=_create_user)

    cleanup = sub.add_parser("cleanup-tokens", help="Delete expired password reset tokens once")
    cleanup.set_defaults(handler=_cleanup_tokens)

    routes = sub.add_parser("routes", help="Print every route and its resolved auth requirement")
    routes.set_defaults(handler=_print_routes)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    store = AuthStore(db_url=args.database_url)
    try:
        return args.handler(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
