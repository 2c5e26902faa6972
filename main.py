#!/usr/bin/env python3
"""
UserDir -- operator CLI for the user directory auth store.

Usage:
  python main.py seed
  python main.py seed --admin-password 'S3cure-admin-pass'
  python main.py create-user alice --role user
  python main.py purge-deletion-tokens

Environment variables (see core/config.py):
  DATABASE_URL     SQLAlchemy URL of the auth database.
  ACCESS_SECRET    JWT signing key for access tokens (>= 32 chars).
  REFRESH_SECRET   JWT signing key for refresh tokens (>= 32 chars, differs from ACCESS_SECRET).
  DEBUG            true = auto-generate secrets for local development.
"""

import argparse
import getpass
import logging
import sys
import time
from typing import Optional

from api.models import PASSWORD_MAX_BYTES, PASSWORD_MAX_LEN, PASSWORD_MIN_LEN, USERNAME_MIN_LEN
from auth.errors import AuthError
from auth.passwords import hash_password
from auth.seed import seed_defaults
from auth.store import UserStore


def _check_password(password: str) -> str:
    """Apply the API's password length rules; raise ValueError on violation."""
    if not (PASSWORD_MIN_LEN <= len(password) <= PASSWORD_MAX_LEN):
        raise ValueError(f"Password must be {PASSWORD_MIN_LEN}-{PASSWORD_MAX_LEN} characters.")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes in UTF-8.")
    return password


def _read_password(prompt: str = "Password: ") -> str:
    """Prompt twice without echo; return the password or raise ValueError."""
    first = getpass.getpass(prompt)
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise ValueError("Passwords do not match.")
    return _check_password(first)


def cmd_seed(store: UserStore, args: argparse.Namespace) -> int:
    if args.admin_password is not None:
        try:
            _check_password(args.admin_password)
        except ValueError as e:
            print(f"  [!] Admin password: {e}")
            return 2
    seed_defaults(store, args.admin_password)
    print("Default permissions and roles are in place.")
    if args.admin_password:
        print("Admin user 'admin' is in place.")
    return 0


def cmd_create_user(store: UserStore, args: argparse.Namespace) -> int:
    if len(args.username.strip()) < USERNAME_MIN_LEN:
        print(f"  [!] Username must be at least {USERNAME_MIN_LEN} characters.")
        return 2
    role_ids: list[int] = []
    for name in args.role:
        role = store.get_role_by_name(name)
        if role is None:
            print(f"  [!] Unknown role '{name}'. Run 'python main.py seed' first?")
            return 2
        role_ids.append(role.id)
    try:
        password = _check_password(args.password) if args.password is not None else _read_password()
    except ValueError as e:
        print(f"  [!] {e}")
        return 2
    user = store.create_user(args.username, hash_password(password), role_ids)
    print(f"Created user '{user.username}' (id={user.id}).")
    return 0


def cmd_purge(store: UserStore, args: argparse.Namespace) -> int:
    purged = store.purge_expired_deletion_tokens(int(time.time()))
    print(f"Purged {purged} expired deletion token(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="userdir",
        description="Operator commands for the UserDir auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed --admin-password 'S3cure-admin-pass'
  python main.py create-user alice --role user
  python main.py create-user bob --role admin --role user
  python main.py purge-deletion-tokens
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="Override DATABASE_URL for this invocation",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed", help="Create default permissions, roles and (optionally) the admin user")
    seed.add_argument(
        "--admin-password",
        metavar="PASSWORD",
        default=None,
        help="Create user 'admin' with this password if it does not exist",
    )
    seed.set_defaults(func=cmd_seed)

    create = sub.add_parser("create-user", help="Create a user (prompts for the password)")
    create.add_argument("username", help="Username (stored lowercase)")
    create.add_argument(
        "--role",
        action="append",
        default=[],
        metavar="NAME",
        help="Role to assign; repeat for several roles",
    )
    create.add_argument("--password", default=None, help=argparse.SUPPRESS)
    create.set_defaults(func=cmd_create_user)

    purge = sub.add_parser("purge-deletion-tokens", help="Delete expired account-deletion tokens")
    purge.set_defaults(func=cmd_purge)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    store = UserStore(args.database_url)
    try:
        return args.func(store, args)
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
