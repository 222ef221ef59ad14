#!/usr/bin/env python3
"""
Staffwise -- admin command line.

Usage:
  python main.py seed
  python main.py create-admin --username admin --email admin@example.org
  python main.py create-admin --username admin --email admin@example.org --password 'change me now'
  python main.py purge

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity database (default: sqlite file next to the code)
  SECRET_KEY    Required unless DEBUG=true
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.seed import seed_roles_and_permissions
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password


def _cmd_seed(store: UserStore, args: argparse.Namespace) -> int:
    created = seed_roles_and_permissions(store)
    if created:
        print(f"  Created roles: {', '.join(created)}")
    else:
        print("  Roles already present, nothing to do.")
    return 0


def _cmd_create_admin(store: UserStore, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("  Password: ")
    if len(password) < 6:
        print("  [!] Password must be at least 6 characters.")
        return 1
    seed_roles_and_permissions(store)
    admin = User(username=args.username, email=args.email, name=args.name)
    try:
        user_id = store.create_user(admin, password_hash=hash_password(password), role_names=("admin", "user"))
    except IntegrityError:
        print(f"  [!] A user with username '{args.username}' or email '{args.email}' already exists.")
        return 1
    print(f"  Admin '{args.username}' created (id {user_id}).")
    return 0


def _cmd_purge(store: UserStore, args: argparse.Namespace) -> int:
    purged = SessionManager(store).purge_expired()
    print(f"  Purged {purged} expired row(s).")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="staffwise",
        description="Staffwise identity administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-admin --username admin --email admin@example.org
  DATABASE_URL=sqlite:////var/lib/staffwise.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("seed", help="Create the permission matrix and built-in roles (idempotent)")

    admin = sub.add_parser("create-admin", help="Create a user holding the admin role")
    admin.add_argument("--username", required=True, help="Login name (3-20 chars, letters/digits/_)")
    admin.add_argument("--email", required=True, help="Email address")
    admin.add_argument("--name", default=None, help="Display name")
    admin.add_argument("--password", default=None, help="Password (prompted for when omitted)")

    sub.add_parser("purge", help="Delete expired sessions, codes and verification sessions")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")

    commands = {"seed": _cmd_seed, "create-admin": _cmd_create_admin, "purge": _cmd_purge}
    store = UserStore()
    try:
        return commands[args.command](store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
