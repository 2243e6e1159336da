#!/usr/bin/env python3
"""
DocAccess -- operator CLI for the identity store.

Usage:
  python main.py hash-password
  python main.py hash-password --password 'Secret1!'
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py create-admin --email admin@example.com --name "Site Admin" --password 'Secret1!'
  python main.py purge-otp

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the identity database (default: local SQLite file)
  SECRET_KEY     Required outside DEBUG mode (see core/config.py)
  JWT_SECRET     Required outside DEBUG mode
  BCRYPT_ROUNDS  bcrypt cost factor (default 12)
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import Role, User, normalize_email
from auth.otp import OtpService
from auth.passwords import generate_random_password, hash_password, validate_password_strength
from auth.store import OtpStore, UserStore
from core.config import get_settings
from core.errors import InputValidationError


def _user_store() -> UserStore:
    url = get_settings().database_url
    return UserStore(db_url=url) if url else UserStore()


def _otp_store() -> OtpStore:
    url = get_settings().database_url
    return OtpStore(db_url=url) if url else OtpStore()


def cmd_hash_password(password: Optional[str]) -> int:
    """Print a bcrypt hash, e.g. for seeding a user row by hand."""
    if password is None:
        password = getpass.getpass("Password: ")
    print(hash_password(password))
    return 0


def cmd_create_admin(email: str, name: str, password: Optional[str], store: Optional[UserStore] = None) -> int:
    """Create an ADMIN account, or promote the existing account for email.

    Without --password a random one is generated and printed exactly once.
    """
    owns_store = store is None
    store = store or _user_store()
    try:
        email = normalize_email(email)
        existing = store.get_by_email(email)
        if existing is not None:
            store.update_user(existing.id, role=Role.ADMIN)
            print(f"  {email} already exists; role set to ADMIN.")
            return 0

        generated = password is None
        if generated:
            password = generate_random_password()
        else:
            try:
                validate_password_strength(password)
            except InputValidationError as exc:
                print(f"  [!] {exc.message}")
                return 1

        user_id = store.create_user(
            User(email=email, name=name, role=Role.ADMIN, password_hash=hash_password(password))
        )
        print(f"  Created ADMIN {email} (id {user_id}).")
        if generated:
            print(f"  Generated password (shown once): {password}")
        return 0
    finally:
        if owns_store:
            store.close()


def cmd_purge_otp(store: Optional[OtpStore] = None) -> int:
    """Delete expired OTP codes and closed rate-limit windows."""
    owns_store = store is None
    store = store or _otp_store()
    try:
        removed = OtpService(store, get_settings()).purge_expired()
        print(f"  Purged {removed} expired OTP row(s).")
        return 0
    finally:
        if owns_store:
            store.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="docaccess",
        description="Operator tools for the DocAccess identity store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash-password
  python main.py create-admin --email admin@example.com --name "Site Admin"
  DATABASE_URL=postgresql://... python main.py purge-otp
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_hash = sub.add_parser("hash-password", help="Print a bcrypt hash of a password")
    p_hash.add_argument("--password", metavar="PASSWORD", help="Password to hash (prompted when omitted)")

    p_admin = sub.add_parser("create-admin", help="Create an ADMIN account or promote an existing one")
    p_admin.add_argument("--email", required=True, metavar="EMAIL", help="Account email")
    p_admin.add_argument("--name", required=True, metavar="NAME", help="Display name")
    p_admin.add_argument(
        "--password",
        metavar="PASSWORD",
        help="Initial password (a random one is generated and printed when omitted)",
    )

    sub.add_parser("purge-otp", help="Delete expired one-time codes and rate-limit windows")

    args = parser.parse_args(argv)

    if args.command == "hash-password":
        return cmd_hash_password(args.password)
    if args.command == "create-admin":
        return cmd_create_admin(args.email, args.name, args.password)
    if args.command == "purge-otp":
        return cmd_purge_otp()

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
