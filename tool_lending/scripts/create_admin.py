#!/usr/bin/env python3
"""Create an admin account, or promote an existing one, from the terminal."""

from __future__ import annotations

import argparse
import os
from datetime import datetime
from getpass import getpass

from dotenv import load_dotenv

from tool_lending.db.session import Storage, transaction
from tool_lending.models.lending_models import ROLE_ADMIN, User
from tool_lending.services import user_service
from tool_lending.services.audit_service import log_audit


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or promote one admin user.")
    parser.add_argument("--email", required=True, help="Login email of the admin")
    parser.add_argument("--name", default=None, help="Full name; required when the user does not exist yet")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Prompted for when omitted and the user is new.",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="SQLAlchemy DB URL; defaults to TOOL_LENDING_DB_URL env var.",
    )
    return parser


def _prompt_password() -> str:
    while True:
        password = getpass("Admin password: ")
        if len(password) < user_service.MIN_PASSWORD_LENGTH:
            print(f"Password must be at least {user_service.MIN_PASSWORD_LENGTH} characters.")
            continue
        if getpass("Confirm password: ") == password:
            return password
        print("Passwords do not match. Please try again.")


def upsert_admin(db, email: str, name: str | None, password: str | None) -> tuple[User, bool]:
    with transaction(db):
        user = user_service.find_user_by_email(db, email)
        created = user is None
        if created:
            now = datetime.now()
            user = User(
                FullName=name.strip(),
                Email=email.strip().lower(),
                Role=ROLE_ADMIN,
                CreatedDate=now,
                UpdatedDate=now,
            )
            user_service.set_password(user, password)
            db.add(user)
            db.flush()
            log_audit(db, "user", user.UserID, "create_user", "Admin created from terminal")
        else:
            user.Role = ROLE_ADMIN
            if password:
                user_service.set_password(user, password)
            user.UpdatedDate = datetime.now()
            log_audit(db, "user", user.UserID, "change_role", "Promoted to admin from terminal")
    return user, created


def main() -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args()

    db_url = (args.db_url or os.environ.get("TOOL_LENDING_DB_URL") or "").strip()
    if not db_url:
        parser.error("Missing DB URL. Set TOOL_LENDING_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password) < user_service.MIN_PASSWORD_LENGTH:
        parser.error(f"--password must be at least {user_service.MIN_PASSWORD_LENGTH} characters.")

    storage = Storage(db_url, create_schema=True).init()
    db = storage.session()
    try:
        existing = user_service.find_user_by_email(db, args.email)
        password = args.password
        if existing is None:
            if not (args.name or "").strip():
                parser.error("--name is required when creating a new user.")
            if password is None:
                password = _prompt_password()
        user, created = upsert_admin(db, args.email, args.name, password)
        print(f"OK user_id={user.UserID} email={user.Email} role={user.Role} created={created}")
    finally:
        db.close()
        storage.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
