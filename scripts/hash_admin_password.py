#!/usr/bin/env python3
"""
Print a bcrypt hash for an admin password, plus the SQL to store it.

  python scripts/hash_admin_password.py 's3cret' --username admin
  python scripts/hash_admin_password.py 's3cret' --create   # write to DROPGO_DB_URL directly
"""
from __future__ import annotations

import argparse
import getpass
import sys
import uuid

import bcrypt


def _sql_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def upsert_admin(username: str, password_hash: str) -> str:
    from sqlalchemy import select
    from sqlalchemy.orm import Session

    from apps.dropgo.app import db

    db.init_db()
    with Session(db.engine) as s:
        admin = s.scalar(select(db.Admin).where(db.Admin.username == username))
        if admin is None:
            admin = db.Admin(id=str(uuid.uuid4()), username=username, password_hash=password_hash)
            action = "created"
        else:
            admin.password_hash = password_hash
            action = "updated"
        s.add(admin)
        s.commit()
    return action


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument("password", nargs="?", help="password to hash (prompted when omitted)")
    ap.add_argument("--username", default="admin")
    ap.add_argument("--rounds", type=int, default=10, help="bcrypt cost factor")
    ap.add_argument("--create", action="store_true", help="insert or update the admin row in the database")
    args = ap.parse_args(argv)

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 6:
        print("password must be at least 6 characters", file=sys.stderr)
        return 2

    hashed = bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=args.rounds)).decode()
    print("Hash:", hashed)
    print()
    print(f"UPDATE admins SET password_hash = {_sql_quote(hashed)} WHERE username = {_sql_quote(args.username)};")

    if args.create:
        action = upsert_admin(args.username, hashed)
        print(f"\nadmin {args.username!r} {action}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
