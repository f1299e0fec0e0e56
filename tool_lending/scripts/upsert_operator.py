#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from services.operator_account_service import (
    MIN_PASSWORD_LENGTH,
    RIGHTS_BY_ROLE,
    create_operator,
    find_operator_by_email,
    is_protected_operator,
    set_operator_password,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one operator account directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Operator sign-in email")
    parser.add_argument("--name", default=None, help="Display name (required when creating)")
    parser.add_argument("--role", choices=sorted(RIGHTS_BY_ROLE), default=None, help="Operator role")
    parser.add_argument("--password", default=None, help="Password to set. Omit to keep the existing one.")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing lending tables before the upsert.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("TOOL_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to TOOL_LENDING_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set TOOL_LENDING_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password) < MIN_PASSWORD_LENGTH:
        parser.error(f"--password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if is_protected_operator(None, args.email):
        parser.error("The principal administrator is configured by environment, not stored.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    if args.create_tables:
        Base.metadata.create_all(engine)

    with Session(engine) as db:
        account = find_operator_by_email(db, args.email)
        if account is None:
            if not args.name or args.password is None:
                parser.error("--name and --password are required to create an operator.")
            try:
                account = create_operator(
                    db,
                    email=args.email,
                    name=args.name,
                    password=args.password,
                    role=args.role,
                )
            except ValueError as exc:
                parser.error(str(exc))
            action = "created"
        else:
            if args.name:
                account.Name = args.name.strip()
            if args.role:
                account.Role = args.role
            if args.password is not None:
                set_operator_password(account, args.password)
            action = "updated"
        db.commit()
        print(
            f"OK {action} operator_id={account.OperatorID} email={account.Email} "
            f"role={account.Role} updated_at={account.UpdatedDate}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
