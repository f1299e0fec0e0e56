#!/usr/bin/env python3
"""Database overview and availability integrity checks for the lending desk."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
import models.lending_models  # noqa: F401  registers the tables on Base.metadata


LENDING_TABLES = sorted(Base.metadata.tables)

INTEGRITY_QUERIES = {
    "items:unavailable_without_active_loan": """
        SELECT COUNT(*) FROM Items i
        WHERE i.IsAvailable = :no
          AND NOT EXISTS (SELECT 1 FROM Loans l WHERE l.ItemID = i.ItemID)
    """,
    "items:available_with_active_loan": """
        SELECT COUNT(*) FROM Items i
        WHERE i.IsAvailable = :yes
          AND EXISTS (SELECT 1 FROM Loans l WHERE l.ItemID = i.ItemID)
    """,
    "loans:multiple_active_per_item": """
        SELECT COUNT(*) FROM (
            SELECT ItemID FROM Loans GROUP BY ItemID HAVING COUNT(*) > 1
        ) dup
    """,
    "loans:present_in_active_and_history": """
        SELECT COUNT(*) FROM Loans l JOIN LoanHistory h ON h.LoanID = l.LoanID
    """,
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _count(conn: Connection, sql: str, **params) -> int:
    return int(conn.execute(text(sql), params).scalar() or 0)


def _schema_checks(conn: Connection) -> list[CheckResult]:
    inspector = inspect(conn)
    present = set(inspector.get_table_names())
    out: list[CheckResult] = []
    for name in LENDING_TABLES:
        if name not in present:
            out.append(CheckResult(f"table:{name}", False, "missing"))
            continue
        columns = {column["name"] for column in inspector.get_columns(name)}
        absent = [column.name for column in Base.metadata.tables[name].columns if column.name not in columns]
        detail = "present" if not absent else "absent columns: " + ", ".join(absent)
        out.append(CheckResult(f"table:{name}", not absent, detail))
    return out


def _integrity_checks(conn: Connection) -> list[CheckResult]:
    if not {"Items", "Loans", "LoanHistory"} <= set(inspect(conn).get_table_names()):
        return [CheckResult("integrity", False, "lending tables missing")]
    out = []
    for name, sql in INTEGRITY_QUERIES.items():
        offending = _count(conn, sql, yes=True, no=False)
        out.append(CheckResult(name, offending == 0, f"offending rows={offending}"))
    return out


def run_schema_checks(engine: Engine) -> list[CheckResult]:
    with engine.connect() as conn:
        return _schema_checks(conn)


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    with engine.connect() as conn:
        return _integrity_checks(conn)


def _show(title: str, results: list[CheckResult]) -> None:
    print(f"\n--- {title} ---")
    for result in results:
        print(f"{'PASS' if result.ok else 'FAIL':4} {result.name}  ({result.detail})")


def _show_counts(conn: Connection) -> None:
    print("\n--- Row counts ---")
    present = set(inspect(conn).get_table_names())
    for name in LENDING_TABLES:
        shown = _count(conn, f"SELECT COUNT(*) FROM {name}") if name in present else "missing"
        print(f"{name:<18} {shown}")


def _show_recent_audit(conn: Connection, limit: int) -> None:
    print("\n--- Recent audit entries ---")
    if "AuditLogs" not in set(inspect(conn).get_table_names()):
        print("AuditLogs table missing")
        return
    result = conn.execute(
        text("SELECT AuditID, EntityType, Action, UserID, CreatedAt FROM AuditLogs ORDER BY AuditID DESC")
    )
    for entry in result.fetchmany(max(limit, 1)):
        print("  " + " | ".join(str(value) for value in entry))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Row counts and availability checks for the lending tables.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("TOOL_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to TOOL_LENDING_DB_URL env var.",
    )
    parser.add_argument("--audit-rows", type=int, default=5, help="How many recent audit entries to show.")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    if not args.db_url:
        print("Missing DB URL. Set TOOL_LENDING_DB_URL or pass --db-url.")
        return 2

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    try:
        with engine.connect() as conn:
            schema = _schema_checks(conn)
            integrity = _integrity_checks(conn)
            _show("Schema", schema)
            _show("Availability integrity", integrity)
            _show_counts(conn)
            _show_recent_audit(conn, args.audit_rows)
    except SQLAlchemyError as exc:
        print(f"Database unreachable: {exc}")
        return 3
    return 0 if all(result.ok for result in schema + integrity) else 1


if __name__ == "__main__":
    raise SystemExit(main())
