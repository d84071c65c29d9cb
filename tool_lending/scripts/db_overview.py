#!/usr/bin/env python3
"""Database overview and lending integrity checks."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Users",
    "Categories",
    "Tools",
    "Requests",
    "Loans",
    "Returns",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Tools": ["ToolID", "ScanCode", "ToolName", "CategoryID", "Status", "CreatedDate", "UpdatedDate"],
    "Requests": ["RequestID", "UserID", "ToolID", "Status", "UseDate", "ReturnDate", "ReviewerID", "ReviewedAt"],
    "Loans": [
        "LoanID",
        "RequestID",
        "UserID",
        "ToolID",
        "ApproverID",
        "Status",
        "LoanDate",
        "EstimatedReturnDate",
        "ActualReturnDate",
    ],
    "Returns": ["ReturnID", "LoanID", "ToolID", "UserID", "Status", "ReportedCondition", "NewToolStatus"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# (name, tables needed, SQL returning the number of offending rows)
INTEGRITY_CHECKS = [
    (
        "loans:tools_with_several_active_loans",
        ("Loans",),
        """
        SELECT COUNT(*)
        FROM (
            SELECT ToolID
            FROM Loans
            WHERE Status = 'active'
            GROUP BY ToolID
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    (
        "tools:loaned_without_active_loan",
        ("Tools", "Loans"),
        """
        SELECT COUNT(*)
        FROM Tools t
        WHERE t.Status = 'loaned'
          AND NOT EXISTS (
              SELECT 1 FROM Loans l WHERE l.ToolID = t.ToolID AND l.Status = 'active'
          )
        """,
    ),
    (
        "loans:active_on_tool_not_loaned",
        ("Tools", "Loans"),
        """
        SELECT COUNT(*)
        FROM Loans l
        JOIN Tools t ON t.ToolID = l.ToolID
        WHERE l.Status = 'active' AND t.Status <> 'loaned'
        """,
    ),
    (
        "returns:pending_on_closed_loan",
        ("Returns", "Loans"),
        """
        SELECT COUNT(*)
        FROM Returns r
        JOIN Loans l ON l.LoanID = r.LoanID
        WHERE r.Status = 'pending' AND l.Status <> 'active'
        """,
    ),
    (
        "requests:several_pending_per_user_tool",
        ("Requests",),
        """
        SELECT COUNT(*)
        FROM (
            SELECT UserID, ToolID
            FROM Requests
            WHERE Status = 'pending'
            GROUP BY UserID, ToolID
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for name, needed, sql in INTEGRITY_CHECKS:
        if not all(table in tables for table in needed):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "Loans" in tables:
        rows = _rows(
            engine,
            """
            SELECT LoanID, ToolID, UserID, Status, EstimatedReturnDate
            FROM Loans
            ORDER BY LoanID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Loans (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Tool lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_LENDING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = _existing_tables(engine)
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
