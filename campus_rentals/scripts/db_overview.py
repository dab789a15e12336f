#!/usr/bin/env python3
"""Database overview and integrity checks for CampusRent."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_COLUMNS: dict[str, list[str]] = {
    "users": ["UserID", "Username", "PasswordHash", "PasswordSalt", "Email", "School", "IsVerified"],
    "items": ["ItemID", "OwnerID", "Title", "Category", "PricePerDay", "IsAvailable", "CreatedDate"],
    "rentals": ["RentalID", "ItemID", "RenterID", "StartDate", "EndDate", "Status", "TotalPrice", "PaidAt"],
    "favorites": ["FavoriteID", "UserID", "ItemID"],
    "messages": ["MessageID", "SenderID", "ReceiverID", "Content", "OfferStatus", "SentAt", "IsRead"],
    "withdrawals": ["WithdrawalID", "UserID", "Amount", "Method", "Status"],
    "audit_log": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


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


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"table:{table}", False, "missing"))
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


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    tables = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []

    if "rentals" in tables:
        # Two blocking ranges on one item must never share a day.
        checks.append(
            _count_check(
                engine,
                "rentals:overlapping_blocking_ranges",
                """
                SELECT COUNT(*)
                FROM rentals a
                JOIN rentals b
                  ON a.ItemID = b.ItemID AND a.RentalID < b.RentalID
                WHERE a.Status IN ('approved', 'unavailable_block')
                  AND b.Status IN ('approved', 'unavailable_block')
                  AND a.StartDate <= b.EndDate
                  AND b.StartDate <= a.EndDate
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:inverted_range",
                "SELECT COUNT(*) FROM rentals WHERE EndDate < StartDate",
            )
        )

    if "rentals" in tables and "items" in tables:
        checks.append(
            _count_check(
                engine,
                "rentals:orphan_itemid",
                """
                SELECT COUNT(*)
                FROM rentals r
                LEFT JOIN items i ON i.ItemID = r.ItemID
                WHERE i.ItemID IS NULL
                """,
            )
        )

    if "withdrawals" in tables:
        checks.append(
            _count_check(
                engine,
                "withdrawals:non_positive_amount",
                "SELECT COUNT(*) FROM withdrawals WHERE Amount <= 0",
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    tables = set(inspect(engine).get_table_names())
    for table in EXPECTED_COLUMNS:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="CampusRent DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CAMPUS_RENT_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CAMPUS_RENT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    column_checks = _run_column_checks(engine)
    integrity_checks = _run_integrity_checks(engine)
    _print_results("Column Checks", column_checks)
    _print_results("Integrity Checks", integrity_checks)
    _print_row_counts(engine)
    return 0 if all(check.ok for check in column_checks + integrity_checks) else 1


if __name__ == "__main__":
    sys.exit(main())
