#!/usr/bin/env python3
"""Database overview and integrity checks for the rental engine."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Products",
    "ProductUnits",
    "Bundles",
    "BundleComponents",
    "Promos",
    "Bookings",
    "BookingItems",
    "UnitAssignments",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "ProductUnits": ["UnitID", "ProductID", "SerialNumber", "IsAvailable"],
    "BundleComponents": ["BundleComponentID", "BundleID", "ProductID", "Quantity"],
    "Bookings": [
        "BookingID",
        "BookingNumber",
        "StartDate",
        "EndDate",
        "Duration",
        "PromoID",
        "Status",
        "GrandTotal",
        "DownPayment",
        "RemainingPayment",
        "CancellationFee",
        "DeletedAt",
    ],
    "BookingItems": ["BookingItemID", "BookingID", "ProductID", "BundleID", "Quantity", "Version"],
    "UnitAssignments": ["AssignmentID", "BookingItemID", "UnitID", "ProductID", "AssignedAt"],
}

ACTIVE_STATUS_SQL = "('pending', 'paid', 'rented')"


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


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
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


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    if not all(_table_exists(engine, table) for table in ("Bookings", "BookingItems", "UnitAssignments")):
        checks.append(CheckResult("integrity:tables", False, "booking tables missing"))
        return checks

    checks.append(
        _count_check(
            engine,
            "bookingitems:single_target",
            """
            SELECT COUNT(*)
            FROM BookingItems
            WHERE (ProductID IS NULL AND BundleID IS NULL)
               OR (ProductID IS NOT NULL AND BundleID IS NOT NULL)
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "unitassignments:orphan_bookingitemid",
            """
            SELECT COUNT(*)
            FROM UnitAssignments ua
            LEFT JOIN BookingItems bi ON bi.BookingItemID = ua.BookingItemID
            WHERE bi.BookingItemID IS NULL
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "unitassignments:orphan_unitid",
            """
            SELECT COUNT(*)
            FROM UnitAssignments ua
            LEFT JOIN ProductUnits pu ON pu.UnitID = ua.UnitID
            WHERE pu.UnitID IS NULL OR pu.ProductID <> ua.ProductID
            """,
        )
    )
    # Product lines hold Quantity units; bundle lines hold Quantity units per component row.
    checks.append(
        _count_check(
            engine,
            "bookingitems:assignment_count_mismatch",
            f"""
            SELECT COUNT(*)
            FROM BookingItems bi
            JOIN Bookings b ON b.BookingID = bi.BookingID
            WHERE b.Status IN {ACTIVE_STATUS_SQL}
              AND b.DeletedAt IS NULL
              AND (
                SELECT COUNT(*) FROM UnitAssignments ua WHERE ua.BookingItemID = bi.BookingItemID
              ) <> CASE
                WHEN bi.ProductID IS NOT NULL THEN bi.Quantity
                ELSE bi.Quantity * COALESCE(
                  (SELECT SUM(bc.Quantity) FROM BundleComponents bc WHERE bc.BundleID = bi.BundleID), 0
                )
              END
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "unitassignments:double_booked_unit",
            f"""
            SELECT COUNT(*)
            FROM UnitAssignments a1
            JOIN BookingItems i1 ON i1.BookingItemID = a1.BookingItemID
            JOIN Bookings b1 ON b1.BookingID = i1.BookingID
            JOIN UnitAssignments a2 ON a2.UnitID = a1.UnitID AND a2.AssignmentID > a1.AssignmentID
            JOIN BookingItems i2 ON i2.BookingItemID = a2.BookingItemID
            JOIN Bookings b2 ON b2.BookingID = i2.BookingID
            WHERE b1.Status IN {ACTIVE_STATUS_SQL}
              AND b2.Status IN {ACTIVE_STATUS_SQL}
              AND b1.DeletedAt IS NULL
              AND b2.DeletedAt IS NULL
              AND b1.StartDate <= b2.EndDate
              AND b2.StartDate <= b1.EndDate
            """,
        )
    )
    checks.append(
        _count_check(
            engine,
            "bookings:remaining_payment_mismatch",
            """
            SELECT COUNT(*)
            FROM Bookings
            WHERE DeletedAt IS NULL
              AND RemainingPayment <> CASE
                WHEN GrandTotal > DownPayment THEN GrandTotal - DownPayment
                ELSE 0
              END
            """,
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
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "Bookings"):
        rows = _rows(
            engine,
            """
            SELECT BookingID, BookingNumber, Status, StartDate, EndDate, GrandTotal, DownPayment
            FROM Bookings
            ORDER BY BookingID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Bookings (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rental engine DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_ENGINE_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_ENGINE_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
