#!/usr/bin/env python3
"""Database overview and custody invariant checks for ToolCustody."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, create_engine, func, inspect, or_, select, text
from sqlalchemy.engine import Engine

from tool_custody.models.custody_models import (
    HISTORY_ACTIONS,
    RECEIPT_STATES,
    AuditLog,
    ExportReceipt,
    ExportReceiptLine,
    Tool,
    ToolHistory,
    ToolRequest,
)


EXPECTED_TABLES = [
    "Tools",
    "ToolHistory",
    "ToolRequests",
    "ExportReceipts",
    "ExportReceiptLines",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Tools": [
        "ToolID",
        "ProductCode",
        "ToolName",
        "Status",
        "Location",
        "IsInUse",
        "CurrentHolderID",
        "UsageCount",
        "LastUsedDate",
        "Version",
    ],
    "ToolHistory": ["EntryID", "ToolID", "Action", "ActorID", "FromLocation", "ToLocation", "Notes", "CreatedAt"],
    "ToolRequests": [
        "RequestID",
        "ToolID",
        "ProductCode",
        "TargetKey",
        "RequestedBy",
        "Status",
        "BoundToolID",
        "Version",
    ],
    "ExportReceiptLines": ["LineID", "ReceiptID", "ToolID", "Quantity"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

COUNTED_MODELS = [Tool, ToolHistory, ToolRequest, ExportReceipt, ExportReceiptLine, AuditLog]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    if db_url.startswith("sqlite"):
        return create_engine(db_url, future=True)
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, stmt):
    with engine.connect() as conn:
        return conn.execute(stmt).scalar()


def _rows(engine: Engine, stmt):
    with engine.connect() as conn:
        return conn.execute(stmt).all()


def _count_check(engine: Engine, name: str, stmt) -> CheckResult:
    count = int(_scalar(engine, stmt) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
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


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []

    if "Tools" in present:
        checks.append(
            _count_check(
                engine,
                "tools:state_mismatch",
                select(func.count(Tool.ToolID)).where(
                    or_(
                        and_(
                            Tool.IsInUse.is_(True),
                            or_(Tool.Location != "in_use", Tool.CurrentHolderID.is_(None)),
                        ),
                        and_(
                            Tool.IsInUse.is_(False),
                            or_(Tool.Location == "in_use", Tool.CurrentHolderID.is_not(None)),
                        ),
                    )
                ),
            )
        )
        checks.append(
            _count_check(
                engine,
                "tools:negative_usage_count",
                select(func.count(Tool.ToolID)).where(Tool.UsageCount < 0),
            )
        )

    if "Tools" in present and "ToolHistory" in present:
        checks.append(
            _count_check(
                engine,
                "tools:missing_history",
                select(func.count(Tool.ToolID)).where(
                    ~select(ToolHistory.EntryID).where(ToolHistory.ToolID == Tool.ToolID).exists()
                ),
            )
        )

    if "ToolHistory" in present:
        checks.append(
            _count_check(
                engine,
                "history:unknown_action",
                select(func.count(ToolHistory.EntryID)).where(ToolHistory.Action.notin_(HISTORY_ACTIONS)),
            )
        )

    if "ExportReceipts" in present:
        checks.append(
            _count_check(
                engine,
                "receipts:unknown_status",
                select(func.count(ExportReceipt.ReceiptID)).where(ExportReceipt.Status.notin_(RECEIPT_STATES)),
            )
        )

    if "ToolRequests" in present and "Tools" in present:
        checks.append(
            _count_check(
                engine,
                "requests:approved_not_held_by_requester",
                select(func.count(ToolRequest.RequestID))
                .select_from(ToolRequest)
                .outerjoin(Tool, Tool.ToolID == ToolRequest.BoundToolID)
                .where(ToolRequest.Status == "approved")
                .where(
                    or_(
                        Tool.ToolID.is_(None),
                        Tool.IsInUse.is_(False),
                        Tool.CurrentHolderID.is_(None),
                        Tool.CurrentHolderID != ToolRequest.RequestedBy,
                    )
                ),
            )
        )

    if "ToolRequests" in present:
        shared = (
            select(ToolRequest.BoundToolID)
            .where(ToolRequest.Status == "approved")
            .where(ToolRequest.BoundToolID.is_not(None))
            .group_by(ToolRequest.BoundToolID)
            .having(func.count(ToolRequest.RequestID) > 1)
            .subquery()
        )
        checks.append(
            _count_check(engine, "requests:approved_sharing_tool", select(func.count()).select_from(shared))
        )

    if "ToolRequests" in present:
        duplicates = (
            select(ToolRequest.RequestedBy, ToolRequest.TargetKey)
            .where(ToolRequest.Status == "pending")
            .group_by(ToolRequest.RequestedBy, ToolRequest.TargetKey)
            .having(func.count(ToolRequest.RequestID) > 1)
            .subquery()
        )
        checks.append(
            _count_check(engine, "requests:duplicate_pending", select(func.count()).select_from(duplicates))
        )

    if "ExportReceiptLines" in present and "Tools" in present:
        checks.append(
            _count_check(
                engine,
                "receiptlines:orphan_toolid",
                select(func.count(ExportReceiptLine.LineID))
                .select_from(ExportReceiptLine)
                .outerjoin(Tool, Tool.ToolID == ExportReceiptLine.ToolID)
                .where(ExportReceiptLine.ToolID.is_not(None))
                .where(Tool.ToolID.is_(None)),
            )
        )

    if "ExportReceiptLines" in present and "ExportReceipts" in present:
        checks.append(
            _count_check(
                engine,
                "receiptlines:orphan_receiptid",
                select(func.count(ExportReceiptLine.LineID))
                .select_from(ExportReceiptLine)
                .outerjoin(ExportReceipt, ExportReceipt.ReceiptID == ExportReceiptLine.ReceiptID)
                .where(ExportReceipt.ReceiptID.is_(None)),
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
    present = set(inspect(engine).get_table_names())
    for model in COUNTED_MODELS:
        table = model.__table__
        if table.name not in present:
            print(f"{table.name}: missing")
            continue
        count = _scalar(engine, select(func.count()).select_from(table))
        print(f"{table.name}: {int(count or 0)}")


def _print_index_summary(engine: Engine) -> None:
    _print_section("Index Summary (key tables)")
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    for table in ["Tools", "ToolRequests", "ToolHistory"]:
        if table not in present:
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for index in inspector.get_indexes(table):
            print(f"  - {index['name']} unique={bool(index.get('unique'))} cols={','.join(index['column_names'])}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = set(inspect(engine).get_table_names())

    if "ToolHistory" in present:
        rows = _rows(
            engine,
            select(ToolHistory.EntryID, ToolHistory.ToolID, ToolHistory.Action, ToolHistory.ActorID, ToolHistory.CreatedAt)
            .order_by(ToolHistory.EntryID.desc())
            .limit(sample_size),
        )
        print("ToolHistory (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in present:
        rows = _rows(
            engine,
            select(AuditLog.AuditID, AuditLog.EntityType, AuditLog.Action, AuditLog.UserID, AuditLog.CreatedAt)
            .order_by(AuditLog.AuditID.desc())
            .limit(sample_size),
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="ToolCustody DB overview")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_CUSTODY_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_CUSTODY_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, text("SELECT 1"))
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = run_existence_checks(engine)
    columns = run_column_checks(engine)
    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_index_summary(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in [*existence, *columns, *integrity]) else 1


if __name__ == "__main__":
    sys.exit(main())
