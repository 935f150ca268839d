from __future__ import annotations

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from tool_custody.models.custody_models import Tool, ToolRequest


BLOCKED_LOCATIONS = {"in_use", "maintenance", "disposed"}
BLOCKED_STATUSES = {"unusable"}


def normalize_product_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def product_code_family(product_code: str):
    code = normalize_product_code(product_code)
    return or_(Tool.ProductCode == code, Tool.ProductCode.startswith(f"{code}-", autoescape=True))


def _available_clause():
    return and_(
        Tool.IsInUse.is_(False),
        Tool.Location.notin_(BLOCKED_LOCATIONS),
        Tool.Status.notin_(BLOCKED_STATUSES),
    )


def _approved_binding(tool_id_column):
    return (
        select(ToolRequest.RequestID)
        .where(ToolRequest.BoundToolID == tool_id_column)
        .where(ToolRequest.Status == "approved")
        .exists()
    )


def has_approved_binding(db: Session, tool_id: int) -> bool:
    return bool(db.execute(select(_approved_binding(tool_id))).scalar())


def is_tool_available(tool: Tool) -> bool:
    if tool.IsInUse:
        return False
    if (tool.Location or "warehouse") in BLOCKED_LOCATIONS:
        return False
    return (tool.Status or "new") not in BLOCKED_STATUSES


def count_available(db: Session, product_code: str) -> int:
    count = db.execute(
        select(func.count(Tool.ToolID))
        .where(product_code_family(product_code))
        .where(_available_clause())
    ).scalar()
    return int(count or 0)


def count_family(db: Session, product_code: str) -> int:
    count = db.execute(
        select(func.count(Tool.ToolID)).where(product_code_family(product_code))
    ).scalar()
    return int(count or 0)


def is_available(db: Session, tool_id: int) -> bool:
    tool = db.get(Tool, tool_id, populate_existing=True)
    if not tool:
        return False
    return is_tool_available(tool)


def select_available_tool(db: Session, product_code: str) -> Tool | None:
    """First free unit of the family that no approved request is still bound to."""
    return db.execute(
        select(Tool)
        .where(product_code_family(product_code))
        .where(_available_clause())
        .where(~_approved_binding(Tool.ToolID))
        .order_by(Tool.ProductCode, Tool.ToolID)
        .limit(1)
        .execution_options(populate_existing=True)
    ).scalars().first()


def describe_availability(db: Session, product_code: str) -> dict:
    code = normalize_product_code(product_code)
    return {
        "productCode": code,
        "totalCount": count_family(db, code),
        "availableCount": count_available(db, code),
    }
