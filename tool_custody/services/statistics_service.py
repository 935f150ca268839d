from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tool_custody.models.custody_models import REQUEST_STATES, Tool, ToolHistory, ToolRequest
from tool_custody.services.tool_registry import load_tool, serialize_history_entry


TOP_USAGE_LIMIT = 10


def _usage_row(tool: Tool) -> dict:
    return {
        "toolID": tool.ToolID,
        "productCode": tool.ProductCode,
        "name": tool.ToolName,
        "usageCount": int(tool.UsageCount or 0),
        "lastUsedDate": tool.LastUsedDate,
    }


def get_tool_statistics(db: Session) -> dict:
    total = db.execute(select(func.count(Tool.ToolID))).scalar() or 0
    in_use = db.execute(select(func.count(Tool.ToolID)).where(Tool.IsInUse.is_(True))).scalar() or 0

    by_status = {
        status: int(count)
        for status, count in db.execute(select(Tool.Status, func.count(Tool.ToolID)).group_by(Tool.Status)).all()
    }
    by_location = {
        location: int(count)
        for location, count in db.execute(select(Tool.Location, func.count(Tool.ToolID)).group_by(Tool.Location)).all()
    }

    most_used = db.execute(
        select(Tool).order_by(Tool.UsageCount.desc(), Tool.ToolID).limit(TOP_USAGE_LIMIT)
    ).scalars().all()
    least_used = db.execute(
        select(Tool).order_by(Tool.UsageCount.asc(), Tool.ToolID).limit(TOP_USAGE_LIMIT)
    ).scalars().all()

    return {
        "totalTools": int(total),
        "toolsInUse": int(in_use),
        "toolsAvailable": int(total) - int(in_use),
        "byStatus": by_status,
        "byLocation": by_location,
        "mostUsed": [_usage_row(tool) for tool in most_used],
        "leastUsed": [_usage_row(tool) for tool in least_used],
    }


def list_tools_in_use(db: Session) -> list[dict]:
    rows = db.execute(
        select(Tool)
        .where(Tool.IsInUse.is_(True))
        .order_by(Tool.LastUsedDate.desc(), Tool.ToolID)
    ).scalars().all()
    return [
        {
            "toolID": tool.ToolID,
            "productCode": tool.ProductCode,
            "name": tool.ToolName,
            "currentHolderID": tool.CurrentHolderID,
            "usageCount": int(tool.UsageCount or 0),
            "lastUsedDate": tool.LastUsedDate,
        }
        for tool in rows
    ]


def get_tool_history(db: Session, tool_id: int) -> dict:
    tool = load_tool(db, tool_id)
    entries = db.execute(
        select(ToolHistory).where(ToolHistory.ToolID == tool.ToolID).order_by(ToolHistory.EntryID)
    ).scalars().all()
    return {
        "toolID": tool.ToolID,
        "productCode": tool.ProductCode,
        "name": tool.ToolName,
        "totalUsage": int(tool.UsageCount or 0),
        "history": [serialize_history_entry(entry) for entry in entries],
    }


def count_requests_by_status(db: Session) -> dict[str, int]:
    counts = {status: 0 for status in REQUEST_STATES}
    for status, count in db.execute(
        select(ToolRequest.Status, func.count(ToolRequest.RequestID)).group_by(ToolRequest.Status)
    ).all():
        counts[status] = int(count)
    return counts
