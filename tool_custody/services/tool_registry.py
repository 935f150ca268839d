from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tool_custody.models.custody_models import TOOL_LOCATIONS, TOOL_STATUSES, Tool, ToolHistory, ToolRequest
from tool_custody.schemas.tools import ToolCreate, ToolUpdate
from tool_custody.services.actors import Actor, require_admin
from tool_custody.services.audit_service import log_audit
from tool_custody.services.availability_service import is_tool_available, normalize_product_code
from tool_custody.services.errors import (
    AlreadyInUseError,
    DuplicateCodeError,
    InvalidStateError,
    NotFoundError,
    NotInUseError,
    ToolInUseError,
    ToolUnavailableError,
    ValidationFailedError,
)
from tool_custody.services.transactions import run_optimistic


LOGGER = logging.getLogger("tool_custody.registry")

SUB_RECORD_FIELDS = {
    "geometry": "Geometry",
    "characteristics": "Characteristics",
    "cuttingParameters": "CuttingParameters",
    "catalogInfo": "CatalogInfo",
}
TOOL_REMOVED_NOTE = "Tool removed from registry"
RELEASED_DIRECTLY_NOTE = "Tool returned to warehouse by an administrator"


def load_tool(db: Session, tool_id: int) -> Tool:
    tool = db.get(Tool, tool_id, populate_existing=True)
    if not tool:
        raise NotFoundError("Tool not found", field="toolID", entity_id=tool_id)
    return tool


def append_history(
    db: Session,
    tool: Tool,
    action: str,
    actor_id: int | None,
    from_location: str | None,
    to_location: str | None,
    notes: str | None,
    at: datetime | None = None,
) -> ToolHistory:
    entry = ToolHistory(
        Tool=tool,
        Action=action,
        ActorID=actor_id,
        FromLocation=from_location,
        ToLocation=to_location,
        Notes=notes,
        CreatedAt=at or datetime.now(),
    )
    db.add(entry)
    return entry


def apply_claim(db: Session, tool: Tool, holder_id: int, note: str | None, actor_id: int | None = None) -> Tool:
    """Move an available tool to ``in_use`` for ``holder_id``.

    Only mutates the session; the caller's transaction decides when the
    versioned write happens, so the state change, the usage counters and the
    history entry always land together.
    """
    if tool.IsInUse:
        raise AlreadyInUseError(
            f"Tool {tool.ProductCode} is already in use.",
            field="toolID",
            entity_id=tool.ToolID,
        )
    if not is_tool_available(tool):
        raise ToolUnavailableError(
            f"Tool {tool.ProductCode} is not available (location={tool.Location}, status={tool.Status}).",
            field="toolID",
            entity_id=tool.ToolID,
        )
    now = datetime.now()
    from_location = tool.Location
    tool.IsInUse = True
    tool.CurrentHolderID = holder_id
    tool.Location = "in_use"
    tool.UsageCount = int(tool.UsageCount or 0) + 1
    tool.LastUsedDate = now
    tool.UpdatedDate = now
    append_history(db, tool, "export", actor_id if actor_id is not None else holder_id, from_location, "in_use", note or "Checked out", now)
    return tool


def apply_release(db: Session, tool: Tool, actor_id: int | None, note: str | None) -> Tool:
    if not tool.IsInUse:
        raise NotInUseError(f"Tool {tool.ProductCode} is not in use.", field="toolID", entity_id=tool.ToolID)
    now = datetime.now()
    tool.IsInUse = False
    tool.CurrentHolderID = None
    tool.Location = "warehouse"
    tool.UpdatedDate = now
    append_history(db, tool, "import", actor_id, "in_use", "warehouse", note or "Returned to warehouse", now)
    return tool


def close_bound_requests(db: Session, tool_id: int, actor_id: int | None, note: str, at: datetime | None = None) -> int:
    """Mark approved requests bound to ``tool_id`` as returned.

    Used whenever custody ends outside ``return_tool``; an approved request
    must never outlive its holder's custody of the bound tool.
    """
    now = at or datetime.now()
    bound = db.execute(
        select(ToolRequest)
        .where(ToolRequest.BoundToolID == tool_id)
        .where(ToolRequest.Status == "approved")
        .execution_options(populate_existing=True)
    ).scalars().all()
    for request in bound:
        request.Status = "returned"
        request.ReturnedAt = now
        request.ReturnNotes = note
        request.UpdatedDate = now
        log_audit(db, "ToolRequest", request.RequestID, "Return", f"Tool {tool_id}: {note}", user_id=actor_id)
    return len(bound)


def _sub_record_from_create(value: BaseModel | None) -> dict[str, Any] | None:
    if value is None:
        return None
    payload = value.model_dump(exclude_none=True)
    return payload or None


def _merge_sub_record(existing: dict[str, Any] | None, value: BaseModel) -> dict[str, Any] | None:
    merged = dict(existing or {})
    for key, item in value.model_dump(exclude_unset=True).items():
        if item is None:
            merged.pop(key, None)
        else:
            merged[key] = item
    return merged or None


def create_tool(db: Session, payload: ToolCreate, actor: Actor) -> Tool:
    code = normalize_product_code(payload.productCode)
    if not code:
        raise ValidationFailedError("Product code is required.", field="productCode")
    name = (payload.name or "").strip()
    if not name:
        raise ValidationFailedError("Tool name is required.", field="name")
    status = payload.status or "new"
    if status not in TOOL_STATUSES:
        raise ValidationFailedError(f"Unknown tool status: {status}", field="status")

    def unit() -> Tool:
        existing = db.execute(select(Tool.ToolID).where(Tool.ProductCode == code)).first()
        if existing:
            raise DuplicateCodeError(f"Product code {code} already exists.", field="productCode", entity_id=existing[0])
        now = datetime.now()
        tool = Tool(
            ProductCode=code,
            ToolName=name,
            Category=(payload.category or "").strip() or None,
            Status=status,
            Location="warehouse",
            IsInUse=False,
            CurrentHolderID=None,
            UsageCount=0,
            Geometry=_sub_record_from_create(payload.geometry),
            Characteristics=_sub_record_from_create(payload.characteristics),
            CuttingParameters=_sub_record_from_create(payload.cuttingParameters),
            CatalogInfo=_sub_record_from_create(payload.catalogInfo),
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(tool)
        append_history(db, tool, "import", actor.user_id, None, "warehouse", "New tool imported", now)
        db.flush()
        return tool

    tool = run_optimistic(
        db,
        unit,
        label=f"create tool {code}",
        on_integrity_error=lambda exc: DuplicateCodeError(f"Product code {code} already exists.", field="productCode"),
    )
    LOGGER.info("Tool %s (%s) imported by %s", tool.ToolID, tool.ProductCode, actor.user_id)
    return tool


def claim_tool(db: Session, tool_id: int, holder_id: int, note: str | None, actor: Actor) -> Tool:
    require_admin(actor, "check out tools directly")

    def unit() -> Tool:
        tool = load_tool(db, tool_id)
        apply_claim(db, tool, holder_id, note, actor.user_id)
        db.flush()
        return tool

    tool = run_optimistic(db, unit, label=f"claim tool {tool_id}")
    LOGGER.info("Tool %s claimed for holder %s", tool_id, holder_id)
    return tool


def release_tool(db: Session, tool_id: int, actor: Actor, note: str | None = None) -> Tool:
    require_admin(actor, "return tools directly")

    def unit() -> Tool:
        tool = load_tool(db, tool_id)
        apply_release(db, tool, actor.user_id, note)
        close_bound_requests(db, tool_id, actor.user_id, (note or "").strip() or RELEASED_DIRECTLY_NOTE)
        db.flush()
        return tool

    tool = run_optimistic(db, unit, label=f"release tool {tool_id}")
    LOGGER.info("Tool %s released to warehouse by %s", tool_id, actor.user_id)
    return tool


def transfer_tool(db: Session, tool_id: int, to_location: str | None, actor: Actor, note: str | None = None) -> Tool:
    require_admin(actor, "transfer tools")
    destination = (to_location or "").strip().lower()
    if destination not in TOOL_LOCATIONS:
        raise ValidationFailedError(f"Unknown location: {to_location}", field="toLocation")

    def unit() -> Tool:
        tool = load_tool(db, tool_id)
        source = tool.Location
        if source == destination:
            raise InvalidStateError(f"Tool {tool.ProductCode} is already at {destination}.", field="toLocation", entity_id=tool_id)

        now = datetime.now()
        if destination == "in_use":
            if not is_tool_available(tool):
                raise ToolUnavailableError(
                    f"Tool {tool.ProductCode} cannot be checked out from {source}.",
                    field="toLocation",
                    entity_id=tool_id,
                )
            tool.IsInUse = True
            tool.CurrentHolderID = actor.user_id
            tool.UsageCount = int(tool.UsageCount or 0) + 1
            tool.LastUsedDate = now
        else:
            if tool.IsInUse:
                close_bound_requests(db, tool_id, actor.user_id, f"Tool transferred to {destination}", now)
            tool.IsInUse = False
            tool.CurrentHolderID = None
        tool.Location = destination
        tool.UpdatedDate = now
        action = "maintenance" if destination == "maintenance" else "transfer"
        append_history(db, tool, action, actor.user_id, source, destination, note or "Tool transferred", now)
        db.flush()
        return tool

    tool = run_optimistic(db, unit, label=f"transfer tool {tool_id}")
    LOGGER.info("Tool %s transferred to %s by %s", tool_id, destination, actor.user_id)
    return tool


def update_tool(db: Session, tool_id: int, patch: ToolUpdate, actor: Actor, note: str | None = None) -> Tool:
    if patch.name is not None and not patch.name.strip():
        raise ValidationFailedError("Tool name cannot be blank.", field="name")
    if patch.status is not None and patch.status not in TOOL_STATUSES:
        raise ValidationFailedError(f"Unknown tool status: {patch.status}", field="status")

    def unit() -> Tool:
        tool = load_tool(db, tool_id)
        if patch.productCode is not None and normalize_product_code(patch.productCode) != tool.ProductCode:
            raise ValidationFailedError("Product code cannot be changed after import.", field="productCode", entity_id=tool_id)

        if patch.name is not None:
            tool.ToolName = patch.name.strip()
        if "category" in patch.model_fields_set:
            tool.Category = (patch.category or "").strip() or None
        if patch.status is not None:
            tool.Status = patch.status
        for field, column in SUB_RECORD_FIELDS.items():
            if field not in patch.model_fields_set:
                continue
            value = getattr(patch, field)
            setattr(tool, column, None if value is None else _merge_sub_record(getattr(tool, column), value))

        now = datetime.now()
        tool.UpdatedDate = now
        append_history(db, tool, "update", actor.user_id, None, None, note or patch.updateNotes or "Tool details updated", now)
        db.flush()
        return tool

    return run_optimistic(db, unit, label=f"update tool {tool_id}")


def delete_tool(db: Session, tool_id: int, actor: Actor, force: bool = False) -> None:
    """Hard-delete a tool.

    An allocated tool is only removed with ``force``; it is released first and
    the requests that point at it are closed, so aggregate counts never see a
    holder for a tool that no longer exists.
    """
    require_admin(actor, "delete tools")

    def unit() -> dict:
        tool = load_tool(db, tool_id)
        closed = {"returned": 0, "rejected": 0, "forceReleasedFrom": None}
        now = datetime.now()
        if tool.IsInUse:
            if not force:
                raise ToolInUseError(
                    f"Tool {tool.ProductCode} is in use by {tool.CurrentHolderID}; return it or delete with force.",
                    field="toolID",
                    entity_id=tool_id,
                )
            closed["forceReleasedFrom"] = tool.CurrentHolderID
            apply_release(db, tool, actor.user_id, "Force-released before deletion")
            closed["returned"] = close_bound_requests(db, tool_id, actor.user_id, TOOL_REMOVED_NOTE, now)

        pending = db.execute(
            select(ToolRequest)
            .where(ToolRequest.ToolID == tool_id)
            .where(ToolRequest.Status == "pending")
        ).scalars().all()
        for request in pending:
            request.Status = "rejected"
            request.ReviewedBy = actor.user_id
            request.ReviewedAt = now
            request.RejectionReason = TOOL_REMOVED_NOTE
            request.UpdatedDate = now
            closed["rejected"] += 1

        db.flush()
        log_audit(
            db,
            "Tool",
            tool_id,
            "Delete",
            f"{tool.ProductCode} deleted; force={force} releasedFrom={closed['forceReleasedFrom']} "
            f"returned={closed['returned']} rejected={closed['rejected']}",
            user_id=actor.user_id,
        )
        db.delete(tool)
        db.flush()
        return closed

    closed = run_optimistic(db, unit, label=f"delete tool {tool_id}")
    if closed["forceReleasedFrom"] is not None:
        LOGGER.warning(
            "Tool %s force-released from holder %s and deleted by %s",
            tool_id,
            closed["forceReleasedFrom"],
            actor.user_id,
        )
    else:
        LOGGER.info("Tool %s deleted by %s", tool_id, actor.user_id)


def get_tool(db: Session, tool_id: int) -> Tool:
    return load_tool(db, tool_id)


def list_tools(
    db: Session,
    *,
    status: str | None = None,
    is_in_use: bool | None = None,
    location: str | None = None,
    category: str | None = None,
    product_code: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(1, int(page or 1))
    limit = max(1, int(limit or 20))

    stmt = select(Tool)
    if status:
        stmt = stmt.where(Tool.Status == status)
    if is_in_use is not None:
        stmt = stmt.where(Tool.IsInUse.is_(bool(is_in_use)))
    if location:
        stmt = stmt.where(Tool.Location == location)
    if category:
        stmt = stmt.where(Tool.Category == category)
    if product_code:
        stmt = stmt.where(Tool.ProductCode.ilike(f"%{product_code.strip()}%"))
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(
                Tool.ToolName.ilike(pattern),
                Tool.ProductCode.ilike(pattern),
                Tool.Characteristics["brand"].as_string().ilike(pattern),
            )
        )

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
    tools = db.execute(
        stmt.order_by(Tool.CreatedDate.desc(), Tool.ToolID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "count": len(tools),
        "total": int(total),
        "page": page,
        "pages": math.ceil(int(total) / limit),
        "data": [serialize_tool(tool) for tool in tools],
    }


def serialize_history_entry(entry: ToolHistory) -> dict:
    return {
        "entryID": entry.EntryID,
        "action": entry.Action,
        "actorID": entry.ActorID,
        "fromLocation": entry.FromLocation,
        "toLocation": entry.ToLocation,
        "notes": entry.Notes,
        "date": entry.CreatedAt,
    }


def serialize_tool(tool: Tool, include_history: bool = False) -> dict:
    payload = {
        "toolID": tool.ToolID,
        "productCode": tool.ProductCode,
        "name": tool.ToolName,
        "category": tool.Category,
        "status": tool.Status,
        "location": tool.Location,
        "isInUse": bool(tool.IsInUse),
        "currentHolderID": tool.CurrentHolderID,
        "usageCount": int(tool.UsageCount or 0),
        "lastUsedDate": tool.LastUsedDate,
        "isAvailable": is_tool_available(tool),
        "geometry": tool.Geometry,
        "characteristics": tool.Characteristics,
        "cuttingParameters": tool.CuttingParameters,
        "catalogInfo": tool.CatalogInfo,
        "version": tool.Version,
        "createdDate": tool.CreatedDate,
        "updatedDate": tool.UpdatedDate,
    }
    if include_history:
        payload["history"] = [serialize_history_entry(entry) for entry in tool.History]
    return payload
