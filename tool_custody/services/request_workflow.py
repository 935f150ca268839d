from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from tool_custody.models.custody_models import REQUEST_STATES, Tool, ToolRequest
from tool_custody.schemas.requests import ToolRequestCreate
from tool_custody.services.actors import Actor, require_admin
from tool_custody.services.audit_service import log_audit
from tool_custody.services.availability_service import (
    count_available,
    count_family,
    has_approved_binding,
    is_tool_available,
    normalize_product_code,
    product_code_family,
    select_available_tool,
)
from tool_custody.services.errors import (
    DuplicatePendingError,
    NoStockError,
    NotApprovedError,
    NotFoundError,
    NotHolderError,
    NotOwnerError,
    NotPendingError,
    TargetUnavailableError,
    ValidationFailedError,
)
from tool_custody.services.tool_registry import apply_claim, apply_release
from tool_custody.services.transactions import run_optimistic


LOGGER = logging.getLogger("tool_custody.requests")

LOST_RACE_REASON = "tool already assigned to another holder"
NOT_AVAILABLE_REASON = "tool is not available for checkout"


def load_request(db: Session, request_id: int) -> ToolRequest:
    request = db.get(ToolRequest, request_id, populate_existing=True)
    if not request:
        raise NotFoundError("Tool request not found", field="requestID", entity_id=request_id)
    return request


def _require_text(value: str | None, field: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailedError(f"{label} is required.", field=field)
    return cleaned


def _validate_target(payload: ToolRequestCreate) -> None:
    has_tool = payload.toolID is not None
    has_code = bool(normalize_product_code(payload.productCode))
    if has_tool == has_code:
        raise ValidationFailedError("Provide either toolID or productCode.", field="toolID")
    quantity = payload.quantity if payload.quantity is not None else 1
    if quantity < 1:
        raise ValidationFailedError("Quantity must be greater than zero.", field="quantity")
    if has_tool and quantity != 1:
        raise ValidationFailedError("A request for a specific tool covers exactly one unit.", field="quantity")


def submit_request(db: Session, requester: Actor, payload: ToolRequestCreate) -> ToolRequest:
    _validate_target(payload)
    purpose = _require_text(payload.purpose, "purpose", "Purpose")
    duration = _require_text(payload.expectedDuration, "expectedDuration", "Expected duration")
    notes = (payload.notes or "").strip() or None

    def unit() -> ToolRequest:
        if payload.toolID is not None:
            tool = db.get(Tool, payload.toolID, populate_existing=True)
            if not tool:
                raise NotFoundError("Tool not found", field="toolID", entity_id=payload.toolID)
            target_key = f"TOOL:{tool.ToolID}"
            product_code = tool.ProductCode
            tool_name = tool.ToolName
            quantity = 1
            available = is_tool_available(tool)
        else:
            product_code = normalize_product_code(payload.productCode)
            if count_family(db, product_code) == 0:
                raise NotFoundError(f"No tools registered under product code {product_code}.", field="productCode", entity_id=product_code)
            target_key = f"CODE:{product_code}"
            tool_name = db.execute(
                select(Tool.ToolName).where(product_code_family(product_code)).order_by(Tool.ProductCode, Tool.ToolID)
            ).scalars().first()
            quantity = int(payload.quantity or 1)
            available = count_available(db, product_code) > 0

        existing = db.execute(
            select(ToolRequest.RequestID)
            .where(ToolRequest.RequestedBy == requester.user_id)
            .where(ToolRequest.TargetKey == target_key)
            .where(ToolRequest.Status == "pending")
        ).first()
        if existing:
            raise DuplicatePendingError(
                "You already have a pending request for this tool.",
                field="toolID" if payload.toolID is not None else "productCode",
                entity_id=existing[0],
            )
        if not available:
            raise TargetUnavailableError(
                f"{product_code} has no available stock.",
                field="toolID" if payload.toolID is not None else "productCode",
                entity_id=payload.toolID if payload.toolID is not None else product_code,
            )

        now = datetime.now()
        request = ToolRequest(
            ToolID=payload.toolID,
            ProductCode=product_code,
            ToolName=tool_name,
            TargetKey=target_key,
            Quantity=quantity,
            RequestedBy=requester.user_id,
            Purpose=purpose,
            ExpectedDuration=duration,
            Notes=notes,
            Status="pending",
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(request)
        db.flush()
        log_audit(db, "ToolRequest", request.RequestID, "Submit", f"Target {target_key} quantity={quantity}", user_id=requester.user_id)
        return request

    request = run_optimistic(
        db,
        unit,
        label=f"submit request by {requester.user_id}",
        on_integrity_error=lambda exc: DuplicatePendingError("You already have a pending request for this tool."),
    )
    LOGGER.info("Request %s submitted by %s for %s", request.RequestID, requester.user_id, request.TargetKey)
    return request


def _select_tool_for(db: Session, request: ToolRequest) -> tuple[Tool | None, str]:
    if request.TargetKey.startswith("TOOL:"):
        tool = db.get(Tool, request.ToolID, populate_existing=True) if request.ToolID is not None else None
        if tool is None:
            return None, NOT_AVAILABLE_REASON
        if tool.IsInUse or has_approved_binding(db, tool.ToolID):
            return None, LOST_RACE_REASON
        if is_tool_available(tool):
            return tool, ""
        return None, NOT_AVAILABLE_REASON

    tool = select_available_tool(db, request.ProductCode)
    if tool is not None:
        return tool, ""
    in_use = db.execute(
        select(func.count(Tool.ToolID))
        .where(product_code_family(request.ProductCode))
        .where(or_(Tool.IsInUse.is_(True), Tool.BoundRequests.any(ToolRequest.Status == "approved")))
    ).scalar()
    return None, LOST_RACE_REASON if in_use else NOT_AVAILABLE_REASON


def approve_request(db: Session, request_id: int, reviewer: Actor) -> ToolRequest:
    """Approve a pending request and bind it to one concrete tool.

    Selection, claim and the status change commit as one unit. When no unit is
    left (including after losing a race to another approval) the request is
    rejected on the spot and ``NoStockError`` is raised, so it never stays
    pending against stock that is gone.
    """
    require_admin(reviewer, "approve tool requests")

    def unit() -> tuple[ToolRequest, str]:
        request = load_request(db, request_id)
        if request.Status != "pending":
            raise NotPendingError("Request is not pending approval.", field="status", entity_id=request_id)

        tool, reason = _select_tool_for(db, request)
        now = datetime.now()
        request.ReviewedBy = reviewer.user_id
        request.ReviewedAt = now
        request.UpdatedDate = now
        if tool is None:
            request.Status = "rejected"
            request.RejectionReason = reason
            log_audit(db, "ToolRequest", request_id, "AutoReject", reason, user_id=reviewer.user_id)
            db.flush()
            return request, reason

        apply_claim(
            db,
            tool,
            request.RequestedBy,
            f"Request #{request_id} approved - Purpose: {request.Purpose}",
            reviewer.user_id,
        )
        request.Status = "approved"
        request.ApprovedAt = now
        request.BoundTool = tool
        log_audit(db, "ToolRequest", request_id, "Approve", f"Bound to tool {tool.ToolID} ({tool.ProductCode})", user_id=reviewer.user_id)
        db.flush()
        return request, ""

    request, rejection = run_optimistic(db, unit, label=f"approve request {request_id}")
    if rejection:
        LOGGER.warning("Request %s auto-rejected on approval by %s: %s", request_id, reviewer.user_id, rejection)
        raise NoStockError(
            f"No tool available for {request.ProductCode}: {rejection}. The request was rejected automatically.",
            field="toolID" if request.ToolID is not None else "productCode",
            entity_id=request_id,
        )
    LOGGER.info("Request %s approved by %s, tool %s -> holder %s", request_id, reviewer.user_id, request.BoundToolID, request.RequestedBy)
    return request


def reject_request(db: Session, request_id: int, reviewer: Actor, reason: str | None) -> ToolRequest:
    require_admin(reviewer, "reject tool requests")
    cleaned = _require_text(reason, "rejectionReason", "Rejection reason")

    def unit() -> ToolRequest:
        request = load_request(db, request_id)
        if request.Status != "pending":
            raise NotPendingError("Request is not pending approval.", field="status", entity_id=request_id)
        now = datetime.now()
        request.Status = "rejected"
        request.ReviewedBy = reviewer.user_id
        request.ReviewedAt = now
        request.RejectionReason = cleaned
        request.UpdatedDate = now
        log_audit(db, "ToolRequest", request_id, "Reject", cleaned, user_id=reviewer.user_id)
        db.flush()
        return request

    request = run_optimistic(db, unit, label=f"reject request {request_id}")
    LOGGER.info("Request %s rejected by %s", request_id, reviewer.user_id)
    return request


def cancel_request(db: Session, request_id: int, requester: Actor) -> ToolRequest:
    def unit() -> ToolRequest:
        request = load_request(db, request_id)
        if request.RequestedBy != requester.user_id:
            raise NotOwnerError("Only the requester can cancel this request.", entity_id=request_id)
        if request.Status != "pending":
            raise NotPendingError("Only pending requests can be cancelled.", field="status", entity_id=request_id)
        request.Status = "cancelled"
        request.UpdatedDate = datetime.now()
        log_audit(db, "ToolRequest", request_id, "Cancel", None, user_id=requester.user_id)
        db.flush()
        return request

    return run_optimistic(db, unit, label=f"cancel request {request_id}")


def return_tool(db: Session, request_id: int, requester: Actor, notes: str | None = None) -> ToolRequest:
    cleaned_notes = (notes or "").strip() or None

    def unit() -> ToolRequest:
        request = load_request(db, request_id)
        if request.RequestedBy != requester.user_id:
            raise NotOwnerError("Only the requester can return this tool.", entity_id=request_id)
        if request.Status != "approved":
            raise NotApprovedError("Only approved requests can be returned.", field="status", entity_id=request_id)
        tool = db.get(Tool, request.BoundToolID, populate_existing=True) if request.BoundToolID is not None else None
        if tool is None or not tool.IsInUse or tool.CurrentHolderID != request.RequestedBy:
            raise NotHolderError(
                "The bound tool is no longer held by the requester.",
                field="boundToolID",
                entity_id=request.BoundToolID,
            )
        history_note = f"Returned via request #{request_id}"
        if cleaned_notes:
            history_note = f"{history_note} - {cleaned_notes}"
        apply_release(db, tool, requester.user_id, history_note)
        now = datetime.now()
        request.Status = "returned"
        request.ReturnedAt = now
        request.ReturnNotes = cleaned_notes
        request.UpdatedDate = now
        log_audit(db, "ToolRequest", request_id, "Return", f"Tool {tool.ToolID} back in warehouse", user_id=requester.user_id)
        db.flush()
        return request

    request = run_optimistic(db, unit, label=f"return request {request_id}")
    LOGGER.info("Request %s returned by %s", request_id, requester.user_id)
    return request


def get_request(db: Session, request_id: int, actor: Actor) -> ToolRequest:
    request = load_request(db, request_id)
    if not actor.is_admin and request.RequestedBy != actor.user_id:
        raise NotOwnerError("You can only view your own requests.", entity_id=request_id)
    return request


def list_requests(
    db: Session,
    actor: Actor,
    *,
    status: str | None = None,
    tool_id: int | None = None,
    user_id: int | None = None,
) -> list[ToolRequest]:
    if status and status not in REQUEST_STATES:
        raise ValidationFailedError(f"Unknown request status: {status}", field="status")
    stmt = select(ToolRequest)
    if not actor.is_admin:
        stmt = stmt.where(ToolRequest.RequestedBy == actor.user_id)
    elif user_id is not None:
        stmt = stmt.where(ToolRequest.RequestedBy == user_id)
    if status:
        stmt = stmt.where(ToolRequest.Status == status)
    if tool_id is not None:
        stmt = stmt.where((ToolRequest.ToolID == tool_id) | (ToolRequest.BoundToolID == tool_id))
    return db.execute(
        stmt.order_by(ToolRequest.CreatedDate.desc(), ToolRequest.RequestID.desc())
    ).scalars().all()


def serialize_request(request: ToolRequest) -> dict:
    bound = request.BoundTool
    return {
        "requestID": request.RequestID,
        "toolID": request.ToolID,
        "productCode": request.ProductCode,
        "toolName": request.ToolName,
        "quantity": request.Quantity,
        "requestedBy": request.RequestedBy,
        "purpose": request.Purpose,
        "expectedDuration": request.ExpectedDuration,
        "notes": request.Notes,
        "status": request.Status,
        "reviewedBy": request.ReviewedBy,
        "reviewedAt": request.ReviewedAt,
        "rejectionReason": request.RejectionReason,
        "approvedAt": request.ApprovedAt,
        "boundToolID": request.BoundToolID,
        "boundTool": {
            "toolID": bound.ToolID,
            "productCode": bound.ProductCode,
            "name": bound.ToolName,
            "isInUse": bool(bound.IsInUse),
            "location": bound.Location,
        } if bound else None,
        "returnedAt": request.ReturnedAt,
        "returnNotes": request.ReturnNotes,
        "createdDate": request.CreatedDate,
        "updatedDate": request.UpdatedDate,
    }
