from __future__ import annotations

import logging
import secrets
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from tool_custody.models.custody_models import ExportReceipt, ExportReceiptLine, Tool, ToolHistory
from tool_custody.schemas.receipts import ExportReceiptLineDto
from tool_custody.services.actors import Actor, require_admin
from tool_custody.services.audit_service import log_audit
from tool_custody.services.availability_service import is_tool_available
from tool_custody.services.errors import (
    ConflictError,
    LineUnavailableError,
    NotFoundError,
    ValidationFailedError,
)
from tool_custody.services.tool_registry import apply_claim, apply_release
from tool_custody.services.transactions import run_optimistic


LOGGER = logging.getLogger("tool_custody.receipts")

RECEIPT_PREFIX = "XK"
RECEIPT_NUMBER_ATTEMPTS = 20


def generate_receipt_number(db: Session, issued_on: date | None = None) -> str:
    current_date = issued_on or date.today()
    stem = f"{RECEIPT_PREFIX}-{current_date:%Y%m%d}-"

    for _ in range(RECEIPT_NUMBER_ATTEMPTS):
        candidate = f"{stem}{secrets.randbelow(10000):04d}"
        taken = db.execute(
            select(ExportReceipt.ReceiptID).where(ExportReceipt.ReceiptNumber == candidate)
        ).first()
        if not taken:
            return candidate
    raise ConflictError(f"No free receipt number left for {current_date:%Y-%m-%d}; retry the export.")


def receipt_claim_note(receipt_number: str) -> str:
    return f"Export receipt {receipt_number}"


def _claimed_by_receipt(db: Session, tool: Tool, receipt_number: str) -> bool:
    latest = db.execute(
        select(ToolHistory.Action, ToolHistory.Notes)
        .where(ToolHistory.ToolID == tool.ToolID)
        .where(ToolHistory.ToLocation == "in_use")
        .order_by(ToolHistory.EntryID.desc())
        .limit(1)
    ).first()
    return bool(latest) and latest.Action == "export" and latest.Notes == receipt_claim_note(receipt_number)


def load_receipt(db: Session, receipt_id: int) -> ExportReceipt:
    receipt = db.get(ExportReceipt, receipt_id, populate_existing=True)
    if not receipt:
        raise NotFoundError("Export receipt not found", field="receiptID", entity_id=receipt_id)
    return receipt


def _validate_lines(lines: list[ExportReceiptLineDto]) -> None:
    if not lines:
        raise ValidationFailedError("At least one tool is required.", field="tools")
    seen: set[int] = set()
    for index, line in enumerate(lines):
        if line.quantity is None or line.quantity < 1:
            raise ValidationFailedError(f"Line {index + 1}: quantity must be greater than zero.", field="quantity", entity_id=line.toolID)
        if line.toolID in seen:
            raise ValidationFailedError(f"Tool {line.toolID} appears more than once.", field="toolID", entity_id=line.toolID)
        seen.add(line.toolID)


def create_receipt(
    db: Session,
    issuer: Actor,
    lines: list[ExportReceiptLineDto],
    purpose: str | None = None,
    department: str | None = None,
    notes: str | None = None,
) -> ExportReceipt:
    """Check out every listed tool to ``issuer`` under one receipt.

    Every line is resolved and checked before the first claim, and the claims,
    receipt row and lines commit together; any failure leaves all tools as
    they were.
    """
    require_admin(issuer, "create export receipts")
    _validate_lines(lines)

    def unit() -> ExportReceipt:
        tools: list[Tool] = []
        for line in lines:
            tool = db.get(Tool, line.toolID, populate_existing=True)
            if not tool:
                raise NotFoundError(f"Tool {line.toolID} not found", field="toolID", entity_id=line.toolID)
            if not is_tool_available(tool):
                raise LineUnavailableError(
                    f"Tool {tool.ProductCode} is not available.",
                    field="toolID",
                    entity_id=tool.ToolID,
                )
            tools.append(tool)

        now = datetime.now()
        receipt = ExportReceipt(
            ReceiptNumber=generate_receipt_number(db, now.date()),
            ExportDate=now,
            ExportedBy=issuer.user_id,
            Purpose=(purpose or "").strip() or None,
            Department=(department or "").strip() or None,
            Status="completed",
            Notes=(notes or "").strip() or None,
            CreatedDate=now,
        )
        db.add(receipt)
        for line, tool in zip(lines, tools):
            apply_claim(db, tool, issuer.user_id, receipt_claim_note(receipt.ReceiptNumber), issuer.user_id)
            receipt.Lines.append(
                ExportReceiptLine(Tool=tool, Quantity=line.quantity, Notes=(line.notes or "").strip() or None)
            )
        db.flush()
        log_audit(
            db,
            "ExportReceipt",
            receipt.ReceiptID,
            "Create",
            f"{receipt.ReceiptNumber}: tools {', '.join(str(t.ToolID) for t in tools)}",
            user_id=issuer.user_id,
        )
        return receipt

    receipt = run_optimistic(
        db,
        unit,
        label=f"create export receipt by {issuer.user_id}",
        on_integrity_error=lambda exc: ConflictError("Receipt number already taken; retry the export."),
    )
    LOGGER.info("Export receipt %s created by %s with %s tools", receipt.ReceiptNumber, issuer.user_id, len(lines))
    return receipt


def delete_receipt(db: Session, receipt_id: int, actor: Actor) -> None:
    require_admin(actor, "delete export receipts")
    receipt = load_receipt(db, receipt_id)
    number = receipt.ReceiptNumber
    holder_id = receipt.ExportedBy
    tool_ids = [line.ToolID for line in receipt.Lines if line.ToolID is not None]

    if receipt.Status == "completed":
        for tool_id in tool_ids:
            def release_unit(tool_id: int = tool_id) -> bool:
                tool = db.get(Tool, tool_id, populate_existing=True)
                if not tool or not tool.IsInUse or tool.CurrentHolderID != holder_id:
                    return False
                if not _claimed_by_receipt(db, tool, number):
                    return False
                apply_release(db, tool, actor.user_id, f"Returned on deletion of export receipt {number}")
                return True

            released = run_optimistic(db, release_unit, label=f"release tool {tool_id} for receipt {number}")
            if not released:
                LOGGER.warning("Receipt %s: tool %s is no longer held by %s under this receipt, not released", number, tool_id, holder_id)

    def remove_unit() -> None:
        current = load_receipt(db, receipt_id)
        log_audit(db, "ExportReceipt", receipt_id, "Delete", f"{number}: {len(tool_ids)} lines", user_id=actor.user_id)
        db.delete(current)
        db.flush()

    run_optimistic(db, remove_unit, label=f"delete export receipt {number}")
    LOGGER.info("Export receipt %s deleted by %s", number, actor.user_id)


def get_receipt(db: Session, receipt_id: int) -> ExportReceipt:
    return load_receipt(db, receipt_id)


def list_receipts(db: Session) -> list[ExportReceipt]:
    return db.execute(
        select(ExportReceipt)
        .options(selectinload(ExportReceipt.Lines).selectinload(ExportReceiptLine.Tool))
        .order_by(ExportReceipt.ExportDate.desc(), ExportReceipt.ReceiptID.desc())
    ).scalars().all()


def serialize_receipt(receipt: ExportReceipt) -> dict:
    return {
        "receiptID": receipt.ReceiptID,
        "receiptNumber": receipt.ReceiptNumber,
        "exportDate": receipt.ExportDate,
        "exportedBy": receipt.ExportedBy,
        "purpose": receipt.Purpose,
        "department": receipt.Department,
        "status": receipt.Status,
        "notes": receipt.Notes,
        "createdDate": receipt.CreatedDate,
        "tools": [
            {
                "lineID": line.LineID,
                "toolID": line.ToolID,
                "productCode": line.Tool.ProductCode if line.Tool else None,
                "name": line.Tool.ToolName if line.Tool else None,
                "quantity": line.Quantity,
                "notes": line.Notes,
            }
            for line in receipt.Lines
        ],
    }
