from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, event, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from tool_custody.db.base import Base


TOOL_LOCATIONS = ("warehouse", "in_use", "maintenance", "disposed")
TOOL_STATUSES = ("new", "old", "usable", "unusable")
HISTORY_ACTIONS = ("import", "export", "transfer", "update", "maintenance")
REQUEST_STATES = ("pending", "approved", "rejected", "cancelled", "returned")
RECEIPT_STATES = ("pending", "completed", "cancelled")


class Tool(Base):
    __tablename__ = "Tools"

    ToolID = Column(Integer, primary_key=True)
    ProductCode = Column(String(100), nullable=False, unique=True)
    ToolName = Column(String(255), nullable=False)
    Category = Column(String(100))
    Status = Column(String(20), nullable=False, default="new")
    Location = Column(String(20), nullable=False, default="warehouse")
    IsInUse = Column(Boolean, nullable=False, default=False)
    CurrentHolderID = Column(Integer)
    UsageCount = Column(Integer, nullable=False, default=0)
    LastUsedDate = Column(DateTime)
    Geometry = Column(JSON)
    Characteristics = Column(JSON)
    CuttingParameters = Column(JSON)
    CatalogInfo = Column(JSON)
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    History = relationship(
        "ToolHistory",
        back_populates="Tool",
        cascade="all, delete-orphan",
        order_by="ToolHistory.EntryID",
    )
    Requests = relationship("ToolRequest", foreign_keys="ToolRequest.ToolID", back_populates="Tool")
    BoundRequests = relationship("ToolRequest", foreign_keys="ToolRequest.BoundToolID", back_populates="BoundTool")
    ReceiptLines = relationship("ExportReceiptLine", back_populates="Tool")

    __mapper_args__ = {"version_id_col": Version}


class ToolHistory(Base):
    """Append-only: rows are inserted with their tool and never updated."""

    __tablename__ = "ToolHistory"

    EntryID = Column(Integer, primary_key=True)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="CASCADE"), nullable=False, index=True)
    Action = Column(String(20), nullable=False)
    ActorID = Column(Integer)
    FromLocation = Column(String(20))
    ToLocation = Column(String(20))
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, nullable=False)

    Tool = relationship("Tool", back_populates="History")


@event.listens_for(ToolHistory, "before_update")
def _reject_history_update(mapper, connection, target) -> None:
    raise RuntimeError(f"ToolHistory entry {target.EntryID} is append-only and cannot be modified.")


class ToolRequest(Base):
    __tablename__ = "ToolRequests"
    __table_args__ = (
        Index(
            "UX_ToolRequests_PendingTarget",
            "RequestedBy",
            "TargetKey",
            unique=True,
            sqlite_where=text("Status = 'pending'"),
            postgresql_where=text("\"Status\" = 'pending'"),
        ),
        Index("IX_ToolRequests_Status", "Status"),
    )

    RequestID = Column(Integer, primary_key=True)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="SET NULL"))
    ProductCode = Column(String(100), nullable=False)
    ToolName = Column(String(255))
    TargetKey = Column(String(120), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    RequestedBy = Column(Integer, nullable=False, index=True)
    Purpose = Column(String(1000), nullable=False)
    ExpectedDuration = Column(String(200), nullable=False)
    Notes = Column(String(1000))
    Status = Column(String(20), nullable=False, default="pending")
    ReviewedBy = Column(Integer)
    ReviewedAt = Column(DateTime)
    RejectionReason = Column(String(1000))
    ApprovedAt = Column(DateTime)
    BoundToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="SET NULL"))
    ReturnedAt = Column(DateTime)
    ReturnNotes = Column(String(1000))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Tool = relationship("Tool", foreign_keys=[ToolID], back_populates="Requests")
    BoundTool = relationship("Tool", foreign_keys=[BoundToolID], back_populates="BoundRequests")

    __mapper_args__ = {"version_id_col": Version}


class ExportReceipt(Base):
    __tablename__ = "ExportReceipts"

    ReceiptID = Column(Integer, primary_key=True)
    ReceiptNumber = Column(String(50), nullable=False, unique=True)
    ExportDate = Column(DateTime, nullable=False)
    ExportedBy = Column(Integer, nullable=False)
    Purpose = Column(String(1000))
    Department = Column(String(200))
    Status = Column(String(20), nullable=False, default="pending")
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship(
        "ExportReceiptLine",
        back_populates="Receipt",
        cascade="all, delete-orphan",
        order_by="ExportReceiptLine.LineID",
    )


class ExportReceiptLine(Base):
    __tablename__ = "ExportReceiptLines"

    LineID = Column(Integer, primary_key=True)
    ReceiptID = Column(Integer, ForeignKey("ExportReceipts.ReceiptID", ondelete="CASCADE"), nullable=False)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID", ondelete="SET NULL"))
    Quantity = Column(Integer, nullable=False, default=1)
    Notes = Column(String(500))

    Receipt = relationship("ExportReceipt", back_populates="Lines")
    Tool = relationship("Tool", back_populates="ReceiptLines")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
