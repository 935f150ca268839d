from typing import Optional

from pydantic import BaseModel, ConfigDict


class ToolRequestCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: Optional[int] = None
    productCode: Optional[str] = None
    quantity: int = 1
    purpose: Optional[str] = None
    expectedDuration: Optional[str] = None
    notes: Optional[str] = None


class RejectToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rejectionReason: Optional[str] = None


class ReturnToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnNotes: Optional[str] = None
