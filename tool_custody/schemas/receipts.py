from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ExportReceiptLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toolID: int
    quantity: int = 1
    notes: Optional[str] = None


class ExportReceiptCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tools: List[ExportReceiptLineDto] = []
    purpose: Optional[str] = None
    department: Optional[str] = None
    notes: Optional[str] = None
