import logging
import os

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from dotenv import load_dotenv

load_dotenv()

from tool_custody.db.base import Base
from tool_custody.db.deps import get_custody_db
from tool_custody.db.session import engine_custody
from tool_custody.models import custody_models  # noqa: F401  registers tables on Base.metadata
from tool_custody.schemas.receipts import ExportReceiptCreate
from tool_custody.schemas.requests import RejectToolRequest, ReturnToolRequest, ToolRequestCreate
from tool_custody.schemas.tools import ClaimRequest, ReleaseRequest, ToolCreate, ToolUpdate, TransferRequest
from tool_custody.services.actors import Actor, build_actor
from tool_custody.services.availability_service import describe_availability, is_available
from tool_custody.services.errors import CustodyError
from tool_custody.services.export_receipt_service import (
    create_receipt,
    delete_receipt,
    get_receipt,
    list_receipts,
    serialize_receipt,
)
from tool_custody.services.request_workflow import (
    approve_request,
    cancel_request,
    get_request,
    list_requests,
    reject_request,
    return_tool,
    serialize_request,
    submit_request,
)
from tool_custody.services.statistics_service import (
    count_requests_by_status,
    get_tool_history,
    get_tool_statistics,
    list_tools_in_use,
)
from tool_custody.services.tool_registry import (
    claim_tool,
    create_tool,
    delete_tool,
    get_tool,
    list_tools,
    release_tool,
    serialize_tool,
    transfer_tool,
    update_tool,
)

API_LOGGER = logging.getLogger("tool_custody.api")

ERROR_STATUS_BY_KIND = {
    "NotFound": 404,
    "Conflict": 409,
    "InvalidState": 400,
    "ValidationError": 400,
    "Forbidden": 403,
}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


if _env_flag("TOOL_CUSTODY_AUTO_CREATE_SCHEMA", True):
    Base.metadata.create_all(engine_custody)

app = FastAPI(title="Tool Custody")

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", True)
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(CustodyError)
async def custody_error_handler(request: Request, exc: CustodyError):
    status_code = ERROR_STATUS_BY_KIND.get(exc.kind, 400)
    API_LOGGER.info("%s %s -> %s %s: %s", request.method, request.url.path, status_code, exc.kind, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_actor(
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> Actor:
    if not (x_actor_id or "").strip():
        raise HTTPException(status_code=401, detail="Missing actor identity.")
    return build_actor(x_actor_id, x_actor_role)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_custody_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/tools")
def get_tools(
    status: str | None = None,
    is_in_use: bool | None = Query(None, alias="isInUse"),
    location: str | None = None,
    category: str | None = None,
    product_code: str | None = Query(None, alias="productCode"),
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    return list_tools(
        db,
        status=status,
        is_in_use=is_in_use,
        location=location,
        category=category,
        product_code=product_code,
        search=search,
        page=page,
        limit=limit,
    )


@app.post("/api/tools", status_code=201)
def post_tool(payload: ToolCreate, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_tool(create_tool(db, payload, actor), include_history=True)


@app.get("/api/tools/statistics")
def get_statistics(db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    payload = get_tool_statistics(db)
    payload["requestsByStatus"] = count_requests_by_status(db)
    return payload


@app.get("/api/tools/in-use")
def get_tools_in_use(db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return list_tools_in_use(db)


@app.get("/api/tools/availability")
def get_code_availability(
    product_code: str = Query(..., alias="productCode", min_length=1),
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    return describe_availability(db, product_code)


@app.get("/api/tools/{tool_id}")
def get_tool_item(tool_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_tool(get_tool(db, tool_id), include_history=True)


@app.put("/api/tools/{tool_id}")
def put_tool(tool_id: int, payload: ToolUpdate, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_tool(update_tool(db, tool_id, payload, actor))


@app.delete("/api/tools/{tool_id}")
def remove_tool(
    tool_id: int,
    force: bool = False,
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    delete_tool(db, tool_id, actor, force=force)
    return {"message": "Deleted"}


@app.get("/api/tools/{tool_id}/availability")
def get_tool_availability(tool_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    tool = get_tool(db, tool_id)
    return {"toolID": tool.ToolID, "productCode": tool.ProductCode, "available": is_available(db, tool_id)}


@app.get("/api/tools/{tool_id}/history")
def get_history(tool_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return get_tool_history(db, tool_id)


@app.post("/api/tools/{tool_id}/transfer")
def post_transfer(tool_id: int, payload: TransferRequest, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_tool(transfer_tool(db, tool_id, payload.toLocation, actor, payload.notes))


@app.post("/api/tools/{tool_id}/claim")
def post_claim(tool_id: int, payload: ClaimRequest, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_tool(claim_tool(db, tool_id, payload.holderID, payload.notes, actor))


@app.post("/api/tools/{tool_id}/release")
def post_release(
    tool_id: int,
    payload: ReleaseRequest | None = None,
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    return serialize_tool(release_tool(db, tool_id, actor, payload.notes if payload else None))


@app.get("/api/tool-requests")
def get_tool_requests(
    status: str | None = None,
    tool_id: int | None = Query(None, alias="toolID"),
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    requests = list_requests(db, actor, status=status, tool_id=tool_id, user_id=user_id)
    return {"count": len(requests), "data": [serialize_request(request) for request in requests]}


@app.post("/api/tool-requests", status_code=201)
def post_tool_request(payload: ToolRequestCreate, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_request(submit_request(db, actor, payload))


@app.get("/api/tool-requests/{request_id}")
def get_tool_request(request_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_request(get_request(db, request_id, actor))


@app.post("/api/tool-requests/{request_id}/approve")
def post_approve(request_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_request(approve_request(db, request_id, actor))


@app.post("/api/tool-requests/{request_id}/reject")
def post_reject(request_id: int, payload: RejectToolRequest, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_request(reject_request(db, request_id, actor, payload.rejectionReason))


@app.post("/api/tool-requests/{request_id}/cancel")
def post_cancel(request_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_request(cancel_request(db, request_id, actor))


@app.post("/api/tool-requests/{request_id}/return")
def post_return(
    request_id: int,
    payload: ReturnToolRequest | None = None,
    db: Session = Depends(get_custody_db),
    actor: Actor = Depends(get_actor),
):
    return serialize_request(return_tool(db, request_id, actor, payload.returnNotes if payload else None))


@app.get("/api/export-receipts")
def get_export_receipts(db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    receipts = list_receipts(db)
    return {"count": len(receipts), "data": [serialize_receipt(receipt) for receipt in receipts]}


@app.post("/api/export-receipts", status_code=201)
def post_export_receipt(payload: ExportReceiptCreate, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    receipt = create_receipt(db, actor, payload.tools, payload.purpose, payload.department, payload.notes)
    return serialize_receipt(receipt)


@app.get("/api/export-receipts/{receipt_id}")
def get_export_receipt(receipt_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    return serialize_receipt(get_receipt(db, receipt_id))


@app.delete("/api/export-receipts/{receipt_id}")
def remove_export_receipt(receipt_id: int, db: Session = Depends(get_custody_db), actor: Actor = Depends(get_actor)):
    delete_receipt(db, receipt_id, actor)
    return {"message": "Deleted"}
