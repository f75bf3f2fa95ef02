"""
BILLING BATCH & INVOICE API ROUTES

Batches:
- Stage, list, preview
- Edit draft invoices while STAGED (update, toggle, selection, remove, bulk update)
- Post a batch or a set of draft invoices

Invoices:
- Manual create, list, get, cancel

All engines raise BillingError; http_errors() maps it to the HTTP status.
"""

from fastapi import APIRouter, Depends, Query, status
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional
import logging

from auth import RequestContext, get_current_user
from database import get_client, get_database
from models import (
    ApiResponse, BatchStageRequest, DraftInvoiceUpdate, SelectionRequest,
    BulkUpdateRequest, PostBatchRequest, PostItemsRequest,
    InvoiceCreate, InvoiceCancel
)
from core.batch_lifecycle import BatchLifecycleManager
from core.billing_errors import http_errors
from core.documents import serialize_doc
from core.invoice_service import InvoiceService

logger = logging.getLogger(__name__)

billing_router = APIRouter(prefix="/api/v1", tags=["Billing"])


async def get_batch_manager(
    client: AsyncIOMotorClient = Depends(get_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> BatchLifecycleManager:
    return BatchLifecycleManager(client, db)


async def get_invoice_service(
    client: AsyncIOMotorClient = Depends(get_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> InvoiceService:
    return InvoiceService(client, db)


# ============================================
# BATCH ENDPOINTS
# ============================================

@billing_router.get("/billing/batches", response_model=ApiResponse)
async def list_batches(
    company_id: Optional[str] = Query(default=None, alias="companyId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Batches, newest first."""
    with http_errors("List batches"):
        batches = await manager.list_batches(ctx, company_id=company_id, status=status_filter)
    return ApiResponse(data=[serialize_doc(b) for b in batches])


@billing_router.post("/billing/batches/draft", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def stage_batch(
    request: BatchStageRequest,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Stage computed billing lines as a new STAGED batch."""
    with http_errors("Stage batch"):
        result = await manager.stage(ctx, {
            **request.model_dump(exclude={"items"}),
            "items": [line.model_dump() for line in request.items]
        })
    return ApiResponse(
        data={"batchId": result["batch_id"], "invoiceCount": result["invoice_count"]},
        message=f"Batch staged with {result['invoice_count']} draft invoice(s)"
    )


@billing_router.get("/billing/batches/{batch_id}", response_model=ApiResponse)
async def preview_batch(
    batch_id: str,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """
    Batch with its draft invoices. Valid in every state; poll this while
    a post is PROCESSING.
    """
    with http_errors("Preview batch"):
        preview = await manager.preview(ctx, batch_id)
    return ApiResponse(data={
        **serialize_doc(preview["batch"]),
        "items": [serialize_doc(i) for i in preview["items"]]
    })


@billing_router.get("/billing/batches/{batch_id}/draft-invoices", response_model=ApiResponse)
async def list_draft_invoices(
    batch_id: str,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("List draft invoices"):
        preview = await manager.preview(ctx, batch_id)
    return ApiResponse(data=[serialize_doc(i) for i in preview["items"]])


@billing_router.put("/billing/batches/draft-invoices/{item_id}", response_model=ApiResponse)
async def update_draft_invoice(
    item_id: str,
    update: DraftInvoiceUpdate,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Edit quantity/rate/tax/due date of a draft invoice. Batch must be STAGED."""
    changes = update.model_dump(exclude={"expected_version"}, exclude_none=True)
    with http_errors("Update draft invoice"):
        item = await manager.update_item(ctx, item_id, changes, update.expected_version)
    return ApiResponse(data=serialize_doc(item), message="Draft invoice updated")


@billing_router.post("/billing/batches/draft-invoices/post", response_model=ApiResponse)
async def post_draft_invoices(
    request: PostItemsRequest,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Post the given draft invoices (all from one batch)."""
    with http_errors("Post draft invoices"):
        result = await manager.post_items(ctx, request.item_ids, request.invoice_date, request.operation_id)
    return ApiResponse(data=serialize_doc(result), message=_post_message(result))


@billing_router.post("/billing/batches/draft-invoices/{item_id}/toggle", response_model=ApiResponse)
async def toggle_draft_invoice(
    item_id: str,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("Toggle draft invoice"):
        item = await manager.toggle_selection(ctx, item_id)
    return ApiResponse(data=serialize_doc(item))


@billing_router.delete("/billing/batches/draft-invoices/{item_id}", response_model=ApiResponse)
async def remove_draft_invoice(
    item_id: str,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Remove a draft invoice from a STAGED batch."""
    with http_errors("Remove draft invoice"):
        result = await manager.remove_item(ctx, item_id)
    return ApiResponse(data=serialize_doc(result), message="Draft invoice removed")


@billing_router.post("/billing/batches/{batch_id}/selection", response_model=ApiResponse)
async def set_batch_selection(
    batch_id: str,
    request: SelectionRequest,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("Set selection"):
        result = await manager.set_selection(ctx, batch_id, request.is_selected, request.item_ids)
    return ApiResponse(data=result)


@billing_router.post("/billing/batches/{batch_id}/bulk-update", response_model=ApiResponse)
async def bulk_update_draft_invoices(
    batch_id: str,
    request: BulkUpdateRequest,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """Apply the same change to several draft invoices; each succeeds or fails on its own."""
    changes = request.model_dump(exclude={"item_ids"}, exclude_none=True)
    with http_errors("Bulk update"):
        summary = await manager.bulk_update(ctx, batch_id, request.item_ids, changes)
    return ApiResponse(
        data={
            "applied": summary["applied"],
            "failed": summary["failed"],
            "errors": [serialize_doc(e) for e in summary["errors"]],
            "items": [serialize_doc(i) for i in summary["items"]]
        },
        message=f"{summary['applied']} updated, {summary['failed']} failed"
    )


@billing_router.post("/billing/batches/{batch_id}/post", response_model=ApiResponse)
async def post_batch(
    batch_id: str,
    request: PostBatchRequest,
    manager: BatchLifecycleManager = Depends(get_batch_manager),
    ctx: RequestContext = Depends(get_current_user)
):
    """
    Post selected error-free draft invoices of a STAGED or FAILED batch.

    Retrying a FAILED batch never re-posts an item that already has an invoice.
    """
    with http_errors("Post batch"):
        result = await manager.post(
            ctx, batch_id, request.invoice_date, request.item_ids, request.operation_id
        )
    return ApiResponse(data=serialize_doc(result), message=_post_message(result))


def _post_message(result: dict) -> str:
    return (
        f"Batch {result['batch_status']}: {result['success']} posted, "
        f"{result['failed']} failed, {result['skipped']} skipped"
    )


# ============================================
# INVOICE ENDPOINTS
# ============================================

@billing_router.get("/invoices", response_model=ApiResponse)
async def list_invoices(
    company_id: Optional[str] = Query(default=None, alias="companyId"),
    hcf_id: Optional[str] = Query(default=None, alias="hcfId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    financial_year: Optional[str] = Query(default=None, alias="financialYear"),
    batch_id: Optional[str] = Query(default=None, alias="batchId"),
    service: InvoiceService = Depends(get_invoice_service),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("List invoices"):
        invoices = await service.list_invoices(
            ctx, company_id=company_id, hcf_id=hcf_id, status=status_filter,
            financial_year=financial_year, batch_id=batch_id
        )
    return ApiResponse(data=[serialize_doc(i) for i in invoices])


@billing_router.get("/invoices/{invoice_id}", response_model=ApiResponse)
async def get_invoice(
    invoice_id: str,
    service: InvoiceService = Depends(get_invoice_service),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("Get invoice"):
        invoice = await service.get_invoice(ctx, invoice_id)
    return ApiResponse(data=serialize_doc(invoice))


@billing_router.post("/invoices", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    request: InvoiceCreate,
    service: InvoiceService = Depends(get_invoice_service),
    ctx: RequestContext = Depends(get_current_user)
):
    """Create a Generated invoice outside any batch."""
    with http_errors("Create invoice"):
        invoice = await service.create_invoice(ctx, request.model_dump())
    return ApiResponse(data=serialize_doc(invoice), message=f"Invoice {invoice['invoice_number']} created")


@billing_router.post("/invoices/{invoice_id}/cancel", response_model=ApiResponse)
async def cancel_invoice(
    invoice_id: str,
    request: InvoiceCancel = InvoiceCancel(),
    service: InvoiceService = Depends(get_invoice_service),
    ctx: RequestContext = Depends(get_current_user)
):
    """Cancel an invoice that has no payments."""
    with http_errors("Cancel invoice"):
        invoice = await service.cancel_invoice(ctx, invoice_id, request.reason)
    return ApiResponse(data=serialize_doc(invoice), message="Invoice cancelled")
