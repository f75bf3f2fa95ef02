"""
PAYMENT API ROUTES

- POST /payments          allocate one payment across invoices (FIFO or manual)
- POST /payments/record   pay a single invoice
- GET  /payments/invoice/{id}  balance summary + payment history

Supply operationId to make a retried request return the original result.
"""

from fastapi import APIRouter, Depends, status
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
import logging

from auth import RequestContext, get_current_user
from database import get_client, get_database
from models import ApiResponse, PaymentCreate, PaymentRecord
from core.billing_errors import http_errors
from core.payment_service import PaymentService

logger = logging.getLogger(__name__)

payment_router = APIRouter(prefix="/api/v1", tags=["Payments"])


async def get_payment_service(
    client: AsyncIOMotorClient = Depends(get_client),
    db: AsyncIOMotorDatabase = Depends(get_database)
) -> PaymentService:
    return PaymentService(client, db)


@payment_router.post("/payments", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: PaymentCreate,
    service: PaymentService = Depends(get_payment_service),
    ctx: RequestContext = Depends(get_current_user)
):
    """
    Record a payment. Empty or all-zero allocations use FIFO (oldest invoice
    first); otherwise each allocation must fit the invoice balance.
    """
    data = request.model_dump(exclude={"operation_id"})
    with http_errors("Create payment"):
        result = await service.process_payment(ctx, data, request.operation_id)
    return ApiResponse(data=result, message="Payment recorded")


@payment_router.post("/payments/record", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: PaymentRecord,
    service: PaymentService = Depends(get_payment_service),
    ctx: RequestContext = Depends(get_current_user)
):
    data = request.model_dump(exclude={"operation_id", "invoice_id"})
    with http_errors("Record payment"):
        result = await service.record_payment(ctx, request.invoice_id, data, request.operation_id)
    return ApiResponse(data=result, message="Payment recorded")


@payment_router.get("/payments/invoice/{invoice_id}", response_model=ApiResponse)
async def payments_by_invoice(
    invoice_id: str,
    service: PaymentService = Depends(get_payment_service),
    ctx: RequestContext = Depends(get_current_user)
):
    with http_errors("Payments by invoice"):
        result = await service.payments_by_invoice(ctx, invoice_id)
    return ApiResponse(data=result)
