from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Any, Literal
from datetime import date
from decimal import Decimal


class CamelModel(BaseModel):
    """Request bodies arrive in camelCase; snake_case is accepted too."""

    class Config:
        populate_by_name = True
        alias_generator = to_camel


# ============================================
# RESPONSE ENVELOPE
# ============================================
class ApiResponse(BaseModel):
    success: bool = True
    data: Any = None
    message: Optional[str] = None


# ============================================
# BILLING BATCH MODELS
# ============================================
class DraftLineInput(CamelModel):
    customer_ref: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal = Field(ge=0)
    rate: Decimal = Field(ge=0)
    tax_percent: Decimal = Field(default=Decimal("0"), ge=0)
    due_date: Optional[date] = None


class BatchStageRequest(CamelModel):
    type: Literal["manual", "weight", "bed"]
    company_id: str
    site_id: Optional[str] = None
    period_from: Optional[date] = None
    period_to: Optional[date] = None
    billing_month: Optional[str] = None
    items: List[DraftLineInput] = Field(default_factory=list)


class DraftInvoiceUpdate(CamelModel):
    quantity: Optional[Decimal] = Field(default=None, ge=0)
    rate: Optional[Decimal] = Field(default=None, ge=0)
    tax_percent: Optional[Decimal] = Field(default=None, ge=0)
    due_date: Optional[date] = None
    description: Optional[str] = None
    expected_version: Optional[int] = None


class SelectionRequest(CamelModel):
    is_selected: bool
    item_ids: Optional[List[str]] = None


class BulkUpdateRequest(CamelModel):
    item_ids: List[str]
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = None
    due_date: Optional[date] = None
    description: Optional[str] = None


class PostBatchRequest(CamelModel):
    invoice_date: date
    item_ids: Optional[List[str]] = None
    operation_id: Optional[str] = None


class PostItemsRequest(CamelModel):
    item_ids: List[str]
    invoice_date: date
    operation_id: Optional[str] = None


# ============================================
# INVOICE MODELS
# ============================================
class InvoiceCreate(CamelModel):
    company_id: str
    hcf_id: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    invoice_value: Decimal
    description: Optional[str] = None


class InvoiceCancel(CamelModel):
    reason: Optional[str] = None


# ============================================
# AGREEMENT CLAUSE MODELS
# ============================================
class ClauseCreate(CamelModel):
    agreement_id: str
    point_num: str
    point_title: str
    point_text: Optional[str] = ""
    status: Optional[Literal["Active", "Inactive"]] = "Active"


class ClauseUpdate(CamelModel):
    point_num: Optional[str] = None
    point_title: Optional[str] = None
    point_text: Optional[str] = None
    status: Optional[Literal["Active", "Inactive"]] = None
    expected_version: Optional[int] = None


class ClauseReorder(CamelModel):
    direction: Optional[Literal["up", "down"]] = None
    new_sequence_no: Optional[int] = None


# ============================================
# PAYMENT MODELS
# ============================================
class AllocationInput(CamelModel):
    invoice_id: str
    allocated_amount: Decimal = Decimal("0")


class PaymentDetails(CamelModel):
    payment_date: Optional[date] = None
    payment_amount: Decimal
    payment_mode: str
    reference_number: Optional[str] = None
    bank_name: Optional[str] = None
    cheque_number: Optional[str] = None
    cheque_date: Optional[date] = None
    notes: Optional[str] = None
    operation_id: Optional[str] = None


class PaymentCreate(PaymentDetails):
    company_id: str
    hcf_id: Optional[str] = None
    invoice_ids: Optional[List[str]] = None
    allocations: List[AllocationInput] = Field(default_factory=list)


class PaymentRecord(PaymentDetails):
    invoice_id: str
