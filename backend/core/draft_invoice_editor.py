"""
DRAFT INVOICE EDITOR - DERIVED FIELDS

Pure functions over staged billing lines and invoices:
1. Line derivation: computed_amount + error_flag from quantity/rate/tax/customer
2. Editable-field validation for staged line updates
3. Invoice status derivation from stored amounts
4. DraftLine | PostedInvoice tagged variant with an exhaustive mapping
5. Bulk-edit summary aggregation

Nothing here touches storage. Derived values are recomputed on every write by
the callers (batch_lifecycle, invoice_service, payment_service).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field
import logging

from core.billing_errors import BillingValidationError
from core.financial_precision import (
    FinancialPrecisionError,
    NegativeValueError,
    ZERO,
    calculate_line_amount,
    round_financial,
    safe_subtract,
    to_decimal,
    validate_non_negative,
)

logger = logging.getLogger(__name__)


class InvoiceStatus(str, Enum):
    DRAFT = "Draft"
    GENERATED = "Generated"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"
    CANCELLED = "Cancelled"


PAYABLE_STATUSES = (InvoiceStatus.GENERATED.value, InvoiceStatus.PARTIALLY_PAID.value)

EDITABLE_LINE_FIELDS = ("quantity", "rate", "tax_percent", "due_date", "description")
LINE_NUMBER_FIELDS = ("quantity", "rate", "tax_percent")


# =============================================================================
# LINE DERIVATION
# =============================================================================

class LineDerivation(BaseModel):
    computed_amount: Decimal
    error_flag: bool
    error_message: Optional[str] = None


def derive_line_fields(
    quantity,
    rate,
    tax_percent,
    customer_ref: Optional[str]
) -> LineDerivation:
    """
    Recompute the derived fields of a staged line.

    error_flag is raised when the amount is not positive or the line has no
    customer. Both reasons are reported in error_message.
    """
    amount = calculate_line_amount(quantity, rate, tax_percent)

    reasons = []
    if not customer_ref or not str(customer_ref).strip():
        reasons.append("Customer reference is missing")
    if amount <= ZERO:
        reasons.append(f"Computed amount must be positive (got {amount})")

    return LineDerivation(
        computed_amount=amount,
        error_flag=bool(reasons),
        error_message="; ".join(reasons) if reasons else None
    )


def parse_line_number(value, field_name: str) -> Decimal:
    """Quantity, rate or tax_percent as an exact Decimal. Negatives are rejected."""
    try:
        number = to_decimal(value)
        validate_non_negative(number, field_name)
    except FinancialPrecisionError as e:
        raise BillingValidationError(str(e), {"field": field_name})
    except NegativeValueError as e:
        raise BillingValidationError(str(e), {"field": field_name, "value": str(value)})
    return number


def validate_line_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check a partial update to a staged line and return the fields to apply.

    Rejects unknown fields and non-numeric / negative numbers. A negative or
    zero amount that results from valid inputs is not rejected here; it is
    flagged by derive_line_fields.
    """
    unknown = [k for k in changes if k not in EDITABLE_LINE_FIELDS]
    if unknown:
        raise BillingValidationError(
            f"Fields cannot be edited on a draft invoice: {', '.join(sorted(unknown))}",
            {"fields": sorted(unknown)}
        )

    cleaned: Dict[str, Any] = {}
    for field_name, value in changes.items():
        if value is None:
            continue
        if field_name in LINE_NUMBER_FIELDS:
            cleaned[field_name] = parse_line_number(value, field_name)
        else:
            cleaned[field_name] = value

    if not cleaned:
        raise BillingValidationError("No changes supplied")
    return cleaned


# =============================================================================
# INVOICE STATUS
# =============================================================================

def derive_invoice_status(
    invoice_value,
    total_paid,
    cancelled: bool = False,
    posted: bool = True
) -> InvoiceStatus:
    """
    Status is a function of stored amounts, evaluated in priority order:
    Cancelled, Paid, Partially Paid, Generated, Draft.
    """
    value = to_decimal(invoice_value)
    paid = to_decimal(total_paid)
    balance = safe_subtract(value, paid)

    if cancelled:
        return InvoiceStatus.CANCELLED
    if balance == 0 and paid > 0:
        return InvoiceStatus.PAID
    if 0 < paid < value:
        return InvoiceStatus.PARTIALLY_PAID
    if paid == 0 and posted:
        return InvoiceStatus.GENERATED
    return InvoiceStatus.DRAFT


def invoice_amount_fields(invoice_value, total_paid, cancelled: bool = False) -> Dict[str, Any]:
    """balance_amount + status for an invoice write. Rejects over-payment."""
    value = round_financial(invoice_value)
    paid = round_financial(total_paid)
    balance = value - paid
    if balance < 0:
        raise BillingValidationError(
            "Total paid exceeds invoice value",
            {"invoice_value": str(value), "total_paid": str(paid)}
        )
    return {
        "total_paid_amount": paid,
        "balance_amount": balance,
        "status": derive_invoice_status(value, paid, cancelled).value
    }


# =============================================================================
# TAGGED VARIANT
# =============================================================================

class DraftLine(BaseModel):
    kind: Literal["draft"] = "draft"
    item_id: str
    batch_id: str
    company_id: str
    customer_ref: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal
    rate: Decimal
    tax_percent: Decimal = Decimal("0")
    computed_amount: Decimal
    due_date: Optional[date] = None
    is_selected: bool = True
    error_flag: bool = False
    error_message: Optional[str] = None


class PostedInvoice(BaseModel):
    kind: Literal["posted"] = "posted"
    company_id: str
    hcf_id: str
    invoice_number: str
    invoice_date: date
    due_date: Optional[date] = None
    invoice_value: Decimal
    total_paid_amount: Decimal = ZERO
    balance_amount: Decimal
    status: InvoiceStatus = InvoiceStatus.GENERATED
    financial_year: str
    sequence_number: int
    batch_id: Optional[str] = None
    source_item_id: Optional[str] = None
    description: Optional[str] = None


BillingLine = Union[DraftLine, PostedInvoice]


class BillingLineEnvelope(BaseModel):
    line: BillingLine = Field(discriminator="kind")


def draft_line_from_doc(doc: Dict[str, Any], company_id: str) -> DraftLine:
    return DraftLine(
        item_id=str(doc["_id"]),
        batch_id=doc["batch_id"],
        company_id=company_id,
        customer_ref=doc.get("customer_ref"),
        description=doc.get("description"),
        quantity=to_decimal(doc.get("quantity")),
        rate=to_decimal(doc.get("rate")),
        tax_percent=to_decimal(doc.get("tax_percent")),
        computed_amount=to_decimal(doc.get("computed_amount")),
        due_date=_as_date(doc.get("due_date")),
        is_selected=doc.get("is_selected", False),
        error_flag=doc.get("error_flag", False),
        error_message=doc.get("error_message")
    )


def to_posted_invoice(
    line: BillingLine,
    invoice_number: str,
    invoice_date: date,
    sequence_number: int,
    financial_year: str
) -> PostedInvoice:
    """
    Materialize a draft line into an invoice.

    Raises BillingValidationError for an errored draft and for a line that is
    already posted.
    """
    if isinstance(line, PostedInvoice):
        raise BillingValidationError(
            f"Line is already posted as {line.invoice_number}",
            {"invoice_number": line.invoice_number}
        )
    if isinstance(line, DraftLine):
        # Re-derive rather than trust the stored flags
        derived = derive_line_fields(line.quantity, line.rate, line.tax_percent, line.customer_ref)
        if derived.error_flag:
            raise BillingValidationError(derived.error_message, {"item_id": line.item_id})
        return PostedInvoice(
            company_id=line.company_id,
            hcf_id=line.customer_ref,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            due_date=line.due_date,
            invoice_value=derived.computed_amount,
            balance_amount=derived.computed_amount,
            financial_year=financial_year,
            sequence_number=sequence_number,
            batch_id=line.batch_id,
            source_item_id=line.item_id,
            description=line.description
        )
    raise TypeError(f"Unknown billing line variant: {type(line).__name__}")


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# =============================================================================
# BULK EDIT SUMMARY
# =============================================================================

class BulkUpdateSummary:
    """Collects the outcome of N independent line updates."""

    def __init__(self):
        self.applied = 0
        self.failed = 0
        self.errors: List[Dict[str, Any]] = []
        self.items: List[Dict[str, Any]] = []

    def record_success(self, item: Dict[str, Any]):
        self.applied += 1
        self.items.append(item)

    def record_failure(self, item_id: str, error: Exception):
        self.failed += 1
        entry = {"item_id": item_id, "message": str(error)}
        code = getattr(error, "code", None)
        if code:
            entry["error"] = code
        self.errors.append(entry)
        logger.info(f"[BATCH] Bulk update skipped item {item_id}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "failed": self.failed,
            "errors": self.errors,
            "items": self.items
        }
