"""
PAYMENT ALLOCATION ENGINE

Splits one payment across outstanding invoices.

Modes:
1. FIFO   - allocation list empty or all zero. Oldest invoice first
            (invoice_date asc, then invoice_number asc). A remainder after
            every candidate is settled is an OverAllocationError.
2. MANUAL - explicit (invoice_id, allocated_amount) pairs. Every pair must be
            > 0 and <= the invoice balance, invoices may not repeat and the
            sum may not exceed the payment. Any bad pair rejects the payment.

Output is a list of InvoiceUpdate rows (new total paid, new balance, new
status) that the caller commits in one transaction together with the payment.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import logging

from core.billing_errors import BillingValidationError, OverAllocationError
from core.draft_invoice_editor import PAYABLE_STATUSES, InvoiceStatus, derive_invoice_status
from core.financial_precision import ZERO, round_financial, to_decimal

logger = logging.getLogger(__name__)


class AllocationMode(str, Enum):
    FIFO = "FIFO"
    MANUAL = "MANUAL"


@dataclass
class AllocationRequest:
    invoice_id: str
    allocated_amount: Decimal


@dataclass
class InvoiceUpdate:
    invoice_id: str
    invoice_number: str
    allocated_amount: Decimal
    old_total_paid: Decimal
    new_total_paid: Decimal
    new_balance: Decimal
    new_status: InvoiceStatus
    version: int = 0

    def to_allocation(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "allocated_amount": self.allocated_amount
        }


@dataclass
class AllocationPlan:
    mode: AllocationMode
    payment_amount: Decimal
    updates: List[InvoiceUpdate] = field(default_factory=list)

    @property
    def total_allocated(self) -> Decimal:
        return sum((u.allocated_amount for u in self.updates), ZERO)

    @property
    def unallocated(self) -> Decimal:
        return self.payment_amount - self.total_allocated


def _invoice_id(invoice: Dict[str, Any]) -> str:
    return str(invoice.get("_id", invoice.get("invoice_id")))


def _sort_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def is_fifo_request(allocations: Optional[Iterable[AllocationRequest]]) -> bool:
    """Empty list or all-zero amounts means FIFO."""
    allocations = list(allocations or [])
    return all(to_decimal(a.allocated_amount) == 0 for a in allocations)


def validate_candidates(invoices: List[Dict[str, Any]], company_id: str) -> None:
    """Every candidate must be payable, open and belong to the paying company."""
    if not invoices:
        raise BillingValidationError("At least one invoice is required")

    for invoice in invoices:
        inv_id = _invoice_id(invoice)
        if invoice.get("company_id") != company_id:
            raise BillingValidationError(
                f"Invoice {invoice.get('invoice_number', inv_id)} belongs to another company",
                {"invoice_id": inv_id}
            )
        if invoice.get("cancelled") or invoice.get("status") not in PAYABLE_STATUSES:
            raise BillingValidationError(
                f"Invoice {invoice.get('invoice_number', inv_id)} is not payable "
                f"(status {invoice.get('status')})",
                {"invoice_id": inv_id, "status": invoice.get("status")}
            )
        if to_decimal(invoice.get("balance_amount")) <= 0:
            raise BillingValidationError(
                f"Invoice {invoice.get('invoice_number', inv_id)} has no outstanding balance",
                {"invoice_id": inv_id}
            )


def apply_allocation(invoice: Dict[str, Any], amount: Decimal) -> InvoiceUpdate:
    """Balance/status of an invoice after receiving amount."""
    value = round_financial(invoice.get("invoice_value"))
    old_paid = round_financial(invoice.get("total_paid_amount"))
    new_paid = round_financial(old_paid + amount)
    new_balance = value - new_paid

    if new_balance < 0:
        raise BillingValidationError(
            f"Allocation exceeds balance for invoice {invoice.get('invoice_number')}",
            {"invoice_id": _invoice_id(invoice), "allocated_amount": str(amount)}
        )

    return InvoiceUpdate(
        invoice_id=_invoice_id(invoice),
        invoice_number=invoice.get("invoice_number", ""),
        allocated_amount=round_financial(amount),
        old_total_paid=old_paid,
        new_total_paid=new_paid,
        new_balance=new_balance,
        new_status=derive_invoice_status(value, new_paid, invoice.get("cancelled", False)),
        version=invoice.get("version", 0)
    )


def plan_fifo_allocation(payment_amount, invoices: List[Dict[str, Any]]) -> AllocationPlan:
    remaining = round_financial(payment_amount)
    plan = AllocationPlan(mode=AllocationMode.FIFO, payment_amount=remaining)

    ordered = sorted(
        invoices,
        key=lambda inv: (_sort_date(inv["invoice_date"]), inv.get("invoice_number", ""))
    )

    for invoice in ordered:
        if remaining <= 0:
            break
        balance = round_financial(invoice.get("balance_amount"))
        amount = min(remaining, balance)
        if amount <= 0:
            continue
        plan.updates.append(apply_allocation(invoice, amount))
        remaining -= amount

    if remaining > 0:
        outstanding = sum((round_financial(i.get("balance_amount")) for i in invoices), ZERO)
        raise OverAllocationError(
            f"Payment of {plan.payment_amount} exceeds total outstanding balance of {outstanding}",
            {
                "payment_amount": str(plan.payment_amount),
                "outstanding": str(outstanding),
                "unallocated": str(remaining)
            }
        )

    return plan


def plan_manual_allocation(
    payment_amount,
    invoices: List[Dict[str, Any]],
    allocations: List[AllocationRequest]
) -> AllocationPlan:
    amount = round_financial(payment_amount)
    plan = AllocationPlan(mode=AllocationMode.MANUAL, payment_amount=amount)
    by_id = {_invoice_id(inv): inv for inv in invoices}

    seen = set()
    for request in allocations:
        inv_id = str(request.invoice_id)
        allocated = round_financial(request.allocated_amount)

        if inv_id in seen:
            raise BillingValidationError(
                f"Invoice {inv_id} appears more than once in the allocation",
                {"invoice_id": inv_id}
            )
        seen.add(inv_id)

        invoice = by_id.get(inv_id)
        if invoice is None:
            raise BillingValidationError(
                f"Invoice {inv_id} is not a candidate for this payment",
                {"invoice_id": inv_id}
            )
        if allocated <= 0:
            raise BillingValidationError(
                "Allocated amount must be greater than zero",
                {"invoice_id": inv_id, "allocated_amount": str(allocated)}
            )
        balance = round_financial(invoice.get("balance_amount"))
        if allocated > balance:
            raise BillingValidationError(
                f"Allocated amount {allocated} exceeds balance {balance} "
                f"for invoice {invoice.get('invoice_number', inv_id)}",
                {"invoice_id": inv_id, "allocated_amount": str(allocated), "balance": str(balance)}
            )

        plan.updates.append(apply_allocation(invoice, allocated))

    if plan.total_allocated > amount:
        raise BillingValidationError(
            f"Total allocated {plan.total_allocated} exceeds payment amount {amount}",
            {"total_allocated": str(plan.total_allocated), "payment_amount": str(amount)}
        )

    return plan


def plan_allocation(
    payment_amount,
    company_id: str,
    invoices: List[Dict[str, Any]],
    allocations: Optional[List[AllocationRequest]] = None
) -> AllocationPlan:
    """Validate candidates, pick the mode and compute every invoice update."""
    if round_financial(payment_amount) <= 0:
        raise BillingValidationError(
            "Payment amount must be greater than zero",
            {"payment_amount": str(payment_amount)}
        )
    validate_candidates(invoices, company_id)

    if is_fifo_request(allocations):
        plan = plan_fifo_allocation(payment_amount, invoices)
    else:
        plan = plan_manual_allocation(payment_amount, invoices, allocations)

    logger.info(
        f"[ALLOCATION] {plan.mode.value} plan: {len(plan.updates)} invoice(s), "
        f"allocated {plan.total_allocated} of {plan.payment_amount}"
    )
    return plan
