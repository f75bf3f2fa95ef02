"""
Payment allocation engine (pure): FIFO ordering, manual validation and the
balance invariant on every planned invoice update.
"""
from datetime import date
from decimal import Decimal

import pytest

from core.allocation_engine import (
    AllocationMode, AllocationRequest, is_fifo_request, plan_allocation,
    plan_fifo_allocation
)
from core.billing_errors import BillingValidationError, OverAllocationError
from core.draft_invoice_editor import InvoiceStatus

COMPANY = "company-1"


def _invoice(inv_id, number, invoice_date, value, paid=0, status="Generated", company_id=COMPANY):
    value, paid = Decimal(str(value)), Decimal(str(paid))
    return {
        "_id": inv_id,
        "company_id": company_id,
        "invoice_number": number,
        "invoice_date": invoice_date,
        "invoice_value": value,
        "total_paid_amount": paid,
        "balance_amount": value - paid,
        "status": status,
        "version": 3,
    }


@pytest.fixture
def two_invoices():
    return [
        _invoice("i2", "INV-2", date(2024, 2, 1), 500),
        _invoice("i1", "INV-1", date(2024, 1, 1), 400),
    ]


class TestModeSelection:

    def test_empty_list_is_fifo(self):
        assert is_fifo_request([])
        assert is_fifo_request(None)

    def test_all_zero_is_fifo(self):
        assert is_fifo_request([AllocationRequest("i1", Decimal("0"))])

    def test_any_amount_is_manual(self):
        assert not is_fifo_request([AllocationRequest("i1", Decimal("0")), AllocationRequest("i2", Decimal("5"))])


class TestFifo:

    def test_oldest_invoice_first(self, two_invoices):
        plan = plan_allocation(700, COMPANY, two_invoices)
        assert plan.mode == AllocationMode.FIFO

        first, second = plan.updates
        assert first.invoice_number == "INV-1"
        assert first.allocated_amount == Decimal("400.00")
        assert first.new_balance == Decimal("0.00")
        assert first.new_status == InvoiceStatus.PAID

        assert second.invoice_number == "INV-2"
        assert second.allocated_amount == Decimal("300.00")
        assert second.new_balance == Decimal("200.00")
        assert second.new_status == InvoiceStatus.PARTIALLY_PAID

        assert plan.unallocated == Decimal("0.00")

    def test_ties_broken_by_invoice_number(self):
        invoices = [
            _invoice("b", "INV-B", date(2024, 1, 1), 100),
            _invoice("a", "INV-A", date(2024, 1, 1), 100),
        ]
        plan = plan_fifo_allocation(50, invoices)
        assert [u.invoice_number for u in plan.updates] == ["INV-A"]

    def test_stops_when_payment_exhausted(self, two_invoices):
        plan = plan_allocation(150, COMPANY, two_invoices)
        assert len(plan.updates) == 1
        assert plan.updates[0].new_balance == Decimal("250.00")

    def test_remainder_is_over_allocation(self, two_invoices):
        with pytest.raises(OverAllocationError) as exc:
            plan_allocation(901, COMPANY, two_invoices)
        assert exc.value.details["unallocated"] == "1.00"

    def test_partially_paid_invoice_uses_balance(self):
        invoices = [_invoice("i1", "INV-1", date(2024, 1, 1), 400, paid=100, status="Partially Paid")]
        plan = plan_allocation(300, COMPANY, invoices)
        update = plan.updates[0]
        assert update.new_total_paid == Decimal("400.00")
        assert update.new_status == InvoiceStatus.PAID
        assert update.version == 3


class TestManual:

    def test_exceeding_balance_rejected(self, two_invoices):
        with pytest.raises(BillingValidationError):
            plan_allocation(500, COMPANY, two_invoices, [AllocationRequest("i1", Decimal("500"))])

    def test_sum_may_not_exceed_payment(self, two_invoices):
        with pytest.raises(BillingValidationError):
            plan_allocation(300, COMPANY, two_invoices, [
                AllocationRequest("i1", Decimal("200")),
                AllocationRequest("i2", Decimal("200")),
            ])

    def test_duplicate_invoice_rejected(self, two_invoices):
        with pytest.raises(BillingValidationError):
            plan_allocation(300, COMPANY, two_invoices, [
                AllocationRequest("i1", Decimal("100")),
                AllocationRequest("i1", Decimal("100")),
            ])

    def test_zero_pair_in_manual_list_rejected(self, two_invoices):
        with pytest.raises(BillingValidationError):
            plan_allocation(300, COMPANY, two_invoices, [
                AllocationRequest("i1", Decimal("100")),
                AllocationRequest("i2", Decimal("0")),
            ])

    def test_partial_allocation_allowed(self, two_invoices):
        plan = plan_allocation(300, COMPANY, two_invoices, [AllocationRequest("i2", Decimal("120.55"))])
        assert plan.mode == AllocationMode.MANUAL
        assert plan.total_allocated == Decimal("120.55")
        assert plan.updates[0].new_balance == Decimal("379.45")


class TestCandidates:

    def test_other_company_rejected(self, two_invoices):
        two_invoices.append(_invoice("x", "INV-X", date(2024, 1, 1), 10, company_id="other"))
        with pytest.raises(BillingValidationError):
            plan_allocation(100, COMPANY, two_invoices)

    def test_cancelled_or_paid_rejected(self):
        with pytest.raises(BillingValidationError):
            plan_allocation(10, COMPANY, [_invoice("p", "INV-P", date(2024, 1, 1), 10, paid=10, status="Paid")])

    def test_empty_candidates_rejected(self):
        with pytest.raises(BillingValidationError):
            plan_allocation(10, COMPANY, [])

    def test_non_positive_payment_rejected(self, two_invoices):
        with pytest.raises(BillingValidationError):
            plan_allocation(0, COMPANY, two_invoices)
