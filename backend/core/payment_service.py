"""
PAYMENT SERVICE

Implements:
1. Payment processing with FIFO or manual allocation across invoices
2. Single-invoice payment recording
3. Payment history per invoice

TRANSACTION: every invoice balance update, the payment record, its audit
entry and the idempotency marker commit together or not at all. Invoice rows
are written with a version compare-and-swap so a concurrent payment against
the same invoice loses with ConcurrencyConflictError instead of overpaying.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime, date
from typing import Optional, Dict, Any, List
from pymongo import ASCENDING, DESCENDING
import logging

from core.allocation_engine import AllocationRequest, plan_allocation
from core.billing_errors import BillingValidationError, EntityNotFoundError
from core.documents import to_bson, parse_object_id, serialize_doc
from core.draft_invoice_editor import PAYABLE_STATUSES
from core.financial_precision import to_float, round_financial
from core.idempotency import ensure_idempotent, record_operation
from core.scope_lock import cas_update, storage_conflicts
from audit_service import AuditService

logger = logging.getLogger(__name__)

PAYMENT_MODES = ("Cash", "Cheque", "Bank Transfer", "UPI", "NEFT", "RTGS", "Other")


class PaymentService:

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db
        self.audit = AuditService(db)

    async def create_indexes(self):
        await self.db.payments.create_index(
            [("allocations.invoice_id", ASCENDING)],
            name="payment_allocation_invoice"
        )
        await self.db.payments.create_index(
            [("company_id", ASCENDING), ("payment_date", DESCENDING)],
            name="payment_company_date"
        )

    @staticmethod
    def _validate_request(data: Dict[str, Any]) -> None:
        mode = data.get("payment_mode")
        if mode not in PAYMENT_MODES:
            raise BillingValidationError(
                f"Payment mode must be one of {', '.join(PAYMENT_MODES)}",
                {"payment_mode": mode}
            )
        if mode == "Cheque" and not data.get("cheque_number"):
            raise BillingValidationError("Cheque number is required for cheque payments")

    async def _load_candidates(self, data: Dict[str, Any], allocations: List[AllocationRequest], session) -> List[Dict[str, Any]]:
        """Explicit invoice ids win; otherwise every open invoice of the company (or HCF)."""
        invoice_ids = list(data.get("invoice_ids") or [])
        invoice_ids += [a.invoice_id for a in allocations if a.invoice_id not in invoice_ids]

        if invoice_ids:
            oids = [parse_object_id(i, "Invoice") for i in invoice_ids]
            invoices = await self.db.invoices.find({"_id": {"$in": oids}}, session=session).to_list(length=None)
            found = {str(i["_id"]) for i in invoices}
            missing = [i for i in invoice_ids if i not in found]
            if missing:
                raise EntityNotFoundError("Invoice", missing[0])
            return invoices

        query = {
            "company_id": data["company_id"],
            "status": {"$in": list(PAYABLE_STATUSES)},
            "cancelled": {"$ne": True}
        }
        if data.get("hcf_id"):
            query["hcf_id"] = data["hcf_id"]
        return await self.db.invoices.find(query, session=session).to_list(length=None)

    async def process_payment(
        self,
        ctx,
        data: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a payment and allocate it.

        data: company_id, payment_amount, payment_mode, payment_date?,
              invoice_ids?, hcf_id?, allocations?[{invoice_id, allocated_amount}],
              reference_number?, bank_name?, cheque_number?, cheque_date?, notes?

        Empty or all-zero allocations select FIFO over the candidate invoices.
        """
        company_id = data.get("company_id")
        ctx.require_company(company_id, write=True)
        self._validate_request(data)

        allocations = [
            AllocationRequest(invoice_id=str(a["invoice_id"]), allocated_amount=a.get("allocated_amount") or 0)
            for a in (data.get("allocations") or [])
        ]
        payment_date = data.get("payment_date") or date.today()

        async with storage_conflicts(f"payment for company {company_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    idem = await ensure_idempotent(
                        self.db, operation_id, "PAYMENT", company_id, session=session
                    )
                    if idem.is_duplicate and idem.previous_response is not None:
                        return idem.previous_response

                    invoices = await self._load_candidates(data, allocations, session)
                    plan = plan_allocation(data.get("payment_amount"), company_id, invoices, allocations)

                    now = datetime.utcnow()
                    for update in plan.updates:
                        await cas_update(
                            self.db.invoices,
                            {"_id": parse_object_id(update.invoice_id, "Invoice")},
                            update.version,
                            {"$set": to_bson({
                                "total_paid_amount": update.new_total_paid,
                                "balance_amount": update.new_balance,
                                "status": update.new_status,
                                "last_payment_date": payment_date,
                                "updated_at": now
                            })},
                            session=session
                        )

                    payment_doc = to_bson({
                        "company_id": company_id,
                        "hcf_id": data.get("hcf_id"),
                        "payment_date": payment_date,
                        "payment_amount": plan.payment_amount,
                        "payment_mode": data["payment_mode"],
                        "reference_number": data.get("reference_number"),
                        "bank_name": data.get("bank_name"),
                        "cheque_number": data.get("cheque_number"),
                        "cheque_date": data.get("cheque_date"),
                        "notes": data.get("notes"),
                        "status": "Completed",
                        "allocation_mode": plan.mode,
                        "allocations": [u.to_allocation() for u in plan.updates],
                        "total_allocated": plan.total_allocated,
                        "operation_id": idem.operation_id,
                        "created_by": ctx.user_id,
                        "created_at": now
                    })
                    result = await self.db.payments.insert_one(payment_doc, session=session)
                    payment_doc["_id"] = result.inserted_id
                    payment_id = str(result.inserted_id)

                    await self.audit.log_action(
                        company_id=company_id,
                        module_name="PAYMENT",
                        entity_type="PAYMENT",
                        entity_id=payment_id,
                        action_type="CREATE",
                        user_id=ctx.user_id,
                        new_value={
                            "payment_amount": str(plan.payment_amount),
                            "allocation_mode": plan.mode.value,
                            "invoices": [u.invoice_id for u in plan.updates]
                        },
                        session=session
                    )

                    response = {
                        "payment": serialize_doc(payment_doc),
                        "invoices": [
                            {
                                "invoiceId": u.invoice_id,
                                "invoiceNumber": u.invoice_number,
                                "allocatedAmount": to_float(u.allocated_amount),
                                "newTotalPaidAmount": to_float(u.new_total_paid),
                                "newBalanceAmount": to_float(u.new_balance),
                                "newStatus": u.new_status.value
                            }
                            for u in plan.updates
                        ]
                    }
                    await record_operation(
                        self.db, idem.operation_id, "PAYMENT", payment_id, response, session=session
                    )

        logger.info(
            f"[ALLOCATION] Payment {payment_id} of {plan.payment_amount} ({plan.mode.value}) "
            f"allocated across {len(plan.updates)} invoice(s)"
        )
        return response

    async def record_payment(
        self,
        ctx,
        invoice_id: str,
        data: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Pay a single invoice with the full payment amount."""
        invoice = await self.db.invoices.find_one({"_id": parse_object_id(invoice_id, "Invoice")})
        if not invoice:
            raise EntityNotFoundError("Invoice", invoice_id)

        request = {
            **data,
            "company_id": invoice["company_id"],
            "hcf_id": invoice.get("hcf_id"),
            "invoice_ids": [invoice_id],
            "allocations": [{"invoice_id": invoice_id, "allocated_amount": data.get("payment_amount")}]
        }
        return await self.process_payment(ctx, request, operation_id)

    async def payments_by_invoice(self, ctx, invoice_id: str) -> Dict[str, Any]:
        """Balance summary of an invoice and every payment allocated to it, newest first."""
        invoice = await self.db.invoices.find_one({"_id": parse_object_id(invoice_id, "Invoice")})
        if not invoice:
            raise EntityNotFoundError("Invoice", invoice_id)
        ctx.require_company(invoice["company_id"])

        cursor = self.db.payments.find({"allocations.invoice_id": invoice_id}).sort("payment_date", DESCENDING)
        payments = await cursor.to_list(length=None)

        history = []
        for payment in payments:
            allocated = sum(
                (round_financial(a["allocated_amount"]) for a in payment["allocations"] if a["invoice_id"] == invoice_id),
                round_financial(0)
            )
            entry = serialize_doc(payment)
            entry["allocatedAmount"] = to_float(allocated)
            history.append(entry)

        return {
            "invoice": serialize_doc(invoice),
            "payments": history
        }
