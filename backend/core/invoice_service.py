"""
INVOICE SERVICE

Implements:
1. Manual invoice creation (status Generated, number assigned atomically)
2. Materialization of posted batch lines (called by BatchLifecycleManager)
3. Read/list with company scoping
4. Cancellation (only while nothing has been paid), never deletion

balance_amount and status are recomputed from invoice_value / total_paid_amount
on every write.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime, date
from typing import Optional, Dict, Any, List
from pymongo import ASCENDING, DESCENDING
import logging

from core.atomic_numbering import AtomicDocumentNumbering
from core.billing_errors import BillingValidationError, InvalidStateError, EntityNotFoundError
from core.documents import to_bson, parse_object_id
from core.draft_invoice_editor import (
    InvoiceStatus, PostedInvoice, invoice_amount_fields
)
from core.financial_precision import (
    ZERO, round_financial, to_decimal, validate_positive, NegativeValueError
)
from core.scope_lock import cas_update, storage_conflicts
from audit_service import AuditService

logger = logging.getLogger(__name__)


class InvoiceService:

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db
        self.numbering = AtomicDocumentNumbering(db)
        self.audit = AuditService(db)

    async def create_indexes(self):
        await self.numbering.create_unique_constraints()
        # One invoice per staged line, ever
        await self.db.invoices.create_index(
            [("source_item_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"source_item_id": {"$type": "string"}},
            name="unique_invoice_source_item"
        )
        await self.db.invoices.create_index(
            [("company_id", ASCENDING), ("status", ASCENDING), ("invoice_date", ASCENDING)],
            name="invoice_company_status_date"
        )
        await self.db.invoices.create_index(
            [("hcf_id", ASCENDING), ("invoice_date", DESCENDING)],
            name="invoice_hcf_date"
        )

    # =========================================================================
    # WRITE PATHS
    # =========================================================================

    async def insert_posted_invoice(
        self,
        invoice: PostedInvoice,
        user_id: str,
        session=None
    ) -> Dict[str, Any]:
        """Insert an already-numbered invoice inside the caller's transaction."""
        amounts = invoice_amount_fields(invoice.invoice_value, invoice.total_paid_amount)
        now = datetime.utcnow()
        doc = {
            "company_id": invoice.company_id,
            "hcf_id": invoice.hcf_id,
            "invoice_number": invoice.invoice_number,
            "invoice_date": invoice.invoice_date,
            "due_date": invoice.due_date,
            "invoice_value": invoice.invoice_value,
            **amounts,
            "financial_year": invoice.financial_year,
            "sequence_number": invoice.sequence_number,
            "batch_id": invoice.batch_id,
            "source_item_id": invoice.source_item_id,
            "description": invoice.description,
            "cancelled": False,
            "version": 0,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now
        }
        doc = to_bson(doc)
        result = await self.db.invoices.insert_one(doc, session=session)
        doc["_id"] = result.inserted_id

        await self.audit.log_action(
            company_id=invoice.company_id,
            module_name="BILLING",
            entity_type="INVOICE",
            entity_id=str(result.inserted_id),
            action_type="CREATE",
            user_id=user_id,
            new_value={
                "invoice_number": invoice.invoice_number,
                "invoice_value": str(invoice.invoice_value),
                "batch_id": invoice.batch_id
            },
            session=session
        )
        return doc

    async def create_invoice(self, ctx, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Manually create a Generated invoice.

        data: company_id, hcf_id, invoice_date, due_date?, invoice_value, description?
        """
        company_id = data.get("company_id")
        ctx.require_company(company_id, write=True)

        if not data.get("hcf_id"):
            raise BillingValidationError("hcf_id is required")
        try:
            validate_positive(data.get("invoice_value"), "invoice_value")
        except NegativeValueError as e:
            raise BillingValidationError(str(e), {"field": e.field_name})

        invoice_date = data.get("invoice_date") or date.today()
        due_date = data.get("due_date")
        if due_date and due_date < invoice_date:
            raise BillingValidationError("Due date cannot be before invoice date")

        async with storage_conflicts(f"invoice numbering for company {company_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    number, sequence, financial_year = await self.numbering.generate_invoice_number(
                        company_id, invoice_date, session=session
                    )
                    posted = PostedInvoice(
                        company_id=company_id,
                        hcf_id=data["hcf_id"],
                        invoice_number=number,
                        invoice_date=invoice_date,
                        due_date=due_date,
                        invoice_value=round_financial(data["invoice_value"]),
                        balance_amount=round_financial(data["invoice_value"]),
                        financial_year=financial_year,
                        sequence_number=sequence,
                        description=data.get("description")
                    )
                    doc = await self.insert_posted_invoice(posted, ctx.user_id, session=session)

        logger.info(f"[INVOICE] Created {number} for company {company_id}")
        return doc

    async def cancel_invoice(self, ctx, invoice_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel an unpaid invoice. Paid or part-paid invoices cannot be cancelled."""
        oid = parse_object_id(invoice_id, "Invoice")

        async with storage_conflicts(f"invoice {invoice_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    invoice = await self.db.invoices.find_one({"_id": oid}, session=session)
                    if not invoice:
                        raise EntityNotFoundError("Invoice", invoice_id)
                    ctx.require_company(invoice["company_id"], write=True)

                    if invoice.get("cancelled"):
                        raise InvalidStateError(
                            f"Invoice {invoice['invoice_number']} is already cancelled",
                            {"invoice_id": invoice_id}
                        )
                    if to_decimal(invoice.get("total_paid_amount")) > ZERO:
                        raise InvalidStateError(
                            f"Invoice {invoice['invoice_number']} has payments and cannot be cancelled",
                            {"invoice_id": invoice_id, "status": invoice.get("status")}
                        )

                    amounts = invoice_amount_fields(
                        invoice["invoice_value"], invoice.get("total_paid_amount"), cancelled=True
                    )
                    await cas_update(
                        self.db.invoices,
                        {"_id": oid},
                        invoice.get("version", 0),
                        {"$set": to_bson({
                            **amounts,
                            "cancelled": True,
                            "cancel_reason": reason,
                            "cancelled_by": ctx.user_id,
                            "cancelled_at": datetime.utcnow(),
                            "updated_at": datetime.utcnow()
                        })},
                        session=session
                    )

                    await self.audit.log_action(
                        company_id=invoice["company_id"],
                        module_name="BILLING",
                        entity_type="INVOICE",
                        entity_id=invoice_id,
                        action_type="CANCEL",
                        user_id=ctx.user_id,
                        old_value={"status": invoice.get("status")},
                        new_value={"status": InvoiceStatus.CANCELLED.value, "reason": reason},
                        session=session
                    )

        logger.info(f"[INVOICE] Cancelled {invoice['invoice_number']} by {ctx.user_id}")
        return await self.db.invoices.find_one({"_id": oid})

    # =========================================================================
    # READ PATHS
    # =========================================================================

    async def get_invoice(self, ctx, invoice_id: str) -> Dict[str, Any]:
        invoice = await self.db.invoices.find_one({"_id": parse_object_id(invoice_id, "Invoice")})
        if not invoice:
            raise EntityNotFoundError("Invoice", invoice_id)
        ctx.require_company(invoice["company_id"])
        return invoice

    async def list_invoices(
        self,
        ctx,
        company_id: Optional[str] = None,
        hcf_id: Optional[str] = None,
        status: Optional[str] = None,
        financial_year: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        query = ctx.company_filter(company_id)
        if hcf_id:
            query["hcf_id"] = hcf_id
        if status:
            query["status"] = status
        if financial_year:
            query["financial_year"] = financial_year
        if batch_id:
            query["batch_id"] = batch_id

        cursor = self.db.invoices.find(query).sort([("invoice_date", DESCENDING), ("invoice_number", DESCENDING)])
        return await cursor.to_list(length=limit)
