"""
BATCH LIFECYCLE MANAGER

Implements:
1. Staging a batch of computed billing lines (STAGED)
2. STAGED-only edit window: item update, selection, soft removal, bulk update
3. Posting: STAGED|FAILED -> PROCESSING -> POSTED|FAILED
4. Per-item idempotent materialization into invoices

Posting rules:
- The batch is claimed in one transaction together with the batch scope lock,
  so a second concurrent post (or a concurrent edit) loses with a conflict.
- Every eligible item is materialized in its own transaction. One failing
  item never rolls back another.
- An item that carries posted_invoice_id is never posted again. The unique
  index on invoices.source_item_id backs this up across retries.
- Terminal state: POSTED if at least one item of the batch has an invoice,
  FAILED otherwise.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError
import logging

from core.atomic_numbering import AtomicDocumentNumbering
from core.billing_errors import (
    BillingError, BillingValidationError, InvalidStateError, EntityNotFoundError
)
from core.documents import to_bson, parse_object_id
from core.draft_invoice_editor import (
    BulkUpdateSummary, derive_line_fields, draft_line_from_doc, parse_line_number,
    to_posted_invoice, validate_line_changes, LINE_NUMBER_FIELDS
)
from core.idempotency import ensure_idempotent, record_operation
from core.invoice_service import InvoiceService
from core.scope_lock import ScopeLock, cas_update, storage_conflicts
from core.state_machine import BatchStatus, batch_state_machine
from audit_service import AuditService

logger = logging.getLogger(__name__)

BATCH_TYPES = ("manual", "weight", "bed")
LOCK_SCOPE = "BATCH"


@dataclass
class ItemPostResult:
    item_id: str
    status: str
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "reason": self.reason
        }


@dataclass
class PostResult:
    """Outcome of a post. Partial failure is reported here, never raised."""
    batch_id: str
    batch_status: str = BatchStatus.PROCESSING.value
    results: List[ItemPostResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def success(self) -> int:
        return self._count("posted")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "batch_status": self.batch_status,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results]
        }


def _parse_stage_line(line: Dict[str, Any]) -> Dict[str, Any]:
    """Staged line with exact, non-negative quantity, rate and tax_percent."""
    parsed = dict(line)
    for field_name in LINE_NUMBER_FIELDS:
        value = line.get(field_name)
        if value is None and field_name == "tax_percent":
            value = 0
        parsed[field_name] = parse_line_number(value, field_name)
    return parsed


class BatchLifecycleManager:

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db
        self.machine = batch_state_machine
        self.locks = ScopeLock(db)
        self.numbering = AtomicDocumentNumbering(db)
        self.invoices = InvoiceService(client, db)
        self.audit = AuditService(db)

    async def create_indexes(self):
        await self.db.billing_batches.create_index(
            [("company_id", ASCENDING), ("created_at", DESCENDING)],
            name="batch_company_created"
        )
        await self.db.batch_items.create_index(
            [("batch_id", ASCENDING), ("removed", ASCENDING)],
            name="batch_items_by_batch"
        )
        await self.locks.create_indexes()
        await self.invoices.create_indexes()

    # =========================================================================
    # LOADERS
    # =========================================================================

    async def _get_batch(self, batch_id: str, session=None) -> Dict[str, Any]:
        batch = await self.db.billing_batches.find_one(
            {"_id": parse_object_id(batch_id, "Batch")}, session=session
        )
        if not batch:
            raise EntityNotFoundError("Batch", batch_id)
        return batch

    async def _get_item(self, item_id: str, session=None) -> Dict[str, Any]:
        item = await self.db.batch_items.find_one(
            {"_id": parse_object_id(item_id, "Draft invoice"), "removed": {"$ne": True}},
            session=session
        )
        if not item:
            raise EntityNotFoundError("Draft invoice", item_id)
        return item

    @staticmethod
    def _require_staged(batch: Dict[str, Any]) -> None:
        if batch["status"] != BatchStatus.STAGED.value:
            raise InvalidStateError(
                f"Batch is {batch['status']}; draft invoices can only be changed while STAGED",
                {"batch_id": str(batch["_id"]), "status": batch["status"]}
            )

    async def _open_item_for_edit(self, ctx, item_id: str, session) -> tuple:
        """Claim the owning batch and verify the edit window. Returns (batch, item)."""
        item = await self._get_item(item_id, session=session)
        await self.locks.claim(LOCK_SCOPE, item["batch_id"], ctx.user_id, session=session)
        batch = await self._get_batch(item["batch_id"], session=session)
        ctx.require_company(batch["company_id"], write=True)
        self._require_staged(batch)
        # Re-read under the lock
        item = await self._get_item(item_id, session=session)
        return batch, item

    # =========================================================================
    # STAGING & READS
    # =========================================================================

    async def stage(self, ctx, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Persist a STAGED batch from externally computed lines.

        request: type, company_id, site_id?, period_from?, period_to?,
                 billing_month?, items[{customer_ref, description?, quantity,
                 rate, tax_percent?, due_date?}]
        """
        company_id = request.get("company_id")
        ctx.require_company(company_id, write=True)

        batch_type = request.get("type")
        if batch_type not in BATCH_TYPES:
            raise BillingValidationError(
                f"Batch type must be one of {', '.join(BATCH_TYPES)}",
                {"type": batch_type}
            )
        items = request.get("items") or []
        if not items:
            raise BillingValidationError("A batch needs at least one line")
        lines = [_parse_stage_line(line) for line in items]

        now = datetime.utcnow()
        batch_doc = to_bson({
            "type": batch_type,
            "company_id": company_id,
            "site_id": request.get("site_id"),
            "period_from": request.get("period_from"),
            "period_to": request.get("period_to"),
            "billing_month": request.get("billing_month"),
            "status": BatchStatus.STAGED.value,
            "total_records": len(items),
            "created_by": ctx.user_id,
            "created_at": now,
            "updated_at": now,
            "state_history": [],
            "version": 0
        })

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                result = await self.db.billing_batches.insert_one(batch_doc, session=session)
                batch_id = str(result.inserted_id)

                item_docs = []
                for line in lines:
                    derived = derive_line_fields(
                        line["quantity"], line["rate"], line["tax_percent"], line.get("customer_ref")
                    )
                    item_docs.append(to_bson({
                        "batch_id": batch_id,
                        "company_id": company_id,
                        "customer_ref": line.get("customer_ref"),
                        "description": line.get("description"),
                        "quantity": line["quantity"],
                        "rate": line["rate"],
                        "tax_percent": line["tax_percent"],
                        "computed_amount": derived.computed_amount,
                        "due_date": line.get("due_date"),
                        "is_selected": not derived.error_flag,
                        "error_flag": derived.error_flag,
                        "error_message": derived.error_message,
                        "removed": False,
                        "version": 0,
                        "created_at": now,
                        "updated_at": now
                    }))
                await self.db.batch_items.insert_many(item_docs, session=session)

        errored = sum(1 for d in item_docs if d["error_flag"])
        logger.info(
            f"[BATCH] Staged {batch_id} ({batch_type}) for company {company_id}: "
            f"{len(item_docs)} line(s), {errored} with errors"
        )
        return {"batch_id": batch_id, "invoice_count": len(item_docs)}

    async def list_batches(
        self,
        ctx,
        company_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 200
    ) -> List[Dict[str, Any]]:
        query = ctx.company_filter(company_id)
        if status:
            query["status"] = status
        cursor = self.db.billing_batches.find(query).sort("created_at", DESCENDING)
        return await cursor.to_list(length=limit)

    async def preview(self, ctx, batch_id: str) -> Dict[str, Any]:
        """Batch plus its live items. Never blocks, valid in every state."""
        batch = await self._get_batch(batch_id)
        ctx.require_company(batch["company_id"])
        items = await self.list_items(batch_id)
        return {"batch": batch, "items": items}

    async def list_items(self, batch_id: str, session=None) -> List[Dict[str, Any]]:
        cursor = self.db.batch_items.find(
            {"batch_id": batch_id, "removed": {"$ne": True}}, session=session
        ).sort("_id", ASCENDING)
        return await cursor.to_list(length=None)

    # =========================================================================
    # STAGED EDITS
    # =========================================================================

    async def update_item(
        self,
        ctx,
        item_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """Edit one staged line and recompute its derived fields. No other line is touched."""
        cleaned = validate_line_changes(changes)

        async with storage_conflicts(f"draft invoice {item_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    batch, item = await self._open_item_for_edit(ctx, item_id, session)

                    merged = {**item, **cleaned}
                    derived = derive_line_fields(
                        merged.get("quantity"), merged.get("rate"),
                        merged.get("tax_percent"), merged.get("customer_ref")
                    )
                    updates = {
                        **cleaned,
                        "computed_amount": derived.computed_amount,
                        "error_flag": derived.error_flag,
                        "error_message": derived.error_message,
                        "updated_at": datetime.utcnow()
                    }
                    if derived.error_flag:
                        updates["is_selected"] = False

                    version = item.get("version", 0) if expected_version is None else expected_version
                    await cas_update(
                        self.db.batch_items,
                        {"_id": item["_id"]},
                        version,
                        {"$set": to_bson(updates)},
                        session=session
                    )
                    updated = await self._get_item(item_id, session=session)

        logger.info(
            f"[BATCH] Item {item_id} updated in {batch['_id']}: amount {derived.computed_amount}, "
            f"error={derived.error_flag}"
        )
        return updated

    async def toggle_selection(self, ctx, item_id: str) -> Dict[str, Any]:
        """
        Flip is_selected. Selecting an errored item is silently ignored;
        the returned item then still shows is_selected False.
        """
        async with storage_conflicts(f"draft invoice {item_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    batch, item = await self._open_item_for_edit(ctx, item_id, session)
                    target = not item.get("is_selected", False)
                    if target and item.get("error_flag"):
                        logger.info(f"[BATCH] Ignored selection of errored item {item_id}")
                        return item

                    await self.db.batch_items.update_one(
                        {"_id": item["_id"]},
                        {"$set": {"is_selected": target, "updated_at": datetime.utcnow()}, "$inc": {"version": 1}},
                        session=session
                    )
                    return await self._get_item(item_id, session=session)

    async def set_selection(
        self,
        ctx,
        batch_id: str,
        is_selected: bool,
        item_ids: Optional[List[str]] = None
    ) -> Dict[str, int]:
        """Select or deselect all (or the given) items. Errored items are skipped when selecting."""
        async with storage_conflicts(f"batch {batch_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    await self.locks.claim(LOCK_SCOPE, batch_id, ctx.user_id, session=session)
                    batch = await self._get_batch(batch_id, session=session)
                    ctx.require_company(batch["company_id"], write=True)
                    self._require_staged(batch)

                    query: Dict[str, Any] = {"batch_id": batch_id, "removed": {"$ne": True}}
                    if item_ids is not None:
                        query["_id"] = {"$in": [parse_object_id(i, "Draft invoice") for i in item_ids]}

                    skipped = 0
                    if is_selected:
                        skipped = await self.db.batch_items.count_documents(
                            {**query, "error_flag": True}, session=session
                        )
                        query["error_flag"] = {"$ne": True}

                    result = await self.db.batch_items.update_many(
                        query,
                        {"$set": {"is_selected": is_selected, "updated_at": datetime.utcnow()}, "$inc": {"version": 1}},
                        session=session
                    )

        logger.info(
            f"[BATCH] Selection set to {is_selected} on {batch_id}: "
            f"{result.modified_count} updated, {skipped} errored skipped"
        )
        return {"updated": result.modified_count, "skipped": skipped}

    async def remove_item(self, ctx, item_id: str) -> Dict[str, Any]:
        """Soft-remove a staged line. It disappears from preview and posting."""
        async with storage_conflicts(f"draft invoice {item_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    batch, item = await self._open_item_for_edit(ctx, item_id, session)
                    await cas_update(
                        self.db.batch_items,
                        {"_id": item["_id"]},
                        item.get("version", 0),
                        {"$set": {
                            "removed": True,
                            "is_selected": False,
                            "removed_by": ctx.user_id,
                            "removed_at": datetime.utcnow()
                        }},
                        session=session
                    )
                    await self.db.billing_batches.update_one(
                        {"_id": batch["_id"]},
                        {"$inc": {"total_records": -1}, "$set": {"updated_at": datetime.utcnow()}},
                        session=session
                    )

        logger.info(f"[BATCH] Item {item_id} removed from {batch['_id']}")
        return {"item_id": item_id, "batch_id": str(batch["_id"]), "total_records": batch["total_records"] - 1}

    async def bulk_update(
        self,
        ctx,
        batch_id: str,
        item_ids: List[str],
        changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """N independent update_item calls. Failures are collected, never rolled back together."""
        batch = await self._get_batch(batch_id)
        ctx.require_company(batch["company_id"], write=True)

        summary = BulkUpdateSummary()
        for item_id in item_ids:
            try:
                item = await self._get_item(item_id)
                if item["batch_id"] != batch_id:
                    raise BillingValidationError(
                        f"Draft invoice {item_id} does not belong to batch {batch_id}",
                        {"item_id": item_id}
                    )
                summary.record_success(await self.update_item(ctx, item_id, dict(changes)))
            except BillingError as e:
                summary.record_failure(item_id, e)

        logger.info(f"[BATCH] Bulk update on {batch_id}: {summary.applied} applied, {summary.failed} failed")
        return summary.to_dict()

    # =========================================================================
    # POSTING
    # =========================================================================

    async def post(
        self,
        ctx,
        batch_id: str,
        invoice_date: date,
        item_ids: Optional[List[str]] = None,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Post selected (or the given) error-free items of a STAGED or FAILED batch.

        Returns {batch_id, batch_status, success, failed, skipped, results[]}.
        """
        idem = await ensure_idempotent(self.db, operation_id, "BATCH_POST", batch_id)
        if idem.is_duplicate and idem.previous_response is not None:
            return idem.previous_response

        batch = await self._get_batch(batch_id)
        ctx.require_company(batch["company_id"], write=True)

        result = PostResult(batch_id=batch_id)
        eligible = await self._claim_for_posting(ctx, batch_id, item_ids, result)

        try:
            for item in eligible:
                result.results.append(
                    await self._post_item(ctx, batch, item, invoice_date)
                )
        finally:
            result.batch_status = await self._finish_posting(ctx, batch_id, result)

        response = result.to_dict()
        await record_operation(self.db, idem.operation_id, "BATCH_POST", batch_id, response)
        return response

    async def post_items(
        self,
        ctx,
        item_ids: List[str],
        invoice_date: date,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Post the given draft invoices. They must all belong to one batch."""
        if not item_ids:
            raise BillingValidationError("No draft invoices selected")

        oids = [parse_object_id(i, "Draft invoice") for i in item_ids]
        items = await self.db.batch_items.find({"_id": {"$in": oids}}).to_list(length=None)
        found = {str(i["_id"]) for i in items}
        missing = [i for i in item_ids if i not in found]
        if missing:
            raise EntityNotFoundError("Draft invoice", missing[0])

        batch_ids = {i["batch_id"] for i in items}
        if len(batch_ids) != 1:
            raise BillingValidationError(
                "Draft invoices from more than one batch cannot be posted together",
                {"batch_ids": sorted(batch_ids)}
            )
        return await self.post(ctx, batch_ids.pop(), invoice_date, item_ids, operation_id)

    async def _claim_for_posting(
        self,
        ctx,
        batch_id: str,
        item_ids: Optional[List[str]],
        result: PostResult
    ) -> List[Dict[str, Any]]:
        """
        STAGED|FAILED -> PROCESSING under the batch lock.

        Fills result with skipped items and returns the items to materialize.
        Nothing is claimed when there is no eligible item.
        """
        wanted = set(item_ids) if item_ids is not None else None

        async with storage_conflicts(f"batch {batch_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    await self.locks.claim(LOCK_SCOPE, batch_id, ctx.user_id, session=session)
                    batch = await self._get_batch(batch_id, session=session)
                    self.machine.validate_transition(batch["status"], BatchStatus.PROCESSING)

                    eligible = []
                    for item in await self.list_items(batch_id, session=session):
                        item_id = str(item["_id"])
                        if wanted is not None and item_id not in wanted:
                            continue
                        if item.get("posted_invoice_id"):
                            result.results.append(ItemPostResult(
                                item_id, "skipped",
                                invoice_id=item["posted_invoice_id"],
                                invoice_number=item.get("posted_invoice_number"),
                                reason="Already posted"
                            ))
                        elif item.get("error_flag"):
                            result.results.append(ItemPostResult(
                                item_id, "skipped", reason=item.get("error_message") or "Line has errors"
                            ))
                        elif wanted is not None or item.get("is_selected"):
                            eligible.append(item)

                    if wanted is not None:
                        seen = {r.item_id for r in result.results} | {str(i["_id"]) for i in eligible}
                        unknown = sorted(wanted - seen)
                        if unknown:
                            raise BillingValidationError(
                                f"Draft invoices not found in batch {batch_id}: {', '.join(unknown)}",
                                {"item_ids": unknown}
                            )

                    if not eligible:
                        raise BillingValidationError(
                            "No selected error-free draft invoices to post",
                            {"batch_id": batch_id, "skipped": len(result.results)}
                        )

                    await self.db.billing_batches.update_one(
                        {"_id": batch["_id"], "status": batch["status"]},
                        {
                            "$set": self.machine.get_status_update(BatchStatus.PROCESSING),
                            "$push": {"state_history": self.machine.get_history_entry(
                                batch["status"], BatchStatus.PROCESSING, ctx.user_id,
                                {"eligible": len(eligible)}
                            )},
                            "$inc": {"version": 1}
                        },
                        session=session
                    )

        logger.info(
            f"[STATE_MACHINE] Batch {batch_id}: {batch['status']} -> PROCESSING "
            f"({len(eligible)} eligible, {len(result.results)} skipped)"
        )
        return eligible

    async def _post_item(self, ctx, batch: Dict[str, Any], item: Dict[str, Any], invoice_date: date) -> ItemPostResult:
        """Materialize one item in its own transaction. Failures become a result row."""
        item_id = str(item["_id"])
        try:
            async with storage_conflicts(f"draft invoice {item_id}"):
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        current = await self.db.batch_items.find_one({"_id": item["_id"]}, session=session)
                        if current.get("posted_invoice_id"):
                            return ItemPostResult(
                                item_id, "skipped",
                                invoice_id=current["posted_invoice_id"],
                                invoice_number=current.get("posted_invoice_number"),
                                reason="Already posted"
                            )

                        number, sequence, financial_year = await self.numbering.generate_invoice_number(
                            batch["company_id"], invoice_date, session=session
                        )
                        posted = to_posted_invoice(
                            draft_line_from_doc(current, batch["company_id"]),
                            number, invoice_date, sequence, financial_year
                        )
                        invoice = await self.invoices.insert_posted_invoice(posted, ctx.user_id, session=session)
                        invoice_id = str(invoice["_id"])

                        await cas_update(
                            self.db.batch_items,
                            {"_id": item["_id"], "posted_invoice_id": {"$exists": False}},
                            current.get("version", 0),
                            {
                                "$set": {
                                    "posted_invoice_id": invoice_id,
                                    "posted_invoice_number": number,
                                    "posted_at": datetime.utcnow()
                                },
                                "$unset": {"post_error": ""}
                            },
                            session=session
                        )

            logger.info(f"[BATCH] Item {item_id} posted as {number}")
            return ItemPostResult(item_id, "posted", invoice_id=invoice_id, invoice_number=number)

        except DuplicateKeyError:
            existing = await self.db.invoices.find_one({"source_item_id": item_id})
            if existing:
                await self.db.batch_items.update_one(
                    {"_id": item["_id"]},
                    {"$set": {
                        "posted_invoice_id": str(existing["_id"]),
                        "posted_invoice_number": existing["invoice_number"]
                    }}
                )
                return ItemPostResult(
                    item_id, "skipped",
                    invoice_id=str(existing["_id"]),
                    invoice_number=existing["invoice_number"],
                    reason="Already posted"
                )
            return await self._record_item_failure(item, "Duplicate invoice number")
        except BillingError as e:
            return await self._record_item_failure(item, e.message)
        except Exception as e:
            logger.error(f"[BATCH] Unexpected error posting item {item_id}: {str(e)}")
            return await self._record_item_failure(item, "Transaction failed")

    async def _record_item_failure(self, item: Dict[str, Any], reason: str) -> ItemPostResult:
        await self.db.batch_items.update_one(
            {"_id": item["_id"]},
            {"$set": {"post_error": reason, "post_error_at": datetime.utcnow()}}
        )
        logger.warning(f"[BATCH] Item {item['_id']} failed to post: {reason}")
        return ItemPostResult(str(item["_id"]), "failed", reason=reason)

    async def _finish_posting(self, ctx, batch_id: str, result: PostResult) -> str:
        """PROCESSING -> POSTED if any item of the batch has an invoice, else FAILED."""
        posted_count = await self.db.batch_items.count_documents({
            "batch_id": batch_id,
            "removed": {"$ne": True},
            "posted_invoice_id": {"$exists": True}
        })
        target = BatchStatus.POSTED if posted_count > 0 else BatchStatus.FAILED
        self.machine.validate_transition(BatchStatus.PROCESSING, target)

        summary = {"success": result.success, "failed": result.failed, "skipped": result.skipped}
        now = datetime.utcnow()
        update = {
            **self.machine.get_status_update(target),
            "posted_count": posted_count,
            "last_post_result": summary,
            "updated_at": now
        }
        if target == BatchStatus.POSTED:
            update["posted_at"] = now

        await self.db.billing_batches.update_one(
            {"_id": parse_object_id(batch_id, "Batch"), "status": BatchStatus.PROCESSING.value},
            {
                "$set": update,
                "$push": {"state_history": self.machine.get_history_entry(
                    BatchStatus.PROCESSING, target, ctx.user_id, summary
                )},
                "$inc": {"version": 1}
            }
        )

        batch = await self._get_batch(batch_id)
        await self.audit.log_action(
            company_id=batch["company_id"],
            module_name="BILLING",
            entity_type="BILLING_BATCH",
            entity_id=batch_id,
            action_type="POST",
            user_id=ctx.user_id,
            new_value={"status": target.value, **summary}
        )

        logger.info(
            f"[STATE_MACHINE] Batch {batch_id}: PROCESSING -> {target.value} "
            f"(posted {result.success}, failed {result.failed}, skipped {result.skipped})"
        )
        return target.value
