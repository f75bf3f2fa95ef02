"""
AGREEMENT CLAUSE SERVICE

Applies the sequence invariant engine to stored clauses:
1. Create: point_num unique per agreement, sequence_no from a per-agreement
   high-water counter (never reused)
2. Update: point_num uniqueness re-checked excluding the clause itself
3. Reorder: swap with neighbour (up/down) or move to an explicit number,
   written as one transaction under the agreement lock with a version
   compare-and-swap on every row touched
4. Activate/deactivate through status. Clauses are never deleted.

Whether the owning agreement is still in Draft is checked by the caller.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError
import logging

from core.atomic_numbering import AtomicDocumentNumbering
from core.billing_errors import BillingValidationError, EntityNotFoundError
from core.documents import parse_object_id
from core.scope_lock import ScopeLock, cas_update, storage_conflicts
from core.sequence_invariants import (
    Direction, apply_plan, check_point_num_unique, next_sequence_floor,
    plan_sequence_change, plan_swap, sort_by_sequence
)

logger = logging.getLogger(__name__)

CLAUSE_STATUSES = ("Active", "Inactive")
LOCK_SCOPE = "AGREEMENT"
SEQUENCE_COUNTER = "CLAUSE_SEQUENCE"
EDITABLE_FIELDS = ("point_num", "point_title", "point_text", "status")


class ClauseService:

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db
        self.locks = ScopeLock(db)
        self.numbering = AtomicDocumentNumbering(db)

    async def create_indexes(self):
        await self.db.agreement_clauses.create_index(
            [("agreement_id", ASCENDING), ("point_num", ASCENDING)],
            unique=True,
            name="unique_clause_point_num"
        )
        # sequence_no is not unique-indexed: a swap passes through a state where
        # both rows briefly hold the same value inside the transaction
        await self.db.agreement_clauses.create_index(
            [("agreement_id", ASCENDING), ("sequence_no", ASCENDING)],
            name="clause_sequence"
        )

    async def _agreement_clauses(self, agreement_id: str, session=None) -> List[Dict[str, Any]]:
        cursor = self.db.agreement_clauses.find({"agreement_id": agreement_id}, session=session)
        return await cursor.to_list(length=None)

    async def _get(self, clause_id: str, session=None) -> Dict[str, Any]:
        clause = await self.db.agreement_clauses.find_one(
            {"_id": parse_object_id(clause_id, "Clause")}, session=session
        )
        if not clause:
            raise EntityNotFoundError("Clause", clause_id)
        return clause

    @staticmethod
    def _check_fields(data: Dict[str, Any]) -> None:
        if "point_num" in data:
            point_num = str(data["point_num"] or "")
            if not point_num.strip():
                raise BillingValidationError("Point number is required")
            if point_num != point_num.strip():
                raise BillingValidationError(
                    "Point number must not start or end with whitespace",
                    {"point_num": point_num}
                )
        if "point_title" in data and not str(data["point_title"] or "").strip():
            raise BillingValidationError("Point title is required")
        if data.get("status") is not None and data["status"] not in CLAUSE_STATUSES:
            raise BillingValidationError(
                f"Status must be one of {', '.join(CLAUSE_STATUSES)}",
                {"status": data["status"]}
            )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_clause(self, clause_id: str) -> Dict[str, Any]:
        return await self._get(clause_id)

    async def list_clauses(
        self,
        agreement_id: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if agreement_id:
            query["agreement_id"] = agreement_id
        if status:
            query["status"] = status

        cursor = self.db.agreement_clauses.find(query).sort([("agreement_id", ASCENDING), ("sequence_no", ASCENDING)])
        clauses = await cursor.to_list(length=None)

        if search:
            needle = search.lower()
            clauses = [
                c for c in clauses
                if needle in c.get("point_num", "").lower()
                or needle in c.get("point_title", "").lower()
                or needle in c.get("point_text", "").lower()
            ]
        return clauses

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_clause(self, ctx, data: Dict[str, Any]) -> Dict[str, Any]:
        """data: agreement_id, point_num, point_title, point_text?, status?"""
        ctx.require_writer()
        agreement_id = data.get("agreement_id")
        if not agreement_id:
            raise BillingValidationError("agreement_id is required")
        self._check_fields({
            "point_num": data.get("point_num"),
            "point_title": data.get("point_title"),
            "status": data.get("status")
        })

        point_num = str(data["point_num"])

        try:
            async with storage_conflicts(f"agreement {agreement_id}"):
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        await self.locks.claim(LOCK_SCOPE, agreement_id, ctx.user_id, session=session)
                        existing = await self._agreement_clauses(agreement_id, session=session)
                        check_point_num_unique(existing, point_num)

                        sequence_no = await self.numbering.get_next_sequence(
                            agreement_id, SEQUENCE_COUNTER, session=session,
                            floor=next_sequence_floor(existing)
                        )
                        now = datetime.utcnow()
                        doc = {
                            "agreement_id": agreement_id,
                            "point_num": point_num,
                            "point_title": data["point_title"].strip(),
                            "point_text": data.get("point_text") or "",
                            "sequence_no": sequence_no,
                            "status": data.get("status") or "Active",
                            "version": 0,
                            "created_by": ctx.user_id,
                            "created_at": now,
                            "updated_at": now
                        }
                        result = await self.db.agreement_clauses.insert_one(doc, session=session)
                        doc["_id"] = result.inserted_id
        except DuplicateKeyError:
            raise BillingValidationError(
                f"Point number '{point_num}' already exists for this agreement",
                {"point_num": point_num}
            )

        logger.info(f"[CLAUSE] Created {point_num} on agreement {agreement_id} at sequence {sequence_no}")
        return doc

    async def update_clause(
        self,
        ctx,
        clause_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """Edit title/text/point_num/status. sequence_no only moves through reorder()."""
        ctx.require_writer()
        unknown = [k for k in changes if k not in EDITABLE_FIELDS]
        if unknown:
            raise BillingValidationError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)}
            )
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise BillingValidationError("No changes supplied")
        self._check_fields(changes)
        if "point_num" in changes:
            changes["point_num"] = str(changes["point_num"])

        clause = await self._get(clause_id)
        agreement_id = clause["agreement_id"]

        try:
            async with storage_conflicts(f"agreement {agreement_id}"):
                async with await self.client.start_session() as session:
                    async with session.start_transaction():
                        await self.locks.claim(LOCK_SCOPE, agreement_id, ctx.user_id, session=session)
                        clause = await self._get(clause_id, session=session)
                        if "point_num" in changes:
                            existing = await self._agreement_clauses(agreement_id, session=session)
                            check_point_num_unique(existing, changes["point_num"], exclude_clause_id=clause_id)

                        version = clause.get("version", 0) if expected_version is None else expected_version
                        await cas_update(
                            self.db.agreement_clauses,
                            {"_id": clause["_id"]},
                            version,
                            {"$set": {**changes, "updated_by": ctx.user_id, "updated_at": datetime.utcnow()}},
                            session=session
                        )
                        updated = await self._get(clause_id, session=session)
        except DuplicateKeyError:
            raise BillingValidationError(
                f"Point number '{changes.get('point_num')}' already exists for this agreement",
                {"point_num": changes.get("point_num")}
            )

        logger.info(f"[CLAUSE] Updated {clause_id}: {', '.join(sorted(changes))}")
        return updated

    async def reorder(
        self,
        ctx,
        clause_id: str,
        direction: Optional[str] = None,
        new_sequence_no: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Move a clause. Exactly one of direction ('up'/'down') or new_sequence_no.

        Returns the agreement's clauses in sequence order after the move.
        """
        ctx.require_writer()
        if (direction is None) == (new_sequence_no is None):
            raise BillingValidationError("Provide either direction or newSequenceNo")

        clause = await self._get(clause_id)
        agreement_id = clause["agreement_id"]

        async with storage_conflicts(f"agreement {agreement_id}"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    await self.locks.claim(LOCK_SCOPE, agreement_id, ctx.user_id, session=session)
                    clauses = await self._agreement_clauses(agreement_id, session=session)

                    if direction is not None:
                        try:
                            plan = plan_swap(clauses, clause_id, Direction(direction))
                        except ValueError:
                            raise BillingValidationError(
                                "Direction must be 'up' or 'down'", {"direction": direction}
                            )
                    else:
                        plan = plan_sequence_change(clauses, clause_id, new_sequence_no)

                    reordered = apply_plan(clauses, plan)
                    by_id = {str(c["_id"]): c for c in clauses}
                    for assignment in plan.assignments:
                        row = by_id[assignment.clause_id]
                        await cas_update(
                            self.db.agreement_clauses,
                            {"_id": row["_id"], "sequence_no": assignment.old_sequence_no},
                            row.get("version", 0),
                            {"$set": {
                                "sequence_no": assignment.new_sequence_no,
                                "updated_by": ctx.user_id,
                                "updated_at": datetime.utcnow()
                            }},
                            session=session
                        )

                    if new_sequence_no is not None and not plan.is_noop:
                        # An explicitly assigned number must never be issued again
                        await self.db.document_sequences.update_one(
                            {"scope_id": agreement_id, "prefix": SEQUENCE_COUNTER},
                            {"$max": {"current_sequence": next_sequence_floor(reordered)}},
                            upsert=True,
                            session=session
                        )

        if plan.is_noop:
            logger.info(f"[CLAUSE] Reorder of {clause_id} is a no-op")
        else:
            moves = ", ".join(
                f"{a.clause_id}: {a.old_sequence_no}->{a.new_sequence_no}" for a in plan.assignments
            )
            logger.info(f"[CLAUSE] Reordered agreement {agreement_id}: {moves}")

        return sort_by_sequence(await self._agreement_clauses(agreement_id))
