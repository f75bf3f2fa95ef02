"""
BILLING CORE - SCOPE LOCKS & VERSION CAS

Single-writer guards for a batch or an agreement:
1. claim(): bumps lock_sequence on a per-scope lock document inside the
   caller's transaction. Two transactions claiming the same scope write the
   same document, so MongoDB aborts the later one with a write conflict.
2. cas_update(): update a row only if its version still matches, then bump it.
3. storage_conflicts(): maps MongoDB conflict errors to ConcurrencyConflictError.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import OperationFailure, DuplicateKeyError
import logging

from core.billing_errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

WRITE_CONFLICT_CODE = 112


class ScopeLock:

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def claim(self, scope_type: str, scope_id: str, user_id: Optional[str] = None, session=None) -> int:
        """Take the scope for the lifetime of the current transaction. Returns the new lock_sequence."""
        doc = await self.db.scope_locks.find_one_and_update(
            {"scope_type": scope_type, "scope_id": scope_id},
            {
                "$inc": {"lock_sequence": 1},
                "$set": {"claimed_by": user_id, "claimed_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=True,
            session=session
        )
        logger.debug(f"[LOCK] {scope_type}:{scope_id} claimed (seq {doc['lock_sequence']})")
        return doc["lock_sequence"]

    async def create_indexes(self):
        await self.db.scope_locks.create_index(
            [("scope_type", 1), ("scope_id", 1)],
            unique=True,
            name="unique_scope_lock"
        )


async def cas_update(
    collection,
    filter_query: Dict[str, Any],
    expected_version: int,
    update: Dict[str, Any],
    session=None
):
    """
    Apply update only when the stored version equals expected_version.

    Raises ConcurrencyConflictError when no row matched.
    """
    update = dict(update)
    inc = dict(update.get("$inc", {}))
    inc["version"] = 1
    update["$inc"] = inc

    result = await collection.update_one(
        {**filter_query, "version": expected_version},
        update,
        session=session
    )
    if result.matched_count == 0:
        raise ConcurrencyConflictError(
            "Record was modified by another request. Re-read and retry.",
            {"filter": {k: str(v) for k, v in filter_query.items()}, "expected_version": expected_version}
        )
    return result


def is_write_conflict(error: OperationFailure) -> bool:
    return (
        error.code == WRITE_CONFLICT_CODE
        or error.has_error_label("TransientTransactionError")
    )


@asynccontextmanager
async def storage_conflicts(scope: str):
    """Translate lost transaction races into ConcurrencyConflictError."""
    try:
        yield
    except DuplicateKeyError:
        raise
    except OperationFailure as e:
        if is_write_conflict(e):
            logger.warning(f"[LOCK] Write conflict on {scope}: {e}")
            raise ConcurrencyConflictError(
                f"Concurrent modification of {scope}. Re-read and retry.",
                {"scope": scope}
            )
        raise
