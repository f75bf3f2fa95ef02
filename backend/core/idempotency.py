"""
BILLING CORE - IDEMPOTENCY HELPER

Centralizes operation_id handling for payment and batch-post writes.

Features:
- Auto-generates operation_id if not provided
- Looks up a previously applied operation
- Returns the stored response for duplicates
- Records the response inside the caller's transaction

Usage:
    from core.idempotency import ensure_idempotent, record_operation

    result = await ensure_idempotent(db, request.operation_id, "PAYMENT", company_id)
    if result.is_duplicate:
        return result.previous_response

    ...mutation...
    await record_operation(db, result.operation_id, "PAYMENT", payment_id, response, session)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass
import uuid
import logging

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    operation_id: str
    is_duplicate: bool
    previous_response: Optional[Dict[str, Any]] = None


def get_or_generate_operation_id(operation_id: Optional[str]) -> str:
    return operation_id or str(uuid.uuid4())


async def ensure_idempotent(
    db: AsyncIOMotorDatabase,
    operation_id: Optional[str],
    entity_type: str,
    entity_id: str,
    session=None
) -> IdempotencyResult:
    """
    Check whether operation_id has already been applied.

    Args:
        db: MongoDB database instance
        operation_id: Optional operation ID from request (auto-generated if None)
        entity_type: PAYMENT, BATCH_POST, ...
        entity_id: ID of the entity (or scope) being mutated
        session: Optional MongoDB session for transaction

    Returns:
        IdempotencyResult; previous_response is the stored response of the
        original call when is_duplicate is True.
    """
    op_id = get_or_generate_operation_id(operation_id)

    existing = await db.mutation_operation_logs.find_one(
        {"operation_id": op_id},
        session=session
    )

    if existing and existing.get("applied_flag", False):
        logger.info(
            f"[IDEMPOTENT] Duplicate operation detected: {op_id} "
            f"for {entity_type}/{entity_id}"
        )
        return IdempotencyResult(
            operation_id=op_id,
            is_duplicate=True,
            previous_response=existing.get("response")
        )

    logger.debug(f"[IDEMPOTENT] New operation: {op_id} for {entity_type}/{entity_id}")
    return IdempotencyResult(operation_id=op_id, is_duplicate=False)


async def record_operation(
    db: AsyncIOMotorDatabase,
    operation_id: str,
    entity_type: str,
    entity_id: str,
    response: Optional[Dict[str, Any]] = None,
    session=None
) -> None:
    """Mark operation_id as applied and keep its response for replays."""
    await db.mutation_operation_logs.update_one(
        {"operation_id": operation_id},
        {
            "$set": {
                "operation_id": operation_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "applied_flag": True,
                "response": response,
                "created_at": datetime.utcnow()
            }
        },
        upsert=True,
        session=session
    )

    logger.info(
        f"[IDEMPOTENT] Recorded operation: {operation_id} "
        f"for {entity_type}/{entity_id}"
    )


async def create_idempotency_indexes(db: AsyncIOMotorDatabase) -> None:
    await db.mutation_operation_logs.create_index(
        [("operation_id", 1)],
        unique=True,
        name="unique_operation_id"
    )
