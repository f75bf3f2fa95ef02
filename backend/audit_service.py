from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)

# Financial entity types that CANNOT be deleted
FINANCIAL_ENTITY_TYPES = [
    "INVOICE",
    "PAYMENT",
    "BILLING_BATCH"
]


class AuditService:
    """Service for immutable audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    def enforce_financial_delete_guard(self, entity_type: str, action_type: str):
        """
        Invoices, payments and posted batches are never deleted; they are
        cancelled or superseded through status fields.

        Raises HTTPException if attempting to delete a financial entity.
        """
        if action_type == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Cannot DELETE {entity_type}. Financial entities are immutable. Use status flags instead."
            )

    async def log_action(
        self,
        company_id: str,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: str,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        """
        Log an action to audit trail (INSERT ONLY).

        Inside a transaction (session given) a failed insert aborts the caller;
        outside one it is logged and the main operation continues.
        """
        self.enforce_financial_delete_guard(entity_type, action_type)

        audit_entry = {
            "company_id": company_id,
            "module_name": module_name,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": datetime.utcnow()
        }

        if session is not None:
            await self.collection.insert_one(audit_entry, session=session)
        else:
            try:
                await self.collection.insert_one(audit_entry)
            except Exception as e:
                logger.error(f"Failed to create audit log: {str(e)}")
                return
        logger.info(f"Audit log created: {action_type} on {entity_type}:{entity_id} by user:{user_id}")
