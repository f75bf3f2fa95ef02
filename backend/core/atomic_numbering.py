"""
BILLING CORE - ATOMIC NUMBERING

Provides:
1. Invoice numbers per company and financial year (INV-2024-25-000001)
2. Generic named counters (clause sequence high-water marks)
3. Unique constraints backing both

Counters live in `document_sequences` and only ever move forward, so a number
handed out once is never handed out again, even if the document that used it
is later cancelled or deactivated.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime, date
from typing import Optional, Tuple, Union
import os
import logging

logger = logging.getLogger(__name__)

FINANCIAL_YEAR_START_MONTH = 4


def financial_year_for(value: Union[date, datetime]) -> str:
    """
    Financial year label for a date. Years start on 1 April.

    Example: 2024-05-10 -> "2024-25", 2024-02-01 -> "2023-24"
    """
    start = value.year if value.month >= FINANCIAL_YEAR_START_MONTH else value.year - 1
    return f"{start}-{str(start + 1)[-2:]}"


class AtomicDocumentNumbering:
    """
    Atomic counter generator.

    Uses findOneAndUpdate with $inc for atomic sequence generation. When called
    with a session the increment joins the caller's transaction and is rolled
    back with it.
    """

    def __init__(self, db: AsyncIOMotorDatabase, invoice_prefix: Optional[str] = None):
        self.db = db
        self.invoice_prefix = invoice_prefix or os.environ.get("INVOICE_PREFIX", "INV")

    async def get_next_sequence(
        self,
        scope_id: str,
        prefix: str,
        session=None,
        floor: int = 0
    ) -> int:
        """
        Get next atomic sequence number for (scope_id, prefix).

        `floor` seeds a brand new counter so the first value issued is floor + 1.
        Returns the NEW sequence number after increment.
        """
        if floor:
            # Seed only when the counter does not exist yet
            await self.db.document_sequences.update_one(
                {"scope_id": scope_id, "prefix": prefix},
                {
                    "$setOnInsert": {
                        "current_sequence": floor,
                        "created_at": datetime.utcnow()
                    }
                },
                upsert=True,
                session=session
            )

        result = await self.db.document_sequences.find_one_and_update(
            {
                "scope_id": scope_id,
                "prefix": prefix
            },
            {
                "$inc": {"current_sequence": 1},
                "$set": {"updated_at": datetime.utcnow()}
            },
            upsert=True,
            return_document=True,
            session=session
        )

        return result["current_sequence"]

    async def generate_invoice_number(
        self,
        company_id: str,
        invoice_date: Union[date, datetime],
        session=None
    ) -> Tuple[str, int, str]:
        """
        Next invoice number for a company.

        Returns:
            tuple: (invoice_number, sequence_number, financial_year)
        """
        financial_year = financial_year_for(invoice_date)
        counter_key = f"{self.invoice_prefix}-{financial_year}"
        sequence = await self.get_next_sequence(company_id, counter_key, session)
        invoice_number = f"{counter_key}-{sequence:06d}"

        logger.info(f"Generated invoice number: {invoice_number} (company {company_id})")
        return invoice_number, sequence, financial_year

    async def create_unique_constraints(self):
        """Create unique indexes on counters and invoice numbers."""
        await self.db.document_sequences.create_index(
            [("scope_id", 1), ("prefix", 1)],
            unique=True,
            name="unique_sequence_key"
        )
        await self.db.invoices.create_index(
            [("company_id", 1), ("invoice_number", 1)],
            unique=True,
            name="unique_invoice_number"
        )
        logger.info("Created unique numbering constraints")
