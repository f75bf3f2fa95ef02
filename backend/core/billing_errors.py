"""
Billing error taxonomy.

Every engine in core/ raises one of these; routers translate them to HTTP.
Partial batch failure is not an exception (see batch_lifecycle.PostResult).
"""

from contextlib import contextmanager
from typing import Any, Dict, Optional
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing errors reported synchronously to the caller."""

    code = "BILLING_ERROR"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class BillingValidationError(BillingError):
    """Input or invariant violation. No retry, nothing committed."""
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidStateError(BillingError):
    """Operation not allowed in the entity's current state. Re-fetch before retrying."""
    code = "INVALID_STATE"
    http_status = 409


class OverAllocationError(BillingError):
    """FIFO payment larger than the total outstanding balance."""
    code = "OVER_ALLOCATION"
    http_status = 400


class ConcurrencyConflictError(BillingError):
    """Lost an optimistic-lock race. Caller re-reads and retries the whole operation."""
    code = "CONCURRENCY_CONFLICT"
    http_status = 409


class EntityNotFoundError(BillingError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )


class PermissionDeniedError(BillingError):
    """Caller's token does not grant access to the company."""
    code = "FORBIDDEN"
    http_status = 403


def to_http_exception(error: BillingError) -> HTTPException:
    return HTTPException(status_code=error.http_status, detail=error.to_detail())


@contextmanager
def http_errors(action: str):
    """
    Router guard: BillingError -> its HTTP status, anything unexpected -> 500.
    """
    try:
        yield
    except BillingError as e:
        logger.info(f"{action} rejected: {e.code} {e.message}")
        raise to_http_exception(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"{action} failed: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Transaction failed"
        )
