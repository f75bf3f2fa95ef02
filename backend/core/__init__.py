"""
Billing core: batch lifecycle, draft invoice editor, sequence invariants,
payment allocation and the storage services built on them.
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_multiply,
    safe_subtract,
    safe_add,
    calculate_percentage,
    calculate_line_amount,
    FinancialPrecisionError,
    NegativeValueError
)

from .billing_errors import (
    BillingError,
    BillingValidationError,
    InvalidStateError,
    OverAllocationError,
    ConcurrencyConflictError,
    EntityNotFoundError,
    PermissionDeniedError
)

from .state_machine import (
    BatchStatus,
    InvalidTransitionError,
    StateMachine,
    batch_state_machine
)

from .atomic_numbering import (
    AtomicDocumentNumbering,
    financial_year_for
)

from .batch_lifecycle import BatchLifecycleManager
from .clause_service import ClauseService
from .invoice_service import InvoiceService
from .payment_service import PaymentService

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_multiply',
    'safe_subtract',
    'safe_add',
    'calculate_percentage',
    'calculate_line_amount',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'BillingError',
    'BillingValidationError',
    'InvalidStateError',
    'OverAllocationError',
    'ConcurrencyConflictError',
    'EntityNotFoundError',
    'PermissionDeniedError',
    # State Machine
    'BatchStatus',
    'InvalidTransitionError',
    'StateMachine',
    'batch_state_machine',
    # Atomic Numbering
    'AtomicDocumentNumbering',
    'financial_year_for',
    # Services
    'BatchLifecycleManager',
    'ClauseService',
    'InvoiceService',
    'PaymentService',
]
