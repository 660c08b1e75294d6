"""
Ledger Core Engine Modules
"""
from .errors import (
    LedgerError,
    ValidationError,
    NotFoundError,
    ConflictError,
    WriteConflictError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_divide,
    safe_subtract,
    safe_add,
    within_tolerance,
    derive_payment_status,
    FinancialPrecisionError,
    NegativeValueError
)

from .collections import (
    format_document_number,
    parse_document_number,
    document_id,
    counter_id
)

from .store import (
    DocumentStore,
    StoreTransaction,
    MotorDocumentStore
)

from .transactions import (
    Result,
    with_transaction
)

from .invariant_validator import (
    FinancialInvariantValidator,
    InvariantViolationError
)

from .atomic_numbering import SequenceAllocator

from .payment_reconciliation import (
    PaymentReconciliationEngine,
    validate_invoice_selection,
    validate_payment_amount
)

from .document_ledger import DocumentLedger

from .report_data_fetcher import ReportDataFetcher

from .metrics_calculator import (
    calculate_metrics,
    calculate_balance_metrics
)

__all__ = [
    # Errors
    'LedgerError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'WriteConflictError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'safe_divide',
    'safe_subtract',
    'safe_add',
    'within_tolerance',
    'derive_payment_status',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Document Numbers
    'format_document_number',
    'parse_document_number',
    'document_id',
    'counter_id',
    # Store
    'DocumentStore',
    'StoreTransaction',
    'MotorDocumentStore',
    'Result',
    'with_transaction',
    # Invariant Validator
    'FinancialInvariantValidator',
    'InvariantViolationError',
    # Ledger
    'SequenceAllocator',
    'PaymentReconciliationEngine',
    'validate_invoice_selection',
    'validate_payment_amount',
    'DocumentLedger',
    # Reports
    'ReportDataFetcher',
    'calculate_metrics',
    'calculate_balance_metrics',
]
