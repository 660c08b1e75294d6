"""
Collection names, document ids and document-number format.

Documents are partitioned by type; the partition is always derived from the
document number prefix, so a lookup never has to search several collections.
"""

import re
from typing import Tuple, Union

from ledger.core.errors import ValidationError

DOCUMENT_TYPE_INVOICE = "invoice"
DOCUMENT_TYPE_RECEIPT = "receipt"
DOCUMENT_TYPE_INVOICE_RECEIPT = "invoice_receipt"

DOCUMENT_TYPES = (
    DOCUMENT_TYPE_INVOICE,
    DOCUMENT_TYPE_RECEIPT,
    DOCUMENT_TYPE_INVOICE_RECEIPT,
)

COUNTERS_COLLECTION = "document_counters"
INBOUND_INVOICES_COLLECTION = "inbound_invoices"

DOCUMENT_COLLECTIONS = {
    DOCUMENT_TYPE_INVOICE: "generated_invoices",
    DOCUMENT_TYPE_RECEIPT: "generated_receipts",
    DOCUMENT_TYPE_INVOICE_RECEIPT: "generated_invoice_receipts",
}

DOCUMENT_PREFIXES = {
    DOCUMENT_TYPE_INVOICE: "I",
    DOCUMENT_TYPE_RECEIPT: "R",
    DOCUMENT_TYPE_INVOICE_RECEIPT: "IR",
}

PREFIX_TO_TYPE = {prefix: doc_type for doc_type, prefix in DOCUMENT_PREFIXES.items()}

DOCUMENT_NUMBER_PATTERN = re.compile(r"^(IR|I|R)-(\d{4})-([1-9]\d*)$")


def validate_document_type(document_type: str) -> str:
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError(
            f"Invalid document type: {document_type}",
            details={"allowed": list(DOCUMENT_TYPES)}
        )
    return document_type


def collection_for_type(document_type: str) -> str:
    return DOCUMENT_COLLECTIONS[validate_document_type(document_type)]


def format_document_number(document_type: str, year: Union[int, str], counter: int) -> str:
    """
    Format: {PREFIX}-{year}-{counter}, e.g. "I-2026-1", "R-2026-5", "IR-2026-3"
    """
    prefix = DOCUMENT_PREFIXES[validate_document_type(document_type)]
    return f"{prefix}-{year}-{counter}"


def parse_document_number(document_number: str) -> Tuple[str, int, int]:
    """Split a document number into (document_type, year, sequence)"""
    match = DOCUMENT_NUMBER_PATTERN.match(document_number or "")
    if not match:
        raise ValidationError(f"Malformed document number: {document_number!r}")
    prefix, year, sequence = match.groups()
    return PREFIX_TO_TYPE[prefix], int(year), int(sequence)


def document_id(customer_id: str, document_number: str) -> str:
    return f"{customer_id}_{document_number}"


def counter_id(customer_id: str, year: Union[int, str]) -> str:
    return f"{customer_id}_{year}"
