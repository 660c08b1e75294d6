"""
Document request validation and stored-document construction.

Shared by the plain write path (document_ledger) and the linked-receipt
path (payment_reconciliation), so both build identical documents.
"""

from datetime import datetime
from typing import List
import re

from ledger.core.collections import (
    DOCUMENT_TYPE_INVOICE,
    DOCUMENT_TYPE_INVOICE_RECEIPT,
    DOCUMENT_TYPE_RECEIPT,
    parse_document_number,
    validate_document_type,
)
from ledger.core.date_utils import format_issue_date
from ledger.core.errors import ValidationError
from ledger.core.financial_precision import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_UNPAID,
    FinancialPrecisionError,
    is_number,
    to_float,
    validate_positive,
)
from ledger.models import (
    MAX_INVOICES_PER_RECEIPT,
    DocumentRequest,
    LedgerDocument,
    linkage_fields,
)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

PAYMENT_METHOD_REQUIRED = (DOCUMENT_TYPE_RECEIPT, DOCUMENT_TYPE_INVOICE_RECEIPT)


def normalize_currency(currency: str, default_currency: str = "ILS") -> str:
    code = (currency or default_currency).strip().upper()
    if not CURRENCY_PATTERN.match(code):
        raise ValidationError(f"Invalid currency code: {currency!r}")
    return code


def validate_linkage_numbers(invoice_numbers: List[str]) -> None:
    """1..10 distinct, well-formed invoice numbers"""
    if not invoice_numbers:
        raise ValidationError("Select at least one invoice")
    if len(invoice_numbers) > MAX_INVOICES_PER_RECEIPT:
        raise ValidationError(
            f"Cannot select more than {MAX_INVOICES_PER_RECEIPT} invoices",
            details={"selected": len(invoice_numbers)}
        )
    if len(set(invoice_numbers)) != len(invoice_numbers):
        raise ValidationError("Duplicate invoice numbers in selection")
    for number in invoice_numbers:
        document_type, _, _ = parse_document_number(number)
        if document_type != DOCUMENT_TYPE_INVOICE:
            raise ValidationError(f"Document {number} is not an invoice (type: {document_type})")


def validate_request(request: DocumentRequest, default_currency: str = "ILS") -> DocumentRequest:
    """
    Reject an incomplete or inconsistent request before anything is written.
    Returns the request with its currency normalized.
    """
    validate_document_type(request.document_type)

    missing = [
        field for field in ("customer_name", "description", "amount", "issue_date")
        if getattr(request, field) in (None, "")
    ]
    if missing:
        raise ValidationError(
            f"Document request is missing required fields: {', '.join(missing)}",
            details={"missing": missing}
        )

    if not is_number(request.amount):
        raise ValidationError(f"Amount is not a number: {request.amount!r}")
    try:
        validate_positive(request.amount, "amount")
    except FinancialPrecisionError as e:
        raise ValidationError(str(e))

    if request.document_type in PAYMENT_METHOD_REQUIRED and not request.payment_method:
        raise ValidationError(f"Payment method is required for {request.document_type}")

    if request.linkage is not None:
        if request.document_type != DOCUMENT_TYPE_RECEIPT:
            raise ValidationError("Only receipts can be linked to invoices")
        validate_linkage_numbers(request.linkage.invoice_numbers)

    currency = normalize_currency(request.currency, default_currency)
    return request.model_copy(update={"currency": currency})


def build_document(request: DocumentRequest, document_number: str, now: datetime) -> LedgerDocument:
    """
    Stored form of a validated request.

    Invoices start unpaid with the whole amount outstanding; receipts and
    invoice-receipts are paid in full when issued.
    """
    _, year, _ = parse_document_number(document_number)
    amount = to_float(request.amount)

    if request.document_type == DOCUMENT_TYPE_INVOICE:
        payment = {
            "payment_status": PAYMENT_STATUS_UNPAID,
            "paid_amount": 0.0,
            "remaining_balance": amount,
            "related_receipt_ids": [],
        }
    else:
        payment = {
            "payment_status": PAYMENT_STATUS_PAID,
            "paid_amount": amount,
            "remaining_balance": 0.0,
        }

    return LedgerDocument(
        customer_id=request.customer_id,
        document_number=document_number,
        document_type=request.document_type,
        customer_name=request.customer_name,
        customer_tax_id=request.customer_tax_id,
        description=request.description,
        amount=amount,
        currency=request.currency,
        payment_method=request.payment_method,
        issue_date=format_issue_date(request.issue_date),
        generated_at=now,
        generated_by=request.generated_by,
        storage_path=f"{request.customer_id}/{year}/{document_number}.pdf",
        storage_url=request.storage_url,
        **linkage_fields(request.linkage),
        **payment
    )
