"""
LEDGER CORE - DOCUMENT LEDGER

Write path:
1. Validate the request (nothing is allocated for a rejected request)
2. Allocate the document number
3. Write the document in its own transaction; an existing id is a conflict

Linked receipts go through the reconciliation engine so the receipt and the
parent invoice update(s) commit together.

Read path derives the type partition from the document number prefix.
"""

from datetime import datetime
from typing import Callable, List, Optional
import logging

from ledger.core.atomic_numbering import SequenceAllocator
from ledger.core.collections import (
    DOCUMENT_COLLECTIONS,
    DOCUMENT_TYPE_INVOICE,
    collection_for_type,
    document_id,
    parse_document_number,
)
from ledger.core.date_utils import utcnow
from ledger.core.documents import build_document, validate_request
from ledger.core.errors import ConflictError, ValidationError
from ledger.core.financial_precision import (
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_UNPAID,
    to_decimal,
)
from ledger.core.payment_reconciliation import PaymentReconciliationEngine
from ledger.core.store import DocumentStore, StoreTransaction
from ledger.core.transactions import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_MS,
    Result,
    with_transaction,
)
from ledger.models import DocumentRequest, LedgerDocument, OpenInvoice

logger = logging.getLogger(__name__)

DEFAULT_OPEN_INVOICES_LIMIT = 20


class DocumentLedger:
    """Generated documents of every customer"""

    def __init__(
        self,
        store: DocumentStore,
        allocator: SequenceAllocator,
        reconciliation: Optional[PaymentReconciliationEngine] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        default_currency: str = "ILS",
        open_invoices_limit: int = DEFAULT_OPEN_INVOICES_LIMIT,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.allocator = allocator
        self.reconciliation = reconciliation
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.default_currency = default_currency
        self.open_invoices_limit = open_invoices_limit
        self.clock = clock

    async def create_document(self, request: DocumentRequest) -> Result[LedgerDocument]:
        """
        Issue a new invoice, receipt or invoice-receipt.

        The number is consumed once allocated: if the write below fails the
        sequence keeps a gap and the number is never handed out again.
        """
        if request.linkage is not None:
            if self.reconciliation is None:
                return Result.failure(ValidationError("Linked receipts need a reconciliation engine"))
            recorded = await self.reconciliation.record_receipt(request)
            if not recorded.ok:
                return Result.failure(recorded.error)
            return Result.success(recorded.value.receipt)

        try:
            request = validate_request(request, self.default_currency)
        except ValidationError as e:
            logger.info(f"Document request rejected for customer {request.customer_id}: {e.message}")
            return Result.failure(e)

        numbered = await self.allocator.next_number(request.customer_id, request.document_type)
        if not numbered.ok:
            return Result.failure(numbered.error)
        document_number = numbered.value

        document = build_document(request, document_number, self.clock())
        collection = collection_for_type(request.document_type)
        doc_id = document_id(request.customer_id, document_number)

        async def _write(txn: StoreTransaction) -> LedgerDocument:
            if await txn.get(collection, doc_id) is not None:
                raise ConflictError(
                    f"Document {document_number} already exists for customer {request.customer_id}",
                    reason="duplicate",
                    details={"document_number": document_number}
                )
            await txn.set(collection, doc_id, document.to_document())
            return document

        result = await with_transaction(
            self.store,
            _write,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"write {document_number}"
        )
        if result.ok:
            logger.info(
                f"Document {document_number} created for customer {request.customer_id} "
                f"({document.amount} {document.currency})"
            )
        else:
            logger.warning(f"Document {document_number} not written, number left unused")
        return result

    async def get_document(self, customer_id: str, document_number: str) -> Optional[LedgerDocument]:
        document_type, _, _ = parse_document_number(document_number)
        doc = await self.store.get(
            collection_for_type(document_type),
            document_id(customer_id, document_number)
        )
        return LedgerDocument.from_document(doc) if doc else None

    async def get_open_invoices(self, customer_id: str, limit: Optional[int] = None) -> List[OpenInvoice]:
        """
        Unpaid and partially paid invoices, newest first.
        Remaining balance is re-checked on every returned invoice.
        """
        docs = await self.store.find(
            DOCUMENT_COLLECTIONS[DOCUMENT_TYPE_INVOICE],
            [
                ("customer_id", "==", customer_id),
                ("payment_status", "in", [PAYMENT_STATUS_UNPAID, PAYMENT_STATUS_PARTIAL]),
            ],
            order_by="generated_at",
            descending=True,
            limit=limit or self.open_invoices_limit
        )

        open_invoices = []
        for doc in docs:
            remaining = doc.get("remaining_balance")
            if remaining is None or to_decimal(remaining) <= 0:
                continue
            open_invoices.append(OpenInvoice(
                invoice_number=doc["document_number"],
                customer_name=doc.get("customer_name") or "Unknown",
                amount=doc.get("amount") or 0,
                paid_amount=doc.get("paid_amount") or 0,
                remaining_balance=remaining,
                currency=doc.get("currency") or self.default_currency,
                date=doc.get("issue_date") or ""
            ))

        logger.info(f"Found {len(open_invoices)} open invoices for customer {customer_id}")
        return open_invoices
