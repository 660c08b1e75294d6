"""
LEDGER CORE - PAYMENT RECONCILIATION ENGINE

Implements:
1. Single-invoice settlement (partial or full payment)
2. Multi-invoice settlement (every selected invoice paid in full, all or none)
3. Selection / payment-amount validation for callers building a receipt
4. Linked receipt recording: receipt write + parent invoice settlement
   committed in ONE transaction

ALL balance mutations run inside with_transaction and are re-run from a
fresh read on write conflict.
ALL invoice states pass the invariant validator before they are written.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import logging

from ledger.core.atomic_numbering import SequenceAllocator
from ledger.core.collections import (
    DOCUMENT_COLLECTIONS,
    DOCUMENT_TYPE_INVOICE,
    DOCUMENT_TYPE_RECEIPT,
    collection_for_type,
    document_id,
    parse_document_number,
)
from ledger.core.date_utils import utcnow
from ledger.core.documents import build_document, validate_linkage_numbers, validate_request
from ledger.core.errors import ConflictError, LedgerError, NotFoundError, ValidationError
from ledger.core.financial_precision import (
    BALANCE_TOLERANCE,
    derive_payment_status,
    is_number,
    round_financial,
    safe_add,
    safe_subtract,
    to_decimal,
    to_float,
    within_tolerance,
)
from ledger.core.invariant_validator import FinancialInvariantValidator
from ledger.core.store import DocumentStore, StoreTransaction
from ledger.core.transactions import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_MS,
    Result,
    with_transaction,
)
from ledger.models import (
    MAX_INVOICES_PER_RECEIPT,
    DocumentRequest,
    InvoicePaymentUpdate,
    LedgerDocument,
    MultiInvoiceLinkage,
    OpenInvoice,
    PaymentValidation,
    ReceiptRecorded,
    SelectionSummary,
    SettlementOutcome,
)

logger = logging.getLogger(__name__)

INVOICES_COLLECTION = DOCUMENT_COLLECTIONS[DOCUMENT_TYPE_INVOICE]

SelectableInvoice = Union[OpenInvoice, LedgerDocument, Dict[str, Any]]


# =========================================================================
# PAYMENT ARITHMETIC
# =========================================================================

def remaining_of(invoice: Dict[str, Any]) -> Decimal:
    """Stored remaining balance, or amount - paid when the field is absent"""
    if invoice.get("remaining_balance") is not None:
        return to_decimal(invoice["remaining_balance"])
    return safe_subtract(invoice.get("amount", 0), invoice.get("paid_amount") or 0)


def compute_payment(amount, paid, remaining, payment) -> Tuple[Decimal, Decimal, str]:
    """
    New (paid_amount, remaining_balance, payment_status) after a payment.

    Raises:
        ValidationError: payment <= 0 or payment exceeds the remaining balance
        ConflictError: invoice already paid (reason "already_paid")
    """
    if not is_number(payment) or to_decimal(payment) <= Decimal('0'):
        raise ValidationError("Payment amount must be greater than 0")

    payment = to_decimal(payment)
    amount = to_decimal(amount)
    paid = to_decimal(paid)
    remaining = to_decimal(remaining)

    if remaining <= Decimal('0'):
        raise ConflictError(
            f"Invoice is already fully paid (paid: {to_float(paid)}, total: {to_float(amount)})",
            reason="already_paid"
        )

    if payment > remaining + BALANCE_TOLERANCE:
        raise ValidationError(
            f"Payment amount ({to_float(payment)}) exceeds remaining balance ({to_float(remaining)})",
            details={"payment": to_float(payment), "remaining_balance": to_float(remaining)}
        )

    new_paid = round_financial(min(safe_add(paid, payment), amount))
    new_remaining = round_financial(max(safe_subtract(remaining, payment), Decimal('0')))
    return new_paid, new_remaining, derive_payment_status(new_paid, amount)


def validate_payment_amount(payment, amount, paid=0) -> PaymentValidation:
    """
    Preview of a single-invoice payment; never raises.
    """
    remaining = safe_subtract(amount, paid)
    try:
        new_paid, new_remaining, status = compute_payment(amount, paid, remaining, payment)
    except LedgerError as e:
        current_remaining = max(remaining, Decimal('0'))
        return PaymentValidation(
            valid=False,
            error=e.message,
            new_paid_amount=to_float(paid),
            new_remaining_balance=to_float(current_remaining),
            new_payment_status=derive_payment_status(paid, amount)
        )

    return PaymentValidation(
        valid=True,
        is_partial_payment=new_remaining > Decimal('0'),
        new_paid_amount=to_float(new_paid),
        new_remaining_balance=to_float(new_remaining),
        new_payment_status=status
    )


# =========================================================================
# SELECTION RULES
# =========================================================================

def _selection_view(invoice: SelectableInvoice, default_currency: str) -> Dict[str, Any]:
    if isinstance(invoice, OpenInvoice):
        return {
            "number": invoice.invoice_number,
            "customer_name": invoice.customer_name,
            "currency": invoice.currency,
            "remaining_balance": to_decimal(invoice.remaining_balance),
        }
    if isinstance(invoice, LedgerDocument):
        invoice = invoice.to_document()
    return {
        "number": invoice.get("document_number") or invoice.get("invoice_number"),
        "customer_name": invoice.get("customer_name"),
        "currency": invoice.get("currency") or default_currency,
        "remaining_balance": remaining_of(invoice),
    }


def receipt_description(invoice_numbers: Sequence[str]) -> str:
    if len(invoice_numbers) == 1:
        return f"Payment for invoice {invoice_numbers[0]}"
    return f"Payment for invoices {', '.join(invoice_numbers)}"


def validate_invoice_selection(
    invoices: Sequence[SelectableInvoice],
    proposed_amount=None,
    default_currency: str = "ILS"
) -> SelectionSummary:
    """
    Rules for the invoices one receipt may settle:
    - 1..10 invoices, no duplicates
    - one customer name, one currency
    - every invoice still has a balance
    - proposed amount (if given) equals the total remaining balance (+/- 0.01)

    Invoices without a stored currency are taken to be in default_currency.

    Raises ValidationError naming the first broken rule.
    """
    views = [_selection_view(invoice, default_currency) for invoice in invoices]
    numbers = [view["number"] for view in views]

    if not views:
        raise ValidationError("Select at least one invoice")
    if len(views) > MAX_INVOICES_PER_RECEIPT:
        raise ValidationError(
            f"Cannot select more than {MAX_INVOICES_PER_RECEIPT} invoices",
            details={"selected": len(views)}
        )
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Duplicate invoice numbers in selection")

    customer_names = {view["customer_name"] for view in views}
    if len(customer_names) > 1:
        raise ValidationError(
            "All selected invoices must belong to the same customer",
            details={"customer_names": sorted(str(name) for name in customer_names)}
        )

    currencies = {view["currency"] for view in views}
    if len(currencies) > 1:
        raise ValidationError(
            "All selected invoices must use the same currency",
            details={"currencies": sorted(currencies)}
        )

    settled = [view["number"] for view in views if view["remaining_balance"] <= Decimal('0')]
    if settled:
        raise ValidationError(
            f"Invoices already paid: {', '.join(settled)}",
            details={"paid_invoices": settled}
        )

    total = safe_add(*[view["remaining_balance"] for view in views])
    if proposed_amount is not None:
        if not is_number(proposed_amount) or not within_tolerance(proposed_amount, total):
            raise ValidationError(
                f"Receipt amount ({proposed_amount}) must equal the total remaining balance ({to_float(total)})",
                details={"proposed_amount": proposed_amount, "total_remaining": to_float(total)}
            )

    return SelectionSummary(
        invoice_numbers=numbers,
        customer_name=views[0]["customer_name"],
        currency=views[0]["currency"],
        total_amount=to_float(total),
        description=receipt_description(numbers)
    )


# =========================================================================
# RECONCILIATION ENGINE
# =========================================================================

class PaymentReconciliationEngine:
    """
    Applies receipts to their parent invoices.

    Every public mutation returns a Result: NotFoundError / ValidationError /
    ConflictError come back as values, write conflicts are retried inside.
    """

    def __init__(
        self,
        store: DocumentStore,
        allocator: SequenceAllocator,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        default_currency: str = "ILS",
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.allocator = allocator
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.default_currency = default_currency
        self.clock = clock
        self.invariant_validator = FinancialInvariantValidator(store)

    # -------------------------------------------------------------------------
    # Transaction steps
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_invoice_number(invoice_number: str) -> None:
        document_type, _, _ = parse_document_number(invoice_number)
        if document_type != DOCUMENT_TYPE_INVOICE:
            raise ValidationError(f"Document {invoice_number} is not an invoice (type: {document_type})")

    async def _read_invoices(
        self,
        reader,
        customer_id: str,
        invoice_numbers: Sequence[str]
    ) -> List[Dict[str, Any]]:
        """Read every invoice before deciding anything; all missing ones are reported together"""
        invoices = []
        missing = []
        for number in invoice_numbers:
            self._check_invoice_number(number)
            invoice = await reader.get(INVOICES_COLLECTION, document_id(customer_id, number))
            if invoice is None:
                missing.append(number)
            else:
                invoices.append(invoice)

        if missing:
            raise NotFoundError(
                f"Invoice(s) not found: {', '.join(missing)}",
                details={"missing": missing}
            )
        return invoices

    @staticmethod
    def _carries_receipt(invoice: Dict[str, Any], receipt_number: str) -> bool:
        return receipt_number in (invoice.get("related_receipt_ids") or [])

    @staticmethod
    def _unchanged(invoice: Dict[str, Any]) -> InvoicePaymentUpdate:
        """Current state of an invoice this call leaves untouched"""
        return InvoicePaymentUpdate(
            invoice_number=invoice.get("document_number"),
            payment_applied=0.0,
            paid_amount=to_float(invoice.get("paid_amount") or 0),
            remaining_balance=to_float(remaining_of(invoice)),
            payment_status=invoice.get("payment_status")
        )

    def _replayed(self, receipt_number: str, invoices: Sequence[Dict[str, Any]]) -> SettlementOutcome:
        return SettlementOutcome(
            receipt_number=receipt_number,
            invoices=[self._unchanged(inv) for inv in invoices],
            total_applied=0.0,
            already_applied=True
        )

    def _apply_payment(
        self,
        invoice: Dict[str, Any],
        receipt_number: str,
        payment
    ) -> Tuple[Optional[Dict[str, Any]], InvoicePaymentUpdate]:
        """
        Fields to write on one invoice, validated against the balance invariant.

        An invoice already carrying receipt_number was settled by that receipt
        in an earlier commit: no fields are returned and nothing is applied.
        """
        number = invoice.get("document_number")
        if self._carries_receipt(invoice, receipt_number):
            logger.info(f"[SETTLEMENT] {number} already settled by {receipt_number}, payment not re-applied")
            return None, self._unchanged(invoice)

        remaining = remaining_of(invoice)
        try:
            new_paid, new_remaining, status = compute_payment(
                invoice.get("amount", 0),
                invoice.get("paid_amount") or 0,
                remaining,
                payment
            )
        except LedgerError as e:
            e.details.setdefault("invoice_number", number)
            raise

        receipt_ids = list(invoice.get("related_receipt_ids") or [])
        receipt_ids.append(receipt_number)

        fields = {
            "paid_amount": to_float(new_paid),
            "remaining_balance": to_float(new_remaining),
            "payment_status": status,
            "related_receipt_ids": receipt_ids,
            "updated_at": self.clock(),
        }
        self.invariant_validator.validate_invoice({**invoice, **fields})

        applied = min(to_decimal(payment), remaining)
        update = InvoicePaymentUpdate(
            invoice_number=number,
            payment_applied=to_float(applied),
            paid_amount=fields["paid_amount"],
            remaining_balance=fields["remaining_balance"],
            payment_status=status
        )
        return fields, update

    async def _settle_single(
        self,
        txn: StoreTransaction,
        customer_id: str,
        invoice_number: str,
        receipt_number: str,
        payment
    ) -> SettlementOutcome:
        [invoice] = await self._read_invoices(txn, customer_id, [invoice_number])
        fields, update = self._apply_payment(invoice, receipt_number, payment)
        if fields is None:
            return self._replayed(receipt_number, [invoice])
        await txn.update(INVOICES_COLLECTION, document_id(customer_id, invoice_number), fields)

        logger.info(
            f"[SETTLEMENT] {invoice_number} <- {receipt_number}: paid {update.paid_amount}, "
            f"remaining {update.remaining_balance} ({update.payment_status})"
        )
        return SettlementOutcome(
            receipt_number=receipt_number,
            invoices=[update],
            total_applied=update.payment_applied
        )

    async def _settle_multiple(
        self,
        txn: StoreTransaction,
        customer_id: str,
        invoice_numbers: Sequence[str],
        receipt_number: str,
        expected_total=None
    ) -> SettlementOutcome:
        invoices = await self._read_invoices(txn, customer_id, invoice_numbers)

        if all(self._carries_receipt(inv, receipt_number) for inv in invoices):
            logger.info(f"[SETTLEMENT] {receipt_number} already settled {len(invoices)} invoices, nothing re-applied")
            return self._replayed(receipt_number, invoices)

        paid = [inv["document_number"] for inv in invoices if remaining_of(inv) <= Decimal('0')]
        if paid:
            raise ConflictError(
                f"Invoices already paid: {', '.join(paid)}; please re-select",
                reason="already_paid",
                details={"paid_invoices": paid}
            )

        total = safe_add(*[remaining_of(inv) for inv in invoices])
        if expected_total is not None and not within_tolerance(expected_total, total):
            raise ConflictError(
                f"Invoice balances changed: receipt amount {expected_total} no longer "
                f"matches the total remaining balance {to_float(total)}; please re-select",
                reason="balance_changed",
                details={"receipt_amount": expected_total, "total_remaining": to_float(total)}
            )

        # Compute every write before issuing any
        planned = [self._apply_payment(inv, receipt_number, remaining_of(inv)) for inv in invoices]
        for invoice, (fields, _) in zip(invoices, planned):
            if fields is None:
                continue
            await txn.update(
                INVOICES_COLLECTION,
                document_id(customer_id, invoice["document_number"]),
                fields
            )

        updates = [update for _, update in planned]
        logger.info(
            f"[SETTLEMENT] {receipt_number} settled {len(updates)} invoices: "
            f"{', '.join(u.invoice_number for u in updates)} (total {to_float(total)})"
        )
        return SettlementOutcome(
            receipt_number=receipt_number,
            invoices=updates,
            total_applied=to_float(total)
        )

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def settle_single_invoice(
        self,
        customer_id: str,
        invoice_number: str,
        receipt_number: str,
        payment_amount
    ) -> Result[SettlementOutcome]:
        """Apply one payment to one invoice."""
        async def _apply(txn: StoreTransaction) -> SettlementOutcome:
            return await self._settle_single(txn, customer_id, invoice_number, receipt_number, payment_amount)

        return await with_transaction(
            self.store,
            _apply,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"settle {invoice_number}"
        )

    async def settle_multiple_invoices(
        self,
        customer_id: str,
        invoice_numbers: List[str],
        receipt_number: str
    ) -> Result[SettlementOutcome]:
        """
        Pay every listed invoice in full with one receipt.

        An invoice found already paid yields ConflictError(reason="already_paid")
        and none of the invoices change.
        """
        try:
            validate_linkage_numbers(invoice_numbers)
        except ValidationError as e:
            return Result.failure(e)

        async def _apply(txn: StoreTransaction) -> SettlementOutcome:
            return await self._settle_multiple(txn, customer_id, invoice_numbers, receipt_number)

        return await with_transaction(
            self.store,
            _apply,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"settle {len(invoice_numbers)} invoices for {receipt_number}"
        )

    async def _prepare_receipt(self, request: DocumentRequest) -> DocumentRequest:
        """
        Check the linkage against the current invoices and fill the fields a
        linked receipt inherits from them (customer, currency, description).
        """
        if request.document_type != DOCUMENT_TYPE_RECEIPT or request.linkage is None:
            raise ValidationError("record_receipt requires a receipt linked to invoices")

        numbers = request.linkage.invoice_numbers
        validate_linkage_numbers(numbers)
        invoices = await self._read_invoices(self.store, request.customer_id, numbers)

        amount = request.amount
        if isinstance(request.linkage, MultiInvoiceLinkage):
            summary = validate_invoice_selection(invoices, amount, self.default_currency)
            if amount is None:
                # A multi-invoice receipt defaults to the whole outstanding total
                amount = summary.total_amount
        else:
            invoice = invoices[0]
            compute_payment(
                invoice.get("amount", 0),
                invoice.get("paid_amount") or 0,
                remaining_of(invoice),
                amount
            )
            summary = validate_invoice_selection(invoices, default_currency=self.default_currency)

        if request.currency and request.currency.upper() != summary.currency:
            raise ValidationError(
                f"Receipt currency {request.currency} does not match invoice currency {summary.currency}"
            )

        prepared = request.model_copy(update={
            "amount": amount,
            "customer_name": request.customer_name or summary.customer_name,
            "currency": summary.currency,
            "description": request.description or summary.description,
            "customer_tax_id": request.customer_tax_id or invoices[0].get("customer_tax_id"),
        })
        return validate_request(prepared, self.default_currency)

    async def record_receipt(self, request: DocumentRequest) -> Result[ReceiptRecorded]:
        """
        Issue a linked receipt and settle its parent invoice(s) atomically.

        Phase 1 validates against committed state (read-only).
        Phase 2 allocates the receipt number.
        Phase 3 re-reads the invoices in ONE transaction, re-applies every
        check, writes the receipt and the invoice updates together.
        A failed phase 3 leaves a gap in the receipt numbers, nothing else.
        """
        # PHASE 1: VALIDATION
        try:
            request = await self._prepare_receipt(request)
        except LedgerError as e:
            logger.info(f"[SETTLEMENT] Receipt rejected for customer {request.customer_id}: {e.message}")
            return Result.failure(e)

        # PHASE 2: NUMBER
        numbered = await self.allocator.next_number(request.customer_id, DOCUMENT_TYPE_RECEIPT)
        if not numbered.ok:
            return Result.failure(numbered.error)
        receipt_number = numbered.value

        receipt = build_document(request, receipt_number, self.clock())
        receipt_collection = collection_for_type(DOCUMENT_TYPE_RECEIPT)
        receipt_id = document_id(request.customer_id, receipt_number)
        linkage = request.linkage

        # PHASE 3: ATOMIC WRITE
        async def _record(txn: StoreTransaction) -> ReceiptRecorded:
            existing = await txn.get(receipt_collection, receipt_id)
            if existing is not None:
                invoices = await self._read_invoices(txn, request.customer_id, linkage.invoice_numbers)
                if not all(self._carries_receipt(inv, receipt_number) for inv in invoices):
                    raise ConflictError(f"Document {receipt_number} already exists", reason="duplicate")
                # Written by an earlier commit of this same call
                logger.info(f"[SETTLEMENT] Receipt {receipt_number} already recorded, returning stored state")
                return ReceiptRecorded(
                    receipt=LedgerDocument.from_document(existing),
                    settlement=self._replayed(receipt_number, invoices)
                )

            if isinstance(linkage, MultiInvoiceLinkage):
                settlement = await self._settle_multiple(
                    txn, request.customer_id, linkage.invoice_numbers, receipt_number,
                    expected_total=request.amount
                )
            else:
                settlement = await self._settle_single(
                    txn, request.customer_id, linkage.invoice_number, receipt_number, request.amount
                )

            await txn.set(receipt_collection, receipt_id, receipt.to_document())
            return ReceiptRecorded(receipt=receipt, settlement=settlement)

        result = await with_transaction(
            self.store,
            _record,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"record receipt {receipt_number}"
        )
        if result.ok:
            logger.info(
                f"[SETTLEMENT] Receipt {receipt_number} recorded for customer {request.customer_id} "
                f"({receipt.amount} {receipt.currency})"
            )
        else:
            logger.warning(f"[SETTLEMENT] Receipt {receipt_number} not recorded, number left unused")
        return result
