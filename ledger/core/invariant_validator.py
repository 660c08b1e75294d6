"""
LEDGER CORE - INVOICE BALANCE INVARIANT VALIDATOR

Enforces, for every invoice:
1. paid_amount + remaining_balance == amount (tolerance 0.01)
2. remaining_balance >= 0 and paid_amount >= 0
3. payment_status == derive_payment_status(paid_amount, amount)

Blocks settlement writes if violated; the ledger scan reports without raising.
"""

from decimal import Decimal
from typing import Any, Dict, List
import logging

from ledger.core.collections import DOCUMENT_COLLECTIONS, DOCUMENT_TYPE_INVOICE
from ledger.core.date_utils import utcnow
from ledger.core.errors import LedgerError
from ledger.core.financial_precision import (
    derive_payment_status,
    safe_add,
    to_decimal,
    to_float,
    within_tolerance,
)
from ledger.core.store import DocumentStore

logger = logging.getLogger(__name__)


class InvariantViolationError(LedgerError):
    """Raised when an invoice's payment fields violate the balance invariant"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        super().__init__(message, details)


class FinancialInvariantValidator:
    """
    Centralized invoice invariant enforcement.

    Used before EVERY settlement write to ensure data integrity.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def check_invoice(self, invoice: Dict[str, Any]) -> List[dict]:
        """Return every invariant violation of one invoice (empty when valid)"""
        amount = to_decimal(invoice.get("amount", 0))
        paid_amount = to_decimal(invoice.get("paid_amount", 0))
        remaining_balance = to_decimal(invoice.get("remaining_balance", 0))
        status = invoice.get("payment_status")

        violations = []

        if not within_tolerance(safe_add(paid_amount, remaining_balance), amount):
            violations.append({
                "type": "BALANCE_MISMATCH",
                "message": f"paid_amount ({to_float(paid_amount)}) + remaining_balance "
                           f"({to_float(remaining_balance)}) != amount ({to_float(amount)})",
                "paid_amount": to_float(paid_amount),
                "remaining_balance": to_float(remaining_balance),
                "amount": to_float(amount)
            })

        if remaining_balance < Decimal('0'):
            violations.append({
                "type": "NEGATIVE_BALANCE",
                "message": f"remaining_balance ({to_float(remaining_balance)}) is negative",
                "remaining_balance": to_float(remaining_balance)
            })

        if paid_amount < Decimal('0'):
            violations.append({
                "type": "NEGATIVE_PAYMENT",
                "message": f"paid_amount ({to_float(paid_amount)}) is negative",
                "paid_amount": to_float(paid_amount)
            })

        expected_status = derive_payment_status(paid_amount, amount)
        if status != expected_status:
            violations.append({
                "type": "STATUS_MISMATCH",
                "message": f"payment_status '{status}' should be '{expected_status}'",
                "payment_status": status,
                "expected_status": expected_status
            })

        return violations

    def validate_invoice(self, invoice: Dict[str, Any]) -> bool:
        """
        Raises InvariantViolationError listing ALL violations.
        Returns True if the invoice state is consistent.
        """
        violations = self.check_invoice(invoice)
        if violations:
            number = invoice.get("document_number")
            logger.error(f"[INVARIANT VIOLATION] Invoice {number}: {[v['type'] for v in violations]}")
            raise InvariantViolationError(
                violation_type="MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"],
                message=f"Financial invariant violation(s) detected on invoice {number}",
                details={"document_number": number, "violations": violations}
            )
        return True

    async def validate_customer_ledger(self, customer_id: str) -> Dict[str, Any]:
        """
        Check every invoice of a customer.

        Does NOT raise - collects all violations for reporting.
        """
        result: Dict[str, Any] = {
            "customer_id": customer_id,
            "valid": [],
            "violations": [],
            "validated_at": utcnow()
        }

        invoices = await self.store.find(
            DOCUMENT_COLLECTIONS[DOCUMENT_TYPE_INVOICE],
            [("customer_id", "==", customer_id)]
        )

        for invoice in invoices:
            number = invoice.get("document_number")
            violations = self.check_invoice(invoice)
            if violations:
                result["violations"].append({
                    "document_number": number,
                    "status": "VIOLATION",
                    "violations": violations
                })
            else:
                result["valid"].append({"document_number": number, "status": "VALID"})

        if result["violations"]:
            logger.warning(
                f"Ledger check for customer {customer_id}: "
                f"{len(result['violations'])} of {len(invoices)} invoices violate invariants"
            )
        else:
            logger.info(f"Invariants validated for customer {customer_id} ({len(invoices)} invoices)")

        return result
