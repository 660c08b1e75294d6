"""
Report data fetcher.

Revenue comes from the three generated-document partitions, expenses from
the inbound invoices processed by the ingestion pipeline. Both are
normalized to ReportRecord so the metrics calculator treats them alike.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

from ledger.core.collections import (
    DOCUMENT_COLLECTIONS,
    DOCUMENT_TYPE_INVOICE,
    DOCUMENT_TYPE_INVOICE_RECEIPT,
    DOCUMENT_TYPE_RECEIPT,
    INBOUND_INVOICES_COLLECTION,
)
from ledger.core.date_utils import day_window, format_date, parse_issue_date
from ledger.core.errors import ValidationError
from ledger.core.financial_precision import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_UNPAID,
    is_number,
)
from ledger.core.store import DocumentStore
from ledger.models import DateRange, ReportRecord

logger = logging.getLogger(__name__)

INBOUND_STATUS_PROCESSED = "processed"
PAYMENT_STATUSES = (PAYMENT_STATUS_UNPAID, PAYMENT_STATUS_PARTIAL, PAYMENT_STATUS_PAID)


def _record_date(value: Any) -> str:
    """YYYY-MM-DD from a datetime, a date or an ISO string"""
    if isinstance(value, (datetime, date)):
        return format_date(value)
    return str(value or "")[:10]


def revenue_record(doc: Dict[str, Any], default_currency: str = "ILS") -> Optional[ReportRecord]:
    """
    Normalize a generated document; None when it lacks a name or an amount,
    or carries a document type or payment status the ledger does not know.

    Receipts and invoice-receipts are always reported fully paid.
    """
    if not doc.get("customer_name") or not is_number(doc.get("amount")):
        return None

    document_type = doc.get("document_type") or DOCUMENT_TYPE_INVOICE
    if document_type not in DOCUMENT_COLLECTIONS:
        return None
    amount = doc["amount"]

    if document_type == DOCUMENT_TYPE_INVOICE:
        payment_status = doc.get("payment_status") or PAYMENT_STATUS_UNPAID
        if payment_status not in PAYMENT_STATUSES:
            return None
        payment = {
            "payment_status": payment_status,
            "paid_amount": doc.get("paid_amount"),
            "remaining_balance": doc.get("remaining_balance"),
        }
    else:
        payment = {
            "payment_status": PAYMENT_STATUS_PAID,
            "paid_amount": amount,
            "remaining_balance": 0.0,
        }

    related_number = None
    related_numbers = None
    if document_type == DOCUMENT_TYPE_RECEIPT:
        related_number = doc.get("related_invoice_number") or None
        related_numbers = doc.get("related_invoice_numbers") or None

    return ReportRecord(
        number=doc.get("document_number", ""),
        date=parse_issue_date(doc.get("issue_date") or "") or _record_date(doc.get("generated_at")),
        customer_name=doc["customer_name"],
        amount=amount,
        currency=doc.get("currency") or default_currency,
        payment_method=doc.get("payment_method") or "Unknown",
        category=doc.get("description") or None,
        storage_url=doc.get("storage_url") or "",
        document_type=document_type,
        related_invoice_number=related_number,
        related_invoice_numbers=related_numbers,
        is_linked_receipt=bool(related_number or related_numbers),
        **payment
    )


def expense_record(doc: Dict[str, Any], default_currency: str = "ILS") -> Optional[ReportRecord]:
    """Normalize an inbound invoice; expenses are reported as paid invoice-receipts"""
    if not doc.get("vendor_name") or not is_number(doc.get("total_amount")):
        return None

    amount = doc["total_amount"]
    return ReportRecord(
        number=str(doc.get("invoice_number") or ""),
        date=doc.get("invoice_date") or _record_date(doc.get("received_at")),
        customer_name=doc["vendor_name"],
        amount=amount,
        currency=doc.get("currency") or default_currency,
        payment_method="Unknown",
        category=doc.get("category") or None,
        storage_url=doc.get("drive_link") or "",
        document_type=DOCUMENT_TYPE_INVOICE_RECEIPT,
        payment_status=PAYMENT_STATUS_PAID,
        paid_amount=amount,
        remaining_balance=0.0,
        is_linked_receipt=False
    )


class ReportDataFetcher:
    """Reads one customer's documents for a date range"""

    def __init__(self, store: DocumentStore, default_currency: str = "ILS"):
        self.store = store
        self.default_currency = default_currency

    async def fetch_for_range(self, customer_id: str, date_range: DateRange, kind: str) -> List[ReportRecord]:
        start, end = day_window(date_range)
        logger.info(f"[REPORT] Fetching {kind} for customer {customer_id}: {date_range.start} to {date_range.end}")

        if kind == "revenue":
            records = await self._fetch_revenue(customer_id, start, end)
        elif kind == "expenses":
            records = await self._fetch_expenses(customer_id, start, end)
        else:
            raise ValidationError(f"Unknown report kind: {kind}")

        logger.info(f"[REPORT] Found {len(records)} {kind} records for customer {customer_id}")
        return records

    async def _fetch_revenue(self, customer_id: str, start: datetime, end: datetime) -> List[ReportRecord]:
        records = []
        for collection in DOCUMENT_COLLECTIONS.values():
            docs = await self.store.find(
                collection,
                [
                    ("customer_id", "==", customer_id),
                    ("generated_at", ">=", start),
                    ("generated_at", "<=", end),
                ]
            )
            for doc in docs:
                record = revenue_record(doc, self.default_currency)
                if record is None:
                    logger.debug(f"[REPORT] Skipping incomplete or unrecognized document {doc.get('document_number')}")
                    continue
                records.append(record)
        return records

    async def _fetch_expenses(self, customer_id: str, start: datetime, end: datetime) -> List[ReportRecord]:
        docs = await self.store.find(
            INBOUND_INVOICES_COLLECTION,
            [
                ("customer_id", "==", customer_id),
                ("status", "==", INBOUND_STATUS_PROCESSED),
                ("created_at", ">=", start),
                ("created_at", "<=", end),
            ]
        )
        records = []
        for doc in docs:
            record = expense_record(doc, self.default_currency)
            if record is not None:
                records.append(record)
        return records

    async def earliest_document_date(self, customer_id: str, report_type: str) -> Optional[str]:
        """
        Earliest date (YYYY-MM-DD) a report of this type can start from,
        None when the customer has nothing to report.
        """
        if report_type == "balance":
            dates = [
                d for d in (
                    await self.earliest_document_date(customer_id, "revenue"),
                    await self.earliest_document_date(customer_id, "expenses"),
                ) if d
            ]
            return min(dates) if dates else None

        if report_type == "revenue":
            earliest = []
            for collection in DOCUMENT_COLLECTIONS.values():
                docs = await self.store.find(
                    collection,
                    [("customer_id", "==", customer_id)],
                    order_by="generated_at",
                    limit=1
                )
                if docs:
                    earliest.append(docs[0]["generated_at"])
            if not earliest:
                logger.info(f"[REPORT] No generated documents for customer {customer_id}")
                return None
            return _record_date(min(earliest))

        if report_type == "expenses":
            docs = await self.store.find(
                INBOUND_INVOICES_COLLECTION,
                [("customer_id", "==", customer_id), ("status", "==", INBOUND_STATUS_PROCESSED)],
                order_by="created_at",
                limit=1
            )
            if not docs:
                logger.info(f"[REPORT] No expense invoices for customer {customer_id}")
                return None
            return _record_date(docs[0].get("received_at") or docs[0].get("created_at"))

        raise ValidationError(f"Unknown report type: {report_type}")
