"""
Ledger wiring.

One AsyncIOMotorClient per process; every component receives the same
store explicitly.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient

from ledger.config import LedgerSettings, load_settings
from ledger.core.atomic_numbering import SequenceAllocator
from ledger.core.document_ledger import DocumentLedger
from ledger.core.errors import ValidationError
from ledger.core.invariant_validator import FinancialInvariantValidator
from ledger.core.payment_reconciliation import PaymentReconciliationEngine
from ledger.core.report_data_fetcher import ReportDataFetcher
from ledger.core.store import DocumentStore, MotorDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    store: DocumentStore
    allocator: SequenceAllocator
    reconciliation: PaymentReconciliationEngine
    documents: DocumentLedger
    reports: ReportDataFetcher
    invariant_validator: FinancialInvariantValidator
    client: Optional[AsyncIOMotorClient] = None

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def build_components(store: DocumentStore, settings: LedgerSettings, client=None) -> Ledger:
    """Assemble every component around one store"""
    allocator = SequenceAllocator(
        store,
        max_retries=settings.max_transaction_retries,
        retry_delay_ms=settings.retry_delay_ms
    )
    reconciliation = PaymentReconciliationEngine(
        store,
        allocator,
        max_retries=settings.max_transaction_retries,
        retry_delay_ms=settings.retry_delay_ms,
        default_currency=settings.default_currency
    )
    documents = DocumentLedger(
        store,
        allocator,
        reconciliation,
        max_retries=settings.max_transaction_retries,
        retry_delay_ms=settings.retry_delay_ms,
        default_currency=settings.default_currency,
        open_invoices_limit=settings.open_invoices_limit
    )
    return Ledger(
        store=store,
        allocator=allocator,
        reconciliation=reconciliation,
        documents=documents,
        reports=ReportDataFetcher(store, settings.default_currency),
        invariant_validator=reconciliation.invariant_validator,
        client=client
    )


def build_ledger(settings: Optional[LedgerSettings] = None) -> Ledger:
    """
    Connect to MongoDB and build the ledger.
    MONGO_URL and DB_NAME must be configured.
    """
    settings = settings or load_settings()
    if not settings.mongo_url or not settings.db_name:
        raise ValidationError("MONGO_URL and DB_NAME must be set")

    client = AsyncIOMotorClient(settings.mongo_url)
    store = MotorDocumentStore(client, client[settings.db_name])
    logger.info(f"Ledger connected to database {settings.db_name}")
    return build_components(store, settings, client=client)
