"""
Fixtures for ledger tests
=========================

Every component is wired around one InMemoryDocumentStore with zero retry
delay, so retries and races run deterministically on the event loop.
"""

import pytest

from ledger.core.atomic_numbering import SequenceAllocator
from ledger.core.document_ledger import DocumentLedger
from ledger.core.payment_reconciliation import PaymentReconciliationEngine
from ledger.core.report_data_fetcher import ReportDataFetcher

from tests.fakes import InMemoryDocumentStore, TickingClock, make_request

CUSTOMER_ID = "cust-1"
MAX_RETRIES = 10


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def allocator(store, clock):
    return SequenceAllocator(store, max_retries=MAX_RETRIES, retry_delay_ms=0, clock=clock)


@pytest.fixture
def engine(store, allocator, clock):
    return PaymentReconciliationEngine(
        store, allocator, max_retries=MAX_RETRIES, retry_delay_ms=0, clock=clock
    )


@pytest.fixture
def ledger(store, allocator, engine, clock):
    return DocumentLedger(
        store, allocator, engine, max_retries=MAX_RETRIES, retry_delay_ms=0, clock=clock
    )


@pytest.fixture
def fetcher(store):
    return ReportDataFetcher(store)


@pytest.fixture
def issue_invoice(ledger):
    """Create an invoice through the ledger and return the stored document"""
    async def _issue(amount=1000, **overrides):
        result = await ledger.create_document(make_request(amount=amount, **overrides))
        return result.unwrap()
    return _issue
