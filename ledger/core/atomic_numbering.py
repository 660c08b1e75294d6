"""
LEDGER CORE - ATOMIC DOCUMENT NUMBERING

Provides:
1. Per (customer, year) counter document holding one counter per type
2. Read-increment-write inside ONE store transaction
3. Abort-and-retry on write conflict (never two callers with one value)
4. Yearly reset by key, never by rewriting an old counter

A number handed out is consumed even if the document write that follows
it fails: gaps are acceptable, duplicates are not.
"""

from datetime import datetime
from typing import Callable, Dict, Any, Optional
import logging

from ledger.core.collections import (
    COUNTERS_COLLECTION,
    DOCUMENT_TYPES,
    DOCUMENT_TYPE_INVOICE,
    counter_id,
    format_document_number,
    validate_document_type,
)
from ledger.core.date_utils import utcnow
from ledger.core.errors import ConflictError, ValidationError
from ledger.core.store import DocumentStore, StoreTransaction
from ledger.core.transactions import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_MS,
    Result,
    with_transaction,
)

logger = logging.getLogger(__name__)


def new_counter_document(customer_id: str, year: int, now: datetime) -> Dict[str, Any]:
    """Fresh counter: every document type starts at 0"""
    counter = {"customer_id": customer_id, "year": year, "created_at": now}
    for document_type in DOCUMENT_TYPES:
        counter[document_type] = {"counter": 0, "last_updated": now}
    return counter


class SequenceAllocator:
    """
    Issues the next document number for (customer, year, document type).

    The counter increment is a read-modify-write of a single document inside
    a store transaction; the store aborts one of two racing increments and
    with_transaction re-runs it against the committed value.
    """

    def __init__(
        self,
        store: DocumentStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.clock = clock

    async def next_number(
        self,
        customer_id: str,
        document_type: str,
        clock_year: Optional[int] = None
    ) -> Result[str]:
        """
        Allocate the next document number, e.g. "I-2026-7".

        Returns a Result carrying ConflictError if the counter could not be
        committed within the retry budget; no number is consumed then.
        """
        try:
            validate_document_type(document_type)
        except ValidationError as e:
            return Result.failure(e)

        year = clock_year or self.clock().year
        doc_id = counter_id(customer_id, year)

        async def _increment(txn: StoreTransaction) -> int:
            counter = await txn.get(COUNTERS_COLLECTION, doc_id)
            now = self.clock()

            if counter is None:
                # First document of the year for this customer
                counter = new_counter_document(customer_id, year, now)
                logger.info(f"[NUMBERING] Creating counter {doc_id}")

            current = counter.get(document_type, {}).get("counter", 0)
            sequence = current + 1
            counter[document_type] = {"counter": sequence, "last_updated": now}

            await txn.set(COUNTERS_COLLECTION, doc_id, counter)
            logger.debug(f"[NUMBERING] {doc_id} {document_type}: {current} -> {sequence}")
            return sequence

        result = await with_transaction(
            self.store,
            _increment,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"counter {doc_id}/{document_type}"
        )
        if not result.ok:
            return Result.failure(result.error)

        document_number = format_document_number(document_type, year, result.value)
        logger.info(f"[NUMBERING] Generated document number: {document_number} for customer {customer_id}")
        return Result.success(document_number)

    async def current_counter(
        self,
        customer_id: str,
        document_type: str = DOCUMENT_TYPE_INVOICE,
        year: Optional[int] = None
    ) -> int:
        """Last issued sequence for a type (0 when nothing was issued)"""
        validate_document_type(document_type)
        year = year or self.clock().year
        counter = await self.store.get(COUNTERS_COLLECTION, counter_id(customer_id, year))
        if not counter:
            return 0
        return counter.get(document_type, {}).get("counter", 0)

    async def initialize_counter(
        self,
        customer_id: str,
        starting_number: int,
        year: Optional[int] = None
    ) -> Result[int]:
        """
        Seed the invoice counter for a business that already issued
        invoices elsewhere; the next invoice gets starting_number + 1.

        Refuses to touch an existing counter to prevent number collisions.
        """
        if isinstance(starting_number, bool) or not isinstance(starting_number, int) or starting_number < 0:
            return Result.failure(ValidationError(
                f"Starting number must be a non-negative integer: {starting_number!r}"
            ))

        year = year or self.clock().year
        doc_id = counter_id(customer_id, year)

        async def _initialize(txn: StoreTransaction) -> int:
            existing = await txn.get(COUNTERS_COLLECTION, doc_id)
            if existing is not None:
                current = existing.get(DOCUMENT_TYPE_INVOICE, {}).get("counter", 0)
                raise ConflictError(
                    f"Counter already exists for customer {customer_id} in year {year} "
                    f"(current value: {current})",
                    reason="counter_exists",
                    details={"customer_id": customer_id, "year": year, "current": current}
                )

            counter = new_counter_document(customer_id, year, self.clock())
            counter[DOCUMENT_TYPE_INVOICE]["counter"] = starting_number
            await txn.set(COUNTERS_COLLECTION, doc_id, counter)
            return starting_number

        result = await with_transaction(
            self.store,
            _initialize,
            max_retries=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            label=f"initialize counter {doc_id}"
        )
        if result.ok:
            logger.info(f"[NUMBERING] Counter initialized: {doc_id} starting at {starting_number}")
        return result
