"""
Sequence allocation tests: uniqueness under concurrency, per-type and
per-year independence, counter seeding.
"""

import asyncio
from datetime import datetime

import pytest

from ledger.core.atomic_numbering import SequenceAllocator
from ledger.core.collections import (
    COUNTERS_COLLECTION,
    counter_id,
    format_document_number,
    parse_document_number,
)
from ledger.core.errors import ConflictError, ValidationError

from tests.conftest import CUSTOMER_ID


class TestDocumentNumberFormat:

    def test_format_uses_type_prefix(self):
        assert format_document_number("invoice", 2026, 1) == "I-2026-1"
        assert format_document_number("receipt", 2026, 5) == "R-2026-5"
        assert format_document_number("invoice_receipt", 2026, 3) == "IR-2026-3"

    def test_parse_returns_type_year_sequence(self):
        assert parse_document_number("IR-2025-12") == ("invoice_receipt", 2025, 12)
        assert parse_document_number("I-2026-7") == ("invoice", 2026, 7)

    @pytest.mark.parametrize("number", ["X-2026-1", "I-26-1", "I-2026-0", "I-2026-", "", None])
    def test_parse_rejects_malformed(self, number):
        with pytest.raises(ValidationError):
            parse_document_number(number)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            format_document_number("credit_note", 2026, 1)


class TestNextNumber:

    @pytest.mark.asyncio
    async def test_first_number_is_one(self, allocator, store):
        result = await allocator.next_number(CUSTOMER_ID, "invoice")

        assert result.ok
        assert result.value == "I-2026-1"
        counter = store.peek(COUNTERS_COLLECTION, counter_id(CUSTOMER_ID, 2026))
        assert counter["invoice"]["counter"] == 1
        assert counter["receipt"]["counter"] == 0
        assert counter["invoice_receipt"]["counter"] == 0

    @pytest.mark.asyncio
    async def test_sequential_numbers_increase_by_one(self, allocator):
        numbers = [(await allocator.next_number(CUSTOMER_ID, "invoice")).unwrap() for _ in range(3)]
        assert numbers == ["I-2026-1", "I-2026-2", "I-2026-3"]

    @pytest.mark.asyncio
    async def test_types_are_independent(self, allocator):
        await allocator.next_number(CUSTOMER_ID, "invoice")
        await allocator.next_number(CUSTOMER_ID, "invoice")

        receipt = await allocator.next_number(CUSTOMER_ID, "receipt")
        combined = await allocator.next_number(CUSTOMER_ID, "invoice_receipt")

        assert receipt.value == "R-2026-1"
        assert combined.value == "IR-2026-1"

    @pytest.mark.asyncio
    async def test_customers_are_independent(self, allocator):
        await allocator.next_number(CUSTOMER_ID, "invoice")
        other = await allocator.next_number("cust-2", "invoice")
        assert other.value == "I-2026-1"

    @pytest.mark.asyncio
    async def test_new_year_starts_new_counter(self, allocator, store):
        await allocator.next_number(CUSTOMER_ID, "invoice", clock_year=2025)
        await allocator.next_number(CUSTOMER_ID, "invoice", clock_year=2025)

        result = await allocator.next_number(CUSTOMER_ID, "invoice", clock_year=2026)

        assert result.value == "I-2026-1"
        old = store.peek(COUNTERS_COLLECTION, counter_id(CUSTOMER_ID, 2025))
        assert old["invoice"]["counter"] == 2

    @pytest.mark.asyncio
    async def test_invalid_type_returns_validation_error(self, allocator, store):
        result = await allocator.next_number(CUSTOMER_ID, "quote")

        assert not result.ok
        assert isinstance(result.error, ValidationError)
        assert store.documents(COUNTERS_COLLECTION) == []

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_unique_and_gapless(self, allocator, store):
        """N concurrent requests yield exactly {1..N}"""
        n = 10
        results = await asyncio.gather(*[
            allocator.next_number(CUSTOMER_ID, "invoice") for _ in range(n)
        ])

        assert all(r.ok for r in results)
        sequences = sorted(parse_document_number(r.value)[2] for r in results)
        assert sequences == list(range(1, n + 1))
        assert store.conflicts > 0
        assert await allocator.current_counter(CUSTOMER_ID, "invoice") == n

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_returns_conflict(self, store):
        allocator = SequenceAllocator(store, max_retries=2, retry_delay_ms=0)
        store.conflicting_collections.add(COUNTERS_COLLECTION)

        result = await allocator.next_number(CUSTOMER_ID, "invoice")

        assert not result.ok
        assert isinstance(result.error, ConflictError)
        assert result.error.reason == "commit_failed"
        assert result.error.details["attempts"] == 3
        assert store.documents(COUNTERS_COLLECTION) == []


class TestCounterSeeding:

    @pytest.mark.asyncio
    async def test_current_counter_is_zero_without_counter(self, allocator):
        assert await allocator.current_counter(CUSTOMER_ID) == 0

    @pytest.mark.asyncio
    async def test_initialize_counter_continues_after_starting_number(self, allocator):
        seeded = await allocator.initialize_counter(CUSTOMER_ID, 41)
        assert seeded.value == 41

        result = await allocator.next_number(CUSTOMER_ID, "invoice")
        assert result.value == "I-2026-42"

    @pytest.mark.asyncio
    async def test_initialize_counter_refuses_existing_counter(self, allocator):
        await allocator.next_number(CUSTOMER_ID, "invoice")

        result = await allocator.initialize_counter(CUSTOMER_ID, 100)

        assert not result.ok
        assert isinstance(result.error, ConflictError)
        assert result.error.reason == "counter_exists"
        assert await allocator.current_counter(CUSTOMER_ID) == 1

    @pytest.mark.asyncio
    async def test_initialize_counter_rejects_negative(self, allocator):
        result = await allocator.initialize_counter(CUSTOMER_ID, -1)
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_counter_records_last_updated(self, store):
        now = datetime(2026, 6, 1, 12, 0)
        allocator = SequenceAllocator(store, retry_delay_ms=0, clock=lambda: now)

        await allocator.next_number(CUSTOMER_ID, "receipt")

        counter = store.peek(COUNTERS_COLLECTION, counter_id(CUSTOMER_ID, 2026))
        assert counter["receipt"] == {"counter": 1, "last_updated": now}
