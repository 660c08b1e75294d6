"""
Document Ledger Tests
=====================

Request validation, initial payment fields, number gaps, read path.
"""

from datetime import date

import pytest

from ledger.core.collections import COUNTERS_COLLECTION, DOCUMENT_COLLECTIONS, document_id
from ledger.core.errors import ConflictError, ValidationError
from ledger.models import MultiInvoiceLinkage, SingleInvoiceLinkage

from tests.conftest import CUSTOMER_ID
from tests.fakes import make_request


class TestCreateDocument:

    @pytest.mark.asyncio
    async def test_invoice_starts_unpaid(self, ledger, store):
        result = await ledger.create_document(make_request(amount=1500))

        assert result.ok
        invoice = result.value
        assert invoice.document_number == "I-2026-1"
        assert invoice.payment_status == "unpaid"
        assert invoice.paid_amount == 0
        assert invoice.remaining_balance == 1500
        assert invoice.related_receipt_ids == []
        assert invoice.issue_date == "15/03/2026"
        assert invoice.storage_path == f"{CUSTOMER_ID}/2026/I-2026-1.pdf"

        stored = store.peek(DOCUMENT_COLLECTIONS["invoice"], document_id(CUSTOMER_ID, "I-2026-1"))
        assert stored["remaining_balance"] == 1500
        assert stored["generated_by"]["username"] == "owner"

    @pytest.mark.asyncio
    async def test_invoice_receipt_is_paid_in_full(self, ledger):
        result = await ledger.create_document(make_request(
            document_type="invoice_receipt", amount=800, payment_method="Cash"
        ))

        doc = result.unwrap()
        assert doc.document_number == "IR-2026-1"
        assert (doc.payment_status, doc.paid_amount, doc.remaining_balance) == ("paid", 800, 0)

    @pytest.mark.asyncio
    async def test_standalone_receipt_is_paid_and_unlinked(self, ledger, store):
        result = await ledger.create_document(make_request(
            document_type="receipt", amount=200, payment_method="Bit"
        ))

        doc = result.unwrap()
        assert doc.payment_status == "paid"
        assert doc.linkage is None
        assert not doc.is_linked_receipt
        assert store.peek(DOCUMENT_COLLECTIONS["receipt"], document_id(CUSTOMER_ID, "R-2026-1")) is not None

    @pytest.mark.asyncio
    async def test_currency_is_normalized(self, ledger):
        doc = (await ledger.create_document(make_request(currency="usd"))).unwrap()
        assert doc.currency == "USD"

    @pytest.mark.asyncio
    async def test_currency_defaults_when_missing(self, ledger):
        doc = (await ledger.create_document(make_request(currency=None))).unwrap()
        assert doc.currency == "ILS"

    @pytest.mark.parametrize("overrides", [
        {"amount": 0},
        {"amount": -50},
        {"amount": None},
        {"customer_name": ""},
        {"description": None},
        {"issue_date": None},
        {"document_type": "quote"},
        {"currency": "DOLLARS"},
        {"document_type": "receipt", "payment_method": None},
        {"document_type": "invoice_receipt", "payment_method": ""},
        {"linkage": SingleInvoiceLinkage(invoice_number="I-2026-1")},
    ])
    @pytest.mark.asyncio
    async def test_invalid_request_rejected_before_numbering(self, ledger, store, overrides):
        result = await ledger.create_document(make_request(**overrides))

        assert not result.ok
        assert isinstance(result.error, ValidationError)
        assert store.documents(COUNTERS_COLLECTION) == []

    @pytest.mark.asyncio
    async def test_multi_linkage_limited_to_ten_invoices(self, ledger):
        numbers = [f"I-2026-{i}" for i in range(1, 12)]
        result = await ledger.create_document(make_request(
            document_type="receipt",
            payment_method="Cash",
            linkage=MultiInvoiceLinkage(invoice_numbers=numbers)
        ))

        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_failed_write_leaves_gap_but_never_reuses(self, ledger, store):
        """A consumed number is not handed out again after a failed write"""
        store.conflicting_collections.add(DOCUMENT_COLLECTIONS["invoice"])
        failed = await ledger.create_document(make_request())

        assert isinstance(failed.error, ConflictError)
        assert store.documents(DOCUMENT_COLLECTIONS["invoice"]) == []

        store.conflicting_collections.clear()
        created = (await ledger.create_document(make_request())).unwrap()

        assert created.document_number == "I-2026-2"

    @pytest.mark.asyncio
    async def test_existing_document_id_is_a_conflict(self, ledger, store):
        store.seed(
            DOCUMENT_COLLECTIONS["invoice"],
            document_id(CUSTOMER_ID, "I-2026-1"),
            {"document_number": "I-2026-1", "amount": 1}
        )

        result = await ledger.create_document(make_request())

        assert isinstance(result.error, ConflictError)
        assert result.error.reason == "duplicate"
        stored = store.peek(DOCUMENT_COLLECTIONS["invoice"], document_id(CUSTOMER_ID, "I-2026-1"))
        assert stored["amount"] == 1


class TestReadPath:

    @pytest.mark.asyncio
    async def test_get_document_uses_number_prefix(self, ledger, issue_invoice):
        await issue_invoice(amount=300)
        await ledger.create_document(make_request(
            document_type="invoice_receipt", amount=90, payment_method="Cash"
        ))

        invoice = await ledger.get_document(CUSTOMER_ID, "I-2026-1")
        combined = await ledger.get_document(CUSTOMER_ID, "IR-2026-1")

        assert invoice.amount == 300
        assert combined.document_type == "invoice_receipt"
        assert await ledger.get_document(CUSTOMER_ID, "R-2026-1") is None

    @pytest.mark.asyncio
    async def test_get_document_rejects_malformed_number(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.get_document(CUSTOMER_ID, "2026-1")

    @pytest.mark.asyncio
    async def test_open_invoices_newest_first(self, ledger, engine, issue_invoice):
        await issue_invoice(amount=100)
        await issue_invoice(amount=200)
        await issue_invoice(amount=300)
        await engine.settle_single_invoice(CUSTOMER_ID, "I-2026-1", "R-2026-1", 100)
        await engine.settle_single_invoice(CUSTOMER_ID, "I-2026-2", "R-2026-2", 50)

        open_invoices = await ledger.get_open_invoices(CUSTOMER_ID)

        assert [inv.invoice_number for inv in open_invoices] == ["I-2026-3", "I-2026-2"]
        assert open_invoices[1].remaining_balance == 150
        assert open_invoices[1].paid_amount == 50
        assert open_invoices[0].date == "15/03/2026"

    @pytest.mark.asyncio
    async def test_open_invoices_respects_limit(self, ledger, issue_invoice):
        for amount in (10, 20, 30):
            await issue_invoice(amount=amount)

        open_invoices = await ledger.get_open_invoices(CUSTOMER_ID, limit=2)

        assert len(open_invoices) == 2

    @pytest.mark.asyncio
    async def test_open_invoices_skip_zero_balance(self, ledger, store):
        store.seed(DOCUMENT_COLLECTIONS["invoice"], document_id(CUSTOMER_ID, "I-2026-9"), {
            "customer_id": CUSTOMER_ID,
            "document_number": "I-2026-9",
            "customer_name": "Acme Ltd",
            "amount": 100,
            "paid_amount": 100,
            "remaining_balance": 0,
            "payment_status": "partial",
            "generated_at": date(2026, 1, 1),
        })

        assert await ledger.get_open_invoices(CUSTOMER_ID) == []
