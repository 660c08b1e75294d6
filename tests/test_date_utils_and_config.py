"""
Date helpers, configuration loading and wiring tests.
"""

from datetime import date, datetime
import os

import pytest

from ledger.app import build_components, build_ledger
from ledger.config import LedgerSettings, load_settings
from ledger.core.date_utils import (
    date_range_for_preset,
    day_window,
    format_issue_date,
    parse_issue_date,
)
from ledger.core.errors import ValidationError
from ledger.models import DateRange

from tests.fakes import InMemoryDocumentStore, make_request


class TestDateUtils:

    def test_issue_date_round_trip_formats(self):
        assert format_issue_date(date(2026, 1, 7)) == "07/01/2026"
        assert parse_issue_date("07/01/2026") == "2026-01-07"
        assert parse_issue_date("7/1/2026") == "2026-01-07"
        assert parse_issue_date("2026-01-07") == "2026-01-07"

    def test_day_window_covers_full_days(self):
        start, end = day_window(DateRange(start=date(2026, 3, 1), end=date(2026, 3, 1)))
        assert start == datetime(2026, 3, 1, 0, 0, 0)
        assert end == datetime(2026, 3, 1, 23, 59, 59, 999000)

    @pytest.mark.parametrize("preset, today, start, end", [
        ("this_month", date(2026, 2, 14), date(2026, 2, 1), date(2026, 2, 28)),
        ("this_month", date(2026, 12, 31), date(2026, 12, 1), date(2026, 12, 31)),
        ("last_month", date(2026, 1, 10), date(2025, 12, 1), date(2025, 12, 31)),
        ("last_month", date(2026, 3, 31), date(2026, 2, 1), date(2026, 2, 28)),
        ("ytd", date(2026, 5, 20), date(2026, 1, 1), date(2026, 5, 20)),
    ])
    def test_presets(self, preset, today, start, end):
        date_range = date_range_for_preset(preset, today=today)
        assert (date_range.start, date_range.end, date_range.preset) == (start, end, preset)

    def test_unknown_preset(self):
        with pytest.raises(ValidationError):
            date_range_for_preset("last_decade")


class TestSettings:

    def test_defaults(self, monkeypatch, tmp_path):
        for name in ("MONGO_URL", "DB_NAME", "LEDGER_MAX_TRANSACTION_RETRIES", "LEDGER_RETRY_DELAY_MS",
                     "LEDGER_DEFAULT_CURRENCY", "LEDGER_OPEN_INVOICES_LIMIT", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings(tmp_path / "missing.env")

        assert settings.mongo_url is None
        assert settings.max_transaction_retries == 5
        assert settings.retry_delay_ms == 100
        assert settings.default_currency == "ILS"
        assert settings.open_invoices_limit == 20
        assert settings.log_level == "INFO"

    def test_env_file_values(self, monkeypatch, tmp_path):
        for name in ("MONGO_URL", "DB_NAME", "LEDGER_DEFAULT_CURRENCY", "LEDGER_MAX_TRANSACTION_RETRIES"):
            monkeypatch.delenv(name, raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(
            "MONGO_URL=mongodb://localhost:27017/?replicaSet=rs0\n"
            "DB_NAME=ledger_test\n"
            "LEDGER_DEFAULT_CURRENCY=usd\n"
            "LEDGER_MAX_TRANSACTION_RETRIES=8\n"
        )

        settings = load_settings(env_file)

        assert settings.db_name == "ledger_test"
        assert settings.default_currency == "USD"
        assert settings.max_transaction_retries == 8
        for name in ("MONGO_URL", "DB_NAME", "LEDGER_DEFAULT_CURRENCY", "LEDGER_MAX_TRANSACTION_RETRIES"):
            os.environ.pop(name, None)

    def test_build_ledger_requires_database(self):
        with pytest.raises(ValidationError):
            build_ledger(LedgerSettings())


class TestWiring:

    @pytest.mark.asyncio
    async def test_components_share_one_store(self):
        store = InMemoryDocumentStore()
        ledger = build_components(store, LedgerSettings(retry_delay_ms=0, default_currency="EUR"))

        assert ledger.documents.store is store
        assert ledger.reconciliation.allocator is ledger.allocator
        assert ledger.documents.reconciliation is ledger.reconciliation

        doc = (await ledger.documents.create_document(make_request(currency=None))).unwrap()
        assert doc.currency == "EUR"
        ledger.close()
