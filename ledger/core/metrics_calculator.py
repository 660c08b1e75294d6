"""
Report metrics.

Pure computation over ReportRecords; amounts are summed as Decimal and
rounded once on output.

Linked receipts are dropped before anything is counted: the money they
carry is already in the parent invoice's paid_amount.
"""

from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Sequence

from ledger.core.collections import DOCUMENT_TYPE_INVOICE
from ledger.core.financial_precision import (
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    calculate_percentage_of,
    round_financial,
    safe_divide,
    to_decimal,
    to_float,
)
from ledger.models import (
    CurrencyMetrics,
    ExpenseCurrencySummary,
    ExpenseSummary,
    PaymentMethodTotal,
    ReportMetrics,
    ReportRecord,
    RevenueSummary,
)

DEFAULT_CURRENCY = "ILS"


def _currency_metrics(currency: str, records: List[ReportRecord]) -> CurrencyMetrics:
    total_invoiced = Decimal('0')
    total_received = Decimal('0')
    total_outstanding = Decimal('0')
    invoiced_count = 0
    received_count = 0
    outstanding_count = 0
    partial_count = 0
    amounts = []

    for record in records:
        amount = to_decimal(record.amount)
        amounts.append(amount)
        total_invoiced += amount
        invoiced_count += 1

        if record.document_type != DOCUMENT_TYPE_INVOICE:
            # Standalone receipt or invoice-receipt: paid when issued
            total_received += amount
            received_count += 1
        elif record.payment_status == PAYMENT_STATUS_PAID:
            total_received += amount
            received_count += 1
        elif record.payment_status == PAYMENT_STATUS_PARTIAL:
            total_received += to_decimal(record.paid_amount or 0)
            remaining = record.remaining_balance if record.remaining_balance is not None else record.amount
            total_outstanding += to_decimal(remaining)
            received_count += 1
            outstanding_count += 1
            partial_count += 1
        else:
            total_outstanding += amount
            outstanding_count += 1

    return CurrencyMetrics(
        currency=currency,
        total_invoiced=to_float(total_invoiced),
        invoiced_count=invoiced_count,
        avg_invoiced=to_float(safe_divide(total_invoiced, invoiced_count)),
        total_received=to_float(total_received),
        received_count=received_count,
        avg_received=to_float(safe_divide(total_received, received_count)),
        total_outstanding=to_float(total_outstanding),
        outstanding_count=outstanding_count,
        partial_count=partial_count,
        max_invoice=to_float(max(amounts)) if amounts else 0.0,
        min_invoice=to_float(min(amounts)) if amounts else 0.0,
    )


def _payment_methods(records: List[ReportRecord]) -> Dict[str, PaymentMethodTotal]:
    """Only money actually received: the full amount when paid, paid_amount when partial"""
    totals: Dict[str, Decimal] = {}
    counts: Dict[str, int] = {}
    for record in records:
        if record.payment_status == PAYMENT_STATUS_PAID:
            received = to_decimal(record.amount)
        elif record.payment_status == PAYMENT_STATUS_PARTIAL:
            received = to_decimal(record.paid_amount or 0)
        else:
            continue
        method = record.payment_method
        totals[method] = totals.get(method, Decimal('0')) + received
        counts[method] = counts.get(method, 0) + 1

    return {
        method: PaymentMethodTotal(count=counts[method], total=to_float(total))
        for method, total in totals.items()
    }


def calculate_metrics(records: Sequence[ReportRecord]) -> ReportMetrics:
    """
    Multi-currency revenue (or expense) metrics.

    Currencies are ordered by total invoiced, largest first; the first one
    is the primary currency and fills the top-level fields.
    """
    counted = [record for record in records if not record.is_linked_receipt]
    if not counted:
        return ReportMetrics()

    by_currency: Dict[str, List[ReportRecord]] = OrderedDict()
    for record in counted:
        by_currency.setdefault(record.currency or DEFAULT_CURRENCY, []).append(record)

    currencies = sorted(
        (_currency_metrics(currency, group) for currency, group in by_currency.items()),
        key=lambda c: c.total_invoiced,
        reverse=True
    )
    primary = currencies[0]

    return ReportMetrics(
        total_invoiced=primary.total_invoiced,
        invoiced_count=primary.invoiced_count,
        avg_invoiced=primary.avg_invoiced,
        total_received=primary.total_received,
        received_count=primary.received_count,
        avg_received=primary.avg_received,
        total_outstanding=primary.total_outstanding,
        outstanding_count=primary.outstanding_count,
        partial_count=primary.partial_count,
        max_invoice=primary.max_invoice,
        min_invoice=primary.min_invoice,
        currencies=currencies,
        payment_methods=_payment_methods(counted),
    )


def calculate_balance_metrics(
    revenue: Sequence[ReportRecord],
    expenses: Sequence[ReportRecord]
) -> ReportMetrics:
    """
    Net position per currency: revenue minus expenses (expenses count as paid).

    - net_invoiced  = revenue invoiced - expenses
    - net_cash_flow = revenue received - expenses
    - profit        = net_cash_flow of the primary currency
    - profit_margin = profit / revenue received * 100 (0 without revenue)

    The primary currency is the one with the largest absolute net position.
    Currencies are never converted or summed across.
    """
    revenue_metrics = calculate_metrics(revenue)
    expense_metrics = calculate_metrics(expenses)

    total_expenses = to_decimal(expense_metrics.total_invoiced)
    expense_count = expense_metrics.invoiced_count

    positions: Dict[str, Dict[str, Decimal]] = OrderedDict()
    for curr in revenue_metrics.currencies:
        positions[curr.currency] = {
            "revenue_received": to_decimal(curr.total_received),
            "revenue_outstanding": to_decimal(curr.total_outstanding),
            "net_invoiced": to_decimal(curr.total_invoiced),
            "net_cash_flow": to_decimal(curr.total_received),
        }
    for curr in expense_metrics.currencies:
        position = positions.setdefault(curr.currency, {
            "revenue_received": Decimal('0'),
            "revenue_outstanding": Decimal('0'),
            "net_invoiced": Decimal('0'),
            "net_cash_flow": Decimal('0'),
        })
        position["net_invoiced"] -= to_decimal(curr.total_invoiced)
        position["net_cash_flow"] -= to_decimal(curr.total_invoiced)

    currencies = sorted(
        (
            CurrencyMetrics(
                currency=currency,
                total_invoiced=to_float(position["net_invoiced"]),
                total_received=to_float(position["net_cash_flow"]),
                total_outstanding=to_float(position["revenue_outstanding"]),
            )
            for currency, position in positions.items()
        ),
        key=lambda c: abs(c.total_invoiced),
        reverse=True
    )

    net_invoiced = 0.0
    net_cash_flow = 0.0
    profit_margin = 0.0
    if currencies:
        primary = currencies[0]
        net_invoiced = primary.total_invoiced
        net_cash_flow = primary.total_received
        revenue_received = positions[primary.currency]["revenue_received"]
        if revenue_received > 0:
            margin = calculate_percentage_of(net_cash_flow, revenue_received)
            profit_margin = float(round_financial(margin))

    combined_invoiced_count = revenue_metrics.invoiced_count + expense_count
    combined_received_count = revenue_metrics.received_count + expense_count

    min_candidates = [m for m in (revenue_metrics.min_invoice, expense_metrics.min_invoice) if m > 0]

    return ReportMetrics(
        total_invoiced=net_invoiced,
        invoiced_count=combined_invoiced_count,
        avg_invoiced=to_float(safe_divide(
            to_decimal(revenue_metrics.total_invoiced) + total_expenses,
            combined_invoiced_count
        )),
        total_received=net_cash_flow,
        received_count=combined_received_count,
        avg_received=to_float(safe_divide(
            to_decimal(revenue_metrics.total_received) + total_expenses,
            combined_received_count
        )),
        total_outstanding=revenue_metrics.total_outstanding,
        outstanding_count=revenue_metrics.outstanding_count,
        partial_count=revenue_metrics.partial_count,
        max_invoice=max(revenue_metrics.max_invoice, expense_metrics.max_invoice),
        min_invoice=min(min_candidates) if min_candidates else 0.0,
        currencies=currencies,
        payment_methods=revenue_metrics.payment_methods,
        revenue_metrics=RevenueSummary(
            total_invoiced=revenue_metrics.total_invoiced,
            total_received=revenue_metrics.total_received,
            total_outstanding=revenue_metrics.total_outstanding,
            invoiced_count=revenue_metrics.invoiced_count,
            received_count=revenue_metrics.received_count,
            outstanding_count=revenue_metrics.outstanding_count,
            avg_invoiced=revenue_metrics.avg_invoiced,
            currencies=revenue_metrics.currencies,
        ),
        expense_metrics=ExpenseSummary(
            total_expenses=to_float(total_expenses),
            expense_count=expense_count,
            avg_expense=to_float(safe_divide(total_expenses, expense_count)),
            currencies=[
                ExpenseCurrencySummary(
                    currency=c.currency,
                    total_expenses=c.total_invoiced,
                    expense_count=c.invoiced_count,
                    avg_expense=c.avg_invoiced,
                )
                for c in expense_metrics.currencies
            ],
        ),
        net_invoiced=net_invoiced,
        net_cash_flow=net_cash_flow,
        profit=net_cash_flow,
        profit_margin=profit_margin,
    )
