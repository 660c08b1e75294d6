from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import date, datetime

DocumentType = Literal["invoice", "receipt", "invoice_receipt"]
PaymentStatus = Literal["unpaid", "partial", "paid"]
ReportKind = Literal["revenue", "expenses"]
ReportType = Literal["revenue", "expenses", "balance"]
DatePreset = Literal["this_month", "last_month", "ytd"]

MAX_INVOICES_PER_RECEIPT = 10

# ============================================
# RECEIPT LINKAGE
# ============================================
class SingleInvoiceLinkage(BaseModel):
    kind: Literal["single"] = "single"
    invoice_number: str

    @property
    def invoice_numbers(self) -> List[str]:
        return [self.invoice_number]


class MultiInvoiceLinkage(BaseModel):
    kind: Literal["multi"] = "multi"
    invoice_numbers: List[str]


ReceiptLinkage = Annotated[
    Union[SingleInvoiceLinkage, MultiInvoiceLinkage],
    Field(discriminator="kind")
]


def linkage_fields(linkage: Optional[Union[SingleInvoiceLinkage, MultiInvoiceLinkage]]) -> Dict[str, Any]:
    """Stored field layout for a receipt's linkage"""
    if isinstance(linkage, SingleInvoiceLinkage):
        return {"related_invoice_number": linkage.invoice_number}
    if isinstance(linkage, MultiInvoiceLinkage):
        return {
            "related_invoice_numbers": list(linkage.invoice_numbers),
            "is_multi_invoice_receipt": True,
        }
    return {}


def linkage_from_document(doc: Dict[str, Any]) -> Optional[Union[SingleInvoiceLinkage, MultiInvoiceLinkage]]:
    """Rebuild the linkage variant from stored fields (single or multi form)"""
    numbers = doc.get("related_invoice_numbers") or []
    if numbers:
        return MultiInvoiceLinkage(invoice_numbers=list(numbers))
    if doc.get("related_invoice_number"):
        return SingleInvoiceLinkage(invoice_number=doc["related_invoice_number"])
    return None

# ============================================
# LEDGER DOCUMENT
# ============================================
class GeneratedBy(BaseModel):
    user_id: str
    username: str
    customer_id: str


class DocumentRequest(BaseModel):
    """Already-answered fields of a document generation request"""
    customer_id: str
    document_type: str
    customer_name: Optional[str] = None
    customer_tax_id: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    issue_date: Optional[date] = None
    generated_by: GeneratedBy
    storage_url: str = ""
    linkage: Optional[ReceiptLinkage] = None


class LedgerDocument(BaseModel):
    customer_id: str
    document_number: str
    document_type: DocumentType
    customer_name: str
    customer_tax_id: Optional[str] = None
    description: str
    amount: float
    currency: str = "ILS"
    payment_method: Optional[str] = None
    issue_date: str  # DD/MM/YYYY
    generated_at: datetime
    generated_by: GeneratedBy
    storage_path: str
    storage_url: str = ""
    updated_at: Optional[datetime] = None

    # Payment tracking
    payment_status: Optional[PaymentStatus] = None
    paid_amount: Optional[float] = None
    remaining_balance: Optional[float] = None
    related_receipt_ids: Optional[List[str]] = None

    # Receipt linkage (stored form)
    related_invoice_number: Optional[str] = None
    related_invoice_numbers: Optional[List[str]] = None
    is_multi_invoice_receipt: bool = False

    @property
    def linkage(self) -> Optional[Union[SingleInvoiceLinkage, MultiInvoiceLinkage]]:
        return linkage_from_document(self.model_dump())

    @property
    def is_linked_receipt(self) -> bool:
        return self.document_type == "receipt" and self.linkage is not None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "LedgerDocument":
        return cls.model_validate(doc)


class OpenInvoice(BaseModel):
    invoice_number: str
    customer_name: str
    amount: float
    paid_amount: float
    remaining_balance: float
    currency: str = "ILS"
    date: str = ""

# ============================================
# SETTLEMENT
# ============================================
class InvoicePaymentUpdate(BaseModel):
    invoice_number: str
    payment_applied: float
    paid_amount: float
    remaining_balance: float
    payment_status: PaymentStatus


class SettlementOutcome(BaseModel):
    receipt_number: str
    invoices: List[InvoicePaymentUpdate]
    total_applied: float
    # True when an earlier commit already applied this receipt; nothing changed
    already_applied: bool = False


class ReceiptRecorded(BaseModel):
    receipt: LedgerDocument
    settlement: SettlementOutcome


class SelectionSummary(BaseModel):
    invoice_numbers: List[str]
    customer_name: str
    currency: str
    total_amount: float
    description: str


class PaymentValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    is_partial_payment: bool = False
    new_paid_amount: float = 0.0
    new_remaining_balance: float = 0.0
    new_payment_status: PaymentStatus = "unpaid"

# ============================================
# REPORTS
# ============================================
class DateRange(BaseModel):
    start: date
    end: date
    preset: Optional[DatePreset] = None


class ReportRecord(BaseModel):
    number: str
    date: str  # YYYY-MM-DD
    customer_name: str
    amount: float
    currency: str = "ILS"
    payment_method: str = "Unknown"
    category: Optional[str] = None
    storage_url: str = ""
    document_type: DocumentType
    payment_status: PaymentStatus
    paid_amount: Optional[float] = None
    remaining_balance: Optional[float] = None
    related_invoice_number: Optional[str] = None
    related_invoice_numbers: Optional[List[str]] = None
    is_linked_receipt: bool = False


class CurrencyMetrics(BaseModel):
    currency: str
    total_invoiced: float = 0.0
    invoiced_count: int = 0
    avg_invoiced: float = 0.0
    total_received: float = 0.0
    received_count: int = 0
    avg_received: float = 0.0
    total_outstanding: float = 0.0
    outstanding_count: int = 0
    partial_count: int = 0
    max_invoice: float = 0.0
    min_invoice: float = 0.0


class PaymentMethodTotal(BaseModel):
    count: int = 0
    total: float = 0.0


class RevenueSummary(BaseModel):
    total_invoiced: float
    total_received: float
    total_outstanding: float
    invoiced_count: int
    received_count: int
    outstanding_count: int
    avg_invoiced: float
    currencies: List[CurrencyMetrics]


class ExpenseCurrencySummary(BaseModel):
    currency: str
    total_expenses: float
    expense_count: int
    avg_expense: float


class ExpenseSummary(BaseModel):
    total_expenses: float
    expense_count: int
    avg_expense: float
    currencies: List[ExpenseCurrencySummary]


class ReportMetrics(BaseModel):
    # Invoiced (all counted documents)
    total_invoiced: float = 0.0
    invoiced_count: int = 0
    avg_invoiced: float = 0.0

    # Cash received
    total_received: float = 0.0
    received_count: int = 0
    avg_received: float = 0.0

    # Outstanding (unpaid + partial invoices)
    total_outstanding: float = 0.0
    outstanding_count: int = 0
    partial_count: int = 0

    max_invoice: float = 0.0
    min_invoice: float = 0.0

    currencies: List[CurrencyMetrics] = Field(default_factory=list)
    payment_methods: Dict[str, PaymentMethodTotal] = Field(default_factory=dict)

    # Balance reports only
    revenue_metrics: Optional[RevenueSummary] = None
    expense_metrics: Optional[ExpenseSummary] = None
    net_invoiced: Optional[float] = None
    net_cash_flow: Optional[float] = None
    profit: Optional[float] = None
    profit_margin: Optional[float] = None

    @property
    def primary_currency(self) -> Optional[str]:
        return self.currencies[0].currency if self.currencies else None
