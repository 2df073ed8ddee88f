"""
Canonical financial document model (SSOT).

These are the ONLY invoice/bill/transaction models used across modules.
Field names produced by ``to_dict`` are the persisted compatibility surface
read by other collaborators (UI, reporting), so they stay camelCase.

Key invariants:
- amount_remaining == total - amount_paid (never negative unless OVERPAID)
- amount_paid == sum(payment.amount for payment in payments)
- a transaction backs at most one payment record at any time
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .values import (
    MONEY_EPSILON,
    Timestamp,
    format_iso_date,
    format_money,
    money,
    parse_iso_date,
    to_decimal,
)


class DocumentDirection(str, Enum):
    """Who issued the document.

    OUTGOING: invoices you send to clients (settled by incoming credits)
    INCOMING: bills you receive from vendors (settled by outgoing debits)
    """

    OUTGOING = "outgoing"
    INCOMING = "incoming"


class DocumentType(str, Enum):
    INVOICE = "invoice"
    BILL = "bill"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"
    RECEIPT = "receipt"


class TransactionType(str, Enum):
    """Bank transaction direction."""

    CREDIT = "credit"
    DEBIT = "debit"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"
    VOID = "void"


class ReconciliationStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIAL = "partial"
    DISPUTED = "disputed"


class AgingBucket(str, Enum):
    CURRENT = "current"
    DAYS_1_30 = "1-30"
    DAYS_31_60 = "31-60"
    DAYS_61_90 = "61-90"
    DAYS_90_PLUS = "90+"


class MatchMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    AI_AGENT = "ai_agent"


# Persisted fields owned by reconciliation. Re-imports never overwrite them.
RECONCILIATION_FIELDS = (
    "paymentStatus",
    "amountPaid",
    "amountRemaining",
    "payments",
    "reconciliationStatus",
    "matchedTransactionIds",
    "matchMethod",
    "matchConfidence",
    "agingBucket",
    "daysOverdue",
)

AGING_FIELDS = ("agingBucket", "daysOverdue")


def transaction_type_for(direction: DocumentDirection) -> TransactionType:
    """Bank transaction type that settles a document of this direction."""
    if direction == DocumentDirection.OUTGOING:
        return TransactionType.CREDIT
    return TransactionType.DEBIT


def collection_for(direction: DocumentDirection) -> str:
    """Store collection that holds documents of this direction."""
    return "invoices" if direction == DocumentDirection.OUTGOING else "bills"


@dataclass
class LineItem:
    """Individual line item from an invoice/bill."""

    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None  # As percentage, e.g., 20 for 20%
    tax_amount: Optional[Decimal] = None
    product_code: Optional[str] = None
    unit: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "quantity": str(self.quantity) if self.quantity is not None else None,
            "unitPrice": format_money(self.unit_price),
            "amount": format_money(self.amount),
            "taxRate": str(self.tax_rate) if self.tax_rate is not None else None,
            "taxAmount": format_money(self.tax_amount),
            "productCode": self.product_code,
            "unit": self.unit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        quantity = data.get("quantity")
        tax_rate = data.get("taxRate")
        return cls(
            description=data.get("description") or "",
            quantity=Decimal(str(quantity)) if quantity not in (None, "") else None,
            unit_price=to_decimal(data.get("unitPrice")),
            amount=to_decimal(data.get("amount")),
            tax_rate=Decimal(str(tax_rate)) if tax_rate not in (None, "") else None,
            tax_amount=to_decimal(data.get("taxAmount")),
            product_code=data.get("productCode"),
            unit=data.get("unit"),
        )


@dataclass(frozen=True)
class Transaction:
    """Bank transaction. Immutable once created.

    Reconciliation never touches amount or date; association metadata lives
    in PaymentRecords on the document side.
    """

    id: str
    type: TransactionType
    amount: Decimal  # Always positive; type carries the direction
    currency: str
    date: date
    description: str
    owner: str
    account_id: Optional[str] = None
    reference: Optional[str] = None
    batch_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": format_money(self.amount),
            "currency": self.currency,
            "date": format_iso_date(self.date),
            "description": self.description,
            "userId": self.owner,
            "accountId": self.account_id,
            "reference": self.reference,
            "batchId": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        amount = money(data.get("amount"))
        return cls(
            id=str(data["id"]),
            type=TransactionType(data.get("type", "debit")),
            amount=abs(amount),
            currency=(data.get("currency") or "USD").upper(),
            date=parse_iso_date(data.get("date")) or date.min,
            description=data.get("description") or "",
            owner=data.get("userId") or "",
            account_id=data.get("accountId"),
            reference=data.get("reference"),
            batch_id=data.get("batchId"),
        )


@dataclass
class PaymentRecord:
    """Links one transaction to one document."""

    transaction_id: str
    document_id: str
    amount: Decimal
    currency: str
    date: date
    method: MatchMethod = MatchMethod.AUTO
    confidence: float = 1.0
    matched_by: Optional[str] = None
    matched_at: Optional[Timestamp] = None
    reference: Optional[str] = None

    @property
    def id(self) -> str:
        """Deterministic id so that retried writes target the same record."""
        return f"pay_{self.document_id}_{self.transaction_id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "documentId": self.document_id,
            "amount": format_money(self.amount),
            "currency": self.currency,
            "date": format_iso_date(self.date),
            "method": self.method.value,
            "confidence": self.confidence,
            "matchedBy": self.matched_by,
            "matchedAt": self.matched_at,
            "reference": self.reference,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRecord":
        matched_at = data.get("matchedAt")
        if isinstance(matched_at, str):
            matched_at = Timestamp.from_iso(matched_at)
        return cls(
            transaction_id=str(data["transactionId"]),
            document_id=str(data["documentId"]),
            amount=money(data.get("amount")),
            currency=(data.get("currency") or "USD").upper(),
            date=parse_iso_date(data.get("date")) or date.min,
            method=MatchMethod(data.get("method", "auto")),
            confidence=float(data.get("confidence", 1.0)),
            matched_by=data.get("matchedBy"),
            matched_at=matched_at,
            reference=data.get("reference"),
        )


@dataclass
class CanonicalDocument:
    """
    CANONICAL invoice/bill record, independent of its source file format.

    Created once per source row or AI-extracted document. Mutated only by
    the reconciliation service (status/amount fields) and the session
    replicator (full reset).
    """

    id: str
    owner: str
    direction: DocumentDirection
    document_type: DocumentType
    counterparty_name: str
    document_number: str
    document_date: date
    total: Decimal
    currency: str

    org_id: Optional[str] = None
    counterparty_email: Optional[str] = None
    due_date: Optional[date] = None
    subtotal: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    shipping_amount: Optional[Decimal] = None
    purchase_order: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    payment_terms: Optional[str] = None
    line_items: list[LineItem] = field(default_factory=list)

    # Payment tracking
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    amount_paid: Decimal = Decimal("0.00")
    amount_remaining: Optional[Decimal] = None
    payments: list[PaymentRecord] = field(default_factory=list)

    # Reconciliation
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.UNMATCHED
    matched_transaction_ids: set[str] = field(default_factory=set)
    match_method: Optional[MatchMethod] = None
    match_confidence: Optional[float] = None

    # Aging
    aging_bucket: AgingBucket = AgingBucket.CURRENT
    days_overdue: int = 0

    # Provenance
    source: str = "import"  # upload | import | api
    import_template_id: Optional[str] = None
    batch_id: Optional[str] = None
    confidence: Optional[float] = None
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.amount_remaining is None:
            self.amount_remaining = self.total - self.amount_paid

    @property
    def is_open(self) -> bool:
        """True while the document still expects payments."""
        return self.payment_status in (PaymentStatus.UNPAID, PaymentStatus.PARTIAL)

    @property
    def collection(self) -> str:
        return collection_for(self.direction)

    def recompute_amounts(self) -> Decimal:
        """Re-derive amount_paid/amount_remaining from attached payments.

        Returns the unclamped remaining amount. A remainder within one cent
        below zero is stored as zero; anything lower is an overpayment and
        is kept negative.
        """
        self.amount_paid = sum((p.amount for p in self.payments), Decimal("0.00"))
        self.matched_transaction_ids = {p.transaction_id for p in self.payments}
        remaining = self.total - self.amount_paid
        if -MONEY_EPSILON <= remaining < 0:
            self.amount_remaining = Decimal("0.00")
        else:
            self.amount_remaining = remaining
        return remaining

    def reconciliation_fields(self) -> dict:
        """The persisted fields reconciliation is allowed to write."""
        data = self.to_dict()
        fields = {name: data[name] for name in RECONCILIATION_FIELDS}
        fields["warnings"] = data["warnings"]
        return fields

    def source_fields(self) -> dict:
        """The persisted fields that come from the source row or extraction."""
        data = self.to_dict()
        for name in RECONCILIATION_FIELDS:
            data.pop(name)
        data.pop("id")
        return data

    def to_dict(self) -> dict:
        """Persisted representation (camelCase, sorted matched ids)."""
        return {
            "id": self.id,
            "userId": self.owner,
            "orgId": self.org_id,
            "direction": self.direction.value,
            "documentType": self.document_type.value,
            "counterpartyName": self.counterparty_name,
            "counterpartyEmail": self.counterparty_email,
            "documentNumber": self.document_number,
            "documentDate": format_iso_date(self.document_date),
            "dueDate": format_iso_date(self.due_date),
            "subtotal": format_money(self.subtotal),
            "taxRate": str(self.tax_rate) if self.tax_rate is not None else None,
            "taxAmount": format_money(self.tax_amount),
            "discount": format_money(self.discount),
            "shippingAmount": format_money(self.shipping_amount),
            "total": format_money(self.total),
            "currency": self.currency,
            "purchaseOrder": self.purchase_order,
            "reference": self.reference,
            "description": self.description,
            "paymentTerms": self.payment_terms,
            "lineItems": [item.to_dict() for item in self.line_items],
            "lineItemCount": len(self.line_items),
            "paymentStatus": self.payment_status.value,
            "amountPaid": format_money(self.amount_paid),
            "amountRemaining": format_money(self.amount_remaining),
            "payments": [p.to_dict() for p in self.payments],
            "reconciliationStatus": self.reconciliation_status.value,
            "matchedTransactionIds": sorted(self.matched_transaction_ids),
            "matchMethod": self.match_method.value if self.match_method else None,
            "matchConfidence": self.match_confidence,
            "agingBucket": self.aging_bucket.value,
            "daysOverdue": self.days_overdue,
            "source": self.source,
            "importTemplateId": self.import_template_id,
            "batchId": self.batch_id,
            "confidence": self.confidence,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalDocument":
        direction = DocumentDirection(data.get("direction", "outgoing"))
        total = money(data.get("total"))
        tax_rate = data.get("taxRate")
        match_method = data.get("matchMethod")
        return cls(
            id=str(data["id"]),
            owner=data.get("userId") or "",
            org_id=data.get("orgId"),
            direction=direction,
            document_type=DocumentType(
                data.get("documentType")
                or ("invoice" if direction == DocumentDirection.OUTGOING else "bill")
            ),
            counterparty_name=data.get("counterpartyName") or "",
            counterparty_email=data.get("counterpartyEmail"),
            document_number=data.get("documentNumber") or "",
            document_date=parse_iso_date(data.get("documentDate")) or date.min,
            due_date=parse_iso_date(data.get("dueDate")),
            subtotal=to_decimal(data.get("subtotal")),
            tax_rate=Decimal(str(tax_rate)) if tax_rate not in (None, "") else None,
            tax_amount=to_decimal(data.get("taxAmount")),
            discount=to_decimal(data.get("discount")),
            shipping_amount=to_decimal(data.get("shippingAmount")),
            total=total,
            currency=(data.get("currency") or "USD").upper(),
            purchase_order=data.get("purchaseOrder"),
            reference=data.get("reference"),
            description=data.get("description"),
            payment_terms=data.get("paymentTerms"),
            line_items=[LineItem.from_dict(item) for item in data.get("lineItems") or []],
            payment_status=PaymentStatus(data.get("paymentStatus") or "unpaid"),
            amount_paid=money(data.get("amountPaid")),
            amount_remaining=to_decimal(data.get("amountRemaining")),
            payments=[PaymentRecord.from_dict(p) for p in data.get("payments") or []],
            reconciliation_status=ReconciliationStatus(
                data.get("reconciliationStatus") or "unmatched"
            ),
            matched_transaction_ids=set(data.get("matchedTransactionIds") or []),
            match_method=MatchMethod(match_method) if match_method else None,
            match_confidence=data.get("matchConfidence"),
            aging_bucket=AgingBucket(data.get("agingBucket") or "current"),
            days_overdue=int(data.get("daysOverdue") or 0),
            source=data.get("source") or "import",
            import_template_id=data.get("importTemplateId"),
            batch_id=data.get("batchId"),
            confidence=data.get("confidence"),
            warnings=list(data.get("warnings") or []),
        )
