"""
Learned vendor/client payment patterns and the match history they come from.

Confidence is on the same 0..1 scale as match confidence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from .values import Timestamp, format_iso_date, format_money, money, parse_iso_date


@dataclass
class VendorPattern:
    """What previous accepted matches taught us about one counterparty."""

    id: str
    owner: str
    vendor_name: str
    vendor_aliases: list[str] = field(default_factory=list)
    transaction_keywords: list[str] = field(default_factory=list)
    match_count: int = 0
    typical_payment_delay: Optional[float] = None  # Days from document date to payment
    payment_delay_min: Optional[int] = None
    payment_delay_max: Optional[int] = None
    confidence: float = 0.5
    payment_processor: Optional[str] = None
    invoice_currency: Optional[str] = None
    payment_currency: Optional[str] = None
    last_matched_at: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.owner,
            "vendorName": self.vendor_name,
            "vendorAliases": list(self.vendor_aliases),
            "transactionKeywords": list(self.transaction_keywords),
            "matchCount": self.match_count,
            "typicalPaymentDelay": self.typical_payment_delay,
            "paymentDelayRange": (
                {"min": self.payment_delay_min, "max": self.payment_delay_max}
                if self.payment_delay_min is not None
                else None
            ),
            "confidence": self.confidence,
            "paymentProcessor": self.payment_processor,
            "invoiceCurrency": self.invoice_currency,
            "paymentCurrency": self.payment_currency,
            "lastMatchedAt": self.last_matched_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VendorPattern":
        delay_range = data.get("paymentDelayRange") or {}
        delay = data.get("typicalPaymentDelay")
        return cls(
            id=str(data["id"]),
            owner=data.get("userId") or "",
            vendor_name=data.get("vendorName") or "",
            vendor_aliases=list(data.get("vendorAliases") or []),
            transaction_keywords=list(data.get("transactionKeywords") or []),
            match_count=int(data.get("matchCount") or 0),
            typical_payment_delay=float(delay) if delay is not None else None,
            payment_delay_min=delay_range.get("min"),
            payment_delay_max=delay_range.get("max"),
            confidence=float(data.get("confidence", 0.5)),
            payment_processor=data.get("paymentProcessor"),
            invoice_currency=data.get("invoiceCurrency"),
            payment_currency=data.get("paymentCurrency"),
            last_matched_at=data.get("lastMatchedAt"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class MatchHistoryEntry:
    """One accepted document/transaction match, kept for pattern learning."""

    owner: str
    vendor_name: str
    document_id: str
    document_number: str
    document_amount: Decimal
    document_currency: str
    document_date: date
    transaction_id: str
    transaction_amount: Decimal
    transaction_currency: str
    transaction_date: date
    transaction_description: str
    match_type: str  # exact | partial | overpayment
    amount_difference: Decimal
    days_difference: int
    was_manual: bool
    confidence: Optional[float] = None
    matched_at: Optional[Timestamp] = None
    matched_by: Optional[str] = None

    @property
    def id(self) -> str:
        return f"mh_{self.document_id}_{self.transaction_id}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.owner,
            "vendorName": self.vendor_name,
            "documentId": self.document_id,
            "documentNumber": self.document_number,
            "documentAmount": format_money(self.document_amount),
            "documentCurrency": self.document_currency,
            "documentDate": format_iso_date(self.document_date),
            "transactionId": self.transaction_id,
            "transactionAmount": format_money(self.transaction_amount),
            "transactionCurrency": self.transaction_currency,
            "transactionDate": format_iso_date(self.transaction_date),
            "transactionDescription": self.transaction_description,
            "matchType": self.match_type,
            "amountDifference": format_money(self.amount_difference),
            "daysDifference": self.days_difference,
            "wasManual": self.was_manual,
            "confidence": self.confidence,
            "matchedAt": self.matched_at,
            "matchedBy": self.matched_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatchHistoryEntry":
        return cls(
            owner=data.get("userId") or "",
            vendor_name=data.get("vendorName") or "",
            document_id=str(data["documentId"]),
            document_number=data.get("documentNumber") or "",
            document_amount=money(data.get("documentAmount")),
            document_currency=data.get("documentCurrency") or "",
            document_date=parse_iso_date(data.get("documentDate")) or date.min,
            transaction_id=str(data["transactionId"]),
            transaction_amount=money(data.get("transactionAmount")),
            transaction_currency=data.get("transactionCurrency") or "",
            transaction_date=parse_iso_date(data.get("transactionDate")) or date.min,
            transaction_description=data.get("transactionDescription") or "",
            match_type=data.get("matchType") or "exact",
            amount_difference=money(data.get("amountDifference")),
            days_difference=int(data.get("daysDifference") or 0),
            was_manual=bool(data.get("wasManual")),
            confidence=data.get("confidence"),
            matched_at=data.get("matchedAt"),
            matched_by=data.get("matchedBy"),
        )
