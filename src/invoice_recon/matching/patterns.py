"""Vendor pattern memory.

Every accepted match teaches the pattern of its counterparty: which words
show up in the bank description, how many days after the document date the
money arrives, which payment processor carries it. The matching engine
turns a learned pattern into an extra signal for later runs.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from typing import Iterable, Optional

from rapidfuzz import fuzz

from invoice_recon.matching.engine import normalize_name
from invoice_recon.schemas.documents import CanonicalDocument, MatchMethod, Transaction
from invoice_recon.schemas.patterns import MatchHistoryEntry, VendorPattern
from invoice_recon.schemas.values import MONEY_EPSILON, Timestamp

logger = logging.getLogger(__name__)

# Words that say nothing about who paid
COMMON_WORDS = frozenset({
    "payment", "transfer", "invoice", "bill", "fee", "charge", "credit", "debit",
    "inc", "corp", "llc", "ltd", "co", "company", "services", "solutions", "group", "agency",
    "the", "and", "for", "from", "with", "this", "that", "these", "those", "your", "our",
    "their", "has", "had", "will", "can", "are", "was", "its",
    "card", "account", "bank", "wire", "ach", "ref", "reference", "transaction",
})

PAYMENT_PROCESSORS = (
    (re.compile(r"stripe", re.IGNORECASE), "Stripe"),
    (re.compile(r"paypal", re.IGNORECASE), "PayPal"),
    (re.compile(r"square", re.IGNORECASE), "Square"),
    (re.compile(r"wise|transferwise", re.IGNORECASE), "Wise"),
    (re.compile(r"\bach\b|wire transfer", re.IGNORECASE), "ACH/Wire"),
    (re.compile(r"sepa", re.IGNORECASE), "SEPA"),
    (re.compile(r"visa|mastercard|amex|discover", re.IGNORECASE), "Card Payment"),
    (re.compile(r"zelle", re.IGNORECASE), "Zelle"),
    (re.compile(r"venmo", re.IGNORECASE), "Venmo"),
)

MAX_NEW_KEYWORDS = 10
MAX_KEYWORDS = 15
MANUAL_START_CONFIDENCE = 0.7
MANUAL_CONFIDENCE_STEP = 0.05
# RapidFuzz ratio at which two vendor names are the same vendor
VENDOR_SIMILARITY = 70.0


def extract_keywords(description: Optional[str]) -> list[str]:
    """Distinctive words of a bank description, in order of appearance."""
    words = re.sub(r"[^\w\s]", " ", (description or "").lower()).split()
    keywords = [w for w in words if len(w) > 2 and w not in COMMON_WORDS]
    return keywords[:MAX_NEW_KEYWORDS]


def detect_payment_processor(description: Optional[str]) -> Optional[str]:
    for pattern, name in PAYMENT_PROCESSORS:
        if pattern.search(description or ""):
            return name
    return None


def pattern_id_for(owner: str, vendor_name: str) -> str:
    key = f"{owner}|{normalize_name(vendor_name)}"
    return "vp_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


def find_pattern(
    patterns: Iterable[VendorPattern], vendor_name: Optional[str]
) -> Optional[VendorPattern]:
    """Best pattern whose name or alias is fuzzily the same vendor, or None."""
    wanted = normalize_name(vendor_name)
    if not wanted:
        return None

    best: Optional[VendorPattern] = None
    best_score = 0.0
    for pattern in patterns:
        names = [pattern.vendor_name, *pattern.vendor_aliases]
        score = max(fuzz.ratio(wanted, normalize_name(name)) for name in names)
        if score >= VENDOR_SIMILARITY and score > best_score:
            best, best_score = pattern, score
    return best


def payment_delay(document: CanonicalDocument, transaction: Transaction) -> int:
    return abs((transaction.date - document.document_date).days)


def match_type_for(document: CanonicalDocument, applied_amount) -> str:
    difference = applied_amount - document.total
    if abs(difference) <= MONEY_EPSILON:
        return "exact"
    return "overpayment" if difference > 0 else "partial"


def learn_from_match(
    existing: Optional[VendorPattern],
    document: CanonicalDocument,
    transaction: Transaction,
    method: MatchMethod,
    confidence: Optional[float],
    now: Optional[Timestamp] = None,
) -> VendorPattern:
    """Return the counterparty's pattern updated with one accepted match.

    Manual matches raise confidence by a fixed step; automatic and agent
    matches fold their match confidence into a running average.
    """
    now = now or Timestamp.now()
    delay = payment_delay(document, transaction)
    keywords = extract_keywords(transaction.description)
    processor = detect_payment_processor(transaction.description)
    manual = method == MatchMethod.MANUAL

    if existing is None:
        pattern = VendorPattern(
            id=pattern_id_for(document.owner, document.counterparty_name),
            owner=document.owner,
            vendor_name=document.counterparty_name,
            transaction_keywords=keywords,
            match_count=1,
            typical_payment_delay=float(delay),
            payment_delay_min=delay,
            payment_delay_max=delay,
            confidence=MANUAL_START_CONFIDENCE if manual else (confidence or 0.5),
            payment_processor=processor,
            invoice_currency=document.currency,
            payment_currency=transaction.currency,
            last_matched_at=now,
            created_at=now,
            updated_at=now,
        )
        logger.debug("New vendor pattern %s for %s", pattern.id, pattern.vendor_name)
        return pattern

    count = existing.match_count
    new_count = count + 1
    total_delay = (existing.typical_payment_delay or 0.0) * count
    low = existing.payment_delay_min if existing.payment_delay_min is not None else delay
    high = existing.payment_delay_max if existing.payment_delay_max is not None else delay
    counts = Counter([*existing.transaction_keywords, *keywords])
    # Ties keep first-seen order
    top = sorted(counts, key=lambda kw: -counts[kw])[:MAX_KEYWORDS]

    if manual:
        new_confidence = min(1.0, existing.confidence + MANUAL_CONFIDENCE_STEP)
    elif confidence:
        new_confidence = (existing.confidence * count + confidence) / new_count
    else:
        new_confidence = existing.confidence

    aliases = list(existing.vendor_aliases)
    if (
        normalize_name(document.counterparty_name) != normalize_name(existing.vendor_name)
        and document.counterparty_name not in aliases
    ):
        aliases.append(document.counterparty_name)

    return VendorPattern(
        id=existing.id,
        owner=existing.owner,
        vendor_name=existing.vendor_name,
        vendor_aliases=aliases,
        transaction_keywords=top,
        match_count=new_count,
        typical_payment_delay=round((total_delay + delay) / new_count, 1),
        payment_delay_min=min(low, delay),
        payment_delay_max=max(high, delay),
        confidence=round(new_confidence, 4),
        payment_processor=processor or existing.payment_processor,
        invoice_currency=document.currency,
        payment_currency=transaction.currency,
        last_matched_at=now,
        created_at=existing.created_at,
        updated_at=now,
    )


def history_entry(
    document: CanonicalDocument,
    transaction: Transaction,
    applied_amount,
    method: MatchMethod,
    confidence: Optional[float],
    matched_by: Optional[str] = None,
    now: Optional[Timestamp] = None,
) -> MatchHistoryEntry:
    return MatchHistoryEntry(
        owner=document.owner,
        vendor_name=document.counterparty_name,
        document_id=document.id,
        document_number=document.document_number,
        document_amount=document.total,
        document_currency=document.currency,
        document_date=document.document_date,
        transaction_id=transaction.id,
        transaction_amount=transaction.amount,
        transaction_currency=transaction.currency,
        transaction_date=transaction.date,
        transaction_description=transaction.description,
        match_type=match_type_for(document, applied_amount),
        amount_difference=abs(transaction.amount - document.total),
        days_difference=payment_delay(document, transaction),
        was_manual=method == MatchMethod.MANUAL,
        confidence=confidence,
        matched_at=now or Timestamp.now(),
        matched_by=matched_by,
    )
