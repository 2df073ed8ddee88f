"""Matching engine for correlating invoices/bills with bank transactions.

Scores a (document, transaction) pair from independent signals and combines
them into a single confidence in [0, 1]:
- Amount: against the document's remaining balance (exact, rounding,
  partial payment, slight overpayment)
- Date: linear decay outside the document date .. due date span
- Counterparty: fuzzy similarity of the counterparty name and the
  transaction description (RapidFuzz)
- Reference: bonus when the document number appears in the description
- Vendor pattern: optional extra signal from what earlier accepted matches
  with the same counterparty looked like
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional, Union

from rapidfuzz import fuzz

from invoice_recon.schemas.documents import (
    CanonicalDocument,
    Transaction,
    transaction_type_for,
)
from invoice_recon.schemas.patterns import VendorPattern
from invoice_recon.schemas.values import MONEY_EPSILON

if TYPE_CHECKING:
    from invoice_recon.config import Config, ReconciliationConfig

logger = logging.getLogger(__name__)

# Legal suffixes ignored when comparing counterparty names
_COMPANY_SUFFIXES = {
    "inc", "llc", "ltd", "limited", "corp", "corporation", "co", "company",
    "gmbh", "bv", "nv", "sa", "plc", "pty", "the",
}

# Below this RapidFuzz score a name comparison counts as no match
_NAME_CUTOFF = 60.0

# Days a payment may fall outside the learned delay range at full score
_DELAY_SLACK_DAYS = 7


def normalize_name(value: Optional[str]) -> str:
    """Lower-case, punctuation-free name without legal suffixes."""
    if not value:
        return ""
    words = re.sub(r"[^a-z0-9]+", " ", value.lower()).split()
    return " ".join(w for w in words if w not in _COMPANY_SUFFIXES)


def _alnum(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


@dataclass
class MatchScore:
    """Individual signal contribution to a match score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Get the weighted score for this signal."""
        return self.score * self.weight


@dataclass
class MatchResult:
    """Result of scoring one transaction against one document."""

    transaction_id: str
    document_id: str
    confidence: float
    signals: list[MatchScore] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    suggested_amount: Decimal = Decimal("0.00")  # Payment amount if accepted
    is_exact_match: bool = False  # Exact amount plus document number in description

    def signal(self, name: str) -> Optional[MatchScore]:
        return next((s for s in self.signals if s.signal == name), None)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transactionId": self.transaction_id,
            "documentId": self.document_id,
            "confidence": round(self.confidence, 4),
            "suggestedAmount": f"{self.suggested_amount:.2f}",
            "isExactMatch": self.is_exact_match,
            "signals": [
                {
                    "signal": s.signal,
                    "score": s.score,
                    "weight": s.weight,
                    "weighted_score": s.weighted_score,
                    "detail": s.detail,
                }
                for s in self.signals
            ],
            "reasons": self.reasons,
        }


@dataclass
class CandidateSearch:
    """Ranked candidates for one document plus anything worth flagging."""

    document_id: str
    candidates: list[MatchResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def best(self) -> Optional[MatchResult]:
        return self.candidates[0] if self.candidates else None


class MatchingEngine:
    """Engine for matching canonical documents to bank transactions.

    Scoring is pure: the engine never reads or writes the store. Callers
    pass the transaction snapshot and the set of transaction ids that are
    already consumed by payment records.
    """

    def __init__(
        self,
        config: Union["Config", "ReconciliationConfig", None] = None,
    ) -> None:
        """Initialize the matching engine.

        Args:
            config: Application or reconciliation configuration; defaults apply when omitted.
        """
        recon = getattr(config, "reconciliation", config)
        self.weight_amount = recon.weight_amount if recon else 0.5
        self.weight_date = recon.weight_date if recon else 0.2
        self.weight_counterparty = recon.weight_counterparty if recon else 0.3
        self.reference_bonus = recon.reference_bonus if recon else 0.1
        self.date_window_days = recon.date_window_days if recon else 30
        self.proposal_threshold = recon.proposal_threshold if recon else 0.3
        self.pattern_bonus = recon.pattern_bonus if recon else 0.1

    def score(
        self,
        document: CanonicalDocument,
        transaction: Transaction,
        pattern: Optional[VendorPattern] = None,
    ) -> MatchResult:
        """Score a single transaction against a document.

        A learned vendor pattern adds a fourth signal weighted by
        ``pattern_bonus`` times the pattern's own confidence.
        """
        signals: list[MatchScore] = []
        reasons: list[str] = []

        amount_score = self._score_amount(document, transaction.amount)
        signals.append(amount_score)
        if amount_score.score > 0.5:
            reasons.append(f"amount_match ({amount_score.detail})")

        date_score = self._score_date(document, transaction.date)
        signals.append(date_score)
        if date_score.score > 0.5:
            reasons.append(f"date_close ({date_score.detail})")

        name_score = self._score_counterparty(document.counterparty_name, transaction.description)
        signals.append(name_score)
        if name_score.score > 0.5:
            reasons.append(f"counterparty_match ({name_score.detail})")

        if pattern is not None:
            pattern_score = self._score_pattern(pattern, document, transaction)
            signals.append(pattern_score)
            if pattern_score.score > 0.5:
                reasons.append(f"vendor_pattern ({pattern_score.detail})")

        bonus, reference_detail = self._score_reference(
            document.document_number, transaction.description
        )
        if bonus:
            reasons.append(f"reference ({reference_detail})")

        confidence = min(1.0, sum(s.weighted_score for s in signals) + bonus)
        is_exact = amount_score.score == 1.0 and bonus >= self.reference_bonus

        return MatchResult(
            transaction_id=transaction.id,
            document_id=document.id,
            confidence=confidence,
            signals=signals,
            reasons=reasons,
            suggested_amount=transaction.amount,
            is_exact_match=is_exact,
        )

    def find_candidates(
        self,
        document: CanonicalDocument,
        transactions: Iterable[Transaction],
        consumed: Optional[set[str]] = None,
        pattern: Optional[VendorPattern] = None,
    ) -> CandidateSearch:
        """Rank eligible transactions for a document.

        Eligible means: settles this document's direction, same currency,
        inside the date window, and not already consumed. Transactions that
        only fail the currency check are reported as warnings, never
        converted.

        Returns:
            CandidateSearch sorted by (-confidence, transaction id), keeping
            only candidates at or above the proposal threshold.
        """
        consumed = consumed or set()
        required_type = transaction_type_for(document.direction)
        window = timedelta(days=self.date_window_days)
        earliest = document.document_date - window
        latest = (document.due_date or document.document_date) + window

        search = CandidateSearch(document_id=document.id)
        for tx in transactions:
            if tx.type != required_type or tx.id in consumed:
                continue
            if not earliest <= tx.date <= latest:
                continue
            if tx.currency != document.currency:
                if abs(tx.amount - (document.amount_remaining or document.total)) <= MONEY_EPSILON:
                    search.warnings.append(
                        f"Transaction {tx.id} matches the amount but is in {tx.currency}, "
                        f"document {document.document_number} is in {document.currency}"
                    )
                continue

            result = self.score(document, tx, pattern)
            if result.confidence >= self.proposal_threshold:
                search.candidates.append(result)

        search.candidates.sort(key=lambda r: (-r.confidence, r.transaction_id))
        logger.debug(
            "Document %s: %d candidates (best %.2f)",
            document.id,
            len(search.candidates),
            search.candidates[0].confidence if search.candidates else 0.0,
        )
        return search

    def _score_amount(self, document: CanonicalDocument, amount: Decimal) -> MatchScore:
        """Score a payment amount against the document's remaining balance."""
        remaining = document.amount_remaining
        if remaining is None or remaining <= 0:
            return MatchScore("amount", 0.0, self.weight_amount, "nothing outstanding")

        diff = abs(amount - remaining)
        if diff < MONEY_EPSILON:
            return MatchScore("amount", 1.0, self.weight_amount, f"exact: {amount}")

        diff_pct = diff / remaining
        if diff_pct < Decimal("0.005"):
            return MatchScore("amount", 0.9, self.weight_amount, f"~0.5%: {amount} vs {remaining}")
        if diff_pct < Decimal("0.01"):
            return MatchScore("amount", 0.8, self.weight_amount, f"~1%: {amount} vs {remaining}")

        if amount < remaining:
            share = amount / remaining
            if share >= Decimal("0.5"):
                return MatchScore(
                    "amount", 0.6, self.weight_amount, f"partial {share:.0%} of {remaining}"
                )
            if share >= Decimal("0.1"):
                return MatchScore(
                    "amount", 0.35, self.weight_amount, f"small partial {share:.0%} of {remaining}"
                )
        elif amount <= remaining * Decimal("1.1"):
            return MatchScore(
                "amount", 0.5, self.weight_amount, f"overpayment by {amount - remaining}"
            )

        return MatchScore("amount", 0.0, self.weight_amount, f"mismatch: {amount} vs {remaining}")

    def _score_date(self, document: CanonicalDocument, tx_date: date) -> MatchScore:
        """Score date proximity to the document date .. due date span."""
        start = document.document_date
        end = max(document.due_date or start, start)

        if start <= tx_date <= end:
            return MatchScore("date", 1.0, self.weight_date, "within terms")

        distance = (start - tx_date).days if tx_date < start else (tx_date - end).days
        if self.date_window_days <= 0:
            return MatchScore("date", 0.0, self.weight_date, f"{distance} days outside")

        score = max(0.0, 1.0 - distance / self.date_window_days)
        side = "before document" if tx_date < start else "after due date"
        return MatchScore("date", score, self.weight_date, f"{distance} days {side}")

    def _score_counterparty(self, name: Optional[str], description: Optional[str]) -> MatchScore:
        """Score counterparty name against the transaction description."""
        norm_name = normalize_name(name)
        norm_desc = normalize_name(description)
        if not norm_name or not norm_desc:
            return MatchScore("counterparty", 0.0, self.weight_counterparty, "missing")

        if f" {norm_name} " in f" {norm_desc} ":
            return MatchScore("counterparty", 1.0, self.weight_counterparty, "name in description")

        partial = fuzz.partial_ratio(norm_name, norm_desc, score_cutoff=_NAME_CUTOFF)
        token_set = fuzz.token_set_ratio(norm_name, norm_desc, score_cutoff=_NAME_CUTOFF)
        best = max(partial, token_set)
        if best == 0:
            return MatchScore("counterparty", 0.0, self.weight_counterparty, "no match")
        return MatchScore(
            "counterparty", best / 100.0, self.weight_counterparty, f"fuzzy {best:.0f}%"
        )

    def _score_reference(self, document_number: str, description: str) -> tuple[float, str]:
        """Bonus for the document number (or its last 6 characters) in the description."""
        number = _alnum(document_number or "")
        text = _alnum(description or "")
        if not number or not text:
            return 0.0, ""
        if number in text:
            return self.reference_bonus, f"document number {document_number}"
        if len(number) >= 6 and number[-6:] in text:
            return self.reference_bonus / 2, f"document number suffix {number[-6:]}"
        return 0.0, ""

    def _score_pattern(
        self, pattern: VendorPattern, document: CanonicalDocument, transaction: Transaction
    ) -> MatchScore:
        """Keyword overlap with learned descriptions plus a usual payment delay."""
        weight = self.pattern_bonus * pattern.confidence
        words = set(re.sub(r"[^\w\s]", " ", (transaction.description or "").lower()).split())
        keywords = set(pattern.transaction_keywords)
        overlap = len(words & keywords) / min(len(keywords), 3) if keywords else 0.0
        keyword_score = min(1.0, overlap)

        delay_score = 0.0
        if pattern.payment_delay_min is not None and pattern.payment_delay_max is not None:
            delay = abs((transaction.date - document.document_date).days)
            low = pattern.payment_delay_min - _DELAY_SLACK_DAYS
            high = pattern.payment_delay_max + _DELAY_SLACK_DAYS
            if low <= delay <= high:
                delay_score = 1.0
            else:
                distance = low - delay if delay < low else delay - high
                delay_score = max(0.0, 1.0 - distance / _DELAY_SLACK_DAYS)

        score = 0.7 * keyword_score + 0.3 * delay_score
        return MatchScore(
            "vendor_pattern",
            score,
            weight,
            f"keywords {keyword_score:.0%}, delay {delay_score:.0%} ({pattern.match_count} prior)",
        )
