"""Bank reconciliation orchestration service.

Matches open invoices/bills against bank transactions and keeps the
payment bookkeeping consistent:
- Loads a snapshot of open documents and the owner's transactions
- Processes documents in a deterministic order (document date, id)
- Accepts the best candidate above the acceptance threshold, greedily,
  tracking which transactions are consumed within the run
- Records a PaymentRecord per accepted match and recomputes amounts,
  payment status and reconciliation status
- Writes each changed document in its own atomic commit, together with a
  claim record per newly consumed transaction
- Learns vendor patterns and match history from the committed matches

A transaction backs at most one PaymentRecord at any time, whichever
path (automatic, AI agent, manual) created it. The claim record
``payment_claims/<transaction id>`` is created in the same commit as the
payment, so two writers racing for one transaction cannot both succeed.
Document updates only touch reconciliation fields and carry the matched
transaction ids they were computed from; a document that changed since it
was loaded is never overwritten.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from invoice_recon.errors import (
    DocumentNotFound,
    ReconError,
    StoreConflictError,
    TransactionAlreadyConsumed,
    ValidationError,
)
from invoice_recon.matching.engine import MatchingEngine, MatchResult
from invoice_recon.matching.patterns import find_pattern, history_entry, learn_from_match
from invoice_recon.normalizer.aging import refresh_aging
from invoice_recon.schemas.documents import (
    AGING_FIELDS,
    CanonicalDocument,
    MatchMethod,
    PaymentRecord,
    PaymentStatus,
    ReconciliationStatus,
    Transaction,
    transaction_type_for,
)
from invoice_recon.schemas.patterns import VendorPattern
from invoice_recon.schemas.values import MONEY_EPSILON, Timestamp
from invoice_recon.state_store.base import WriteOp
from invoice_recon.state_store.batch_writer import BatchWriter

if TYPE_CHECKING:
    from invoice_recon.config import Config
    from invoice_recon.state_store.base import DocumentStore

logger = logging.getLogger(__name__)

DOCUMENT_COLLECTIONS = ("invoices", "bills")
TRANSACTION_COLLECTION = "transactions"
CLAIM_COLLECTION = "payment_claims"
PATTERN_COLLECTION = "vendor_patterns"
HISTORY_COLLECTION = "match_history"


class ReconciliationState(str, Enum):
    """Possible states for a reconciliation run."""

    LOADING = "LOADING"
    MATCHING = "MATCHING"
    WRITING = "WRITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DecisionSource(str, Enum):
    """Source of the reconciliation decision."""

    RULES = "RULES"
    AI_AGENT = "AI_AGENT"
    USER = "USER"

    @property
    def method(self) -> MatchMethod:
        return {
            DecisionSource.RULES: MatchMethod.AUTO,
            DecisionSource.AI_AGENT: MatchMethod.AI_AGENT,
            DecisionSource.USER: MatchMethod.MANUAL,
        }[self]


@dataclass
class AcceptedMatch:
    document_id: str
    transaction_id: str
    amount: Decimal
    confidence: float
    source: DecisionSource = DecisionSource.RULES

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "transactionId": self.transaction_id,
            "amount": f"{self.amount:.2f}",
            "confidence": round(self.confidence, 4),
            "source": self.source.value,
        }


@dataclass
class ReconciliationResult:
    """Result of a reconciliation run."""

    state: ReconciliationState
    owner: str
    documents_processed: int = 0
    accepted: list[AcceptedMatch] = field(default_factory=list)
    # Candidates left for manual or AI review, keyed by document id
    unresolved: dict[str, list[MatchResult]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    committed: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        """Return True if reconciliation completed without fatal errors."""
        return self.state == ReconciliationState.COMPLETED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "owner": self.owner,
            "documentsProcessed": self.documents_processed,
            "accepted": [m.to_dict() for m in self.accepted],
            "unresolved": {
                doc_id: [c.to_dict() for c in candidates]
                for doc_id, candidates in self.unresolved.items()
            },
            "warnings": self.warnings,
            "committed": self.committed,
            "errors": self.errors,
            "dryRun": self.dry_run,
            "durationMs": self.duration_ms,
        }


@dataclass
class MatchDecision:
    """Outcome of a single proposed or manual match."""

    accepted: bool
    document_id: str
    transaction_id: str
    reason: str = ""
    payment: Optional[PaymentRecord] = None
    document: Optional[CanonicalDocument] = None


def update_statuses(document: CanonicalDocument, keep_disputed: bool = True) -> None:
    """Recompute amounts and derive payment/reconciliation status from payments."""
    remaining = document.recompute_amounts()

    if not document.payments:
        if document.payment_status != PaymentStatus.VOID:
            document.payment_status = PaymentStatus.UNPAID
        document.reconciliation_status = ReconciliationStatus.UNMATCHED
        document.match_method = None
        document.match_confidence = None
        return

    if remaining < -MONEY_EPSILON:
        document.payment_status = PaymentStatus.OVERPAID
        reconciliation = ReconciliationStatus.MATCHED
    elif remaining <= MONEY_EPSILON:
        document.payment_status = PaymentStatus.PAID
        reconciliation = ReconciliationStatus.MATCHED
    else:
        document.payment_status = PaymentStatus.PARTIAL
        reconciliation = ReconciliationStatus.PARTIAL

    if not (keep_disputed and document.reconciliation_status == ReconciliationStatus.DISPUTED):
        document.reconciliation_status = reconciliation

    latest = document.payments[-1]
    document.match_method = latest.method
    document.match_confidence = min(p.confidence for p in document.payments)


def apply_payment(
    document: CanonicalDocument,
    transaction: Transaction,
    amount: Optional[Decimal] = None,
    method: MatchMethod = MatchMethod.AUTO,
    confidence: float = 1.0,
    matched_by: Optional[str] = None,
    now: Optional[Timestamp] = None,
) -> PaymentRecord:
    """Attach a payment from ``transaction`` to ``document`` and update statuses.

    Args:
        document: Document receiving the payment (mutated in place).
        transaction: Bank transaction backing the payment.
        amount: Amount applied; defaults to the full transaction amount.
        method: How the match was made.
        confidence: Match confidence recorded on the payment.
        matched_by: User or agent id.
        now: Timestamp recorded as matchedAt.

    Returns:
        The new PaymentRecord.

    Raises:
        TransactionAlreadyConsumed: If the transaction already pays this document.
        ValidationError: On currency mismatch or an invalid amount.
    """
    if transaction.id in document.matched_transaction_ids:
        raise TransactionAlreadyConsumed(transaction.id, document.id)
    if transaction.currency != document.currency:
        raise ValidationError(
            f"Transaction currency {transaction.currency} does not match "
            f"document currency {document.currency}",
            field="currency",
        )

    applied = transaction.amount if amount is None else amount
    if applied <= 0:
        raise ValidationError(f"Payment amount must be positive, got {applied}", field="amount")
    if applied > transaction.amount:
        raise ValidationError(
            f"Payment amount {applied} exceeds transaction amount {transaction.amount}",
            field="amount",
        )

    payment = PaymentRecord(
        transaction_id=transaction.id,
        document_id=document.id,
        amount=applied,
        currency=document.currency,
        date=transaction.date,
        method=method,
        confidence=confidence,
        matched_by=matched_by,
        matched_at=now or Timestamp.now(),
        reference=transaction.description or None,
    )
    document.payments.append(payment)
    update_statuses(document)

    logger.info(
        "Applied %s %s from tx %s to %s (%s, remaining %s)",
        applied,
        document.currency,
        transaction.id,
        document.id,
        document.payment_status.value,
        document.amount_remaining,
    )
    return payment


class ReconciliationService:
    """Orchestrates matching and payment bookkeeping for one store.

    Runs are safe to repeat: consumed transactions are never offered again
    and settled documents are not loaded as open.

    Usage:
        service = ReconciliationService(store, config)
        result = service.run("user_123")
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Config] = None,
        writer: Optional[BatchWriter] = None,
        engine: Optional[MatchingEngine] = None,
    ) -> None:
        """Initialize the reconciliation service.

        Args:
            store: Document store holding invoices, bills and transactions.
            config: Application configuration; defaults apply when omitted.
            writer: Batch writer; built from the store when omitted.
            engine: Matching engine; built from the config when omitted.
        """
        self.store = store
        self.config = config
        self.engine = engine or MatchingEngine(config)
        if writer is None:
            store_config = config.store if config else None
            writer = BatchWriter(
                store,
                max_batch_size=store_config.max_batch_size if store_config else None,
                timeout=store_config.timeout_seconds if store_config else None,
                max_workers=store_config.max_workers if store_config else 4,
            )
        self.writer = writer

        recon = config.reconciliation if config else None
        self.accept_threshold = recon.accept_threshold if recon else 0.6
        self.max_candidates = recon.max_candidates if recon else 5

    # === Loading ===

    def load_documents(self, owner: str, open_only: bool = False) -> list[CanonicalDocument]:
        """All invoices and bills of ``owner`` in (document date, id) order."""
        documents: list[CanonicalDocument] = []
        for collection in DOCUMENT_COLLECTIONS:
            for data in self.store.query(collection, {"userId": owner}):
                documents.append(CanonicalDocument.from_dict(data))
        if open_only:
            documents = [d for d in documents if d.is_open]
        documents.sort(key=lambda d: (d.document_date, d.id))
        return documents

    def load_transactions(self, owner: str) -> list[Transaction]:
        rows = self.store.query(TRANSACTION_COLLECTION, {"userId": owner}, order_by=("date",))
        return [Transaction.from_dict(row) for row in rows]

    def get_document(self, document_id: str) -> CanonicalDocument:
        for collection in DOCUMENT_COLLECTIONS:
            data = self.store.get(collection, document_id)
            if data is not None:
                return CanonicalDocument.from_dict(data)
        raise DocumentNotFound("invoices|bills", document_id)

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.store.get(TRANSACTION_COLLECTION, transaction_id)
        if data is None:
            raise DocumentNotFound(TRANSACTION_COLLECTION, transaction_id)
        return Transaction.from_dict(data)

    def consumed_transactions(self, owner: str) -> dict[str, str]:
        """Map of transaction id -> id of the document its payment belongs to."""
        consumed: dict[str, str] = {}
        for document in self.load_documents(owner):
            for payment in document.payments:
                consumed[payment.transaction_id] = document.id
        return consumed

    def claim_holder(self, transaction_id: str) -> Optional[str]:
        """Document id recorded in the transaction's claim, if any."""
        claim = self.store.get(CLAIM_COLLECTION, transaction_id)
        return claim.get("documentId") if claim else None

    def load_patterns(self, owner: str) -> list[VendorPattern]:
        rows = self.store.query(PATTERN_COLLECTION, {"userId": owner})
        return [VendorPattern.from_dict(row) for row in rows]

    # === Writing ===

    def _document_ops(
        self,
        document: CanonicalDocument,
        snapshot: list[str],
        released: tuple[str, ...] = (),
    ) -> list[WriteOp]:
        """Claims for new payments plus a guarded update of reconciliation fields."""
        ops: list[WriteOp] = []
        for payment in document.payments:
            if payment.transaction_id in snapshot:
                continue
            ops.append(
                WriteOp.create(
                    CLAIM_COLLECTION,
                    payment.transaction_id,
                    {
                        "userId": document.owner,
                        "transactionId": payment.transaction_id,
                        "documentId": document.id,
                        "collection": document.collection,
                        "amount": payment.amount,
                        "method": payment.method.value,
                        "claimedAt": payment.matched_at or Timestamp.now(),
                    },
                )
            )
        ops.extend(WriteOp.delete(CLAIM_COLLECTION, tx_id) for tx_id in released)
        ops.append(
            WriteOp.update(
                document.collection,
                document.id,
                document.reconciliation_fields(),
                expected={"matchedTransactionIds": sorted(snapshot)},
            )
        )
        return ops

    @staticmethod
    def _aging_op(document: CanonicalDocument, snapshot: list[str]) -> WriteOp:
        data = document.to_dict()
        return WriteOp.update(
            document.collection,
            document.id,
            {name: data[name] for name in AGING_FIELDS},
            expected={"matchedTransactionIds": sorted(snapshot)},
        )

    def _learning_ops(
        self,
        patterns: dict[str, VendorPattern],
        document: CanonicalDocument,
        transaction: Transaction,
        payment: PaymentRecord,
    ) -> list[WriteOp]:
        """Fold one accepted match into ``patterns`` and return its writes."""
        existing = find_pattern(patterns.values(), document.counterparty_name)
        pattern = learn_from_match(
            existing,
            document,
            transaction,
            payment.method,
            payment.confidence,
            now=payment.matched_at,
        )
        patterns[pattern.id] = pattern
        entry = history_entry(
            document,
            transaction,
            payment.amount,
            payment.method,
            payment.confidence,
            matched_by=payment.matched_by,
            now=payment.matched_at,
        )
        return [
            WriteOp.set(PATTERN_COLLECTION, pattern.id, pattern.to_dict()),
            WriteOp.set(HISTORY_COLLECTION, entry.id, entry.to_dict()),
        ]

    def _commit(self, ops: list[WriteOp]) -> None:
        """Commit ops atomically.

        Raises:
            StoreConflictError: If a claim already exists or the document
                changed since it was loaded.
            BatchWriteError: On any other store failure.
        """
        result = self.writer.commit_atomic(ops)
        if isinstance(result.error, StoreConflictError):
            raise result.error
        result.raise_for_error()

    # === Automatic reconciliation ===

    def run(
        self,
        owner: str,
        now: Optional[Union[date, datetime]] = None,
        dry_run: bool = False,
    ) -> ReconciliationResult:
        """Run automatic matching for one owner.

        Args:
            owner: User whose documents and transactions are reconciled.
            now: Reference time for aging and matchedAt stamps.
            dry_run: If True, compute everything but write nothing.

        Returns:
            ReconciliationResult with accepted matches, unresolved candidates,
            warnings and committed counts. Matches on documents that another
            writer changed during the run are dropped and reported as warnings.
        """
        start_time = time.time()
        now = now or datetime.now(timezone.utc)
        stamp = Timestamp(now if isinstance(now, datetime) else datetime(
            now.year, now.month, now.day, tzinfo=timezone.utc
        ))
        result = ReconciliationResult(state=ReconciliationState.LOADING, owner=owner, dry_run=dry_run)

        try:
            documents = self.load_documents(owner, open_only=True)
            transactions = self.load_transactions(owner)
            consumed = set(self.consumed_transactions(owner))
            patterns = self.load_patterns(owner)
            snapshots = {d.id: sorted(d.matched_transaction_ids) for d in documents}
            logger.info(
                "Reconciling %d open documents against %d transactions (%d consumed) for %s",
                len(documents),
                len(transactions),
                len(consumed),
                owner,
            )

            result.state = ReconciliationState.MATCHING
            changed: dict[str, CanonicalDocument] = {}
            by_id = {tx.id: tx for tx in transactions}

            for document in documents:
                result.documents_processed += 1
                if refresh_aging(document, now):
                    changed[document.id] = document
                pattern = find_pattern(patterns, document.counterparty_name)

                while document.is_open:
                    search = self.engine.find_candidates(document, transactions, consumed, pattern)
                    result.warnings.extend(search.warnings)
                    best = search.best
                    if best is None or best.confidence < self.accept_threshold:
                        if search.candidates:
                            result.unresolved[document.id] = search.candidates[: self.max_candidates]
                        break

                    apply_payment(
                        document,
                        by_id[best.transaction_id],
                        method=MatchMethod.AUTO,
                        confidence=best.confidence,
                        now=stamp,
                    )
                    refresh_aging(document, now)
                    consumed.add(best.transaction_id)
                    changed[document.id] = document
                    result.accepted.append(
                        AcceptedMatch(
                            document_id=document.id,
                            transaction_id=best.transaction_id,
                            amount=best.suggested_amount,
                            confidence=best.confidence,
                        )
                    )

            if dry_run:
                logger.info("Dry run: %d matches not written", len(result.accepted))
            elif changed:
                result.state = ReconciliationState.WRITING
                self._write_run(result, list(changed.values()), snapshots, by_id, patterns)

            result.warnings = list(dict.fromkeys(result.warnings))
            result.state = ReconciliationState.COMPLETED
            logger.info(
                "Reconciliation completed for %s: %d accepted, %d unresolved",
                owner,
                len(result.accepted),
                len(result.unresolved),
            )

        except ReconError as e:
            logger.exception("Reconciliation failed: %s", e)
            result.state = ReconciliationState.FAILED
            result.errors.append(f"Fatal error: {e}")

        result.duration_ms = int((time.time() - start_time) * 1000)
        return result

    def _write_run(
        self,
        result: ReconciliationResult,
        documents: list[CanonicalDocument],
        snapshots: dict[str, list[str]],
        transactions: dict[str, Transaction],
        patterns: list[VendorPattern],
    ) -> None:
        """Commit each changed document on its own, then learn from what landed."""
        committed_ids: set[str] = set()
        for document in documents:
            snapshot = snapshots[document.id]
            if sorted(document.matched_transaction_ids) == snapshot:
                ops = [self._aging_op(document, snapshot)]
            else:
                ops = self._document_ops(document, snapshot)
            try:
                self._commit(ops)
            except StoreConflictError as e:
                dropped = [m for m in result.accepted if m.document_id == document.id]
                logger.warning(
                    "Document %s changed during the run, %d match(es) dropped: %s",
                    document.id,
                    len(dropped),
                    e,
                )
                result.warnings.append(
                    f"Document {document.id} changed during reconciliation; "
                    f"{len(dropped)} match(es) not written"
                )
                result.accepted = [m for m in result.accepted if m.document_id != document.id]
                if dropped:
                    result.unresolved.pop(document.id, None)
                continue
            committed_ids.add(document.id)
            result.committed[document.collection] = result.committed.get(document.collection, 0) + 1

        learned = {p.id: p for p in patterns}
        by_document = {d.id: d for d in documents}
        ops: list[WriteOp] = []
        for match in result.accepted:
            if match.document_id not in committed_ids:
                continue
            document = by_document[match.document_id]
            payment = next(p for p in document.payments if p.transaction_id == match.transaction_id)
            ops.extend(
                self._learning_ops(learned, document, transactions[match.transaction_id], payment)
            )
        if ops:
            commit_results = self.writer.commit_parallel(ops)
            for name, commit_result in commit_results.items():
                if not commit_result.success:
                    result.warnings.append(f"Pattern learning not saved to {name}: {commit_result.error}")

    # === Single matches ===

    def propose_match(
        self,
        document_id: str,
        transaction_id: str,
        confidence: float,
        source: DecisionSource = DecisionSource.AI_AGENT,
        proposed_by: Optional[str] = None,
    ) -> MatchDecision:
        """Accept an externally proposed match if it clears the same checks as a run.

        Rejections (low confidence, consumed transaction, wrong direction or
        currency, settled document, concurrent change) are returned as
        decisions, not raised.
        """
        document = self.get_document(document_id)
        transaction = self.get_transaction(transaction_id)
        snapshot = sorted(document.matched_transaction_ids)

        def reject(reason: str) -> MatchDecision:
            logger.info("Rejected %s proposal %s -> %s: %s", source.value, transaction_id, document_id, reason)
            return MatchDecision(False, document_id, transaction_id, reason, document=document)

        if confidence < self.accept_threshold:
            return reject(f"confidence {confidence:.2f} below threshold {self.accept_threshold:.2f}")
        if not document.is_open:
            return reject(f"document is {document.payment_status.value}")
        if transaction.type != transaction_type_for(document.direction):
            return reject(f"{transaction.type.value} transaction cannot settle a {document.direction.value} document")
        if transaction.currency != document.currency:
            return reject(f"currency {transaction.currency} differs from {document.currency}")
        holder = self.consumed_transactions(document.owner).get(transaction_id)
        if holder is not None:
            return reject(f"transaction already consumed by {holder}")

        payment = apply_payment(
            document,
            transaction,
            method=source.method,
            confidence=confidence,
            matched_by=proposed_by,
        )
        patterns = {p.id: p for p in self.load_patterns(document.owner)}
        ops = self._document_ops(document, snapshot)
        ops += self._learning_ops(patterns, document, transaction, payment)
        try:
            self._commit(ops)
        except StoreConflictError:
            holder = self.claim_holder(transaction_id)
            if holder is not None:
                return reject(f"transaction already consumed by {holder}")
            return reject("document changed while matching")
        return MatchDecision(True, document_id, transaction_id, "accepted", payment, document)

    def manual_match(
        self,
        document_id: str,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        user: Optional[str] = None,
    ) -> MatchDecision:
        """Link a transaction to a document on a user's say-so, bypassing scoring.

        Raises:
            TransactionAlreadyConsumed: If any document already holds the transaction.
            ValidationError: On owner or currency mismatch, or an invalid amount.
            StoreConflictError: If the document changed since it was loaded.
        """
        document = self.get_document(document_id)
        transaction = self.get_transaction(transaction_id)
        if transaction.owner != document.owner:
            raise ValidationError("Transaction and document belong to different owners")
        snapshot = sorted(document.matched_transaction_ids)

        holder = self.consumed_transactions(document.owner).get(transaction_id)
        if holder is not None:
            raise TransactionAlreadyConsumed(transaction_id, holder)

        already_covered = any(p.method != MatchMethod.MANUAL for p in document.payments) and (
            document.amount_remaining is not None and document.amount_remaining <= MONEY_EPSILON
        )

        payment = apply_payment(
            document,
            transaction,
            amount=amount,
            method=MatchMethod.MANUAL,
            confidence=1.0,
            matched_by=user,
        )
        reason = "matched"
        if already_covered:
            document.reconciliation_status = ReconciliationStatus.DISPUTED
            reason = "disputed: document was already covered by an automatic match"
            document.warnings.append(
                f"Manual match of {transaction_id} conflicts with existing automatic match"
            )
            logger.warning("Document %s disputed after manual match of %s", document_id, transaction_id)

        patterns = {p.id: p for p in self.load_patterns(document.owner)}
        ops = self._document_ops(document, snapshot)
        ops += self._learning_ops(patterns, document, transaction, payment)
        try:
            self._commit(ops)
        except StoreConflictError:
            holder = self.claim_holder(transaction_id)
            if holder is not None:
                raise TransactionAlreadyConsumed(transaction_id, holder) from None
            raise
        return MatchDecision(True, document_id, transaction_id, reason, payment, document)

    def unmatch(self, transaction_id: str, owner: Optional[str] = None) -> CanonicalDocument:
        """Remove the payment backed by ``transaction_id`` and recompute statuses.

        Raises:
            DocumentNotFound: If no document holds a payment for the transaction.
            StoreConflictError: If the document changed since it was loaded.
        """
        if owner is None:
            owner = self.get_transaction(transaction_id).owner
        holder = self.consumed_transactions(owner).get(transaction_id)
        if holder is None:
            raise DocumentNotFound("payments", transaction_id)

        document = self.get_document(holder)
        snapshot = sorted(document.matched_transaction_ids)
        document.payments = [p for p in document.payments if p.transaction_id != transaction_id]
        update_statuses(document, keep_disputed=False)
        refresh_aging(document, datetime.now(timezone.utc))
        self._commit(self._document_ops(document, snapshot, released=(transaction_id,)))

        logger.info("Unmatched tx %s from %s (%s)", transaction_id, holder, document.payment_status.value)
        return document

    # === Reporting ===

    def refresh_aging(
        self, owner: str, now: Optional[Union[date, datetime]] = None, dry_run: bool = False
    ) -> list[CanonicalDocument]:
        """Recompute aging for all of an owner's documents; returns the documents.

        Documents whose payments changed since loading keep their stored aging.
        """
        now = now or datetime.now(timezone.utc)
        documents = self.load_documents(owner)
        changed = [d for d in documents if refresh_aging(d, now)]
        if changed and not dry_run:
            for document in changed:
                try:
                    self._commit([self._aging_op(document, sorted(document.matched_transaction_ids))])
                except StoreConflictError as e:
                    logger.warning("Aging of %s not saved: %s", document.id, e)
        logger.info("Aging refreshed for %s: %d of %d changed", owner, len(changed), len(documents))
        return documents

    def get_status(self, owner: str) -> dict:
        """Counts per status and outstanding totals per currency."""
        documents = self.load_documents(owner)
        payment_counts = {status.value: 0 for status in PaymentStatus}
        reconciliation_counts = {status.value: 0 for status in ReconciliationStatus}
        outstanding: dict[str, dict[str, Decimal]] = {}

        for document in documents:
            payment_counts[document.payment_status.value] += 1
            reconciliation_counts[document.reconciliation_status.value] += 1
            if document.is_open and document.amount_remaining:
                per_direction = outstanding.setdefault(document.direction.value, {})
                per_direction[document.currency] = (
                    per_direction.get(document.currency, Decimal("0.00"))
                    + document.amount_remaining
                )

        consumed = {p.transaction_id for d in documents for p in d.payments}
        transactions = self.load_transactions(owner)

        return {
            "documents_total": len(documents),
            "payment_status": payment_counts,
            "reconciliation_status": reconciliation_counts,
            "outstanding": {
                direction: {currency: f"{amount:.2f}" for currency, amount in sorted(totals.items())}
                for direction, totals in sorted(outstanding.items())
            },
            "transactions_total": len(transactions),
            "transactions_unmatched": sum(1 for tx in transactions if tx.id not in consumed),
        }
