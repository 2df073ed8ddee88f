"""Tests for the reconciliation service and payment bookkeeping."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from invoice_recon.errors import (
    DocumentNotFound,
    StoreConflictError,
    StoreError,
    TransactionAlreadyConsumed,
    ValidationError,
)
from invoice_recon.schemas.documents import (
    AgingBucket,
    DocumentDirection,
    MatchMethod,
    PaymentStatus,
    ReconciliationStatus,
    TransactionType,
)
from invoice_recon.services import (
    DecisionSource,
    ReconciliationService,
    ReconciliationState,
    apply_payment,
)
from invoice_recon.services.reconciliation import update_statuses
from invoice_recon.state_store import SQLiteDocumentStore, WriteOp

OWNER = "user_1"
FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def seed(store, documents=(), transactions=()):
    ops = [WriteOp.set(d.collection, d.id, d.to_dict()) for d in documents]
    ops += [WriteOp.set("transactions", t.id, t.to_dict()) for t in transactions]
    store.commit(ops)


@pytest.fixture
def service(store, config) -> ReconciliationService:
    return ReconciliationService(store, config)


class TestApplyPayment:
    """Tests for payment bookkeeping on a single document."""

    def test_partial_payment(self, document_factory, transaction_factory):
        doc = document_factory(total="1000.00")
        apply_payment(doc, transaction_factory(amount="400.00"))

        assert doc.amount_paid == Decimal("400.00")
        assert doc.amount_remaining == Decimal("600.00")
        assert doc.payment_status == PaymentStatus.PARTIAL
        assert doc.reconciliation_status == ReconciliationStatus.PARTIAL
        assert doc.matched_transaction_ids == {"tx_1"}

    def test_full_payment(self, document_factory, transaction_factory):
        doc = document_factory()
        payment = apply_payment(doc, transaction_factory(), confidence=0.8)

        assert doc.payment_status == PaymentStatus.PAID
        assert doc.reconciliation_status == ReconciliationStatus.MATCHED
        assert doc.amount_remaining == Decimal("0.00")
        assert doc.match_method == MatchMethod.AUTO
        assert doc.match_confidence == 0.8
        assert payment.id == "pay_doc_1_tx_1"

    def test_overpayment(self, document_factory, transaction_factory):
        """Overpaid documents keep a negative remainder."""
        doc = document_factory()
        apply_payment(doc, transaction_factory(amount="1050.00"))

        assert doc.payment_status == PaymentStatus.OVERPAID
        assert doc.amount_remaining == Decimal("-50.00")

    def test_sub_cent_shortfall_counts_as_paid(self, document_factory, transaction_factory):
        doc = document_factory(total="100.00")
        apply_payment(doc, transaction_factory(amount="99.99"))
        assert doc.payment_status == PaymentStatus.PAID

    def test_same_transaction_twice_rejected(self, document_factory, transaction_factory):
        doc = document_factory()
        tx = transaction_factory(amount="400.00")
        apply_payment(doc, tx)
        with pytest.raises(TransactionAlreadyConsumed):
            apply_payment(doc, tx)

    def test_currency_mismatch_rejected(self, document_factory, transaction_factory):
        with pytest.raises(ValidationError) as exc:
            apply_payment(document_factory(), transaction_factory(currency="EUR"))
        assert exc.value.field == "currency"

    def test_amount_above_transaction_rejected(self, document_factory, transaction_factory):
        with pytest.raises(ValidationError):
            apply_payment(document_factory(), transaction_factory(amount="100.00"), amount=Decimal("150.00"))

    def test_confidence_is_minimum(self, document_factory, transaction_factory):
        doc = document_factory()
        apply_payment(doc, transaction_factory("tx_a", amount="500.00"), confidence=0.9)
        apply_payment(
            doc, transaction_factory("tx_b", amount="500.00"), method=MatchMethod.MANUAL, confidence=0.7
        )
        assert doc.match_confidence == 0.7
        assert doc.match_method == MatchMethod.MANUAL

    def test_removing_all_payments_resets(self, document_factory, transaction_factory):
        doc = document_factory()
        apply_payment(doc, transaction_factory())
        doc.payments = []
        update_statuses(doc)

        assert doc.payment_status == PaymentStatus.UNPAID
        assert doc.reconciliation_status == ReconciliationStatus.UNMATCHED
        assert doc.amount_remaining == Decimal("1000.00")
        assert doc.match_method is None


class TestRun:
    """Tests for automatic reconciliation runs."""

    def test_exact_match_written(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.success
        assert [(m.document_id, m.transaction_id) for m in result.accepted] == [("doc_1", "tx_1")]
        assert result.committed == {"invoices": 1}
        stored = service.get_document("doc_1")
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.payments[0].matched_at.value == FIXED_NOW

    def test_partial_payment(self, store, service, document_factory, transaction_factory):
        """1000 invoice, 400 payment: partial with 600 remaining."""
        seed(store, [document_factory()], [transaction_factory(amount="400.00")])

        service.run(OWNER, now=FIXED_NOW)

        stored = service.get_document("doc_1")
        assert stored.payment_status == PaymentStatus.PARTIAL
        assert stored.amount_remaining == Decimal("600.00")
        assert stored.reconciliation_status == ReconciliationStatus.PARTIAL

    def test_several_partials_settle_document(
        self, store, service, document_factory, transaction_factory
    ):
        seed(
            store,
            [document_factory()],
            [transaction_factory("tx_a", amount="600.00"), transaction_factory("tx_b", amount="400.00")],
        )

        result = service.run(OWNER, now=FIXED_NOW)

        assert [m.transaction_id for m in result.accepted] == ["tx_a", "tx_b"]
        assert service.get_document("doc_1").payment_status == PaymentStatus.PAID

    def test_transaction_consumed_once(self, store, service, document_factory, transaction_factory):
        """Two documents compete for one payment; the earlier document wins."""
        seed(
            store,
            [
                document_factory("doc_a", number="INV-A", document_date=date(2024, 1, 10)),
                document_factory("doc_b", number="INV-B", document_date=date(2024, 1, 15)),
            ],
            [transaction_factory(description="ACME CORP PAYMENT")],
        )

        result = service.run(OWNER, now=FIXED_NOW)

        assert [m.document_id for m in result.accepted] == ["doc_a"]
        assert service.get_document("doc_b").payment_status == PaymentStatus.UNPAID
        assert service.consumed_transactions(OWNER) == {"tx_1": "doc_a"}

    def test_low_confidence_left_unresolved(
        self, store, service, document_factory, transaction_factory
    ):
        seed(store, [document_factory()], [transaction_factory(amount="2000.00", description="ACME CORP")])

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.accepted == []
        assert [c.transaction_id for c in result.unresolved["doc_1"]] == ["tx_1"]

    def test_currency_mismatch_reported(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory(currency="EUR")])

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.accepted == []
        assert len(result.warnings) == 1

    def test_rerun_is_noop(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])
        service.run(OWNER, now=FIXED_NOW)

        second = service.run(OWNER, now=FIXED_NOW)

        assert second.accepted == []
        assert second.documents_processed == 0

    def test_deterministic(self, tmp_path, document_factory, transaction_factory):
        """Identical inputs give identical accepted matches."""
        documents = [
            document_factory("doc_b", number="INV-B", total="500.00"),
            document_factory("doc_a", number="INV-A", total="500.00"),
        ]
        transactions = [
            transaction_factory("tx_2", amount="500.00", description="ACME CORP"),
            transaction_factory("tx_1", amount="500.00", description="ACME CORP"),
        ]
        outcomes = []
        for name in ("one.db", "two.db"):
            store = SQLiteDocumentStore(tmp_path / name)
            seed(store, documents, transactions)
            result = ReconciliationService(store).run(OWNER, now=FIXED_NOW)
            outcomes.append([m.to_dict() for m in result.accepted])

        assert outcomes[0] == outcomes[1]
        assert [(m["documentId"], m["transactionId"]) for m in outcomes[0]] == [
            ("doc_a", "tx_1"),
            ("doc_b", "tx_2"),
        ]

    def test_dry_run_writes_nothing(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        result = service.run(OWNER, now=FIXED_NOW, dry_run=True)

        assert len(result.accepted) == 1
        assert result.committed == {}
        assert service.get_document("doc_1").payment_status == PaymentStatus.UNPAID

    def test_aging_refreshed(self, store, service, document_factory):
        seed(store, [document_factory(due_date=date(2024, 2, 14))])

        service.run(OWNER, now=FIXED_NOW)

        stored = service.get_document("doc_1")
        assert stored.aging_bucket == AgingBucket.DAYS_1_30
        assert stored.days_overdue == 16

    def test_claim_written_with_payment(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        service.run(OWNER, now=FIXED_NOW)

        claim = store.get("payment_claims", "tx_1")
        assert claim["documentId"] == "doc_1"
        assert claim["method"] == "auto"
        assert service.claim_holder("tx_1") == "doc_1"

    def test_patterns_learned(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        result = service.run(OWNER, now=FIXED_NOW)

        patterns = service.load_patterns(OWNER)
        assert [p.vendor_name for p in patterns] == ["Acme Corp"]
        assert patterns[0].match_count == 1
        assert patterns[0].confidence == pytest.approx(result.accepted[0].confidence, abs=1e-4)
        history = store.get("match_history", "mh_doc_1_tx_1")
        assert history["matchType"] == "exact"
        assert history["wasManual"] is False

    def test_learned_pattern_used_next_run(
        self, store, service, monkeypatch, document_factory, transaction_factory
    ):
        seed(store, [document_factory()], [transaction_factory()])
        service.run(OWNER, now=FIXED_NOW)
        seed(
            store,
            [document_factory("doc_2", number="INV-2002", document_date=date(2024, 2, 15))],
            [transaction_factory("tx_2", tx_date=date(2024, 3, 3), description="STRIPE PAYOUT 5531")],
        )

        seen = {}
        find_candidates = service.engine.find_candidates

        def recording(document, transactions, consumed=None, pattern=None):
            seen[document.id] = pattern
            return find_candidates(document, transactions, consumed, pattern)

        monkeypatch.setattr(service.engine, "find_candidates", recording)
        service.run(OWNER, now=FIXED_NOW)

        assert seen["doc_2"].vendor_name == "Acme Corp"
        assert seen["doc_2"].match_count == 1

    def test_store_failure_marks_run_failed(
        self, store, service, monkeypatch, document_factory, transaction_factory
    ):
        seed(store, [document_factory()], [transaction_factory()])

        def broken_commit(operations, timeout=None):
            raise StoreError("disk full")

        monkeypatch.setattr(store, "commit", broken_commit)
        result = service.run(OWNER, now=FIXED_NOW)

        assert result.state == ReconciliationState.FAILED
        assert not result.success
        assert "disk full" in result.errors[0]


class TestConcurrentWriters:
    """A run racing a manual match must neither lose nor double-spend a payment."""

    @staticmethod
    def interleave(monkeypatch, service, action):
        """Run ``action`` right after ``service.run`` has loaded its snapshot."""
        load_patterns = service.load_patterns

        def load_then_act(owner):
            action()
            return load_patterns(owner)

        monkeypatch.setattr(service, "load_patterns", load_then_act)

    def test_manual_match_on_same_document_kept(
        self, store, service, config, monkeypatch, document_factory, transaction_factory
    ):
        seed(store, [document_factory()], [transaction_factory()])
        other = ReconciliationService(store, config)
        self.interleave(monkeypatch, service, lambda: other.manual_match("doc_1", "tx_1", user="alice"))

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.success
        assert result.accepted == []
        assert result.committed == {}
        assert any("doc_1 changed during reconciliation" in w for w in result.warnings)
        stored = service.get_document("doc_1")
        assert [(p.transaction_id, p.method) for p in stored.payments] == [("tx_1", MatchMethod.MANUAL)]
        assert stored.payments[0].matched_by == "alice"

    def test_transaction_not_spent_twice(
        self, store, service, config, monkeypatch, document_factory, transaction_factory
    ):
        """The run would give tx_1 to doc_a while a user gives it to doc_b."""
        seed(
            store,
            [
                document_factory("doc_a", number="INV-A", document_date=date(2024, 1, 10)),
                document_factory("doc_b", number="INV-B", document_date=date(2024, 1, 15)),
            ],
            [transaction_factory(description="ACME CORP PAYMENT")],
        )
        other = ReconciliationService(store, config)
        self.interleave(monkeypatch, service, lambda: other.manual_match("doc_b", "tx_1"))

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.success
        assert result.accepted == []
        holders = [
            d.id for d in service.load_documents(OWNER) if "tx_1" in d.matched_transaction_ids
        ]
        assert holders == ["doc_b"]
        assert service.consumed_transactions(OWNER) == {"tx_1": "doc_b"}
        assert service.claim_holder("tx_1") == "doc_b"
        assert service.get_document("doc_a").payment_status == PaymentStatus.UNPAID

    def test_aging_refresh_does_not_erase_payment(
        self, store, service, config, monkeypatch, document_factory, transaction_factory
    ):
        """Only aging changed in the run; the concurrent payment survives."""
        seed(store, [document_factory()], [transaction_factory(amount="5.00", description="CASH DEPOSIT")])
        other = ReconciliationService(store, config)
        self.interleave(monkeypatch, service, lambda: other.manual_match("doc_1", "tx_1"))

        result = service.run(OWNER, now=FIXED_NOW)

        assert result.success
        assert any("doc_1 changed during reconciliation; 0 match(es)" in w for w in result.warnings)
        stored = service.get_document("doc_1")
        assert [p.transaction_id for p in stored.payments] == ["tx_1"]
        assert stored.payment_status == PaymentStatus.PARTIAL

    def test_other_documents_still_written(
        self, store, service, config, monkeypatch, document_factory, transaction_factory
    ):
        seed(
            store,
            [
                document_factory("doc_1"),
                document_factory("doc_2", number="INV-2", counterparty="Globex", total="500.00"),
            ],
            [
                transaction_factory("tx_1"),
                transaction_factory("tx_2", amount="500.00", description="GLOBEX INV-2"),
            ],
        )
        other = ReconciliationService(store, config)
        self.interleave(monkeypatch, service, lambda: other.manual_match("doc_1", "tx_1"))

        result = service.run(OWNER, now=FIXED_NOW)

        assert [(m.document_id, m.transaction_id) for m in result.accepted] == [("doc_2", "tx_2")]
        assert result.committed == {"invoices": 1}
        assert service.get_document("doc_2").payment_status == PaymentStatus.PAID


class TestProposeMatch:
    """Tests for externally proposed matches."""

    def test_accepted(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        decision = service.propose_match("doc_1", "tx_1", 0.9, proposed_by="agent_7")

        assert decision.accepted
        stored = service.get_document("doc_1")
        assert stored.match_method == MatchMethod.AI_AGENT
        assert stored.payments[0].matched_by == "agent_7"

    def test_low_confidence_rejected(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        decision = service.propose_match("doc_1", "tx_1", 0.5)

        assert not decision.accepted
        assert "below threshold" in decision.reason
        assert service.get_document("doc_1").payments == []

    def test_consumed_transaction_rejected(
        self, store, service, document_factory, transaction_factory
    ):
        seed(
            store,
            [document_factory("doc_1"), document_factory("doc_2", number="INV-2")],
            [transaction_factory()],
        )
        service.run(OWNER, now=FIXED_NOW)

        decision = service.propose_match("doc_2", "tx_1", 0.95)

        assert not decision.accepted
        assert decision.reason == "transaction already consumed by doc_1"

    def test_wrong_direction_rejected(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory(tx_type=TransactionType.DEBIT)])

        decision = service.propose_match("doc_1", "tx_1", 0.95, source=DecisionSource.RULES)

        assert not decision.accepted
        assert "cannot settle" in decision.reason

    def test_claimed_elsewhere_rejected(self, store, service, document_factory, transaction_factory):
        """A claim committed by another writer wins over the consumption check."""
        seed(store, [document_factory()], [transaction_factory()])
        store.commit([WriteOp.set("payment_claims", "tx_1", {"userId": OWNER, "documentId": "doc_9"})])

        decision = service.propose_match("doc_1", "tx_1", 0.95)

        assert not decision.accepted
        assert decision.reason == "transaction already consumed by doc_9"
        assert service.get_document("doc_1").payments == []

    def test_unknown_document(self, store, service, transaction_factory):
        seed(store, transactions=[transaction_factory()])
        with pytest.raises(DocumentNotFound):
            service.propose_match("doc_missing", "tx_1", 0.9)


class TestManualMatch:
    """Tests for user matches and unmatching."""

    def test_partial_amount(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])

        decision = service.manual_match("doc_1", "tx_1", amount=Decimal("250.00"), user="alice")

        assert decision.accepted
        stored = service.get_document("doc_1")
        assert stored.amount_remaining == Decimal("750.00")
        assert stored.match_method == MatchMethod.MANUAL

    def test_consumed_transaction_raises(
        self, store, service, document_factory, transaction_factory
    ):
        """A transaction already used by an automatic match cannot be reused."""
        seed(
            store,
            [document_factory("doc_1"), document_factory("doc_2", number="INV-2")],
            [transaction_factory()],
        )
        service.run(OWNER, now=FIXED_NOW)

        with pytest.raises(TransactionAlreadyConsumed) as exc:
            service.manual_match("doc_2", "tx_1")
        assert exc.value.holder_document_id == "doc_1"

    def test_claimed_elsewhere_raises(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])
        store.commit([WriteOp.set("payment_claims", "tx_1", {"userId": OWNER, "documentId": "doc_9"})])

        with pytest.raises(TransactionAlreadyConsumed) as exc:
            service.manual_match("doc_1", "tx_1")

        assert exc.value.holder_document_id == "doc_9"
        assert service.get_document("doc_1").payments == []
        assert store.count("vendor_patterns") == 0

    def test_document_changed_meanwhile(
        self, store, service, config, monkeypatch, document_factory, transaction_factory
    ):
        """Nothing from a stale match is written, not even its claim."""
        seed(
            store,
            [document_factory()],
            [transaction_factory("tx_1", amount="300.00"), transaction_factory("tx_2", amount="200.00")],
        )
        other = ReconciliationService(store, config)
        load_patterns = service.load_patterns

        def pay_then_load(owner):
            other.manual_match("doc_1", "tx_2")
            return load_patterns(owner)

        monkeypatch.setattr(service, "load_patterns", pay_then_load)

        with pytest.raises(StoreConflictError):
            service.manual_match("doc_1", "tx_1")

        assert [p.transaction_id for p in service.get_document("doc_1").payments] == ["tx_2"]
        assert store.get("payment_claims", "tx_1") is None

    def test_owner_mismatch(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory(owner="someone_else")])
        with pytest.raises(ValidationError):
            service.manual_match("doc_1", "tx_1")

    def test_manual_over_automatic_disputes(
        self, store, service, document_factory, transaction_factory
    ):
        seed(
            store,
            [document_factory()],
            [transaction_factory("tx_1"), transaction_factory("tx_2", description="cash deposit")],
        )
        service.run(OWNER, now=FIXED_NOW)

        decision = service.manual_match("doc_1", "tx_2")

        assert decision.reason.startswith("disputed")
        stored = service.get_document("doc_1")
        assert stored.reconciliation_status == ReconciliationStatus.DISPUTED
        assert stored.payment_status == PaymentStatus.OVERPAID
        assert stored.warnings

    def test_unmatch_restores_balance(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])
        service.run(OWNER, now=FIXED_NOW)

        document = service.unmatch("tx_1")

        assert document.payment_status == PaymentStatus.UNPAID
        assert document.amount_remaining == Decimal("1000.00")
        assert service.consumed_transactions(OWNER) == {}
        assert service.get_document("doc_1").payments == []

    def test_unmatch_clears_dispute(self, store, service, document_factory, transaction_factory):
        seed(
            store,
            [document_factory()],
            [transaction_factory("tx_1"), transaction_factory("tx_2", description="cash deposit")],
        )
        service.run(OWNER, now=FIXED_NOW)
        service.manual_match("doc_1", "tx_2")

        document = service.unmatch("tx_2")

        assert document.reconciliation_status == ReconciliationStatus.MATCHED
        assert document.payment_status == PaymentStatus.PAID

    def test_unmatch_releases_claim(self, store, service, document_factory, transaction_factory):
        seed(store, [document_factory()], [transaction_factory()])
        service.run(OWNER, now=FIXED_NOW)

        service.unmatch("tx_1")

        assert store.get("payment_claims", "tx_1") is None
        assert service.manual_match("doc_1", "tx_1").accepted
        assert service.claim_holder("tx_1") == "doc_1"

    def test_unmatch_unknown(self, store, service, transaction_factory):
        seed(store, transactions=[transaction_factory()])
        with pytest.raises(DocumentNotFound):
            service.unmatch("tx_1")


class TestStatus:
    """Tests for status reporting and aging refresh."""

    def test_get_status(self, store, service, document_factory, transaction_factory):
        seed(
            store,
            [
                document_factory("doc_1"),
                document_factory("doc_2", number="INV-1002", counterparty="Globex", total="500.00"),
                document_factory(
                    "doc_3",
                    number="B-7",
                    total="200.00",
                    currency="EUR",
                    direction=DocumentDirection.INCOMING,
                ),
            ],
            [transaction_factory("tx_1"), transaction_factory("tx_x", amount="5.00", description="XYZ")],
        )
        service.run(OWNER, now=FIXED_NOW)

        status = service.get_status(OWNER)

        assert status["documents_total"] == 3
        assert status["payment_status"]["paid"] == 1
        assert status["payment_status"]["unpaid"] == 2
        assert status["outstanding"] == {"incoming": {"EUR": "200.00"}, "outgoing": {"USD": "500.00"}}
        assert status["transactions_total"] == 2
        assert status["transactions_unmatched"] == 1

    def test_refresh_aging(self, store, service, document_factory):
        seed(store, [document_factory(due_date=date(2024, 1, 1))])

        documents = service.refresh_aging(OWNER, now=FIXED_NOW)

        assert documents[0].aging_bucket == AgingBucket.DAYS_31_60
        assert service.get_document("doc_1").days_overdue == 60
