"""Tests for demo session cloning and reset."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from invoice_recon.demo import SessionReplicator
from invoice_recon.demo.replicator import session_user_id
from invoice_recon.errors import CloneConflict, ValidationError
from invoice_recon.schemas.documents import AgingBucket, CanonicalDocument, PaymentStatus
from invoice_recon.schemas.values import Blob, Timestamp
from invoice_recon.services import ReconciliationService, apply_payment
from invoice_recon.state_store import WriteOp

MASTER_USER = "demo_coastal_creative_agency"
MASTER_ORG = "demo_org_coastal_creative"
CREATED = Timestamp(datetime(2023, 6, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def master(store, document_factory, transaction_factory):
    """Master demo account with one paid invoice and an uploaded file."""
    invoice = document_factory("inv_1", owner=MASTER_USER)
    invoice.org_id = MASTER_ORG
    tx = transaction_factory("tx_1", owner=MASTER_USER)
    apply_payment(invoice, tx, now=CREATED)

    store.commit(
        [
            WriteOp.set(
                "users",
                MASTER_USER,
                {
                    "name": "Coastal Creative Agency",
                    "orgId": MASTER_ORG,
                    "avatarUrl": f"https://cdn.example.com/users/{MASTER_USER}/avatar.png",
                    "createdAt": CREATED,
                },
            ),
            WriteOp.set("organizations", MASTER_ORG, {"ownerId": MASTER_USER, "name": "Coastal"}),
            WriteOp.set("invoices", invoice.id, invoice.to_dict()),
            WriteOp.set("transactions", tx.id, tx.to_dict()),
            WriteOp.set(
                "documents",
                f"{MASTER_USER}_file1",
                {
                    "userId": MASTER_USER,
                    "storagePath": f"uploads/{MASTER_USER}/file1.pdf",
                    "uploadedAt": CREATED,
                    "thumbnail": b"\x89PNG",
                },
            ),
        ]
    )
    return store


@pytest.fixture
def replicator(store, config) -> SessionReplicator:
    return SessionReplicator(store, config)


class TestClone:
    """Tests for cloning the master account."""

    def test_counts(self, master, replicator):
        result = replicator.clone("abc")

        assert result.user_id == "demo_abc"
        assert result.org_id == "demo_org_abc"
        assert result.counts == {
            "users": 1,
            "organizations": 1,
            "invoices": 1,
            "transactions": 1,
            "documents": 1,
        }
        assert result.total == 5

    def test_ids_replaced_inside_strings(self, master, replicator):
        """Master ids embedded in URLs and paths are rewritten too."""
        replicator.clone("abc")

        user = master.get("users", "demo_abc")
        assert user["orgId"] == "demo_org_abc"
        assert user["avatarUrl"] == "https://cdn.example.com/users/demo_abc/avatar.png"
        assert master.get("organizations", "demo_org_abc")["ownerId"] == "demo_abc"
        upload = master.get("documents", "demo_abc_file1")
        assert upload["storagePath"] == "uploads/demo_abc/file1.pdf"

    def test_opaque_values_copied_untouched(self, master, replicator):
        replicator.clone("abc")

        assert master.get("users", "demo_abc")["createdAt"] == CREATED
        upload = master.get("documents", "demo_abc_file1")
        assert upload["uploadedAt"] == CREATED
        assert upload["thumbnail"] == Blob(b"\x89PNG")

    def test_invoice_cloned_under_deterministic_id(self, master, replicator):
        replicator.clone("abc")

        target = replicator.target_id("abc", "invoices", "inv_1")
        clone = CanonicalDocument.from_dict(master.get("invoices", target))

        assert clone.owner == "demo_abc"
        assert clone.org_id == "demo_org_abc"
        assert clone.total == Decimal("1000.00")
        assert clone.payments[0].matched_at == CREATED
        assert target != replicator.target_id("xyz", "invoices", "inv_1")

    def test_clone_twice_is_idempotent(self, master, replicator):
        first = replicator.clone("abc")
        second = replicator.clone("abc")

        assert first.counts == second.counts
        assert master.count("invoices", owner="demo_abc") == 1
        assert master.count("transactions", owner="demo_abc") == 1

    def test_master_untouched(self, master, replicator):
        before = master.get("invoices", "inv_1")
        replicator.clone("abc")
        assert master.get("invoices", "inv_1") == before
        assert master.count("invoices", owner=MASTER_USER) == 1

    def test_conflicting_target_rejected(self, master, replicator):
        target = replicator.target_id("abc", "invoices", "inv_1")
        master.commit([WriteOp.set("invoices", target, {"userId": "someone_else"})])

        with pytest.raises(CloneConflict) as exc:
            replicator.clone("abc")
        assert exc.value.owner == "someone_else"
        assert master.get("users", "demo_abc") is None

    @pytest.mark.parametrize("session_id", ["", "coastal_creative_agency"])
    def test_invalid_session_id(self, master, replicator, session_id):
        with pytest.raises(ValidationError):
            replicator.clone(session_id)

    def test_missing_master_user(self, store, replicator, transaction_factory):
        """Collections are still cloned when the user record is absent."""
        store.commit([WriteOp.set("transactions", "tx_1", transaction_factory(owner=MASTER_USER).to_dict())])

        result = replicator.clone("abc")

        assert result.counts == {"transactions": 1}


class TestReset:
    """Tests for resetting a session."""

    def test_reset_restores_unpaid(self, master, replicator):
        replicator.clone("abc")
        target = replicator.target_id("abc", "invoices", "inv_1")
        assert master.get("invoices", target)["paymentStatus"] == "paid"

        counts = replicator.reset("abc")

        assert counts == {"invoices": 1}
        clone = CanonicalDocument.from_dict(master.get("invoices", target))
        assert clone.payment_status == PaymentStatus.UNPAID
        assert clone.amount_remaining == Decimal("1000.00")
        assert clone.payments == []
        assert clone.matched_transaction_ids == set()
        assert clone.counterparty_name == "Acme Corp"

    def test_reset_leaves_master_alone(self, master, replicator):
        replicator.clone("abc")
        replicator.reset("abc")
        assert master.get("invoices", "inv_1")["paymentStatus"] == "paid"

    def test_reset_unknown_session(self, master, replicator):
        assert replicator.reset("nobody") == {}

    def test_reset_recomputes_aging(self, master, replicator):
        replicator.clone("abc")
        target = replicator.target_id("abc", "invoices", "inv_1")

        replicator.reset("abc", now=datetime(2024, 3, 1, tzinfo=timezone.utc))

        clone = CanonicalDocument.from_dict(master.get("invoices", target))
        assert clone.aging_bucket == AgingBucket.DAYS_1_30
        assert clone.days_overdue == 16

    def test_reset_releases_claims(self, master, replicator, config):
        """A reset session can be reconciled again from scratch."""
        replicator.clone("abc")
        replicator.reset("abc")
        reconciler = ReconciliationService(master, config)
        tx_id = replicator.target_id("abc", "transactions", "tx_1")
        first = reconciler.run(session_user_id("abc"), now=datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert [m.transaction_id for m in first.accepted] == [tx_id]

        counts = replicator.reset("abc")

        assert counts == {"invoices": 1, "payment_claims": 1}
        assert master.get("payment_claims", tx_id) is None
        again = reconciler.run(session_user_id("abc"), now=datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert [m.transaction_id for m in again.accepted] == [tx_id]
