"""Tests for the import orchestration service."""

import io
from datetime import date
from decimal import Decimal

import pytest

from invoice_recon.errors import AmbiguousHeaderRow
from invoice_recon.schemas.documents import (
    CanonicalDocument,
    DocumentDirection,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from invoice_recon.schemas.extraction import AIExtractionPayload, ExtractedMetadata
from invoice_recon.schemas.templates import TARGET_TRANSACTIONS
from invoice_recon.services import ImportService, ReconciliationService, read_csv_table
from invoice_recon.services.importer import TEMPLATE_COLLECTION
from invoice_recon.state_store import WriteOp

OWNER = "user_1"
NOW = date(2024, 3, 1)


@pytest.fixture
def service(store, config) -> ImportService:
    return ImportService(store, config)


class TestReadCsvTable:
    """Tests for CSV reading."""

    def test_comma(self):
        assert read_csv_table("a,b\n1, 2\n") == [["a", "b"], ["1", "2"]]

    def test_semicolon_sniffed(self):
        text = "Invoice #;Total;Date\nA-1;5,00;01.02.2024\nA-2;7,50;02.02.2024\n"
        assert read_csv_table(text)[1] == ["A-1", "5,00", "01.02.2024"]

    def test_explicit_delimiter(self):
        assert read_csv_table("a|b\n", delimiter="|") == [["a", "b"]]

    def test_path_with_bom(self, tmp_path):
        path = tmp_path / "export.csv"
        path.write_text("\ufeffInvoice #,Total\nA-1,5.00\n", encoding="utf-8")
        assert read_csv_table(path)[0] == ["Invoice #", "Total"]

    def test_file_object(self):
        assert read_csv_table(io.StringIO("x,y\n")) == [["x", "y"]]


class TestImportTable:
    """Tests for table imports."""

    def test_first_import_learns_template(self, store, service, invoice_table):
        result = service.import_table(
            invoice_table, OWNER, DocumentDirection.OUTGOING, file_name="acme_jan.csv", now=NOW
        )

        assert result.success
        assert result.success_count == 3
        assert result.skipped_count == 1
        assert result.template_created
        assert result.template_name == "acme_jan"
        assert result.committed == 4
        assert store.count("invoices", owner=OWNER) == 3

        template = service.load_templates(OWNER)[0]
        assert template.id == result.template_id
        assert template.usage_count == 1
        assert template.success_count == 1

    def test_documents_normalized(self, service, invoice_table):
        result = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        documents = [CanonicalDocument.from_dict(service.store.get("invoices", i)) for i in result.document_ids]
        first = next(d for d in documents if d.document_number == "INV-1001")

        assert first.total == Decimal("1200.00")
        assert first.document_date == date(2024, 1, 15)
        assert first.counterparty_name == "Acme Corp"
        assert first.batch_id == result.batch_id
        assert first.import_template_id == result.template_id

    def test_second_import_reuses_template(self, store, service, invoice_table):
        first = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)
        second = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        assert not second.template_created
        assert second.template_id == first.template_id
        assert second.template_confidence == pytest.approx(1.0)
        assert second.document_ids == first.document_ids
        assert store.count("invoices", owner=OWNER) == 3
        assert store.count(TEMPLATE_COLLECTION) == 1
        assert service.load_templates(OWNER)[0].usage_count == 2

    def test_templates_kept_per_direction(self, store, service, invoice_table):
        service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        bills = service.import_table(invoice_table, OWNER, DocumentDirection.INCOMING, now=NOW)

        assert bills.template_created
        assert store.count("bills", owner=OWNER) == 3
        assert len(service.load_templates(OWNER, DocumentDirection.INCOMING)) == 1

    def test_dry_run(self, store, service, invoice_table):
        result = service.import_table(
            invoice_table, OWNER, DocumentDirection.OUTGOING, dry_run=True, now=NOW
        )

        assert result.success_count == 3
        assert result.committed == 0
        assert store.count("invoices") == 0
        assert store.count(TEMPLATE_COLLECTION) == 0

    def test_bad_row_reported(self, store, service, invoice_table):
        """A row without an amount is rejected; the rest still import."""
        invoice_table[4][4] = ""

        result = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        assert result.success_count == 2
        assert result.error_count == 1
        assert not result.success
        assert result.errors[0].row == 4
        assert store.count("invoices") == 2
        assert service.load_templates(OWNER)[0].success_count == 1

    def test_duplicate_rows_collapse(self, store, service, invoice_table):
        invoice_table.append(list(invoice_table[3]))

        result = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        assert result.success_count == 3
        assert result.duplicate_count == 1
        assert len(result.document_ids) == 3
        assert any("Duplicate document INV-1001" in w for w in result.warnings)
        assert store.count("invoices") == 3

    def test_org_stamped(self, service, invoice_table):
        result = service.import_table(
            invoice_table, OWNER, DocumentDirection.OUTGOING, org_id="org_9", now=NOW
        )
        stored = service.store.get("invoices", result.document_ids[0])
        assert stored["orgId"] == "org_9"

    def test_headerless_table_rejected(self, service):
        with pytest.raises(AmbiguousHeaderRow):
            service.import_table([["1", "2"], ["3", "4"]], OWNER, DocumentDirection.OUTGOING)

    def test_to_dict(self, service, invoice_table):
        data = service.import_table(
            invoice_table, OWNER, DocumentDirection.OUTGOING, dry_run=True, now=NOW
        ).to_dict()
        assert data["successCount"] == 3
        assert data["dryRun"] is True


class TestReimport:
    """Re-importing a file must not undo reconciliation."""

    @pytest.fixture
    def reconciled(self, store, service, config, invoice_table):
        """Import the export and settle INV-1001 with a bank payment."""
        first = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)
        payment = Transaction(
            id="tx_acme",
            type=TransactionType.CREDIT,
            amount=Decimal("1200.00"),
            currency="USD",
            date=date(2024, 2, 1),
            description="ACME CORP PAYMENT INV-1001",
            owner=OWNER,
        )
        store.commit([WriteOp.set("transactions", payment.id, payment.to_dict())])
        run = ReconciliationService(store, config).run(OWNER, now=NOW)
        assert [m.transaction_id for m in run.accepted] == ["tx_acme"]
        return run.accepted[0].document_id, first

    def test_payments_survive_reimport(self, store, service, invoice_table, reconciled):
        document_id, first = reconciled

        second = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        assert second.document_ids == first.document_ids
        assert second.existing_count == 3
        stored = CanonicalDocument.from_dict(store.get("invoices", document_id))
        assert stored.payment_status == PaymentStatus.PAID
        assert [p.transaction_id for p in stored.payments] == ["tx_acme"]
        assert stored.amount_remaining == Decimal("0.00")
        assert store.get("payment_claims", "tx_acme")["documentId"] == document_id

    def test_source_fields_refreshed(self, store, service, invoice_table, reconciled):
        document_id, _ = reconciled
        invoice_table[3][3] = "03/14/2024"

        service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        stored = CanonicalDocument.from_dict(store.get("invoices", document_id))
        assert stored.due_date == date(2024, 3, 14)
        assert stored.payment_status == PaymentStatus.PAID

    def test_changed_total_keeps_stored_amounts(self, store, service, invoice_table, reconciled):
        """A paid document keeps its stored total and is flagged instead."""
        document_id, _ = reconciled
        invoice_table[3][4] = "$1,500.00"

        result = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        stored = CanonicalDocument.from_dict(store.get("invoices", document_id))
        assert stored.total == Decimal("1200.00")
        assert stored.payment_status == PaymentStatus.PAID
        assert any("stored total 1200.00 kept" in w for w in stored.warnings)
        assert any("stored total 1200.00 kept" in w for w in result.warnings)

    def test_unpaid_document_rewritten(self, store, service, invoice_table):
        first = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)
        invoice_table[4][4] = "$475.00"

        second = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        assert second.existing_count == 3
        documents = [CanonicalDocument.from_dict(store.get("invoices", i)) for i in first.document_ids]
        globex = next(d for d in documents if d.document_number == "INV-1002")
        assert globex.total == Decimal("475.00")
        assert globex.amount_remaining == Decimal("475.00")


class TestImportTransactions:
    """Tests for bank statement imports."""

    def test_statement_imported(self, store, service, bank_table):
        result = service.import_transactions(bank_table, OWNER, account_id="acct_1", file_name="feb.csv")

        assert result.success
        assert result.success_count == 3
        assert result.template_created
        assert result.template_name == "feb"
        assert result.committed == 4
        assert store.count("transactions", owner=OWNER) == 3

        payment, card, _ = [Transaction.from_dict(store.get("transactions", i)) for i in result.transaction_ids]
        assert payment.id.startswith("tx_")
        assert payment.type == TransactionType.CREDIT
        assert payment.amount == Decimal("1200.00")
        assert payment.reference == "REF-881"
        assert payment.account_id == "acct_1"
        assert payment.batch_id == result.batch_id
        assert card.type == TransactionType.DEBIT
        assert card.amount == Decimal("84.20")
        assert card.reference is None

    def test_reimport_adds_nothing(self, store, service, bank_table):
        first = service.import_transactions(bank_table, OWNER)

        second = service.import_transactions(bank_table, OWNER)

        assert not second.template_created
        assert second.template_id == first.template_id
        assert second.transaction_ids == first.transaction_ids
        assert second.existing_count == 3
        assert second.committed == 1
        assert store.count("transactions") == 3

    def test_identical_lines_kept_apart(self, store, service, bank_table):
        """Two equal card payments on one day are two transactions."""
        bank_table.append(list(bank_table[2]))

        result = service.import_transactions(bank_table, OWNER)

        assert result.success_count == 4
        assert len(set(result.transaction_ids)) == 4
        assert store.count("transactions") == 4

    def test_zero_amount_rejected(self, store, service, bank_table):
        bank_table[2][2] = "0.00"

        result = service.import_transactions(bank_table, OWNER)

        assert result.success_count == 2
        assert result.error_count == 1
        assert result.errors[0].field == "amount"
        assert result.errors[0].row == 2
        assert store.count("transactions") == 2

    def test_debit_and_credit_columns(self, store, service):
        table = [
            ["Date", "Details", "Withdrawals", "Deposits"],
            ["2024-02-10", "RENT FEBRUARY", "1,500.00", ""],
            ["2024-02-11", "STRIPE PAYOUT", "", "980.00"],
        ]

        result = service.import_transactions(table, OWNER)

        rent, payout = [Transaction.from_dict(store.get("transactions", i)) for i in result.transaction_ids]
        assert (rent.type, rent.amount) == (TransactionType.DEBIT, Decimal("1500.00"))
        assert (payout.type, payout.amount) == (TransactionType.CREDIT, Decimal("980.00"))

    def test_dry_run(self, store, service, bank_table):
        result = service.import_transactions(bank_table, OWNER, dry_run=True)

        assert result.success_count == 3
        assert result.committed == 0
        assert store.count("transactions") == 0
        assert store.count(TEMPLATE_COLLECTION) == 0

    def test_templates_kept_per_target(self, service, bank_table, invoice_table):
        service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)
        service.import_transactions(bank_table, OWNER)

        statement_templates = service.load_templates(OWNER, target=TARGET_TRANSACTIONS)
        assert len(statement_templates) == 1
        assert statement_templates[0].direction is None
        assert len(service.load_templates(OWNER)) == 1

    def test_to_dict(self, service, bank_table):
        data = service.import_transactions(bank_table, OWNER, dry_run=True).to_dict()
        assert len(data["transactionIds"]) == 3
        assert data["existingCount"] == 0


class TestDetect:
    """Tests for detection against saved templates."""

    def test_matches_saved_template(self, service, invoice_table):
        imported = service.import_table(invoice_table, OWNER, DocumentDirection.OUTGOING, now=NOW)

        detected = service.detect(invoice_table, owner=OWNER, direction=DocumentDirection.OUTGOING)

        assert detected.matched_template_id == imported.template_id
        assert detected.template_confidence == pytest.approx(1.0)

    def test_no_owner_no_template(self, service, invoice_table):
        detected = service.detect(invoice_table)
        assert detected.matched_template_id is None


class TestImportAIPayload:
    """Tests for storing AI-extracted documents."""

    @pytest.fixture
    def payload(self) -> AIExtractionPayload:
        return AIExtractionPayload(
            document_type="Invoice",
            metadata=[
                ExtractedMetadata("Invoice Number", "INV-77"),
                ExtractedMetadata("Invoice Date", "2024-02-01"),
                ExtractedMetadata("Vendor", "Paper Supply Co"),
                ExtractedMetadata("Total", "$89.90"),
                ExtractedMetadata("Currency", "USD"),
            ],
            confidence=0.95,
        )

    def test_stored_as_bill(self, store, service, payload):
        document = service.import_ai_payload(payload, OWNER, DocumentDirection.INCOMING, now=NOW)

        stored = CanonicalDocument.from_dict(store.get("bills", document.id))
        assert stored.document_number == "INV-77"
        assert stored.total == Decimal("89.90")
        assert stored.source == "upload"

    def test_dry_run(self, store, service, payload):
        service.import_ai_payload(payload, OWNER, DocumentDirection.INCOMING, dry_run=True, now=NOW)
        assert store.count("bills") == 0

    def test_reimport_keeps_payment(self, store, service, config, payload):
        document = service.import_ai_payload(payload, OWNER, DocumentDirection.INCOMING, now=NOW)
        debit = Transaction(
            id="tx_paper",
            type=TransactionType.DEBIT,
            amount=Decimal("89.90"),
            currency="USD",
            date=date(2024, 2, 10),
            description="PAPER SUPPLY CO",
            owner=OWNER,
        )
        store.commit([WriteOp.set("transactions", debit.id, debit.to_dict())])
        ReconciliationService(store, config).manual_match(document.id, debit.id)

        again = service.import_ai_payload(payload, OWNER, DocumentDirection.INCOMING, now=NOW)

        assert again.id == document.id
        stored = CanonicalDocument.from_dict(store.get("bills", document.id))
        assert stored.payment_status == PaymentStatus.PAID
        assert [p.transaction_id for p in stored.payments] == ["tx_paper"]
