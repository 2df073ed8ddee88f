"""Test fixtures and utilities."""

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from invoice_recon.config import Config, StoreConfig
from invoice_recon.schemas.documents import (
    CanonicalDocument,
    DocumentDirection,
    DocumentType,
    Transaction,
    TransactionType,
)
from invoice_recon.state_store import SQLiteDocumentStore

OWNER = "user_1"

# Fixed reference time so aging and matching are reproducible
FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

# Accounting export with a title block above the header row
SAMPLE_INVOICE_TABLE = [
    ["Coastal Creative Agency - Invoice Export", "", "", "", "", ""],
    ["", "", "", "", "", ""],
    ["Invoice #", "Customer", "Invoice Date", "Due Date", "Amount", "Currency"],
    ["INV-1001", "Acme Corp", "01/15/2024", "02/14/2024", "$1,200.00", "USD"],
    ["INV-1002", "Globex LLC", "01/20/2024", "02/19/2024", "$450.50", "USD"],
    ["", "", "", "", "", ""],
    ["INV-1003", "Initech", "01/25/2024", "02/24/2024", "$3,000.00", "USD"],
]

# Bank statement export: two customer payments and a card payment
SAMPLE_BANK_TABLE = [
    ["Date", "Description", "Amount", "Reference"],
    ["2024-02-01", "ACME CORP PAYMENT INV-1001", "1,200.00", "REF-881"],
    ["2024-02-03", "OFFICE DEPOT VISA", "-84.20", ""],
    ["2024-02-05", "GLOBEX LLC INV-1002", "450.50", "REF-882"],
]


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path."""
    return tmp_path / "state.db"


@pytest.fixture
def store(temp_db) -> SQLiteDocumentStore:
    """Fresh SQLite document store."""
    return SQLiteDocumentStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Default config pointing at the temporary database."""
    return Config(store=StoreConfig(state_db_path=temp_db))


@pytest.fixture
def invoice_table() -> list[list[str]]:
    return [list(row) for row in SAMPLE_INVOICE_TABLE]


@pytest.fixture
def bank_table() -> list[list[str]]:
    return [list(row) for row in SAMPLE_BANK_TABLE]


def make_document(
    doc_id: str = "doc_1",
    total: str = "1000.00",
    number: str = "INV-1001",
    counterparty: str = "Acme Corp",
    document_date: date = date(2024, 1, 15),
    due_date: date | None = date(2024, 2, 14),
    currency: str = "USD",
    direction: DocumentDirection = DocumentDirection.OUTGOING,
    owner: str = OWNER,
) -> CanonicalDocument:
    """Build an unpaid canonical document."""
    return CanonicalDocument(
        id=doc_id,
        owner=owner,
        direction=direction,
        document_type=(
            DocumentType.INVOICE if direction == DocumentDirection.OUTGOING else DocumentType.BILL
        ),
        counterparty_name=counterparty,
        document_number=number,
        document_date=document_date,
        due_date=due_date,
        total=Decimal(total),
        currency=currency,
    )


def make_transaction(
    tx_id: str = "tx_1",
    amount: str = "1000.00",
    tx_date: date = date(2024, 2, 1),
    description: str = "ACME CORP PAYMENT INV-1001",
    tx_type: TransactionType = TransactionType.CREDIT,
    currency: str = "USD",
    owner: str = OWNER,
) -> Transaction:
    """Build a bank transaction."""
    return Transaction(
        id=tx_id,
        type=tx_type,
        amount=Decimal(amount),
        currency=currency,
        date=tx_date,
        description=description,
        owner=owner,
    )


@pytest.fixture
def document_factory():
    """Factory for canonical documents (see make_document)."""
    return make_document


@pytest.fixture
def transaction_factory():
    """Factory for bank transactions (see make_transaction)."""
    return make_transaction
