"""Canonical document and bank transaction normalization, and aging."""

from invoice_recon.normalizer.aging import compute_aging, refresh_aging
from invoice_recon.normalizer.normalizer import (
    DocumentNormalizer,
    NormalizationResult,
    document_id_for,
    normalize_currency_code,
)
from invoice_recon.normalizer.transactions import TransactionNormalizer, transaction_id_for

__all__ = [
    "DocumentNormalizer",
    "NormalizationResult",
    "compute_aging",
    "document_id_for",
    "normalize_currency_code",
    "refresh_aging",
    "TransactionNormalizer",
    "transaction_id_for",
]
