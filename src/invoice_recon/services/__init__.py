"""Orchestration services: import and reconciliation."""

from invoice_recon.services.importer import ImportBatchResult, ImportService, read_csv_table
from invoice_recon.services.reconciliation import (
    DecisionSource,
    MatchDecision,
    ReconciliationResult,
    ReconciliationService,
    ReconciliationState,
    apply_payment,
)

__all__ = [
    "DecisionSource",
    "ImportBatchResult",
    "ImportService",
    "MatchDecision",
    "ReconciliationResult",
    "ReconciliationService",
    "ReconciliationState",
    "apply_payment",
    "read_csv_table",
]
