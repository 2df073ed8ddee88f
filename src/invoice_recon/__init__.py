"""
Invoice/Bill Import → Canonical Documents → Bank Reconciliation

A deterministic, testable pipeline that turns uploaded spreadsheets and
AI-extracted documents into canonical invoices and bills, then reconciles
them against bank transactions with payment and aging tracking.
"""

__version__ = "0.1.0"
