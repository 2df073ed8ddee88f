"""
CLI runner module.

Provides commands:
- detect: Inspect a CSV layout
- import: Import invoices/bills from CSV
- extract: AI extraction of a PDF/image
- reconcile: Match documents to bank transactions
- aging / status: Reporting
- demo: Clone or reset demo sessions
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
