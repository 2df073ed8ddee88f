"""Matching engine for correlating invoices/bills with bank transactions."""

from invoice_recon.matching.engine import CandidateSearch, MatchingEngine, MatchResult, MatchScore

__all__ = ["CandidateSearch", "MatchingEngine", "MatchResult", "MatchScore"]
