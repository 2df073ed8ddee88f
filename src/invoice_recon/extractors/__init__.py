"""AI extraction service client."""

from invoice_recon.extractors.ai_client import AIExtractionClient, ExtractionAPIError, RateLimiter

__all__ = ["AIExtractionClient", "ExtractionAPIError", "RateLimiter"]
