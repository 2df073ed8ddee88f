"""
Error taxonomy for the import and reconciliation pipeline.

Cell and row level problems (ParseError, ValidationError) are accumulated
and reported next to partial success counts. Structural problems
(AmbiguousHeaderRow, BatchWriteError, CloneConflict, ...) abort the
operation that raised them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ReconError(Exception):
    """Base exception for all invoice_recon errors."""

    pass


class ParseErrorKind(str, Enum):
    """Reason a single cell transform failed."""

    INVALID_DATE = "InvalidDate"
    INVALID_NUMBER = "InvalidNumber"
    MISSING_PART = "MissingPart"
    NO_MATCH = "NoMatch"
    UNMAPPED_VALUE = "UnmappedValue"
    UNKNOWN_TRANSFORM = "UnknownTransform"


@dataclass(frozen=True)
class ParseError:
    """Per-cell transform failure.

    This is a value, not an exception: transforms return it and the caller
    decides whether the row survives.
    """

    kind: ParseErrorKind
    value: str
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "value": self.value, "message": self.message}


class ValidationError(ReconError):
    """A required canonical field is missing or unusable; the row is rejected."""

    def __init__(self, message: str, field: str | None = None, row: int | None = None):
        self.field = field
        self.row = row
        super().__init__(message)


class AmbiguousHeaderRow(ReconError):
    """No candidate row met the header-density threshold; the file is rejected."""

    pass


class TransactionAlreadyConsumed(ReconError):
    """A transaction already backs a payment record on some document."""

    def __init__(self, transaction_id: str, holder_document_id: str | None = None):
        self.transaction_id = transaction_id
        self.holder_document_id = holder_document_id
        holder = f" (held by document {holder_document_id})" if holder_document_id else ""
        super().__init__(f"Transaction {transaction_id} is already consumed{holder}")


class DocumentNotFound(ReconError):
    """Referenced document or transaction does not exist in the store."""

    def __init__(self, collection: str, document_id: str):
        self.collection = collection
        self.document_id = document_id
        super().__init__(f"{collection}/{document_id} not found")


class StoreError(ReconError):
    """The document store rejected or failed an operation."""

    retryable = False


class StoreTimeoutError(StoreError):
    """A store call exceeded its caller-supplied timeout."""

    retryable = True


class StoreConflictError(StoreError):
    """A create hit an existing record or an update's precondition no longer held.

    The whole commit is rolled back; the caller should reload and retry.
    """

    retryable = True

    def __init__(self, message: str, collection: str = "", document_id: str = ""):
        self.collection = collection
        self.document_id = document_id
        super().__init__(message)


class BatchWriteError(ReconError):
    """A chunk commit failed. Earlier chunks remain committed."""

    def __init__(
        self,
        committed: int,
        failed_chunk_index: int,
        collection: str | None = None,
        cause: Exception | None = None,
    ):
        self.committed = committed
        self.failed_chunk_index = failed_chunk_index
        self.collection = collection
        self.cause = cause
        where = f" in collection '{collection}'" if collection else ""
        super().__init__(
            f"Batch chunk {failed_chunk_index} failed{where} after {committed} "
            f"committed operations: {cause}"
        )

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.cause, "retryable", False))


class CloneConflict(ReconError):
    """A clone target id already exists and belongs to someone else."""

    def __init__(self, collection: str, document_id: str, owner: str | None):
        self.collection = collection
        self.document_id = document_id
        self.owner = owner
        super().__init__(
            f"Clone target {collection}/{document_id} already exists (owner={owner})"
        )


class RateLimitExceeded(ReconError):
    """The external rate limiter denied an extraction request."""

    def __init__(self, caller_id: str):
        self.caller_id = caller_id
        super().__init__(f"Extraction rate limit exceeded for {caller_id}")


class ExtractionError(ReconError):
    """The AI extraction service failed or returned an unusable payload."""

    retryable = False


class ExtractionTimeoutError(ExtractionError):
    """The AI extraction request timed out."""

    retryable = True
