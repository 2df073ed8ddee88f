"""
Document store contract.

The store holds JSON-like records grouped in collections. It only has to
offer field-equality queries, ordering, and atomic batches of at most
``max_batch_size`` operations; everything else is built on top.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence


class WriteKind(str, Enum):
    CREATE = "create"  # Fails if the record exists
    SET = "set"  # Create or overwrite
    UPDATE = "update"  # Merge fields into an existing record
    DELETE = "delete"


@dataclass(frozen=True)
class WriteOp:
    """One write against one record."""

    kind: WriteKind
    collection: str
    document_id: str
    data: Optional[dict[str, Any]] = None
    # UPDATE only: fields that must still hold these values or the commit fails
    expected: Optional[dict[str, Any]] = None

    @classmethod
    def create(cls, collection: str, document_id: str, data: dict) -> "WriteOp":
        return cls(WriteKind.CREATE, collection, document_id, data)

    @classmethod
    def set(cls, collection: str, document_id: str, data: dict) -> "WriteOp":
        return cls(WriteKind.SET, collection, document_id, data)

    @classmethod
    def update(
        cls,
        collection: str,
        document_id: str,
        data: dict,
        expected: Optional[dict] = None,
    ) -> "WriteOp":
        return cls(WriteKind.UPDATE, collection, document_id, data, expected)

    @classmethod
    def delete(cls, collection: str, document_id: str) -> "WriteOp":
        return cls(WriteKind.DELETE, collection, document_id)


class DocumentStore(ABC):
    """Abstract record store used by the batch writer and services."""

    max_batch_size: int = 500

    @abstractmethod
    def get(
        self, collection: str, document_id: str, timeout: Optional[float] = None
    ) -> Optional[dict[str, Any]]:
        """Fetch one record (with its ``id``) or None."""

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
        order_by: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> list[dict[str, Any]]:
        """Records whose fields equal every ``where`` value, ordered by ``order_by``."""

    @abstractmethod
    def commit(self, operations: Sequence[WriteOp], timeout: Optional[float] = None) -> None:
        """Apply all operations atomically.

        Raises:
            StoreError: If the batch is too large or any operation fails
                (nothing is applied).
            StoreConflictError: If a CREATE hits an existing record or an
                UPDATE's ``expected`` values no longer match.
            StoreTimeoutError: If the store did not answer within ``timeout``.
        """
