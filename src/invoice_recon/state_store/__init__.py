"""Document persistence: store contract, SQLite backend and batch writer."""

from .base import DocumentStore, WriteKind, WriteOp
from .batch_writer import BatchWriter, CommitResult
from .sqlite_store import SQLiteDocumentStore

__all__ = [
    "BatchWriter",
    "CommitResult",
    "DocumentStore",
    "SQLiteDocumentStore",
    "WriteKind",
    "WriteOp",
]
