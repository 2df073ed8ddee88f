"""
Chunked batch writer.

Splits large write sets into store-sized atomic chunks. Chunks commit in
order and the first failure stops the run: earlier chunks stay committed,
later ones are never attempted, and the caller learns exactly how far the
write got.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..errors import BatchWriteError, StoreError
from .base import DocumentStore, WriteOp

logger = logging.getLogger(__name__)


@dataclass
class CommitResult:
    """Outcome of a chunked commit."""

    committed: int
    failed_chunk_index: Optional[int] = None
    error: Optional[StoreError] = None
    collection: Optional[str] = None
    total: int = 0

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return bool(self.error is not None and self.error.retryable)

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise BatchWriteError(
                committed=self.committed,
                failed_chunk_index=self.failed_chunk_index if self.failed_chunk_index is not None else 0,
                collection=self.collection,
                cause=self.error,
            )


def chunked(operations: Sequence[WriteOp], size: int) -> list[list[WriteOp]]:
    """Split operations into consecutive chunks of at most ``size``."""
    if size < 1:
        raise ValueError("Chunk size must be at least 1")
    return [list(operations[i : i + size]) for i in range(0, len(operations), size)]


def group_by_collection(operations: Iterable[WriteOp]) -> dict[str, list[WriteOp]]:
    """Group operations by collection, keeping first-seen order."""
    groups: dict[str, list[WriteOp]] = {}
    for op in operations:
        groups.setdefault(op.collection, []).append(op)
    return groups


class BatchWriter:
    """Commits write sets through a DocumentStore in bounded atomic chunks."""

    def __init__(
        self,
        store: DocumentStore,
        max_batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_workers: int = 4,
    ) -> None:
        """Initialize the batch writer.

        Args:
            store: Target document store.
            max_batch_size: Chunk size; defaults to (and is capped at) the store limit.
            timeout: Per-chunk store timeout in seconds.
            max_workers: Threads used by commit_parallel.
        """
        limit = store.max_batch_size
        self.store = store
        self.max_batch_size = min(max_batch_size or limit, limit)
        self.timeout = timeout
        self.max_workers = max_workers

    def commit(
        self, operations: Sequence[WriteOp], collection: Optional[str] = None
    ) -> CommitResult:
        """Commit operations chunk by chunk, stopping at the first failure."""
        ops = list(operations)
        chunks = chunked(ops, self.max_batch_size) if ops else []
        committed = 0

        for index, chunk in enumerate(chunks):
            try:
                self.store.commit(chunk, timeout=self.timeout)
            except StoreError as e:
                logger.error(
                    "Chunk %d/%d failed%s after %d committed operations: %s",
                    index + 1,
                    len(chunks),
                    f" in {collection}" if collection else "",
                    committed,
                    e,
                )
                return CommitResult(
                    committed=committed,
                    failed_chunk_index=index,
                    error=e,
                    collection=collection,
                    total=len(ops),
                )
            committed += len(chunk)

        if chunks:
            logger.info(
                "Committed %d operations in %d chunk(s)%s",
                committed,
                len(chunks),
                f" to {collection}" if collection else "",
            )
        return CommitResult(committed=committed, collection=collection, total=len(ops))

    def commit_atomic(self, operations: Sequence[WriteOp]) -> CommitResult:
        """Commit operations that may span collections as one store batch.

        Unlike :meth:`commit` nothing is chunked: either every operation
        lands or none does.
        """
        ops = list(operations)
        if not ops:
            return CommitResult(committed=0)
        try:
            self.store.commit(ops, timeout=self.timeout)
        except StoreError as e:
            logger.warning("Atomic commit of %d operations failed: %s", len(ops), e)
            return CommitResult(committed=0, failed_chunk_index=0, error=e, total=len(ops))
        return CommitResult(committed=len(ops), total=len(ops))

    def commit_or_raise(self, operations: Sequence[WriteOp]) -> int:
        """Like :meth:`commit` but raises BatchWriteError on failure.

        Returns:
            Number of committed operations.
        """
        result = self.commit(operations)
        result.raise_for_error()
        return result.committed

    def commit_parallel(self, operations: Sequence[WriteOp]) -> dict[str, CommitResult]:
        """Commit each collection concurrently; chunks within a collection stay sequential."""
        groups = group_by_collection(operations)
        if not groups:
            return {}
        if len(groups) == 1:
            name, ops = next(iter(groups.items()))
            return {name: self.commit(ops, collection=name)}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(groups))) as pool:
            futures = {
                name: pool.submit(self.commit, ops, name) for name, ops in groups.items()
            }
            return {name: future.result() for name, future in futures.items()}

    @staticmethod
    def raise_for_results(results: dict[str, CommitResult]) -> int:
        """Raise for the first failed collection, else return the committed total."""
        for result in results.values():
            result.raise_for_error()
        return sum(result.committed for result in results.values())
