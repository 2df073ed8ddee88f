"""Tests for the chunked batch writer."""

import threading

import pytest

from invoice_recon.errors import BatchWriteError, StoreConflictError, StoreError, StoreTimeoutError
from invoice_recon.state_store import BatchWriter, WriteOp
from invoice_recon.state_store.base import DocumentStore
from invoice_recon.state_store.batch_writer import chunked, group_by_collection


class RecordingStore(DocumentStore):
    """In-memory store that records each commit and can fail on a chosen call."""

    def __init__(self, max_batch_size=500, fail_on_call=None, error=None):
        self.max_batch_size = max_batch_size
        self.fail_on_call = fail_on_call
        self.error = error or StoreError("boom")
        self.commits: list[list[WriteOp]] = []
        self.calls = 0
        self._lock = threading.Lock()

    def get(self, collection, document_id, timeout=None):
        return None

    def query(self, collection, where=None, order_by=(), timeout=None):
        return []

    def commit(self, operations, timeout=None):
        with self._lock:
            call = self.calls
            self.calls += 1
        if call == self.fail_on_call:
            raise self.error
        with self._lock:
            self.commits.append(list(operations))


def ops(count, collection="invoices"):
    return [WriteOp.set(collection, f"doc_{i}", {"n": i}) for i in range(count)]


class TestChunking:
    """Tests for chunk helpers."""

    def test_chunk_sizes(self):
        sizes = [len(chunk) for chunk in chunked(ops(1200), 500)]
        assert sizes == [500, 500, 200]

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            chunked(ops(3), 0)

    def test_group_keeps_order(self):
        mixed = ops(2, "bills") + ops(1, "invoices") + ops(1, "bills")
        groups = group_by_collection(mixed)
        assert list(groups) == ["bills", "invoices"]
        assert len(groups["bills"]) == 3


class TestCommit:
    """Tests for sequential chunked commits."""

    def test_commits_all_chunks(self):
        store = RecordingStore()
        result = BatchWriter(store).commit(ops(1200))

        assert result.success
        assert result.committed == 1200
        assert [len(c) for c in store.commits] == [500, 500, 200]

    def test_failure_stops_later_chunks(self):
        """Second chunk fails: first stays committed, third is never attempted."""
        store = RecordingStore(fail_on_call=1)
        result = BatchWriter(store).commit(ops(1200), collection="invoices")

        assert not result.success
        assert result.committed == 500
        assert result.failed_chunk_index == 1
        assert result.total == 1200
        assert store.calls == 2
        assert len(store.commits) == 1

    def test_chunk_size_capped_at_store_limit(self):
        store = RecordingStore(max_batch_size=100)
        writer = BatchWriter(store, max_batch_size=500)

        writer.commit(ops(250))

        assert writer.max_batch_size == 100
        assert [len(c) for c in store.commits] == [100, 100, 50]

    def test_empty(self):
        store = RecordingStore()
        result = BatchWriter(store).commit([])
        assert result.committed == 0
        assert store.calls == 0

    def test_commit_or_raise(self):
        store = RecordingStore(fail_on_call=2)
        with pytest.raises(BatchWriteError) as exc:
            BatchWriter(store, max_batch_size=10).commit_or_raise(ops(30))

        assert exc.value.committed == 20
        assert exc.value.failed_chunk_index == 2
        assert not exc.value.retryable

    def test_timeout_is_retryable(self):
        store = RecordingStore(fail_on_call=0, error=StoreTimeoutError("slow"))
        result = BatchWriter(store).commit(ops(3))
        assert result.retryable


class TestCommitAtomic:
    """Tests for single-batch commits across collections."""

    def test_one_store_call(self):
        store = RecordingStore(max_batch_size=2)
        mixed = ops(2, "invoices") + ops(1, "payment_claims")

        result = BatchWriter(store).commit_atomic(mixed)

        assert result.success
        assert result.committed == 3
        assert store.commits == [mixed]

    def test_failure_commits_nothing(self):
        store = RecordingStore(fail_on_call=0, error=StoreConflictError("claimed"))

        result = BatchWriter(store).commit_atomic(ops(3))

        assert not result.success
        assert result.committed == 0
        assert isinstance(result.error, StoreConflictError)
        assert result.retryable
        with pytest.raises(BatchWriteError):
            result.raise_for_error()

    def test_empty(self):
        store = RecordingStore()
        assert BatchWriter(store).commit_atomic([]).committed == 0
        assert store.calls == 0


class TestCommitParallel:
    """Tests for per-collection parallel commits."""

    def test_each_collection_committed(self):
        store = RecordingStore()
        writer = BatchWriter(store, max_batch_size=10)

        results = writer.commit_parallel(ops(15, "invoices") + ops(5, "bills"))

        assert results["invoices"].committed == 15
        assert results["bills"].committed == 5
        assert BatchWriter.raise_for_results(results) == 20
        assert sorted(len(c) for c in store.commits) == [5, 5, 10]

    def test_failed_collection_raises(self):
        store = RecordingStore(fail_on_call=0)
        writer = BatchWriter(store)

        results = writer.commit_parallel(ops(3, "invoices"))

        assert results["invoices"].failed_chunk_index == 0
        with pytest.raises(BatchWriteError) as exc:
            BatchWriter.raise_for_results(results)
        assert exc.value.collection == "invoices"

    def test_nothing_to_do(self):
        assert BatchWriter(RecordingStore()).commit_parallel([]) == {}
