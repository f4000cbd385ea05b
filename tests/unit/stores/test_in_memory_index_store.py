"""
Unit tests for InMemoryIndexStore.

Tests cover:
- index_or_replace / insert_if_absent / delete_if_exists semantics
- Point-in-time snapshots isolated from later writes
- Batched reads, reopen by token and close
- Isolation of stored documents from caller mutation
- Tracing spans
"""

import asyncio

import pytest

from searchmigrate.exceptions import SnapshotNotFoundError, StoreTimeoutError
from searchmigrate.stores import IndexTarget, InMemoryIndexStore, InsertOutcome, call_with_timeout
from tests.fixtures import MockTracer


@pytest.fixture
def store() -> InMemoryIndexStore:
    return InMemoryIndexStore(IndexTarget("products_v2", "memory", "2"), enable_tracing=False)


class TestIndexTarget:
    """Tests for IndexTarget."""

    def test_empty_name_rejected(self) -> None:
        """Test that an index needs a name."""
        with pytest.raises(ValueError):
            IndexTarget("", "memory", "1")

    def test_str(self) -> None:
        """Test the readable representation."""
        assert str(IndexTarget("products_v1", "memory", "1")) == "products_v1@memory (schema 1)"


class TestWrites:
    """Tests for the write operations."""

    @pytest.mark.asyncio
    async def test_index_or_replace_overwrites(self, store: InMemoryIndexStore) -> None:
        """Test that the last writer wins."""
        await store.index_or_replace("sku-1", {"v": 1})
        await store.index_or_replace("sku-1", {"v": 2})

        assert await store.get("sku-1") == {"v": 2}
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_insert_if_absent_creates_missing(self, store: InMemoryIndexStore) -> None:
        """Test that insert_if_absent writes a missing document."""
        outcome = await store.insert_if_absent("sku-1", {"v": 1})

        assert outcome is InsertOutcome.INSERTED
        assert await store.get("sku-1") == {"v": 1}

    @pytest.mark.asyncio
    async def test_insert_if_absent_rejects_existing(self, store: InMemoryIndexStore) -> None:
        """Test that insert_if_absent never overwrites."""
        await store.index_or_replace("sku-1", {"v": "live"})

        outcome = await store.insert_if_absent("sku-1", {"v": "stale"})

        assert outcome is InsertOutcome.REJECTED
        assert await store.get("sku-1") == {"v": "live"}

    @pytest.mark.asyncio
    async def test_delete_if_exists(self, store: InMemoryIndexStore) -> None:
        """Test that deleting reports presence and tolerates absence."""
        await store.index_or_replace("sku-1", {"v": 1})

        assert await store.delete_if_exists("sku-1") is True
        assert await store.delete_if_exists("sku-1") is False
        assert await store.get("sku-1") is None

    @pytest.mark.asyncio
    async def test_stored_documents_isolated_from_caller(self, store: InMemoryIndexStore) -> None:
        """Test that mutating a written or read dict does not change the store."""
        body = {"tags": ["a"]}
        await store.index_or_replace("sku-1", body)
        body["tags"].append("b")

        read = await store.get("sku-1")
        read["tags"].append("c")

        assert await store.get("sku-1") == {"tags": ["a"]}


class TestSnapshots:
    """Tests for snapshot cursors."""

    @pytest.mark.asyncio
    async def test_snapshot_ignores_later_writes(self, store: InMemoryIndexStore) -> None:
        """Test that a snapshot is a point-in-time view."""
        for i in range(3):
            await store.index_or_replace(f"sku-{i}", {"v": i})

        handle = await store.open_snapshot_cursor()
        await store.index_or_replace("sku-9", {"v": 9})
        await store.delete_if_exists("sku-0")
        await store.index_or_replace("sku-1", {"v": "changed"})

        batch = await store.read_batch(handle, 0, 10)

        assert handle.total == 3
        assert [d.record_id for d in batch.documents] == ["sku-0", "sku-1", "sku-2"]
        assert batch.documents[1].body == {"v": 1}
        assert batch.done is True

    @pytest.mark.asyncio
    async def test_read_batches_in_order(self, store: InMemoryIndexStore) -> None:
        """Test paging through a snapshot."""
        for i in range(5):
            await store.index_or_replace(f"sku-{i}", {"v": i})
        handle = await store.open_snapshot_cursor()

        first = await store.read_batch(handle, 0, 2)
        second = await store.read_batch(handle, first.next_position, 2)
        third = await store.read_batch(handle, second.next_position, 2)

        assert (first.size, first.next_position, first.done) == (2, 2, False)
        assert (second.size, second.next_position, second.done) == (2, 4, False)
        assert (third.size, third.next_position, third.done) == (1, 5, True)

    @pytest.mark.asyncio
    async def test_reread_same_position(self, store: InMemoryIndexStore) -> None:
        """Test that positions are stable for re-reads."""
        for i in range(3):
            await store.index_or_replace(f"sku-{i}", {"v": i})
        handle = await store.open_snapshot_cursor()

        first = await store.read_batch(handle, 1, 1)
        again = await store.read_batch(handle, 1, 1)

        assert first.documents == again.documents

    @pytest.mark.asyncio
    async def test_empty_snapshot_is_done(self, store: InMemoryIndexStore) -> None:
        """Test reading an empty index."""
        handle = await store.open_snapshot_cursor()

        batch = await store.read_batch(handle, 0, 10)

        assert handle.total == 0
        assert batch.size == 0
        assert batch.done is True

    @pytest.mark.asyncio
    async def test_invalid_read_arguments(self, store: InMemoryIndexStore) -> None:
        """Test that negative positions and empty sizes are rejected."""
        handle = await store.open_snapshot_cursor()

        with pytest.raises(ValueError):
            await store.read_batch(handle, -1, 1)
        with pytest.raises(ValueError):
            await store.read_batch(handle, 0, 0)

    @pytest.mark.asyncio
    async def test_reopen_by_token(self, store: InMemoryIndexStore) -> None:
        """Test that an open snapshot can be reopened by token."""
        handle = await store.open_snapshot_cursor()

        reopened = await store.reopen_snapshot_cursor(handle.token)

        assert reopened == handle

    @pytest.mark.asyncio
    async def test_closed_snapshot_not_found(self, store: InMemoryIndexStore) -> None:
        """Test that a closed snapshot cannot be reopened or read."""
        handle = await store.open_snapshot_cursor()
        await store.close_snapshot_cursor(handle)
        await store.close_snapshot_cursor(handle)

        assert store.open_snapshot_count == 0
        with pytest.raises(SnapshotNotFoundError) as exc_info:
            await store.reopen_snapshot_cursor(handle.token)
        assert exc_info.value.snapshot_token == handle.token
        with pytest.raises(SnapshotNotFoundError):
            await store.read_batch(handle, 0, 1)


class TestHelpers:
    """Tests for the test helpers."""

    @pytest.mark.asyncio
    async def test_clear_and_record_ids(self, store: InMemoryIndexStore) -> None:
        """Test record_ids and clear."""
        await store.index_or_replace("a", {})
        await store.index_or_replace("b", {})
        await store.open_snapshot_cursor()

        assert await store.record_ids() == {"a", "b"}

        await store.clear()

        assert await store.count() == 0
        assert store.open_snapshot_count == 0

    @pytest.mark.asyncio
    async def test_spans_emitted(self) -> None:
        """Test that writes and reads are traced."""
        tracer = MockTracer()
        store = InMemoryIndexStore(IndexTarget("products_v1", "memory", "1"), tracer=tracer)

        await store.index_or_replace("a", {})
        await store.insert_if_absent("b", {})
        handle = await store.open_snapshot_cursor()
        await store.read_batch(handle, 0, 10)

        assert tracer.span_names == [
            "searchmigrate.index_store.index_or_replace",
            "searchmigrate.index_store.insert_if_absent",
            "searchmigrate.index_store.open_snapshot_cursor",
            "searchmigrate.index_store.read_batch",
        ]


class TestCallWithTimeout:
    """Tests for the store call timeout wrapper."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        """Test that a fast call returns its result."""

        async def fast() -> int:
            return 42

        assert await call_with_timeout(fast(), 1.0, index_name="i", operation="count") == 42

    @pytest.mark.asyncio
    async def test_slow_call_raises_store_timeout(self) -> None:
        """Test that a slow call surfaces as StoreTimeoutError."""

        async def slow() -> None:
            await asyncio.sleep(1.0)

        with pytest.raises(StoreTimeoutError) as exc_info:
            await call_with_timeout(
                slow(), 0.01, index_name="products_v2", operation="get", record_id="sku-1"
            )

        error = exc_info.value
        assert error.timeout_seconds == 0.01
        assert error.index_name == "products_v2"
        assert error.record_id == "sku-1"
