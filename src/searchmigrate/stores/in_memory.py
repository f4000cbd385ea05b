"""
In-memory index store implementation.

Useful for testing and development. Not suitable for production
as all documents are lost when the process terminates.
"""

import asyncio
import copy
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from searchmigrate.exceptions import SnapshotNotFoundError
from searchmigrate.observability import (
    ATTR_BATCH_SIZE,
    ATTR_INDEX_NAME,
    ATTR_POSITION,
    ATTR_RECORD_ID,
    ATTR_SNAPSHOT_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores.interface import (
    BatchRead,
    IndexedDocument,
    IndexStore,
    IndexTarget,
    InsertOutcome,
    SnapshotHandle,
)

logger = logging.getLogger(__name__)


class InMemoryIndexStore(IndexStore):
    """
    In-memory implementation of the index store.

    Documents are kept in an insertion-ordered dictionary. Snapshots are
    deep copies of the document set taken under the store lock, so they
    never observe later mutations. Suitable for:

    - Unit testing
    - Development environments
    - Prototyping reindex flows before wiring a real search cluster

    Thread-safety:
        Uses an asyncio.Lock for safe concurrent async operations within a
        single process.

    Example:
        >>> store = InMemoryIndexStore(IndexTarget("products_v1", "memory", "1"))
        >>> await store.index_or_replace("sku-1", {"title": "Lamp"})
        >>> handle = await store.open_snapshot_cursor()
        >>> batch = await store.read_batch(handle, 0, 100)
        >>> assert batch.done and batch.size == 1
    """

    def __init__(
        self,
        target: IndexTarget,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize an empty in-memory index.

        Args:
            target: Identity of the index
            tracer: Optional custom Tracer instance. If not provided, one is
                   created based on enable_tracing setting.
            enable_tracing: If True, emit traces (default: True).
                          Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._target = target
        self._documents: dict[str, dict[str, Any]] = {}
        self._snapshots: dict[str, tuple[SnapshotHandle, list[IndexedDocument]]] = {}
        self._lock = asyncio.Lock()

    @property
    def target(self) -> IndexTarget:
        return self._target

    async def index_or_replace(self, record_id: str, document: dict[str, Any]) -> None:
        with self._tracer.span(
            "searchmigrate.index_store.index_or_replace",
            {ATTR_INDEX_NAME: self._target.name, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                self._documents[record_id] = copy.deepcopy(document)

    async def insert_if_absent(self, record_id: str, document: dict[str, Any]) -> InsertOutcome:
        with self._tracer.span(
            "searchmigrate.index_store.insert_if_absent",
            {ATTR_INDEX_NAME: self._target.name, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                if record_id in self._documents:
                    return InsertOutcome.REJECTED
                self._documents[record_id] = copy.deepcopy(document)
                return InsertOutcome.INSERTED

    async def delete_if_exists(self, record_id: str) -> bool:
        with self._tracer.span(
            "searchmigrate.index_store.delete_if_exists",
            {ATTR_INDEX_NAME: self._target.name, ATTR_RECORD_ID: record_id},
        ):
            async with self._lock:
                return self._documents.pop(record_id, None) is not None

    async def open_snapshot_cursor(self) -> SnapshotHandle:
        with self._tracer.span(
            "searchmigrate.index_store.open_snapshot_cursor",
            {ATTR_INDEX_NAME: self._target.name},
        ):
            async with self._lock:
                frozen = [
                    IndexedDocument(record_id, copy.deepcopy(body))
                    for record_id, body in self._documents.items()
                ]
                handle = SnapshotHandle(
                    token=str(uuid4()),
                    total=len(frozen),
                    opened_at=datetime.now(UTC),
                )
                self._snapshots[handle.token] = (handle, frozen)

            logger.debug(
                "Opened snapshot %s on %s with %d documents",
                handle.token,
                self._target.name,
                handle.total,
            )
            return handle

    async def reopen_snapshot_cursor(self, token: str) -> SnapshotHandle:
        async with self._lock:
            entry = self._snapshots.get(token)
        if entry is None:
            raise SnapshotNotFoundError(self._target.name, token)
        return entry[0]

    async def read_batch(self, handle: SnapshotHandle, position: int, size: int) -> BatchRead:
        with self._tracer.span(
            "searchmigrate.index_store.read_batch",
            {
                ATTR_INDEX_NAME: self._target.name,
                ATTR_SNAPSHOT_TOKEN: handle.token,
                ATTR_POSITION: position,
                ATTR_BATCH_SIZE: size,
            },
        ):
            if position < 0:
                raise ValueError(f"position must be >= 0, got {position}")
            if size <= 0:
                raise ValueError(f"size must be positive, got {size}")

            async with self._lock:
                entry = self._snapshots.get(handle.token)
            if entry is None:
                raise SnapshotNotFoundError(self._target.name, handle.token)

            frozen = entry[1]
            documents = frozen[position : position + size]
            next_position = min(position + size, len(frozen))
            return BatchRead(
                documents=[IndexedDocument(d.record_id, copy.deepcopy(d.body)) for d in documents],
                next_position=next_position,
                done=next_position >= len(frozen),
            )

    async def close_snapshot_cursor(self, handle: SnapshotHandle) -> None:
        async with self._lock:
            self._snapshots.pop(handle.token, None)

    async def count(self) -> int:
        async with self._lock:
            return len(self._documents)

    async def get(self, record_id: str) -> dict[str, Any] | None:
        async with self._lock:
            document = self._documents.get(record_id)
            return copy.deepcopy(document) if document is not None else None

    # =========================================================================
    # Test helpers
    # =========================================================================

    async def clear(self) -> None:
        """Remove every document and snapshot."""
        async with self._lock:
            self._documents.clear()
            self._snapshots.clear()

    async def record_ids(self) -> set[str]:
        """Get the ids of all live documents."""
        async with self._lock:
            return set(self._documents)

    @property
    def open_snapshot_count(self) -> int:
        """Number of snapshots not yet closed."""
        return len(self._snapshots)


__all__ = ["InMemoryIndexStore"]
