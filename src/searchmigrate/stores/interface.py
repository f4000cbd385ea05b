"""
Index store interface and core data structures.

The coordinator never speaks a search engine's wire protocol. Legacy and
Target indexes are each reached through the minimal IndexStore interface
defined here, and the phase decides which bound instance receives a write.

This module provides:
- IndexTarget: Immutable identity of an index (name, endpoint, schema version)
- IndexedDocument: A record id with its document body
- InsertOutcome: Result of an insert-if-absent write
- SnapshotHandle: An open point-in-time cursor over an index
- BatchRead: One batch read from a snapshot cursor
- IndexStore: Abstract base class for index store implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class IndexTarget:
    """
    Identity of a search index taking part in a migration.

    Two instances exist during a migration: the Legacy index being migrated
    away from and the Target index being migrated to. Instances are immutable
    once created.

    Attributes:
        name: Index name (e.g., "products_v1")
        endpoint: Cluster endpoint hosting the index
        schema_version: Schema version the index documents conform to

    Example:
        >>> legacy = IndexTarget("products_v1", "https://search:9200", "1")
        >>> target = IndexTarget("products_v2", "https://search:9200", "2")
    """

    name: str
    endpoint: str
    schema_version: str

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name must not be empty")

    def __str__(self) -> str:
        return f"{self.name}@{self.endpoint} (schema {self.schema_version})"


@dataclass(frozen=True)
class IndexedDocument:
    """
    A document read from an index.

    Attributes:
        record_id: Identity of the document
        body: Document body in the index's own schema
    """

    record_id: str
    body: dict[str, Any]


class InsertOutcome(Enum):
    """Outcome of an insert-if-absent write."""

    INSERTED = "inserted"
    """The document did not exist and was created."""

    REJECTED = "rejected"
    """A document with the same identity already existed; nothing was written."""


@dataclass(frozen=True)
class SnapshotHandle:
    """
    Handle to an open point-in-time snapshot cursor.

    A snapshot never observes mutations committed after it was opened, so
    ``total`` is the index document count at that instant.

    Attributes:
        token: Opaque snapshot identifier, stable for the cursor lifetime
        total: Number of documents visible to the snapshot
        opened_at: When the snapshot was opened
    """

    token: str
    total: int
    opened_at: datetime


@dataclass(frozen=True)
class BatchRead:
    """
    One batch read from a snapshot cursor.

    Attributes:
        documents: Documents in snapshot order
        next_position: Position to read the following batch from
        done: True when the snapshot has no documents past next_position
    """

    documents: list[IndexedDocument] = field(default_factory=list)
    next_position: int = 0
    done: bool = False

    @property
    def size(self) -> int:
        """Number of documents in the batch."""
        return len(self.documents)


class IndexStore(ABC):
    """
    Abstract base class for index stores.

    Implementations adapt a concrete search engine client to the operations
    a reindex migration needs. Every method is a coroutine; callers wrap each
    call in a timeout and a bounded retry, so implementations should raise
    TransientStoreError for failures worth retrying and PermanentStoreError
    for the rest.

    Concrete implementations:
    - InMemoryIndexStore: For testing and development

    Example:
        >>> store = InMemoryIndexStore(IndexTarget("products_v2", "memory", "2"))
        >>> await store.index_or_replace("sku-1", {"title": "Lamp"})
        >>> outcome = await store.insert_if_absent("sku-1", {"title": "Old lamp"})
        >>> assert outcome is InsertOutcome.REJECTED
    """

    @property
    @abstractmethod
    def target(self) -> IndexTarget:
        """Identity of the index this store writes to."""
        pass

    @abstractmethod
    async def index_or_replace(self, record_id: str, document: dict[str, Any]) -> None:
        """
        Create the document, or overwrite it if it exists.

        Last writer wins by arrival order.

        Args:
            record_id: Identity of the document
            document: Document body
        """
        pass

    @abstractmethod
    async def insert_if_absent(self, record_id: str, document: dict[str, Any]) -> InsertOutcome:
        """
        Create the document only if no document with the same identity exists.

        Args:
            record_id: Identity of the document
            document: Document body

        Returns:
            InsertOutcome.INSERTED if written, InsertOutcome.REJECTED if present
        """
        pass

    @abstractmethod
    async def delete_if_exists(self, record_id: str) -> bool:
        """
        Delete the document if present.

        Absence is not an error.

        Args:
            record_id: Identity of the document

        Returns:
            True if a document was deleted, False if it was absent
        """
        pass

    @abstractmethod
    async def open_snapshot_cursor(self) -> SnapshotHandle:
        """
        Open a point-in-time snapshot over the whole index.

        Returns:
            SnapshotHandle whose total is the document count at this instant
        """
        pass

    @abstractmethod
    async def reopen_snapshot_cursor(self, token: str) -> SnapshotHandle:
        """
        Re-open a previously opened snapshot by token.

        Used when a backfill resumes from a persisted checkpoint.

        Args:
            token: Token of a snapshot opened earlier

        Returns:
            Handle to the same point-in-time view

        Raises:
            SnapshotNotFoundError: If the snapshot is unknown or expired
        """
        pass

    @abstractmethod
    async def read_batch(self, handle: SnapshotHandle, position: int, size: int) -> BatchRead:
        """
        Read up to ``size`` documents from the snapshot starting at ``position``.

        Positions are dense and stable for a snapshot, so a batch can be
        re-read from any position already handed out.

        Args:
            handle: Open snapshot handle
            position: Zero-based position in snapshot order
            size: Maximum number of documents to return

        Returns:
            BatchRead with the documents and the following position
        """
        pass

    @abstractmethod
    async def close_snapshot_cursor(self, handle: SnapshotHandle) -> None:
        """
        Release the resources held by a snapshot.

        Closing an unknown or already-closed snapshot is a no-op.
        """
        pass

    @abstractmethod
    async def count(self) -> int:
        """
        Get the current number of documents in the index.

        Returns:
            Live document count
        """
        pass

    @abstractmethod
    async def get(self, record_id: str) -> dict[str, Any] | None:
        """
        Get a document by id.

        Args:
            record_id: Identity of the document

        Returns:
            Document body, or None if absent
        """
        pass


__all__ = [
    "IndexTarget",
    "IndexedDocument",
    "InsertOutcome",
    "SnapshotHandle",
    "BatchRead",
    "IndexStore",
]
