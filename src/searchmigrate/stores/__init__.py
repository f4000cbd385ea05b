"""Index store implementations for the searchmigrate library."""

from searchmigrate.stores._timeout import call_with_timeout
from searchmigrate.stores.in_memory import InMemoryIndexStore
from searchmigrate.stores.interface import (
    BatchRead,
    IndexedDocument,
    IndexStore,
    IndexTarget,
    InsertOutcome,
    SnapshotHandle,
)

__all__ = [
    # Data structures
    "IndexTarget",
    "IndexedDocument",
    "InsertOutcome",
    "SnapshotHandle",
    "BatchRead",
    # Abstract base classes
    "IndexStore",
    # Concrete implementations
    "InMemoryIndexStore",
    # Helpers
    "call_with_timeout",
]
