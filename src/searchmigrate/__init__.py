"""
searchmigrate - Zero-downtime search reindexing for Python.

This library provides:
- Dual-write dispatching of change events to a Legacy and a Target index
- Snapshot backfill with insert-if-absent semantics and resumable checkpoints
- A delete fence that keeps deleted records from resurrecting during backfill
- A phase controller with validated transitions and rollback
- Post-backfill reconciliation and an operator-facing coordinator
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("searchmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from searchmigrate.exceptions import (
    CheckpointError,
    IndexStoreError,
    PermanentStoreError,
    SearchMigrateError,
    SnapshotNotFoundError,
    StoreTimeoutError,
    TransientStoreError,
)
from searchmigrate.feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeOperation,
    FeedDelivery,
    InMemoryChangeFeed,
    LaneRouter,
)
from searchmigrate.migration import (
    BackfillCursor,
    BackfillEngine,
    BackfillResult,
    DeleteFence,
    DualWriteDispatcher,
    MigrationPhase,
    MigrationStatus,
    PhaseController,
    ReconciliationReport,
    ReconciliationVerifier,
    ReindexConfig,
    ReindexCoordinator,
)
from searchmigrate.stores import (
    BatchRead,
    IndexedDocument,
    IndexStore,
    IndexTarget,
    InMemoryIndexStore,
    InsertOutcome,
    SnapshotHandle,
)

__all__ = [
    "__version__",
    # Exceptions
    "SearchMigrateError",
    "IndexStoreError",
    "TransientStoreError",
    "StoreTimeoutError",
    "PermanentStoreError",
    "SnapshotNotFoundError",
    "CheckpointError",
    # Stores
    "IndexStore",
    "IndexTarget",
    "IndexedDocument",
    "InsertOutcome",
    "SnapshotHandle",
    "BatchRead",
    "InMemoryIndexStore",
    # Change feed
    "ChangeEvent",
    "ChangeOperation",
    "ChangeFeed",
    "FeedDelivery",
    "InMemoryChangeFeed",
    "LaneRouter",
    # Migration
    "ReindexCoordinator",
    "ReindexConfig",
    "MigrationPhase",
    "MigrationStatus",
    "PhaseController",
    "DualWriteDispatcher",
    "DeleteFence",
    "BackfillEngine",
    "BackfillCursor",
    "BackfillResult",
    "ReconciliationVerifier",
    "ReconciliationReport",
]
