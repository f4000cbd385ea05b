"""
Zero-downtime reindex migration for searchmigrate.

This module keeps a Legacy and a Target search index consistent while a
bulk backfill runs next to live traffic, and mediates cutover from Legacy
to Target.

Key Components:
    - ReindexCoordinator: Operator control surface for the whole lifecycle
    - PhaseController: Single authoritative migration phase
    - DualWriteDispatcher: Applies change events to Legacy and Target
    - DeleteFence: Holds Target deletes back while a backfill runs
    - BackfillEngine: Copies a Legacy snapshot into Target
    - ReconciliationVerifier: Checks Target against Legacy before cutover

Migration Phases:
    1. PREPARING: Target index being created
    2. DUAL_WRITE: Writes mirrored to Target
    3. BACKFILLING: Snapshot copied into Target; deletes fenced
    4. CUTOVER_PENDING: Backfill reconciled; Target awaiting confirmation
    5. CUTOVER: Reads served from Target
    6. COMPLETE: Legacy eligible for decommission

Usage:
    >>> from searchmigrate.migration import ReindexCoordinator, ReindexConfig
    >>>
    >>> coordinator = ReindexCoordinator(
    ...     legacy_store,
    ...     target_store,
    ...     config=ReindexConfig(batch_size=500),
    ... )
    >>> await coordinator.begin_dual_write()
    >>> await coordinator.start_backfill()
    >>> await coordinator.wait_for_backfill()
    >>> await coordinator.advance()
"""

from searchmigrate.migration.backfill import BackfillEngine, DocumentTransformer, RateLimiter
from searchmigrate.migration.coordinator import ReindexCoordinator
from searchmigrate.migration.delete_fence import DeleteFence
from searchmigrate.migration.dual_write import (
    DispatchResult,
    DualWriteDispatcher,
    FailureStats,
    ParkedWrite,
    PayloadTransformer,
    ReplayResult,
    TargetOutcome,
    TargetWriteFailure,
)
from searchmigrate.migration.exceptions import (
    BATCH_RETRY_CONFIG,
    TARGET_WRITE_RETRY_CONFIG,
    TRANSIENT_RETRY_CONFIG,
    BackfillError,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    CircuitState,
    ErrorClassification,
    ErrorHandler,
    ErrorRecoverability,
    ErrorSeverity,
    FenceReleaseError,
    InvalidPhaseTransitionError,
    MigrationError,
    MigrationStateError,
    OrderingViolation,
    ReconciliationMismatch,
    RetryConfig,
    TargetWriteError,
    classify_exception,
    is_retryable,
)
from searchmigrate.migration.metrics import (
    ReindexMetrics,
    ReindexMetricSnapshot,
    clear_metrics_registry,
    get_reindex_metrics,
    release_reindex_metrics,
)
from searchmigrate.migration.models import (
    BackfillCursor,
    BackfillProgress,
    BackfillResult,
    MigrationPhase,
    MigrationStatus,
    PendingDelete,
    PhaseTransition,
    ReconciliationReport,
    ReindexConfig,
)
from searchmigrate.migration.phase_controller import PhaseController
from searchmigrate.migration.reconciliation import ReconciliationVerifier
from searchmigrate.migration.repositories import (
    POSTGRESQL_CHECKPOINT_SCHEMA,
    SQLITE_CHECKPOINT_SCHEMA,
    BackfillCheckpointRepository,
    InMemoryBackfillCheckpointRepository,
    PostgreSQLBackfillCheckpointRepository,
    SQLiteBackfillCheckpointRepository,
)

__all__ = [
    # Coordinator
    "ReindexCoordinator",
    # Components
    "PhaseController",
    "DualWriteDispatcher",
    "DeleteFence",
    "BackfillEngine",
    "RateLimiter",
    "ReconciliationVerifier",
    # Models
    "MigrationPhase",
    "ReindexConfig",
    "BackfillCursor",
    "BackfillProgress",
    "BackfillResult",
    "PendingDelete",
    "PhaseTransition",
    "ReconciliationReport",
    "MigrationStatus",
    # Dispatcher types
    "DispatchResult",
    "FailureStats",
    "ParkedWrite",
    "ReplayResult",
    "TargetOutcome",
    "TargetWriteFailure",
    "PayloadTransformer",
    "DocumentTransformer",
    # Errors
    "MigrationError",
    "MigrationStateError",
    "InvalidPhaseTransitionError",
    "ReconciliationMismatch",
    "OrderingViolation",
    "BackfillError",
    "TargetWriteError",
    "FenceReleaseError",
    "CircuitBreakerOpenError",
    "ErrorClassification",
    "ErrorSeverity",
    "ErrorRecoverability",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "BATCH_RETRY_CONFIG",
    "TARGET_WRITE_RETRY_CONFIG",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ErrorHandler",
    "classify_exception",
    "is_retryable",
    # Metrics
    "ReindexMetrics",
    "ReindexMetricSnapshot",
    "get_reindex_metrics",
    "release_reindex_metrics",
    "clear_metrics_registry",
    # Repositories
    "BackfillCheckpointRepository",
    "InMemoryBackfillCheckpointRepository",
    "SQLiteBackfillCheckpointRepository",
    "PostgreSQLBackfillCheckpointRepository",
    "POSTGRESQL_CHECKPOINT_SCHEMA",
    "SQLITE_CHECKPOINT_SCHEMA",
]
