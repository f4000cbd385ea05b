"""
Data models for the reindex migration system.

This module defines the core data structures used throughout the migration
system: the phase state machine, configuration, backfill bookkeeping, the
delete fence queue entries, and status snapshots.

Models in this module:

Enums:
    - MigrationPhase: Migration lifecycle phases

Configuration:
    - ReindexConfig: Configuration for a reindex migration

Core Models:
    - BackfillCursor: Persistent backfill position over a Legacy snapshot
    - PendingDelete: A delete held back by the delete fence
    - BackfillProgress: Progress update of a running backfill
    - BackfillResult: Final result of a backfill run
    - ReconciliationReport: Outcome of post-backfill reconciliation
    - PhaseTransition: Audit entry for a phase change
    - MigrationStatus: Operator-facing status snapshot
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from searchmigrate.migration.exceptions import (
    BATCH_RETRY_CONFIG,
    TARGET_WRITE_RETRY_CONFIG,
    RetryConfig,
)


class MigrationPhase(Enum):
    """
    Reindex migration lifecycle phases.

    State machine transitions:
        PREPARING -> DUAL_WRITE -> BACKFILLING -> CUTOVER_PENDING -> CUTOVER -> COMPLETE
                         ^                              |
                         +------------------------------+  (rollback)

    Valid transitions:
        - PREPARING -> DUAL_WRITE: Target schema created; dual writes begin
        - DUAL_WRITE -> BACKFILLING: Backfill starts; delete fence activates
        - BACKFILLING -> CUTOVER_PENDING: Backfill complete and reconciled;
          fenced deletes released
        - CUTOVER_PENDING -> CUTOVER: Target quality confirmed; reads move
        - CUTOVER -> COMPLETE: Legacy writes may stop; Legacy may be retired
        - CUTOVER_PENDING -> DUAL_WRITE: Rollback when Target is unfit

    No transition skips a phase.
    """

    PREPARING = "preparing"
    """Target index being created; only Legacy receives writes."""

    DUAL_WRITE = "dual_write"
    """Writes go to Legacy and Target; no backfill yet."""

    BACKFILLING = "backfilling"
    """Backfill running; deletes to Target are fenced."""

    CUTOVER_PENDING = "cutover_pending"
    """Backfill reconciled; awaiting confirmation of Target quality."""

    CUTOVER = "cutover"
    """Read traffic served from Target."""

    COMPLETE = "complete"
    """Migration finished; Legacy eligible for decommission."""

    @property
    def is_terminal(self) -> bool:
        """Check if this is the final phase."""
        return self == MigrationPhase.COMPLETE

    @property
    def writes_target_upserts(self) -> bool:
        """Check if upserts are mirrored to Target in this phase."""
        return self != MigrationPhase.PREPARING

    @property
    def fences_deletes(self) -> bool:
        """Check if deletes to Target are held by the delete fence."""
        return self == MigrationPhase.BACKFILLING

    @property
    def deletes_target_directly(self) -> bool:
        """Check if deletes are applied to Target as they arrive."""
        return self not in (MigrationPhase.PREPARING, MigrationPhase.BACKFILLING)

    @property
    def next_phase(self) -> MigrationPhase | None:
        """The next forward phase, or None for COMPLETE."""
        order = list(MigrationPhase)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None

    def can_transition_to(self, target: MigrationPhase) -> bool:
        """
        Check if transition to target phase is valid.

        Args:
            target: The target phase to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False

        valid_transitions: dict[MigrationPhase, list[MigrationPhase]] = {
            MigrationPhase.PREPARING: [MigrationPhase.DUAL_WRITE],
            MigrationPhase.DUAL_WRITE: [MigrationPhase.BACKFILLING],
            MigrationPhase.BACKFILLING: [MigrationPhase.CUTOVER_PENDING],
            MigrationPhase.CUTOVER_PENDING: [
                MigrationPhase.CUTOVER,
                MigrationPhase.DUAL_WRITE,  # Rollback if Target is unfit
            ],
            MigrationPhase.CUTOVER: [MigrationPhase.COMPLETE],
        }

        return target in valid_transitions.get(self, [])


@dataclass(frozen=True)
class ReindexConfig:
    """
    Configuration for a reindex migration.

    Controls batch sizes, concurrency, rate limits, timeouts, retry policies
    and reconciliation thresholds. This class is immutable (frozen) to
    prevent accidental modification during a migration.

    Attributes:
        batch_size: Documents per backfill batch (default 1000).
        max_concurrent_batches: Backfill batches in flight at once (default 1).
        max_backfill_rate: Max documents/second during backfill, 0 disables
            rate limiting (default 10000).
        store_timeout_seconds: Timeout for every index store call (default 10.0).
        batch_retry: Retry policy for failed backfill batches.
        target_write_retry: Inline retry policy for dual writes to Target.
        reconciliation_tolerance: Allowed |Legacy count - Target count| (default 0).
        reconciliation_sample_size: Rejected ids checked for conflicts (default 100).
        schema_version_field: Document field holding the schema version, used to
            tell stale rejections from conflicting ones (default None, unchecked).
        max_failure_history: Target write failures kept for inspection (default 1000).
        disable_legacy_writes_on_complete: Stop writing Legacy once COMPLETE
            (default False).
        lane_count: Change feed lanes for per-record ordering (default 8).
        ordering_window: Records tracked for out-of-order detection (default 10000).
        max_parked_writes: Parked Target writes held before new events are
            refused with TargetWriteError, 0 disables the cap (default 10000).
        replay_interval_seconds: Pause between automatic replays of parked
            Target writes (default 5.0).

    Example:
        >>> config = ReindexConfig(batch_size=500, max_concurrent_batches=4)
        >>> config.batch_size
        500
    """

    batch_size: int = 1000
    max_concurrent_batches: int = 1
    max_backfill_rate: int = 10000
    store_timeout_seconds: float = 10.0
    batch_retry: RetryConfig = BATCH_RETRY_CONFIG
    target_write_retry: RetryConfig = TARGET_WRITE_RETRY_CONFIG
    reconciliation_tolerance: int = 0
    reconciliation_sample_size: int = 100
    schema_version_field: str | None = None
    max_failure_history: int = 1000
    disable_legacy_writes_on_complete: bool = False
    lane_count: int = 8
    ordering_window: int = 10000
    max_parked_writes: int = 10000
    replay_interval_seconds: float = 5.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.max_concurrent_batches < 1:
            raise ValueError(
                f"max_concurrent_batches must be >= 1, got {self.max_concurrent_batches}"
            )

        if self.max_backfill_rate < 0:
            raise ValueError(f"max_backfill_rate must be >= 0, got {self.max_backfill_rate}")

        if self.store_timeout_seconds <= 0:
            raise ValueError(
                f"store_timeout_seconds must be > 0, got {self.store_timeout_seconds}"
            )

        if self.reconciliation_tolerance < 0:
            raise ValueError(
                f"reconciliation_tolerance must be >= 0, got {self.reconciliation_tolerance}"
            )

        if self.reconciliation_sample_size < 0:
            raise ValueError(
                f"reconciliation_sample_size must be >= 0, got {self.reconciliation_sample_size}"
            )

        if self.max_failure_history < 0:
            raise ValueError(f"max_failure_history must be >= 0, got {self.max_failure_history}")

        if self.lane_count < 1:
            raise ValueError(f"lane_count must be >= 1, got {self.lane_count}")

        if self.ordering_window < 1:
            raise ValueError(f"ordering_window must be >= 1, got {self.ordering_window}")

        if self.max_parked_writes < 0:
            raise ValueError(f"max_parked_writes must be >= 0, got {self.max_parked_writes}")

        if self.replay_interval_seconds <= 0:
            raise ValueError(
                f"replay_interval_seconds must be > 0, got {self.replay_interval_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "max_concurrent_batches": self.max_concurrent_batches,
            "max_backfill_rate": self.max_backfill_rate,
            "store_timeout_seconds": self.store_timeout_seconds,
            "batch_retry": self.batch_retry.to_dict(),
            "target_write_retry": self.target_write_retry.to_dict(),
            "reconciliation_tolerance": self.reconciliation_tolerance,
            "reconciliation_sample_size": self.reconciliation_sample_size,
            "schema_version_field": self.schema_version_field,
            "max_failure_history": self.max_failure_history,
            "disable_legacy_writes_on_complete": self.disable_legacy_writes_on_complete,
            "lane_count": self.lane_count,
            "ordering_window": self.ordering_window,
            "max_parked_writes": self.max_parked_writes,
            "replay_interval_seconds": self.replay_interval_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReindexConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            ReindexConfig instance.
        """
        return cls(
            batch_size=data.get("batch_size", 1000),
            max_concurrent_batches=data.get("max_concurrent_batches", 1),
            max_backfill_rate=data.get("max_backfill_rate", 10000),
            store_timeout_seconds=data.get("store_timeout_seconds", 10.0),
            batch_retry=(
                RetryConfig.from_dict(data["batch_retry"])
                if "batch_retry" in data
                else BATCH_RETRY_CONFIG
            ),
            target_write_retry=(
                RetryConfig.from_dict(data["target_write_retry"])
                if "target_write_retry" in data
                else TARGET_WRITE_RETRY_CONFIG
            ),
            reconciliation_tolerance=data.get("reconciliation_tolerance", 0),
            reconciliation_sample_size=data.get("reconciliation_sample_size", 100),
            schema_version_field=data.get("schema_version_field"),
            max_failure_history=data.get("max_failure_history", 1000),
            disable_legacy_writes_on_complete=data.get("disable_legacy_writes_on_complete", False),
            lane_count=data.get("lane_count", 8),
            ordering_window=data.get("ordering_window", 10000),
            max_parked_writes=data.get("max_parked_writes", 10000),
            replay_interval_seconds=data.get("replay_interval_seconds", 5.0),
        )


@dataclass
class BackfillCursor:
    """
    Persistent position of a backfill over a Legacy snapshot.

    Created when a backfill opens its snapshot and mutated only by the
    backfill engine. ``snapshot_token`` never changes for the lifetime of a
    cursor, and ``position`` only moves forward: every document before it
    has been inserted into Target or rejected as already present.

    Attributes:
        snapshot_token: Token of the Legacy snapshot being read.
        position: Snapshot position up to which all documents are processed.
        documents_seen: Documents processed (inserted + rejected).
        documents_total: Legacy document count at snapshot time.
        documents_inserted: Documents created in Target.
        documents_rejected: Documents already present in Target.
        prior_target_count: Target document count when the snapshot opened.
        started_at: When the snapshot opened.
        updated_at: When the cursor last advanced.
        completed_at: When the last document was processed.
        rejected_sample: Uniform sample of rejected record ids, at most
            reconciliation_sample_size long.
    """

    snapshot_token: str
    documents_total: int
    prior_target_count: int = 0
    position: int = 0
    documents_seen: int = 0
    documents_inserted: int = 0
    documents_rejected: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    rejected_sample: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """Check if every document in the snapshot was processed."""
        return self.completed_at is not None

    @property
    def remaining(self) -> int:
        """Documents in the snapshot not yet processed."""
        return max(0, self.documents_total - self.position)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "snapshot_token": self.snapshot_token,
            "position": self.position,
            "documents_seen": self.documents_seen,
            "documents_total": self.documents_total,
            "documents_inserted": self.documents_inserted,
            "documents_rejected": self.documents_rejected,
            "prior_target_count": self.prior_target_count,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "rejected_sample": list(self.rejected_sample),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackfillCursor:
        """Create from dictionary."""
        return cls(
            snapshot_token=data["snapshot_token"],
            position=data.get("position", 0),
            documents_seen=data.get("documents_seen", 0),
            documents_total=data["documents_total"],
            documents_inserted=data.get("documents_inserted", 0),
            documents_rejected=data.get("documents_rejected", 0),
            prior_target_count=data.get("prior_target_count", 0),
            started_at=datetime.fromisoformat(data["started_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            completed_at=(
                datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None
            ),
            rejected_sample=list(data.get("rejected_sample", [])),
        )


@dataclass(frozen=True)
class PendingDelete:
    """
    A delete held back by the delete fence while a backfill runs.

    Attributes:
        record_id: Record to delete from Target.
        requested_at: When the delete arrived.
        snapshot_token: Backfill snapshot the fence was armed for.
        sequence: Arrival order within the fence (FIFO key).
    """

    record_id: str
    requested_at: datetime
    snapshot_token: str
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "requested_at": self.requested_at.isoformat(),
            "snapshot_token": self.snapshot_token,
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class BackfillProgress:
    """
    Progress information for a running backfill.

    Attributes:
        snapshot_token: Snapshot being read.
        position: Contiguous processed position.
        documents_seen: Documents processed so far.
        documents_total: Documents in the snapshot.
        documents_inserted: Documents created in Target.
        documents_rejected: Documents already present in Target.
        documents_per_second: Current processing rate.
        estimated_remaining_seconds: Estimated time to completion (None if unknown).
        is_complete: Whether the backfill has finished.
    """

    snapshot_token: str
    position: int
    documents_seen: int
    documents_total: int
    documents_inserted: int
    documents_rejected: int
    documents_per_second: float
    estimated_remaining_seconds: float | None
    is_complete: bool

    @property
    def progress_percent(self) -> float:
        """Progress as percentage (0-100); 100 for an empty snapshot."""
        if self.documents_total == 0:
            return 100.0 if self.is_complete else 0.0
        return min(100.0, (self.position / self.documents_total) * 100)

    @classmethod
    def from_cursor(
        cls,
        cursor: BackfillCursor,
        documents_per_second: float = 0.0,
    ) -> BackfillProgress:
        """Create a progress update from a cursor."""
        remaining = cursor.remaining
        return cls(
            snapshot_token=cursor.snapshot_token,
            position=cursor.position,
            documents_seen=cursor.documents_seen,
            documents_total=cursor.documents_total,
            documents_inserted=cursor.documents_inserted,
            documents_rejected=cursor.documents_rejected,
            documents_per_second=documents_per_second,
            estimated_remaining_seconds=(
                0.0
                if remaining == 0
                else (remaining / documents_per_second if documents_per_second > 0 else None)
            ),
            is_complete=cursor.is_complete,
        )


@dataclass
class BackfillResult:
    """
    Result of a backfill run.

    Attributes:
        success: Whether every snapshot document was processed.
        cursor: Final cursor state (position preserved on failure).
        duration_seconds: Time taken by this run.
        cancelled: Whether the run stopped on a cancel request.
        rejected_sample: Sample of record ids rejected as already present.
        error_message: Error message if the run failed.
    """

    success: bool
    cursor: BackfillCursor
    duration_seconds: float
    cancelled: bool = False
    rejected_sample: tuple[str, ...] = ()
    error_message: str | None = None

    @property
    def documents_seen(self) -> int:
        return self.cursor.documents_seen

    @property
    def documents_total(self) -> int:
        return self.cursor.documents_total

    @property
    def documents_rejected(self) -> int:
        return self.cursor.documents_rejected


@dataclass(frozen=True)
class ReconciliationReport:
    """
    Outcome of post-backfill reconciliation.

    Attributes:
        snapshot_token: Snapshot the backfill read.
        documents_seen: Documents the backfill processed.
        documents_total: Legacy document count at snapshot time.
        prior_target_count: Target document count at snapshot time.
        legacy_count: Live Legacy document count at verification time.
        target_count: Live Target document count at verification time.
        tolerance: Allowed count drift.
        sampled: Rejected record ids checked for conflicts.
        conflicts: Rejected record ids whose Target document is not in the
            destination schema version.
        checked_at: When verification ran.
    """

    snapshot_token: str
    documents_seen: int
    documents_total: int
    prior_target_count: int
    legacy_count: int
    target_count: int
    tolerance: int
    sampled: int = 0
    conflicts: tuple[str, ...] = ()
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def coverage_ok(self) -> bool:
        """Every snapshot document was processed."""
        return self.documents_seen == self.documents_total

    @property
    def drift(self) -> int:
        """Absolute difference between Legacy and Target counts."""
        return abs(self.legacy_count - self.target_count)

    @property
    def drift_ok(self) -> bool:
        return self.drift <= self.tolerance

    @property
    def seen_plus_prior(self) -> int:
        """documents_seen + prior_target_count, reported for operators."""
        return self.documents_seen + self.prior_target_count

    @property
    def passed(self) -> bool:
        return self.coverage_ok and self.drift_ok and not self.conflicts

    @property
    def failures(self) -> list[str]:
        """Human-readable reasons the report failed (empty if passed)."""
        reasons = []
        if not self.coverage_ok:
            reasons.append(
                f"backfill saw {self.documents_seen} of {self.documents_total} snapshot documents"
            )
        if not self.drift_ok:
            reasons.append(
                f"count drift {self.drift} (legacy={self.legacy_count}, "
                f"target={self.target_count}) exceeds tolerance {self.tolerance}"
            )
        if self.conflicts:
            reasons.append(
                f"{len(self.conflicts)} rejected inserts conflict with Target documents"
            )
        return reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_token": self.snapshot_token,
            "documents_seen": self.documents_seen,
            "documents_total": self.documents_total,
            "prior_target_count": self.prior_target_count,
            "seen_plus_prior": self.seen_plus_prior,
            "legacy_count": self.legacy_count,
            "target_count": self.target_count,
            "drift": self.drift,
            "tolerance": self.tolerance,
            "sampled": self.sampled,
            "conflicts": list(self.conflicts),
            "passed": self.passed,
            "failures": self.failures,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class PhaseTransition:
    """
    Audit entry for a phase change.

    Attributes:
        from_phase: Phase before the transition.
        to_phase: Phase after the transition.
        occurred_at: When the transition committed.
        reason: Operator or automation supplied reason.
    """

    from_phase: MigrationPhase
    to_phase: MigrationPhase
    occurred_at: datetime
    reason: str | None = None

    @property
    def is_rollback(self) -> bool:
        return (
            self.from_phase == MigrationPhase.CUTOVER_PENDING
            and self.to_phase == MigrationPhase.DUAL_WRITE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "occurred_at": self.occurred_at.isoformat(),
            "reason": self.reason,
            "is_rollback": self.is_rollback,
        }


@dataclass(frozen=True)
class MigrationStatus:
    """
    Operator-facing status snapshot.

    This class is immutable because it represents a snapshot.

    Attributes:
        name: Migration name.
        phase: Current migration phase.
        phase_started_at: When the current phase started.
        documents_seen: Backfill documents processed.
        documents_total: Backfill snapshot size.
        documents_rejected: Backfill inserts rejected as already present.
        backfill_running: Whether a backfill run is in progress.
        pending_deletes: Deletes waiting in the delete fence.
        parked_target_writes: Target writes waiting for replay.
        last_reconciliation: Most recent reconciliation report.
        last_error: Last error reported by a background operation.
    """

    name: str
    phase: MigrationPhase
    phase_started_at: datetime | None
    documents_seen: int
    documents_total: int
    documents_rejected: int
    backfill_running: bool
    pending_deletes: int
    parked_target_writes: int
    last_reconciliation: ReconciliationReport | None = None
    last_error: str | None = None

    @property
    def progress_percent(self) -> float:
        if self.documents_total == 0:
            return 0.0
        return min(100.0, (self.documents_seen / self.documents_total) * 100)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "name": self.name,
            "phase": self.phase.value,
            "phase_started_at": (
                self.phase_started_at.isoformat() if self.phase_started_at else None
            ),
            "documents_seen": self.documents_seen,
            "documents_total": self.documents_total,
            "documents_rejected": self.documents_rejected,
            "progress_percent": self.progress_percent,
            "backfill_running": self.backfill_running,
            "pending_deletes": self.pending_deletes,
            "parked_target_writes": self.parked_target_writes,
            "last_reconciliation": (
                self.last_reconciliation.to_dict() if self.last_reconciliation else None
            ),
            "last_error": self.last_error,
        }


__all__ = [
    "MigrationPhase",
    "ReindexConfig",
    "BackfillCursor",
    "PendingDelete",
    "BackfillProgress",
    "BackfillResult",
    "ReconciliationReport",
    "PhaseTransition",
    "MigrationStatus",
]
