"""
DualWriteDispatcher - Applies change events to Legacy and Target.

The DualWriteDispatcher receives every committed change event from the
change feed and applies it to the Legacy index, then mirrors it to the
Target index according to the current migration phase. This keeps Target
consistent with live traffic while the backfill copies historical data.

Responsibilities:
    - Write to Legacy first (authoritative); Legacy failures propagate
    - Mirror upserts to Target in the Target schema
    - Route deletes to Target directly or through the delete fence
    - Isolate Target failures: retry inline, then park for replay
    - Preserve per-record order for parked Target writes
    - Track failed Target writes for monitoring

Consistency Guarantees:
    - A change event is acknowledged only after Legacy applied it
    - Target writes never block or roll back the Legacy write
    - While a record has parked Target writes, newer writes for that record
      are parked behind them
    - Deletes during BACKFILLING are never applied to Target before the
      backfill completes

Usage:
    >>> from searchmigrate.migration import DualWriteDispatcher
    >>>
    >>> dispatcher = DualWriteDispatcher(
    ...     legacy=legacy_store,
    ...     target=target_store,
    ...     controller=phase_controller,
    ...     fence=delete_fence,
    ...     transformer=to_v2_schema,
    ... )
    >>>
    >>> result = await dispatcher.apply(ChangeEvent.upsert("sku-1", {"title": "Mug"}))
    >>> result.target_outcome
    <TargetOutcome.APPLIED: 'applied'>
    >>>
    >>> # Replay Target writes parked while the Target cluster was down
    >>> await dispatcher.retry_failed_target_writes()
"""

from __future__ import annotations

import copy
import logging
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from searchmigrate.feed.events import ChangeEvent, ChangeOperation
from searchmigrate.locks import RecordLockManager
from searchmigrate.migration.exceptions import (
    CircuitBreaker,
    ErrorHandler,
    OrderingViolation,
    TargetWriteError,
)
from searchmigrate.migration.models import MigrationPhase, ReindexConfig
from searchmigrate.observability import (
    ATTR_INDEX_NAME,
    ATTR_OPERATION,
    ATTR_RECORD_ID,
    ATTR_SEQUENCE_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores import IndexStore, call_with_timeout

if TYPE_CHECKING:
    from searchmigrate.migration.delete_fence import DeleteFence
    from searchmigrate.migration.metrics import ReindexMetrics
    from searchmigrate.migration.phase_controller import PhaseController

logger = logging.getLogger(__name__)

PayloadTransformer = Callable[[dict[str, Any]], dict[str, Any]]


def _identity(payload: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(payload)


class TargetOutcome(str, Enum):
    """What happened to the Target side of a change event."""

    APPLIED = "applied"
    """Written to (or deleted from) Target."""

    ABSENT = "absent"
    """Delete-if-exists found nothing to delete."""

    FENCED = "fenced"
    """Delete held by the delete fence until backfill completes."""

    DEFERRED = "deferred"
    """Parked behind earlier parked writes for the same record."""

    FAILED = "failed"
    """Retries exhausted; parked for replay."""

    SKIPPED = "skipped"
    """Target does not receive this operation in the current phase."""


@dataclass
class TargetWriteFailure:
    """
    Records a failed write to the Target index.

    Attributes:
        timestamp: When the failure occurred.
        record_id: The record that was being written.
        operation: "upsert" or "delete".
        phase: Phase the write was attempted in.
        error_message: The error message from the failed write.
        error_type: Exception class name.
        sequence_token: Sequence token of the change event.
    """

    timestamp: datetime
    record_id: str
    operation: str
    phase: MigrationPhase
    error_message: str
    error_type: str
    sequence_token: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "record_id": self.record_id,
            "operation": self.operation,
            "phase": self.phase.value,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "sequence_token": self.sequence_token,
        }


@dataclass
class FailureStats:
    """
    Statistics about Target write failures.

    Attributes:
        total_failures: Failed Target writes in the history window.
        first_failure_at: Timestamp of the first failure.
        last_failure_at: Timestamp of the most recent failure.
        unique_records_affected: Distinct records with failures.
        parked_writes: Target writes currently waiting for replay.
        parked_records: Records with parked writes.
    """

    total_failures: int = 0
    first_failure_at: datetime | None = None
    last_failure_at: datetime | None = None
    unique_records_affected: int = 0
    parked_writes: int = 0
    parked_records: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_failures": self.total_failures,
            "first_failure_at": (
                self.first_failure_at.isoformat() if self.first_failure_at else None
            ),
            "last_failure_at": (self.last_failure_at.isoformat() if self.last_failure_at else None),
            "unique_records_affected": self.unique_records_affected,
            "parked_writes": self.parked_writes,
            "parked_records": self.parked_records,
        }


@dataclass
class ParkedWrite:
    """
    A Target write waiting for replay.

    Attributes:
        event: The change event whose Target side is pending.
        parked_at: When the write was parked.
        attempts: Replay attempts so far.
        last_error: Error from the most recent attempt.
    """

    event: ChangeEvent
    parked_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    """
    Result of applying one change event.

    Attributes:
        record_id: The record the event changed.
        operation: Upsert or delete.
        phase: Phase the event was applied in.
        legacy_applied: Whether Legacy received the write.
        target_outcome: What happened on the Target side.
        out_of_order: Whether the event arrived behind a newer one.
    """

    record_id: str
    operation: ChangeOperation
    phase: MigrationPhase
    legacy_applied: bool
    target_outcome: TargetOutcome
    out_of_order: bool = False

    @property
    def target_pending(self) -> bool:
        """Check if the Target side still has to be applied."""
        return self.target_outcome in (
            TargetOutcome.FENCED,
            TargetOutcome.DEFERRED,
            TargetOutcome.FAILED,
        )


@dataclass(frozen=True)
class ReplayResult:
    """
    Result of replaying parked Target writes.

    Attributes:
        replayed: Writes applied to Target.
        remaining: Writes still parked.
        failed_records: Records whose replay stopped on an error.
    """

    replayed: int
    remaining: int
    failed_records: tuple[str, ...] = ()


class DualWriteDispatcher:
    """
    Applies change events to Legacy and, by phase, to Target.

    Phase routing:
        - PREPARING: Legacy only
        - DUAL_WRITE, CUTOVER_PENDING, CUTOVER, COMPLETE: upserts and deletes
          mirrored to Target
        - BACKFILLING: upserts mirrored to Target; deletes sent to the
          delete fence

    The whole event is applied under a shared lease on the phase, so a
    phase transition waits for in-flight events and no event is routed by a
    phase that has already been left.

    Example:
        >>> dispatcher = DualWriteDispatcher(legacy, target, controller, fence)
        >>> await dispatcher.apply(ChangeEvent.delete("sku-1"))
        >>> dispatcher.get_failure_stats().parked_writes
        0

    Attributes:
        _legacy: The authoritative Legacy index.
        _target: The Target index being built.
        _parked: Parked Target writes per record, in arrival order.
        _failures: Failure history for monitoring.
        _last_sequence: Bounded LRU of the last sequence token per record.
    """

    def __init__(
        self,
        legacy: IndexStore,
        target: IndexStore,
        controller: PhaseController,
        fence: DeleteFence,
        *,
        transformer: PayloadTransformer | None = None,
        config: ReindexConfig | None = None,
        error_handler: ErrorHandler | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        metrics: ReindexMetrics | None = None,
        name: str = "reindex",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            legacy: The authoritative Legacy index store.
            target: The Target index store.
            controller: Phase controller deciding routing.
            fence: Delete fence used while BACKFILLING.
            transformer: Converts a Legacy payload to the Target schema
                (default: deep copy).
            config: Reindex configuration.
            error_handler: Handler for inline Target retries. Defaults to one
                guarded by ``circuit_breaker``.
            circuit_breaker: Breaker for Target writes (default: a new one).
            metrics: Optional metrics.
            name: Migration name for logs and errors.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._legacy = legacy
        self._target = target
        self._controller = controller
        self._fence = fence
        self._transformer = transformer or _identity
        self._config = config or ReindexConfig()
        self._circuit_breaker = circuit_breaker or CircuitBreaker(name=f"{name}.target")
        self._error_handler = error_handler or ErrorHandler(circuit_breaker=self._circuit_breaker)
        self._metrics = metrics
        self._name = name

        self._record_locks = RecordLockManager()
        self._parked: OrderedDict[str, deque[ParkedWrite]] = OrderedDict()
        self._failures: list[TargetWriteFailure] = []
        self._affected_records: set[str] = set()
        self._last_sequence: OrderedDict[str, int] = OrderedDict()

        self._legacy_writes = 0
        self._outcomes: dict[TargetOutcome, int] = dict.fromkeys(TargetOutcome, 0)
        self._ordering_violations = 0

    # =========================================================================
    # Public Properties
    # =========================================================================

    @property
    def legacy_store(self) -> IndexStore:
        """Get the Legacy (authoritative) index store."""
        return self._legacy

    @property
    def target_store(self) -> IndexStore:
        """Get the Target index store."""
        return self._target

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def parked_count(self) -> int:
        """Target writes waiting for replay."""
        return sum(len(q) for q in self._parked.values())

    def parked_records(self) -> list[str]:
        """Records with parked Target writes, oldest first."""
        return list(self._parked)

    def get_parked(self, record_id: str) -> list[ParkedWrite]:
        return list(self._parked.get(record_id, ()))

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def apply(self, event: ChangeEvent) -> DispatchResult:
        """
        Apply a change event to Legacy, then mirror it to Target.

        Args:
            event: The committed change event

        Returns:
            DispatchResult describing both sides

        Raises:
            IndexStoreError: If the Legacy write fails; the event must not be
                acknowledged, so the feed redelivers it
            TargetWriteError: If Target is authoritative (COMPLETE with Legacy
                writes disabled) and the Target write fails
                or if the parked write limit is reached; the event is not
                applied to either side
        """
        with self._tracer.span(
            "searchmigrate.dual_write.apply",
            {
                ATTR_RECORD_ID: event.record_id,
                ATTR_OPERATION: event.operation.value,
                ATTR_SEQUENCE_TOKEN: event.sequence_token,
            },
        ):
            async with self._controller.observe() as phase:
                legacy_authoritative = not (
                    phase == MigrationPhase.COMPLETE
                    and self._config.disable_legacy_writes_on_complete
                )
                if legacy_authoritative:
                    self._check_parked_limit(event)

                out_of_order = self._check_ordering(event)
                if legacy_authoritative:
                    await self._apply_legacy(event)

                async with self._record_locks.acquire(event.record_id):
                    if not legacy_authoritative:
                        outcome = await self._apply_authoritative(event, phase)
                    elif event.record_id in self._parked:
                        self._park(event)
                        outcome = TargetOutcome.DEFERRED
                    else:
                        try:
                            outcome = await self._apply_target(event, phase)
                        except Exception as e:
                            self._record_failure(event, phase, e)
                            self._park(event)
                            outcome = TargetOutcome.FAILED

                self._log_outcome(event, phase, outcome)
                self._outcomes[outcome] += 1

                return DispatchResult(
                    record_id=event.record_id,
                    operation=event.operation,
                    phase=phase,
                    legacy_applied=legacy_authoritative,
                    target_outcome=outcome,
                    out_of_order=out_of_order,
                )

    async def retry_failed_target_writes(self) -> ReplayResult:
        """
        Replay parked Target writes, per record, in arrival order.

        Each write is routed by the phase current at replay time: a parked
        delete replayed while BACKFILLING goes to the fence. Replay of a
        record stops at its first failure so later writes stay behind it;
        other records continue.

        Returns:
            ReplayResult with counts of replayed and remaining writes
        """
        replayed = 0
        failed: list[str] = []

        with self._tracer.span(
            "searchmigrate.dual_write.replay",
            {ATTR_INDEX_NAME: self._target.target.name},
        ):
            for record_id in list(self._parked):
                async with self._controller.observe() as phase:
                    async with self._record_locks.acquire(record_id):
                        applied, error = await self._drain_record(record_id, phase)
                replayed += applied
                if error is not None:
                    failed.append(record_id)

        remaining = self.parked_count
        if replayed or failed:
            logger.info(
                "Replayed %d parked Target writes for migration %s (%d remaining, %d records failing)",
                replayed,
                self._name,
                remaining,
                len(failed),
            )
        return ReplayResult(replayed=replayed, remaining=remaining, failed_records=tuple(failed))

    # =========================================================================
    # Failure Tracking
    # =========================================================================

    def get_failed_writes(self) -> list[TargetWriteFailure]:
        """
        Get the history of failed Target writes.

        Returns:
            List of TargetWriteFailure records in chronological order.
        """
        return list(self._failures)

    def get_failure_stats(self) -> FailureStats:
        """
        Get aggregate statistics about Target write failures.

        Returns:
            FailureStats with summary metrics.
        """
        if not self._failures:
            return FailureStats(
                parked_writes=self.parked_count,
                parked_records=len(self._parked),
            )

        return FailureStats(
            total_failures=len(self._failures),
            first_failure_at=self._failures[0].timestamp,
            last_failure_at=self._failures[-1].timestamp,
            unique_records_affected=len(self._affected_records),
            parked_writes=self.parked_count,
            parked_records=len(self._parked),
        )

    def clear_failure_history(self) -> int:
        """
        Clear the failure history. Parked writes are kept.

        Returns:
            Number of failure records cleared.
        """
        count = len(self._failures)
        self._failures.clear()
        self._affected_records.clear()
        return count

    def get_stats(self) -> dict[str, Any]:
        """Get dispatch counters."""
        return {
            "legacy_writes": self._legacy_writes,
            "target_outcomes": {o.value: n for o, n in self._outcomes.items()},
            "ordering_violations": self._ordering_violations,
            "parked_writes": self.parked_count,
            "circuit_state": self._circuit_breaker.state.value,
        }

    # =========================================================================
    # Internals
    # =========================================================================

    async def _apply_legacy(self, event: ChangeEvent) -> None:
        legacy_name = self._legacy.target.name
        timeout = self._config.store_timeout_seconds

        if event.operation == ChangeOperation.UPSERT:
            assert event.payload is not None
            await call_with_timeout(
                self._legacy.index_or_replace(event.record_id, copy.deepcopy(event.payload)),
                timeout,
                index_name=legacy_name,
                operation="index_or_replace",
                record_id=event.record_id,
            )
        else:
            await call_with_timeout(
                self._legacy.delete_if_exists(event.record_id),
                timeout,
                index_name=legacy_name,
                operation="delete_if_exists",
                record_id=event.record_id,
            )
        self._legacy_writes += 1

    async def _apply_target(self, event: ChangeEvent, phase: MigrationPhase) -> TargetOutcome:
        """Apply the Target side of an event for a phase. Caller holds the record lock."""
        record_id = event.record_id

        if event.operation == ChangeOperation.UPSERT:
            if not phase.writes_target_upserts:
                return TargetOutcome.SKIPPED
            assert event.payload is not None
            document = self._transformer(event.payload)
            if phase.fences_deletes:
                await self._fence.withdraw(record_id)
            await self._target_call(
                lambda: self._target.index_or_replace(record_id, document),
                "index_or_replace",
                record_id,
            )
            return TargetOutcome.APPLIED

        if phase.fences_deletes:
            await self._fence.fence(record_id)
            return TargetOutcome.FENCED
        if not phase.deletes_target_directly:
            return TargetOutcome.SKIPPED

        existed = await self._target_call(
            lambda: self._target.delete_if_exists(record_id),
            "delete_if_exists",
            record_id,
        )
        return TargetOutcome.APPLIED if existed else TargetOutcome.ABSENT

    async def _apply_authoritative(
        self,
        event: ChangeEvent,
        phase: MigrationPhase,
    ) -> TargetOutcome:
        """Apply an event with Target as the only write; failures propagate."""
        _, error = await self._drain_record(event.record_id, phase)
        if error is not None:
            raise TargetWriteError(
                event.record_id,
                event.operation.value,
                f"earlier parked writes could not be replayed: {error}",
                migration_name=self._name,
            ) from error

        try:
            return await self._apply_target(event, phase)
        except Exception as e:
            self._record_failure(event, phase, e)
            raise TargetWriteError(
                event.record_id,
                event.operation.value,
                str(e),
                migration_name=self._name,
            ) from e

    async def _drain_record(
        self,
        record_id: str,
        phase: MigrationPhase,
    ) -> tuple[int, Exception | None]:
        """Replay parked writes for one record. Caller holds the record lock."""
        queue = self._parked.get(record_id)
        if not queue:
            return 0, None

        applied = 0
        error: Exception | None = None
        while queue:
            parked = queue[0]
            parked.attempts += 1
            try:
                outcome = await self._apply_target(parked.event, phase)
            except Exception as e:
                parked.last_error = str(e)
                self._record_failure(parked.event, phase, e)
                error = e
                break
            queue.popleft()
            applied += 1
            self._log_outcome(parked.event, phase, outcome, replayed=True)

        if not queue:
            del self._parked[record_id]
        self._report_parked()
        return applied, error

    async def _target_call(
        self,
        call: Callable[[], Any],
        operation: str,
        record_id: str,
    ) -> Any:
        target_name = self._target.target.name
        return await self._error_handler.execute_with_retry(
            lambda: call_with_timeout(
                call(),
                self._config.store_timeout_seconds,
                index_name=target_name,
                operation=operation,
                record_id=record_id,
            ),
            operation_name=f"target.{operation}",
            migration_name=self._name,
            retry_config=self._config.target_write_retry,
        )

    def _check_parked_limit(self, event: ChangeEvent) -> None:
        limit = self._config.max_parked_writes
        if limit and self.parked_count >= limit:
            logger.warning(
                "Refusing %s of %s for migration %s: %d Target writes parked",
                event.operation.value,
                event.record_id,
                self._name,
                self.parked_count,
            )
            raise TargetWriteError(
                event.record_id,
                event.operation.value,
                f"parked write limit of {limit} reached",
                migration_name=self._name,
            )

    def _park(self, event: ChangeEvent) -> None:
        queue = self._parked.get(event.record_id)
        if queue is None:
            queue = deque()
            self._parked[event.record_id] = queue
        queue.append(ParkedWrite(event=event))
        self._report_parked()

    def _record_failure(self, event: ChangeEvent, phase: MigrationPhase, error: Exception) -> None:
        """
        Record a failed Target write for monitoring and replay.

        Args:
            event: The change event whose Target side failed.
            phase: Phase the write was attempted in.
            error: The exception that caused the failure.
        """
        failure = TargetWriteFailure(
            timestamp=datetime.now(UTC),
            record_id=event.record_id,
            operation=event.operation.value,
            phase=phase,
            error_message=str(error),
            error_type=type(error).__name__,
            sequence_token=event.sequence_token,
        )
        self._failures.append(failure)
        self._affected_records.add(event.record_id)

        if self._metrics is not None:
            self._metrics.record_failed_target_write(event.operation.value, failure.error_type)

        # Trim old failures to prevent unbounded growth
        if len(self._failures) > self._config.max_failure_history:
            removed = len(self._failures) - self._config.max_failure_history
            self._failures = self._failures[removed:]
            self._affected_records = {f.record_id for f in self._failures}
            logger.debug("Trimmed %d old Target failure records for %s", removed, self._name)

    def _check_ordering(self, event: ChangeEvent) -> bool:
        # Sequence token 0 means the producer does not sequence its events
        if event.sequence_token == 0:
            return False

        record_id = event.record_id
        last = self._last_sequence.get(record_id)
        out_of_order = last is not None and event.sequence_token < last

        if out_of_order:
            assert last is not None
            violation = OrderingViolation(
                record_id,
                last,
                event.sequence_token,
                migration_name=self._name,
            )
            logger.warning("%s; applying anyway", violation)
            self._ordering_violations += 1
            if self._metrics is not None:
                self._metrics.record_ordering_violation()
        else:
            self._last_sequence[record_id] = event.sequence_token

        self._last_sequence.move_to_end(record_id)
        while len(self._last_sequence) > self._config.ordering_window:
            self._last_sequence.popitem(last=False)
        return out_of_order

    def _log_outcome(
        self,
        event: ChangeEvent,
        phase: MigrationPhase,
        outcome: TargetOutcome,
        *,
        replayed: bool = False,
    ) -> None:
        if outcome == TargetOutcome.FAILED:
            level = logging.WARNING
        elif outcome in (TargetOutcome.FENCED, TargetOutcome.DEFERRED) or replayed:
            level = logging.INFO
        else:
            level = logging.DEBUG

        logger.log(
            level,
            "Target %s %s%s: record_id=%s, phase=%s",
            event.operation.value,
            outcome.value,
            " (replayed)" if replayed else "",
            event.record_id,
            phase.value,
            extra={
                "record_id": event.record_id,
                "target_outcome": outcome.value,
                "migration_phase": phase.value,
            },
        )

    def _report_parked(self) -> None:
        if self._metrics is not None:
            self._metrics.set_parked_target_writes(self.parked_count)


__all__ = [
    "DualWriteDispatcher",
    "DispatchResult",
    "FailureStats",
    "ParkedWrite",
    "PayloadTransformer",
    "ReplayResult",
    "TargetOutcome",
    "TargetWriteFailure",
]
