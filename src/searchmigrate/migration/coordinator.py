"""
ReindexCoordinator - Operator control surface for a reindex migration.

The ReindexCoordinator is the primary entry point for running a reindex from
a Legacy index to a Target index. It wires the migration components
(PhaseController, DeleteFence, DualWriteDispatcher, BackfillEngine,
ReconciliationVerifier) together and enforces the preconditions of every
forward transition.

Responsibilities:
    - Phase lifecycle (begin dual write, start backfill, advance, rollback)
    - Arming the delete fence atomically with the snapshot that starts a backfill
    - Running the backfill in the background (wait, abort, resume)
    - Releasing the fence and reconciling atomically with leaving BACKFILLING
    - Status reporting
    - Change feed consumption through per-record lanes
    - Background replay of parked Target writes

Usage:
    >>> from searchmigrate.migration import ReindexCoordinator
    >>>
    >>> coordinator = ReindexCoordinator(
    ...     legacy=legacy_store,
    ...     target=target_store,
    ...     transformer=to_v2_schema,
    ...     checkpoint_repo=checkpoint_repo,
    ...     name="products-v2",
    ... )
    >>> await coordinator.begin_dual_write()
    >>> feed_task = asyncio.create_task(coordinator.consume(feed))
    >>>
    >>> await coordinator.start_backfill()
    >>> result = await coordinator.wait_for_backfill()
    >>>
    >>> # Releases fenced deletes and reconciles
    >>> await coordinator.advance()
    >>> status = await coordinator.get_status()
    >>> print(f"Phase: {status.phase.value}, drift: {status.last_reconciliation.drift}")
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from searchmigrate.exceptions import IndexStoreError
from searchmigrate.feed.lanes import LaneRouter
from searchmigrate.migration.backfill import BackfillEngine, DocumentTransformer
from searchmigrate.migration.delete_fence import DeleteFence
from searchmigrate.migration.dual_write import DispatchResult, DualWriteDispatcher, ReplayResult
from searchmigrate.migration.exceptions import (
    BackfillError,
    MigrationStateError,
    ReconciliationMismatch,
)
from searchmigrate.migration.metrics import ReindexMetrics, get_reindex_metrics
from searchmigrate.migration.models import (
    BackfillCursor,
    BackfillResult,
    MigrationPhase,
    MigrationStatus,
    PhaseTransition,
    ReconciliationReport,
    ReindexConfig,
)
from searchmigrate.migration.phase_controller import PhaseController
from searchmigrate.migration.reconciliation import ReconciliationVerifier
from searchmigrate.migration.repositories.checkpoint import (
    BackfillCheckpointRepository,
    InMemoryBackfillCheckpointRepository,
)
from searchmigrate.observability import (
    ATTR_MIGRATION_NAME,
    ATTR_MIGRATION_PHASE,
    ATTR_SNAPSHOT_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores._timeout import call_with_timeout

if TYPE_CHECKING:
    from searchmigrate.feed.events import ChangeEvent
    from searchmigrate.feed.interface import ChangeFeed
    from searchmigrate.stores import IndexStore

logger = logging.getLogger(__name__)


class ReindexCoordinator:
    """
    Orchestrates a reindex from Legacy to Target.

    The coordinator drives the migration through its phases:
    1. PREPARING -> DUAL_WRITE: begin_dual_write()
    2. DUAL_WRITE -> BACKFILLING: start_backfill() opens the Legacy snapshot
       and arms the delete fence in the same step
    3. BACKFILLING -> CUTOVER_PENDING: advance() once the backfill is complete;
       releases the fence and reconciles, and stays in BACKFILLING if either fails
    4. CUTOVER_PENDING -> CUTOVER: advance() once no Target writes are parked
    5. CUTOVER -> COMPLETE: advance()

    From CUTOVER_PENDING, rollback() returns to DUAL_WRITE and discards the
    backfill checkpoint; the next start_backfill() takes a new snapshot.

    A coordinator built with ``initial_phase=BACKFILLING`` (e.g., after a
    process restart) continues the persisted backfill with resume_backfill().
    Deletes that arrive before the fence is re-armed are parked and can be
    replayed with retry_failed_target_writes().

    Attributes:
        _controller: Phase controller shared by every component.
        _fence: Delete fence used while BACKFILLING.
        _dispatcher: Dual-write dispatcher applying change events.
        _engine: Backfill engine.
        _verifier: Reconciliation verifier.
        _backfill_task: Background backfill run, if any.
    """

    def __init__(
        self,
        legacy: IndexStore,
        target: IndexStore,
        *,
        transformer: DocumentTransformer | None = None,
        config: ReindexConfig | None = None,
        checkpoint_repo: BackfillCheckpointRepository | None = None,
        metrics: ReindexMetrics | None = None,
        enable_metrics: bool = True,
        initial_phase: MigrationPhase = MigrationPhase.PREPARING,
        name: str = "reindex",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            legacy: Legacy index store (authoritative until COMPLETE)
            target: Target index store
            transformer: Converts a Legacy document to the Target schema, used
                by both live writes and the backfill (default: copy as is)
            config: Reindex configuration
            checkpoint_repo: Backfill cursor persistence (default: in-memory)
            metrics: Metrics instance (default: the registry entry for ``name``)
            enable_metrics: Whether to record OpenTelemetry metrics
            initial_phase: Phase to start in (default PREPARING)
            name: Migration name for logs, metrics and checkpoints
            tracer: Optional custom Tracer instance shared with every component
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._legacy = legacy
        self._target = target
        self._config = config or ReindexConfig()
        self._checkpoint_repo = checkpoint_repo or InMemoryBackfillCheckpointRepository()
        self._metrics = metrics or get_reindex_metrics(name, enable_metrics)
        self._name = name

        self._controller = PhaseController(
            initial_phase,
            name=name,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        self._fence = DeleteFence(
            target,
            config=self._config,
            metrics=self._metrics,
            name=name,
            tracer=self._tracer,
        )
        self._dispatcher = DualWriteDispatcher(
            legacy,
            target,
            self._controller,
            self._fence,
            transformer=transformer,
            config=self._config,
            metrics=self._metrics,
            name=name,
            tracer=self._tracer,
        )
        self._engine = BackfillEngine(
            transformer=transformer,
            config=self._config,
            checkpoint_repo=self._checkpoint_repo,
            metrics=self._metrics,
            name=name,
            tracer=self._tracer,
        )
        self._verifier = ReconciliationVerifier(
            config=self._config,
            metrics=self._metrics,
            name=name,
            tracer=self._tracer,
        )

        self._backfill_task: asyncio.Task[BackfillResult] | None = None
        self._replay_task: asyncio.Task[None] | None = None
        self._cursor: BackfillCursor | None = None
        self._last_result: BackfillResult | None = None
        self._last_reconciliation: ReconciliationReport | None = None
        self._last_error: str | None = None

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def name(self) -> str:
        return self._name

    @property
    def phase(self) -> MigrationPhase:
        return self._controller.phase

    @property
    def controller(self) -> PhaseController:
        return self._controller

    @property
    def dispatcher(self) -> DualWriteDispatcher:
        return self._dispatcher

    @property
    def fence(self) -> DeleteFence:
        return self._fence

    @property
    def engine(self) -> BackfillEngine:
        return self._engine

    @property
    def metrics(self) -> ReindexMetrics:
        return self._metrics

    @property
    def backfill_running(self) -> bool:
        return self._backfill_task is not None and not self._backfill_task.done()

    @property
    def replay_running(self) -> bool:
        return self._replay_task is not None and not self._replay_task.done()

    @property
    def last_reconciliation(self) -> ReconciliationReport | None:
        return self._last_reconciliation

    # =========================================================================
    # Live Writes
    # =========================================================================

    async def apply(self, event: ChangeEvent) -> DispatchResult:
        """
        Apply a change event through the dual-write dispatcher.

        Raises:
            IndexStoreError: If the Legacy write fails (do not acknowledge)
        """
        return await self._dispatcher.apply(event)

    async def retry_failed_target_writes(self) -> ReplayResult:
        """Replay parked Target writes."""
        return await self._dispatcher.retry_failed_target_writes()

    def start_replay(self, interval: float | None = None) -> asyncio.Task[None]:
        """
        Replay parked Target writes in the background until stopped.

        Each round waits ``interval`` seconds (default
        ``replay_interval_seconds``), or longer while the Target circuit
        breaker is open, so replay resumes when the breaker goes half-open.

        Raises:
            MigrationStateError: If the replay loop is already running
        """
        if self.replay_running:
            raise MigrationStateError(
                "Replay loop is already running",
                current_phase=self.phase,
                operation="start_replay",
                migration_name=self._name,
            )
        interval = interval or self._config.replay_interval_seconds
        self._replay_task = asyncio.create_task(
            self._replay_loop(interval), name=f"replay_{self._name}"
        )
        logger.info("Started replay loop for %s every %.1fs", self._name, interval)
        return self._replay_task

    async def stop_replay(self) -> None:
        """Stop the background replay loop, if running."""
        task = self._replay_task
        self._replay_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped replay loop for %s", self._name)

    async def consume(self, feed: ChangeFeed, lane_capacity: int = 100) -> None:
        """
        Consume a change feed until it ends, one lane per record hash.

        Each delivery is acknowledged after the Legacy write and nacked if
        it failed.

        Args:
            feed: Change feed to consume
            lane_capacity: Queue size per lane
        """
        router = LaneRouter(
            self.apply,
            lane_count=self._config.lane_count,
            lane_capacity=lane_capacity,
            tracer=self._tracer,
        )
        await router.run(feed)

    # =========================================================================
    # Phase Lifecycle
    # =========================================================================

    async def begin_dual_write(self, reason: str | None = None) -> PhaseTransition:
        """
        Move PREPARING -> DUAL_WRITE once the Target index exists.

        Target is checked inside the transition. It must differ from Legacy
        in identity and schema version and answer a count within the store
        timeout.

        Raises:
            MigrationStateError: If the phase is not PREPARING or Target
                fails the check; the phase stays PREPARING
        """
        self._controller.require(MigrationPhase.PREPARING, operation="begin_dual_write")

        async def check_target(current: MigrationPhase, target: MigrationPhase) -> None:
            legacy_index = self._legacy.target
            target_index = self._target.target
            if target_index == legacy_index:
                raise self._target_rejected(f"Target {target_index.name} is the Legacy index")
            if target_index.schema_version == legacy_index.schema_version:
                raise self._target_rejected(
                    f"Target {target_index.name} has the Legacy schema version "
                    f"{legacy_index.schema_version}"
                )
            try:
                documents = await call_with_timeout(
                    self._target.count(),
                    self._config.store_timeout_seconds,
                    index_name=target_index.name,
                    operation="count",
                )
            except IndexStoreError as e:
                raise self._target_rejected(
                    f"Target {target_index.name} is not reachable: {e}"
                ) from e
            logger.info(
                "Target %s reachable with %d documents for %s",
                target_index.name,
                documents,
                self._name,
            )

        return await self._controller.transition_to(
            MigrationPhase.DUAL_WRITE,
            reason=reason or "dual write started",
            before_commit=check_target,
        )

    def _target_rejected(self, message: str) -> MigrationStateError:
        return MigrationStateError(
            message,
            current_phase=MigrationPhase.PREPARING,
            operation="begin_dual_write",
            migration_name=self._name,
        )

    async def start_backfill(self, reason: str | None = None) -> PhaseTransition:
        """
        Move DUAL_WRITE -> BACKFILLING and start the backfill in the background.

        The Legacy snapshot is opened and the delete fence armed for it
        inside the transition, while no change event is in flight. A delete
        either reached Target before the snapshot (and is not in it) or is
        fenced.

        Returns:
            The committed PhaseTransition

        Raises:
            MigrationStateError: If the phase is not DUAL_WRITE
            BackfillError: If the snapshot cannot be opened; the phase stays
                DUAL_WRITE
        """
        with self._tracer.span(
            "searchmigrate.coordinator.start_backfill",
            {ATTR_MIGRATION_NAME: self._name},
        ):
            self._controller.require(MigrationPhase.DUAL_WRITE, operation="start_backfill")
            self._ensure_backfill_idle("start_backfill")

            async def open_and_arm(current: MigrationPhase, target: MigrationPhase) -> None:
                cursor = await self._engine.prepare(self._legacy, self._target)
                self._fence.activate(cursor.snapshot_token)
                self._cursor = cursor

            transition = await self._controller.transition_to(
                MigrationPhase.BACKFILLING,
                reason=reason or "backfill started",
                before_commit=open_and_arm,
            )

            self._last_reconciliation = None
            self._last_error = None
            self._launch_backfill()
            return transition

    async def resume_backfill(self) -> BackfillCursor:
        """
        Continue the backfill from its persisted position.

        Used after abort_backfill(), after a failed run, or when a new
        process takes over a migration that is in BACKFILLING.

        Returns:
            The cursor the run continues from

        Raises:
            MigrationStateError: If the phase is not BACKFILLING or a run is active
            BackfillError: If the persisted snapshot cannot be reopened
        """
        self._ensure_backfill_idle("resume_backfill")

        async with self._controller.observe() as phase:
            if phase != MigrationPhase.BACKFILLING:
                raise MigrationStateError(
                    f"Cannot resume backfill in phase {phase.value}",
                    current_phase=phase,
                    expected_phases=[MigrationPhase.BACKFILLING],
                    operation="resume_backfill",
                    migration_name=self._name,
                )
            cursor = await self._engine.prepare(self._legacy, self._target, cursor=self._cursor)
            self._fence.activate(cursor.snapshot_token)
            self._cursor = cursor

        self._last_error = None
        self._launch_backfill()
        logger.info(
            "Resumed backfill for %s at position %d of %d",
            self._name,
            cursor.position,
            cursor.documents_total,
        )
        return cursor

    async def wait_for_backfill(self, timeout: float | None = None) -> BackfillResult:
        """
        Wait for the background backfill to finish.

        Waiting does not cancel the run; on timeout it keeps going.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            BackfillResult of the run (success False if it failed)

        Raises:
            MigrationStateError: If no backfill was started
            TimeoutError: If the run does not finish in time
        """
        task = self._backfill_task
        if task is None:
            if self._last_result is not None:
                return self._last_result
            raise MigrationStateError(
                "No backfill has been started",
                operation="wait_for_backfill",
                migration_name=self._name,
            )
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def abort_backfill(self) -> BackfillResult | None:
        """
        Stop the background backfill cooperatively.

        In-flight batches finish and are committed; the cursor is persisted,
        and the phase stays BACKFILLING so the run can be resumed.

        Returns:
            BackfillResult of the stopped run, or None if none was running
        """
        if not self.backfill_running:
            return None
        self._engine.cancel()
        result = await self.wait_for_backfill()
        logger.info(
            "Aborted backfill for %s at position %d of %d",
            self._name,
            result.cursor.position,
            result.cursor.documents_total,
        )
        return result

    async def advance(self, reason: str | None = None) -> PhaseTransition:
        """
        Move to the next forward phase, checking its preconditions.

        Returns:
            The committed PhaseTransition

        Raises:
            MigrationStateError: If a precondition is not met
            FenceReleaseError: If a fenced delete could not be applied
            ReconciliationMismatch: If Target does not reconcile with Legacy
            InvalidPhaseTransitionError: If the migration is COMPLETE
        """
        phase = self._controller.phase
        with self._tracer.span(
            "searchmigrate.coordinator.advance",
            {ATTR_MIGRATION_NAME: self._name, ATTR_MIGRATION_PHASE: phase.value},
        ):
            if phase == MigrationPhase.PREPARING:
                return await self.begin_dual_write(reason)
            if phase == MigrationPhase.DUAL_WRITE:
                return await self.start_backfill(reason)
            if phase == MigrationPhase.BACKFILLING:
                return await self._complete_backfill(reason)
            if phase == MigrationPhase.CUTOVER_PENDING:
                return await self._cutover(reason)
            return await self._controller.advance(reason=reason)

    async def rollback(self, reason: str | None = None) -> PhaseTransition:
        """
        Roll back CUTOVER_PENDING -> DUAL_WRITE.

        Discards the backfill checkpoint and the last reconciliation report.
        Deletes released before the rollback are not released again; the
        next start_backfill() takes a new snapshot.

        Raises:
            MigrationStateError: If the phase is not CUTOVER_PENDING
        """

        async def discard(current: MigrationPhase, target: MigrationPhase) -> None:
            await self._checkpoint_repo.delete(self._name)

        transition = await self._controller.rollback(reason=reason, before_commit=discard)
        self._cursor = None
        self._last_result = None
        self._last_reconciliation = None
        logger.warning("Migration %s rolled back to %s", self._name, transition.to_phase.value)
        return transition

    async def wait_for_phase(self, phase: MigrationPhase, timeout: float | None = None) -> None:
        """Wait until the migration reaches a phase."""
        await self._controller.wait_for_phase(phase, timeout=timeout)

    async def get_status(self) -> MigrationStatus:
        """
        Get the operator-facing status.

        Returns:
            MigrationStatus snapshot
        """
        cursor = self._cursor
        if cursor is None and self._controller.phase == MigrationPhase.BACKFILLING:
            cursor = await self._checkpoint_repo.get(self._name)

        return MigrationStatus(
            name=self._name,
            phase=self._controller.phase,
            phase_started_at=self._controller.phase_started_at,
            documents_seen=cursor.documents_seen if cursor else 0,
            documents_total=cursor.documents_total if cursor else 0,
            documents_rejected=cursor.documents_rejected if cursor else 0,
            backfill_running=self.backfill_running,
            pending_deletes=self._fence.pending_count,
            parked_target_writes=self._dispatcher.parked_count,
            last_reconciliation=self._last_reconciliation,
            last_error=self._last_error,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _ensure_backfill_idle(self, operation: str) -> None:
        if self.backfill_running:
            raise MigrationStateError(
                "Backfill is already running",
                operation=operation,
                migration_name=self._name,
            )

    async def _replay_loop(self, interval: float) -> None:
        breaker = self._dispatcher.circuit_breaker
        while True:
            await asyncio.sleep(max(interval, breaker.get_time_until_retry()))
            if self._dispatcher.parked_count:
                await self._dispatcher.retry_failed_target_writes()

    def _launch_backfill(self) -> None:
        self._last_result = None
        self._backfill_task = asyncio.create_task(
            self._run_backfill(),
            name=f"backfill_{self._name}",
        )

    async def _run_backfill(self) -> BackfillResult:
        """Run the prepared backfill; failures are recorded, not raised."""
        cursor = self._cursor
        assert cursor is not None

        with self._tracer.span(
            "searchmigrate.coordinator.run_backfill",
            {ATTR_MIGRATION_NAME: self._name, ATTR_SNAPSHOT_TOKEN: cursor.snapshot_token},
        ):
            try:
                result = await self._engine.run(self._legacy, self._target, cursor=cursor)
            except asyncio.CancelledError:
                logger.info("Backfill task cancelled for %s", self._name)
                raise
            except BackfillError as e:
                self._last_error = str(e)
                logger.error("Backfill failed for %s: %s", self._name, e)
                result = BackfillResult(
                    success=False,
                    cursor=cursor,
                    duration_seconds=0.0,
                    rejected_sample=self._engine.rejected_sample,
                    error_message=str(e),
                )

            if result.success:
                logger.info(
                    "Backfill complete for %s: %d of %d documents (%d rejected); ready to advance",
                    self._name,
                    result.documents_seen,
                    result.documents_total,
                    result.documents_rejected,
                )
            self._last_result = result
            return result

    async def _complete_backfill(self, reason: str | None) -> PhaseTransition:
        self._ensure_backfill_idle("advance")

        cursor = self._cursor or await self._checkpoint_repo.get(self._name)
        if cursor is None or not cursor.is_complete:
            raise MigrationStateError(
                "Backfill is not complete"
                + (f" (position {cursor.position} of {cursor.documents_total})" if cursor else ""),
                current_phase=MigrationPhase.BACKFILLING,
                operation="advance",
                migration_name=self._name,
            )

        async def release_and_reconcile(current: MigrationPhase, target: MigrationPhase) -> None:
            await self._fence.release(until=cursor.snapshot_token)
            try:
                report = await self._verifier.verify(
                    cursor,
                    self._legacy,
                    self._target,
                    tuple(cursor.rejected_sample),
                )
            except ReconciliationMismatch as e:
                self._last_reconciliation = e.report
                raise
            self._last_reconciliation = report
            self._fence.deactivate()
            await self._checkpoint_repo.delete(self._name)

        transition = await self._controller.transition_to(
            MigrationPhase.CUTOVER_PENDING,
            reason=reason or "backfill reconciled",
            before_commit=release_and_reconcile,
        )
        self._cursor = cursor
        self._backfill_task = None
        return transition

    async def _cutover(self, reason: str | None) -> PhaseTransition:
        parked = self._dispatcher.parked_count
        if parked:
            raise MigrationStateError(
                f"{parked} Target writes are parked; replay them with "
                "retry_failed_target_writes() before cutover",
                current_phase=MigrationPhase.CUTOVER_PENDING,
                operation="advance",
                migration_name=self._name,
            )
        return await self._controller.transition_to(
            MigrationPhase.CUTOVER,
            reason=reason or "target confirmed",
        )


__all__ = ["ReindexCoordinator"]
