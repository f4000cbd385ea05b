"""
BackfillEngine - Copies a Legacy snapshot into Target.

The BackfillEngine handles the backfill phase of a reindex, reading a
point-in-time snapshot of the Legacy index in batches and inserting every
document into Target with insert-if-absent semantics. Live writes keep
flowing through the dual-write dispatcher meanwhile; a document they
already wrote to Target is newer than the snapshot copy, so the insert is
rejected and counted, not treated as an error.

Responsibilities:
    - Open (or reopen, when resuming) a snapshot cursor on Legacy
    - Transform each document to the Target schema and insert it if absent
    - Track documents seen, inserted and rejected against the snapshot total
    - Persist the cursor after every committed batch for resumption
    - Retry failed batches with backoff, only for documents not yet inserted
    - Handle rate limiting, pause/resume and cooperative cancellation

Performance Characteristics:
    - Batch size configurable (default 1000 documents)
    - Up to max_concurrent_batches batches in flight; the cursor advances
      only over the contiguous prefix of completed batches
    - Read-only on Legacy

Usage:
    >>> from searchmigrate.migration import BackfillEngine
    >>>
    >>> engine = BackfillEngine(transformer=to_v2_schema, checkpoint_repo=repo)
    >>>
    >>> async for progress in engine.stream(legacy, target):
    ...     print(f"Backfilled {progress.progress_percent:.1f}%")
    >>>
    >>> result = await engine.run(legacy, target)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from searchmigrate.migration.exceptions import (
    BackfillError,
    ErrorHandler,
    MigrationStateError,
)
from searchmigrate.migration.models import (
    BackfillCursor,
    BackfillProgress,
    BackfillResult,
    ReindexConfig,
)
from searchmigrate.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DOCUMENTS_TOTAL,
    ATTR_MIGRATION_NAME,
    ATTR_POSITION,
    ATTR_SNAPSHOT_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores import (
    BatchRead,
    IndexStore,
    InsertOutcome,
    SnapshotHandle,
    call_with_timeout,
)

if TYPE_CHECKING:
    from searchmigrate.migration.metrics import ReindexMetrics
    from searchmigrate.migration.repositories.checkpoint import BackfillCheckpointRepository

logger = logging.getLogger(__name__)

DocumentTransformer = Callable[[dict[str, Any]], dict[str, Any]]


class RateLimiter:
    """
    Simple token bucket rate limiter for controlling document throughput.

    Limits the rate of documents processed per second using a token bucket
    algorithm. Tokens are refilled based on elapsed time.

    Attributes:
        _max_rate: Maximum documents allowed per second.
        _tokens: Current available tokens.
        _last_update: Time of last token update.
        _lock: Async lock for thread-safe operation.
    """

    def __init__(self, max_rate: int) -> None:
        """
        Initialize rate limiter.

        Args:
            max_rate: Maximum documents per second (0 disables limiting).
        """
        self._max_rate = max_rate
        self._tokens = float(max_rate)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def wait(self, count: int) -> None:
        """
        Wait for capacity to process `count` documents.

        If insufficient tokens are available, sleeps until enough
        tokens have been accumulated.

        Args:
            count: Number of documents to process.
        """
        if self._max_rate <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                self._max_rate,
                self._tokens + elapsed * self._max_rate,
            )

            if count > self._tokens:
                wait_time = (count - self._tokens) / self._max_rate
                await asyncio.sleep(wait_time)
                self._tokens = 0
                self._last_update = time.monotonic()
            else:
                self._tokens -= count


@dataclass
class _BatchOutcome:
    start: int
    end: int
    size: int
    done: bool
    inserted: int = 0
    rejected_ids: list[str] = field(default_factory=list)


class BackfillEngine:
    """
    Copies a Legacy snapshot into Target with insert-if-absent.

    Supports:

    - Batched, optionally concurrent processing
    - Checkpoint persistence for resumption over the same snapshot
    - Rate limiting to protect both clusters
    - Progress updates as an async iterator
    - Pause/resume and cooperative cancellation

    Cancellation stops reading new batches; batches already in flight finish
    (or fail) and are committed first. A failure aborts the run with
    BackfillError and leaves the cursor at the last committed position.

    Example:
        >>> engine = BackfillEngine(
        ...     transformer=to_v2_schema,
        ...     config=ReindexConfig(batch_size=500, max_concurrent_batches=4),
        ...     checkpoint_repo=repo,
        ...     name="products-v2",
        ... )
        >>> result = await engine.run(legacy, target)
        >>> result.documents_seen == result.documents_total
        True

    Attributes:
        _cursor: Cursor of the current (or last) run.
        _is_cancelled: Flag indicating cancellation requested.
        _is_paused: Flag indicating operation is paused.
        _pause_event: Event for pause/resume synchronization.
    """

    def __init__(
        self,
        *,
        transformer: DocumentTransformer | None = None,
        config: ReindexConfig | None = None,
        checkpoint_repo: BackfillCheckpointRepository | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: ReindexMetrics | None = None,
        name: str = "reindex",
        rng: random.Random | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the backfill engine.

        Args:
            transformer: Converts a Legacy document to the Target schema
                (default: deep copy).
            config: Reindex configuration (batching, rate, retry, timeouts).
            checkpoint_repo: Repository for cursor persistence. Without one,
                a run can only be resumed by passing its cursor explicitly.
            error_handler: Handler for batch retries.
            metrics: Optional metrics.
            name: Migration name; also the checkpoint key.
            rng: Random source for sampling rejected ids.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._transformer = transformer or copy.deepcopy
        self._config = config or ReindexConfig()
        self._checkpoint_repo = checkpoint_repo
        self._error_handler = error_handler or ErrorHandler()
        self._metrics = metrics
        self._name = name

        # State
        self._cursor: BackfillCursor | None = None
        self._random = rng or random.Random()
        self._is_running = False
        self._is_cancelled = False
        self._stopped_by_cancel = False
        self._is_paused = False
        self._pause_event = asyncio.Event()
        self._pause_event.set()
        self._prepared: SnapshotHandle | None = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def cursor(self) -> BackfillCursor | None:
        """Cursor of the current or most recent run."""
        return self._cursor

    @property
    def rejected_sample(self) -> tuple[str, ...]:
        """Uniform sample of record ids rejected as already present."""
        if self._cursor is None:
            return ()
        return tuple(self._cursor.rejected_sample)

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._is_cancelled

    @property
    def is_paused(self) -> bool:
        """Check if the operation is paused."""
        return self._is_paused

    def cancel(self) -> None:
        """
        Cancel the backfill.

        No new batches are read; in-flight batches finish and are committed.
        Progress is saved and can be resumed. A request made before the run
        reads its first batch stops that run immediately.
        """
        self._is_cancelled = True
        # A paused run must wake up to observe the cancellation
        self._pause_event.set()
        logger.info("Backfill cancellation requested for %s", self._name)

    def pause(self) -> None:
        """
        Pause the backfill.

        No new batches are read until resume() is called.
        """
        self._is_paused = True
        self._pause_event.clear()
        logger.info("Backfill paused for %s", self._name)

    def resume(self) -> None:
        """Resume a paused backfill."""
        self._is_paused = False
        self._pause_event.set()
        logger.info("Backfill resumed for %s", self._name)

    # =========================================================================
    # Run
    # =========================================================================

    async def prepare(
        self,
        source: IndexStore,
        destination: IndexStore,
        *,
        cursor: BackfillCursor | None = None,
    ) -> BackfillCursor:
        """
        Open (or reopen) the snapshot without processing any batch.

        Lets the caller fix the snapshot token before the run starts, e.g.
        to arm the delete fence in the same step. The next ``run()`` or
        ``stream()`` called with the returned cursor reuses the open handle.

        Returns:
            The cursor the run will continue from.

        Raises:
            BackfillError: If the snapshot cannot be opened.
            MigrationStateError: If a run is already in progress.
        """
        if self._is_running:
            raise MigrationStateError(
                "Backfill is already running",
                operation="backfill.prepare",
                migration_name=self._name,
            )
        self._prepared = await self._open_or_raise(source, destination, cursor)
        assert self._cursor is not None
        return self._cursor

    async def run(
        self,
        source: IndexStore,
        destination: IndexStore,
        *,
        cursor: BackfillCursor | None = None,
        progress_callback: Callable[[BackfillProgress], None] | None = None,
    ) -> BackfillResult:
        """
        Run the backfill to completion (or cancellation).

        Args:
            source: Legacy index store to read the snapshot from.
            destination: Target index store to insert into.
            cursor: Cursor to resume from (default: the persisted checkpoint,
                or a new snapshot).
            progress_callback: Optional callback for progress updates.

        Returns:
            BackfillResult with the final cursor.

        Raises:
            BackfillError: If a batch exhausts its retries or fails permanently.
        """
        start_time = time.monotonic()
        async for progress in self.stream(source, destination, cursor=cursor):
            if progress_callback:
                progress_callback(progress)

        assert self._cursor is not None
        return BackfillResult(
            success=self._cursor.is_complete,
            cursor=self._cursor,
            duration_seconds=time.monotonic() - start_time,
            cancelled=self._stopped_by_cancel and not self._cursor.is_complete,
            rejected_sample=self.rejected_sample,
        )

    async def stream(
        self,
        source: IndexStore,
        destination: IndexStore,
        *,
        cursor: BackfillCursor | None = None,
    ) -> AsyncIterator[BackfillProgress]:
        """
        Run the backfill, yielding progress after every committed batch.

        Args:
            source: Legacy index store to read the snapshot from.
            destination: Target index store to insert into.
            cursor: Cursor to resume from.

        Yields:
            BackfillProgress instances; the last one is the final state.

        Raises:
            BackfillError: If a batch exhausts its retries or fails permanently.
            MigrationStateError: If a run is already in progress.
        """
        if self._is_running:
            raise MigrationStateError(
                "Backfill is already running",
                operation="backfill.run",
                migration_name=self._name,
            )

        self._is_running = True
        try:
            prepared, self._prepared = self._prepared, None
            if prepared is not None and (cursor is None or cursor is self._cursor):
                handle = prepared
            else:
                handle = await self._open_or_raise(source, destination, cursor)

            assert self._cursor is not None
            with self._tracer.span(
                "searchmigrate.backfill.run",
                {
                    ATTR_MIGRATION_NAME: self._name,
                    ATTR_SNAPSHOT_TOKEN: self._cursor.snapshot_token,
                    ATTR_DOCUMENTS_TOTAL: self._cursor.documents_total,
                    ATTR_BATCH_SIZE: self._config.batch_size,
                },
            ):
                async for progress in self._process(source, destination, handle):
                    yield progress
        finally:
            # The request is consumed by the run it stopped
            self._stopped_by_cancel = self._is_cancelled
            self._is_cancelled = False
            self._is_running = False

    # =========================================================================
    # Internals
    # =========================================================================

    async def _open_or_raise(
        self,
        source: IndexStore,
        destination: IndexStore,
        cursor: BackfillCursor | None,
    ) -> SnapshotHandle:
        try:
            return await self._open(source, destination, cursor)
        except Exception as e:
            logger.error("Backfill failed to open snapshot for %s: %s", self._name, e)
            raise BackfillError(
                self._cursor.position if self._cursor else 0,
                str(e),
                snapshot_token=self._cursor.snapshot_token if self._cursor else None,
                migration_name=self._name,
            ) from e

    async def _open(
        self,
        source: IndexStore,
        destination: IndexStore,
        cursor: BackfillCursor | None,
    ) -> SnapshotHandle:
        """Resolve the cursor and get a handle on its snapshot."""
        if cursor is None and self._checkpoint_repo is not None:
            cursor = await self._checkpoint_repo.get(self._name)

        timeout = self._config.store_timeout_seconds

        if cursor is not None and cursor.is_complete:
            # The snapshot of a finished backfill is already closed
            self._cursor = cursor
            return SnapshotHandle(
                token=cursor.snapshot_token,
                total=cursor.documents_total,
                opened_at=cursor.started_at,
            )

        if cursor is not None:
            handle = await call_with_timeout(
                source.reopen_snapshot_cursor(cursor.snapshot_token),
                timeout,
                index_name=source.target.name,
                operation="reopen_snapshot_cursor",
            )
            self._cursor = cursor
            logger.info(
                "Resuming backfill %s over snapshot %s at position %d of %d",
                self._name,
                cursor.snapshot_token,
                cursor.position,
                cursor.documents_total,
            )
            return handle

        handle = await call_with_timeout(
            source.open_snapshot_cursor(),
            timeout,
            index_name=source.target.name,
            operation="open_snapshot_cursor",
        )
        prior_target_count = await call_with_timeout(
            destination.count(),
            timeout,
            index_name=destination.target.name,
            operation="count",
        )
        self._cursor = BackfillCursor(
            snapshot_token=handle.token,
            documents_total=handle.total,
            prior_target_count=prior_target_count,
            started_at=handle.opened_at,
            updated_at=handle.opened_at,
        )
        await self._save_checkpoint()

        logger.info(
            "Starting backfill %s: %d documents in snapshot %s (%d already in %s)",
            self._name,
            handle.total,
            handle.token,
            prior_target_count,
            destination.target.name,
        )
        return handle

    async def _process(
        self,
        source: IndexStore,
        destination: IndexStore,
        handle: SnapshotHandle,
    ) -> AsyncIterator[BackfillProgress]:
        cursor = self._cursor
        assert cursor is not None

        start_time = time.monotonic()
        seen_at_start = cursor.documents_seen
        rate_limiter = RateLimiter(self._config.max_backfill_rate)

        in_flight: deque[tuple[_BatchOutcome, asyncio.Task[None]]] = deque()
        read_position = cursor.position
        already_complete = exhausted = cursor.is_complete

        try:
            while True:
                # Fill the pipeline
                while (
                    not exhausted
                    and not self._is_cancelled
                    and len(in_flight) < self._config.max_concurrent_batches
                ):
                    await self._wait_if_paused()
                    if self._is_cancelled:
                        break

                    batch = await self._read_batch(source, handle, read_position)
                    outcome = _BatchOutcome(
                        start=read_position,
                        end=batch.next_position,
                        size=batch.size,
                        done=batch.done,
                    )
                    read_position = batch.next_position
                    exhausted = batch.done

                    if batch.size:
                        await rate_limiter.wait(batch.size)
                    task = asyncio.create_task(self._insert_batch(destination, batch, outcome))
                    in_flight.append((outcome, task))

                if not in_flight:
                    break

                # Commit the oldest batch, so the cursor never skips a position
                outcome, task = in_flight.popleft()
                try:
                    await task
                except Exception:
                    # Let the other in-flight batches finish or fail first
                    await asyncio.gather(*(t for _, t in in_flight), return_exceptions=True)
                    in_flight.clear()
                    raise

                await self._commit(outcome)

                elapsed = time.monotonic() - start_time
                rate = (cursor.documents_seen - seen_at_start) / elapsed if elapsed > 0 else 0.0
                if self._metrics is not None:
                    self._metrics.record_backfill_batch(
                        outcome.inserted,
                        len(outcome.rejected_ids),
                        rate,
                    )
                yield BackfillProgress.from_cursor(cursor, rate)

            if already_complete:
                logger.info("Backfill %s was already complete", self._name)
            elif cursor.is_complete:
                await call_with_timeout(
                    source.close_snapshot_cursor(handle),
                    self._config.store_timeout_seconds,
                    index_name=source.target.name,
                    operation="close_snapshot_cursor",
                )
                logger.info(
                    "Backfill %s completed: %d seen (%d inserted, %d rejected) of %d in %.1fs",
                    self._name,
                    cursor.documents_seen,
                    cursor.documents_inserted,
                    cursor.documents_rejected,
                    cursor.documents_total,
                    time.monotonic() - start_time,
                )
            else:
                logger.info(
                    "Backfill %s stopped at position %d of %d",
                    self._name,
                    cursor.position,
                    cursor.documents_total,
                )

            elapsed = time.monotonic() - start_time
            rate = (cursor.documents_seen - seen_at_start) / elapsed if elapsed > 0 else 0.0
            yield BackfillProgress.from_cursor(cursor, rate)

        except Exception as e:
            await asyncio.gather(*(t for _, t in in_flight), return_exceptions=True)
            in_flight.clear()
            logger.error(
                "Backfill %s failed at position %d: %s",
                self._name,
                cursor.position,
                e,
            )
            raise BackfillError(
                cursor.position,
                str(e),
                snapshot_token=cursor.snapshot_token,
                migration_name=self._name,
            ) from e
        finally:
            # Only reached with tasks left when the consumer stopped iterating
            for _, task in in_flight:
                task.cancel()

    async def _read_batch(
        self,
        source: IndexStore,
        handle: SnapshotHandle,
        position: int,
    ) -> BatchRead:
        return await self._error_handler.execute_with_retry(
            lambda: call_with_timeout(
                source.read_batch(handle, position, self._config.batch_size),
                self._config.store_timeout_seconds,
                index_name=source.target.name,
                operation="read_batch",
            ),
            operation_name="backfill.read_batch",
            migration_name=self._name,
            retry_config=self._config.batch_retry,
        )

    async def _insert_batch(
        self,
        destination: IndexStore,
        batch: BatchRead,
        outcome: _BatchOutcome,
    ) -> None:
        """
        Insert a batch into the destination.

        Documents leave ``remaining`` only once their insert returned, so a
        retried attempt resumes with the documents not yet inserted.
        """
        remaining = deque(batch.documents)
        timeout = self._config.store_timeout_seconds
        destination_name = destination.target.name

        async def attempt() -> None:
            while remaining:
                document = remaining[0]
                body = self._transformer(document.body)
                result = await call_with_timeout(
                    destination.insert_if_absent(document.record_id, body),
                    timeout,
                    index_name=destination_name,
                    operation="insert_if_absent",
                    record_id=document.record_id,
                )
                if result == InsertOutcome.INSERTED:
                    outcome.inserted += 1
                else:
                    outcome.rejected_ids.append(document.record_id)
                remaining.popleft()

        with self._tracer.span(
            "searchmigrate.backfill.insert_batch",
            {
                ATTR_MIGRATION_NAME: self._name,
                ATTR_POSITION: outcome.start,
                ATTR_BATCH_SIZE: outcome.size,
            },
        ):
            await self._error_handler.execute_with_retry(
                attempt,
                operation_name="backfill.insert_batch",
                migration_name=self._name,
                retry_config=self._config.batch_retry,
            )

        logger.debug(
            "Inserted batch [%d, %d) for %s: %d inserted, %d rejected",
            outcome.start,
            outcome.end,
            self._name,
            outcome.inserted,
            len(outcome.rejected_ids),
        )

    async def _commit(self, outcome: _BatchOutcome) -> None:
        cursor = self._cursor
        assert cursor is not None

        rejected = len(outcome.rejected_ids)
        self._sample_rejections(cursor, outcome.rejected_ids)
        cursor.position = outcome.end
        cursor.documents_seen += outcome.inserted + rejected
        cursor.documents_inserted += outcome.inserted
        cursor.documents_rejected += rejected
        cursor.updated_at = datetime.now(UTC)
        if outcome.done:
            cursor.completed_at = cursor.updated_at

        await self._save_checkpoint()

    def _sample_rejections(self, cursor: BackfillCursor, record_ids: list[str]) -> None:
        """
        Add rejected ids to the cursor's reservoir sample.

        Must run before ``documents_rejected`` is advanced: every rejection
        so far has had an equal chance of being kept.
        """
        size = self._config.reconciliation_sample_size
        sample = cursor.rejected_sample
        for offset, record_id in enumerate(record_ids):
            seen = cursor.documents_rejected + offset
            if len(sample) < size:
                sample.append(record_id)
                continue
            slot = self._random.randrange(seen + 1)
            if slot < size:
                sample[slot] = record_id

    async def _save_checkpoint(self) -> None:
        if self._checkpoint_repo is not None and self._cursor is not None:
            await self._checkpoint_repo.save(self._name, self._cursor)

    async def _wait_if_paused(self) -> None:
        """Wait if operation is paused."""
        if self._is_paused:
            await self._pause_event.wait()


__all__ = [
    "BackfillEngine",
    "DocumentTransformer",
    "RateLimiter",
]
