"""
DeleteFence - Holds Target deletes back while a backfill runs.

A record deleted from Legacy after the backfill snapshot was taken is still
in the snapshot, so the backfill may insert it into Target after the delete
arrived. Applying the delete immediately would let the record resurrect.
While the phase is BACKFILLING the dispatcher therefore sends deletes to
the fence instead of Target; once the backfill is complete the phase
controller releases the fence, replaying every pending delete in arrival
order with delete-if-exists semantics.

Responsibilities:
    - Queue pending deletes in one FIFO while armed for a snapshot
    - Replay them against Target after backfill completion, idempotently
    - Withdraw deletes superseded by a newer upsert of the same record
    - Keep enqueue and release mutually exclusive per record

Usage:
    >>> fence = DeleteFence(target_store)
    >>> fence.activate(snapshot_token)
    >>> await fence.fence("sku-1")
    >>> released = await fence.release(until=snapshot_token)
    >>> fence.deactivate()
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from searchmigrate.locks import RecordLockManager
from searchmigrate.migration.exceptions import (
    ErrorHandler,
    FenceReleaseError,
    MigrationStateError,
)
from searchmigrate.migration.models import PendingDelete, ReindexConfig
from searchmigrate.observability import (
    ATTR_INDEX_NAME,
    ATTR_PENDING_DELETES,
    ATTR_RECORD_ID,
    ATTR_SNAPSHOT_TOKEN,
    Tracer,
    create_tracer,
)
from searchmigrate.stores import IndexStore, call_with_timeout

if TYPE_CHECKING:
    from searchmigrate.migration.metrics import ReindexMetrics

logger = logging.getLogger(__name__)


class DeleteFence:
    """
    FIFO queue of Target deletes deferred until backfill completion.

    The fence is armed for exactly one snapshot token at a time. Releasing
    for any other token is a state error, and releasing an empty or already
    drained fence is a no-op. A delete whose retries are exhausted stays at
    the head of the queue with everything behind it, so release can simply
    be called again.

    Attributes:
        _target: Target index store deletes are replayed against.
        _queue: Pending deletes in arrival order.
        _armed_token: Snapshot token the fence is armed for.
        _released_tokens: Snapshot tokens whose deletes were fully released.
    """

    def __init__(
        self,
        target: IndexStore,
        *,
        config: ReindexConfig | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: ReindexMetrics | None = None,
        name: str = "reindex",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the fence.

        Args:
            target: Target index store.
            config: Reindex configuration (timeouts and retry policy).
            error_handler: Handler used to retry deletes on release.
            metrics: Optional metrics for fence size and releases.
            name: Migration name for logs and errors.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable tracing (default True).
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._target = target
        self._config = config or ReindexConfig()
        self._error_handler = error_handler or ErrorHandler()
        self._metrics = metrics
        self._name = name

        self._queue: deque[PendingDelete] = deque()
        self._pending_by_record: Counter[str] = Counter()
        self._armed_token: str | None = None
        self._released_tokens: set[str] = set()
        self._sequence = 0
        self._released_total = 0

        self._release_lock = asyncio.Lock()
        self._record_locks = RecordLockManager()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def is_armed(self) -> bool:
        return self._armed_token is not None

    @property
    def armed_token(self) -> str | None:
        return self._armed_token

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def released_total(self) -> int:
        """Deletes replayed against Target over the fence lifetime."""
        return self._released_total

    def snapshot(self) -> list[PendingDelete]:
        """Get the pending deletes in release order."""
        return list(self._queue)

    def is_pending(self, record_id: str) -> bool:
        """Check if a delete for the record is waiting in the fence."""
        return self._pending_by_record[record_id] > 0

    def activate(self, snapshot_token: str) -> None:
        """
        Arm the fence for a backfill snapshot.

        Re-arming for the token already armed is a no-op, so a resumed
        backfill keeps its pending deletes.

        Raises:
            MigrationStateError: If armed for another snapshot with deletes pending
        """
        if self._armed_token == snapshot_token:
            return
        if self._queue:
            raise MigrationStateError(
                f"Delete fence still holds {len(self._queue)} deletes for snapshot "
                f"{self._armed_token}; release them before arming for {snapshot_token}",
                operation="fence.activate",
                migration_name=self._name,
            )
        self._armed_token = snapshot_token
        logger.info("Delete fence armed for snapshot %s", snapshot_token)

    def deactivate(self) -> None:
        """
        Disarm the fence after release.

        Raises:
            MigrationStateError: If deletes are still pending
        """
        if self._queue:
            raise MigrationStateError(
                f"Cannot disarm delete fence with {len(self._queue)} pending deletes",
                operation="fence.deactivate",
                migration_name=self._name,
            )
        if self._armed_token is not None:
            logger.info("Delete fence disarmed (snapshot %s)", self._armed_token)
        self._armed_token = None

    # =========================================================================
    # Operations
    # =========================================================================

    async def fence(self, record_id: str) -> PendingDelete:
        """
        Queue a delete for replay after backfill completion.

        Args:
            record_id: Record deleted from Legacy

        Returns:
            The queued PendingDelete

        Raises:
            MigrationStateError: If the fence is not armed
        """
        if self._armed_token is None:
            raise MigrationStateError(
                "Delete fence is not armed",
                operation="fence.fence",
                migration_name=self._name,
            )

        async with self._record_locks.acquire(record_id):
            self._sequence += 1
            entry = PendingDelete(
                record_id=record_id,
                requested_at=datetime.now(UTC),
                snapshot_token=self._armed_token,
                sequence=self._sequence,
            )
            self._queue.append(entry)
            self._pending_by_record[record_id] += 1

        self._report_pending()
        logger.debug(
            "Target delete for %s fenced (seq=%d, pending=%d)",
            record_id,
            entry.sequence,
            len(self._queue),
        )
        return entry

    async def withdraw(self, record_id: str) -> int:
        """
        Remove pending deletes for a record superseded by a newer upsert.

        Returns:
            Number of deletes withdrawn
        """
        async with self._record_locks.acquire(record_id):
            withdrawn = self._pending_by_record.pop(record_id, 0)
            if withdrawn:
                self._queue = deque(e for e in self._queue if e.record_id != record_id)

        if withdrawn:
            self._report_pending()
            logger.debug("Withdrew %d fenced deletes for %s", withdrawn, record_id)
        return withdrawn

    async def release(self, until: str) -> int:
        """
        Replay every pending delete against Target, in arrival order.

        Args:
            until: Snapshot token of the completed backfill

        Returns:
            Number of deletes replayed by this call

        Raises:
            MigrationStateError: If armed for a different snapshot
            FenceReleaseError: If a delete could not be applied; it and every
                later delete stay queued
        """
        if self._armed_token is None:
            if until in self._released_tokens or not self._queue:
                return 0
            raise MigrationStateError(
                f"Delete fence is not armed; cannot release for snapshot {until}",
                operation="fence.release",
                migration_name=self._name,
            )
        if until != self._armed_token:
            raise MigrationStateError(
                f"Delete fence is armed for snapshot {self._armed_token}, not {until}",
                operation="fence.release",
                migration_name=self._name,
            )

        async with self._release_lock:
            with self._tracer.span(
                "searchmigrate.delete_fence.release",
                {
                    ATTR_SNAPSHOT_TOKEN: until,
                    ATTR_PENDING_DELETES: len(self._queue),
                    ATTR_INDEX_NAME: self._target.target.name,
                },
            ):
                released = 0
                try:
                    while self._queue:
                        head = self._queue[0]
                        async with self._record_locks.acquire(head.record_id):
                            # A withdraw may have removed the head meanwhile
                            if not self._queue or self._queue[0] is not head:
                                continue
                            existed = await self._apply_delete(head)
                            self._queue.popleft()
                            self._forget(head.record_id)
                        released += 1
                        self._released_total += 1
                        logger.info(
                            "Target delete %s: record_id=%s (fenced seq=%d)",
                            "applied" if existed else "absent",
                            head.record_id,
                            head.sequence,
                        )
                finally:
                    self._report_pending()
                    if self._metrics is not None:
                        self._metrics.record_deletes_released(released)

                self._released_tokens.add(until)
                logger.info(
                    "Delete fence released %d deletes for snapshot %s",
                    released,
                    until,
                )
                return released

    # =========================================================================
    # Internals
    # =========================================================================

    def _forget(self, record_id: str) -> None:
        self._pending_by_record[record_id] -= 1
        if self._pending_by_record[record_id] <= 0:
            del self._pending_by_record[record_id]

    async def _apply_delete(self, entry: PendingDelete) -> bool:
        target_name = self._target.target.name
        try:
            with self._tracer.span(
                "searchmigrate.delete_fence.apply",
                {ATTR_RECORD_ID: entry.record_id, ATTR_INDEX_NAME: target_name},
            ):
                return await self._error_handler.execute_with_retry(
                    lambda: call_with_timeout(
                        self._target.delete_if_exists(entry.record_id),
                        self._config.store_timeout_seconds,
                        index_name=target_name,
                        operation="delete_if_exists",
                        record_id=entry.record_id,
                    ),
                    operation_name="fence.release",
                    migration_name=self._name,
                    retry_config=self._config.target_write_retry,
                )
        except Exception as e:
            logger.error(
                "Target delete failed: record_id=%s, %d deletes remain fenced: %s",
                entry.record_id,
                len(self._queue),
                e,
            )
            raise FenceReleaseError(
                entry.record_id,
                len(self._queue),
                str(e),
                migration_name=self._name,
            ) from e

    def _report_pending(self) -> None:
        if self._metrics is not None:
            self._metrics.set_pending_deletes(len(self._queue))


__all__ = ["DeleteFence"]
