"""
PhaseController - Single authoritative migration phase.

The phase decides which write-path behaviors are active, so every component
must see the same value at the same time. The controller holds the phase
behind a shared/exclusive lease:

- Readers (the dispatcher, per change event) take a shared lease with
  ``async with controller.observe() as phase`` and act on that phase for
  the whole operation.
- Transitions take the exclusive side. A pending transition blocks new
  readers and waits for in-flight readers to drain, so no component is
  still acting on a phase that has already been left.

Responsibilities:
    - Validate transitions against the MigrationPhase state machine
    - Linearize transitions against in-flight readers
    - Run actions atomically with a transition (e.g., releasing the fence)
    - Record an audit history and phase durations

Usage:
    >>> controller = PhaseController()
    >>> await controller.advance(reason="target schema created")
    >>> async with controller.observe() as phase:
    ...     assert phase is MigrationPhase.DUAL_WRITE
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from searchmigrate.migration.exceptions import (
    InvalidPhaseTransitionError,
    MigrationStateError,
)
from searchmigrate.migration.models import MigrationPhase, PhaseTransition
from searchmigrate.observability import (
    ATTR_FROM_PHASE,
    ATTR_MIGRATION_NAME,
    ATTR_TO_PHASE,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    from searchmigrate.migration.metrics import ReindexMetrics

logger = logging.getLogger(__name__)

BeforeCommit = Callable[[MigrationPhase, MigrationPhase], Awaitable[None]]
TransitionHook = Callable[[PhaseTransition], Awaitable[None]]


class PhaseController:
    """
    Lock-protected migration phase with a shared/exclusive lease.

    Leases are not reentrant: code running inside ``observe()`` or inside a
    transition action must not call ``observe()`` or ``transition_to()``
    again, or it waits on itself.

    Example:
        >>> controller = PhaseController(name="products-v2")
        >>> await controller.transition_to(MigrationPhase.DUAL_WRITE)
        >>> await controller.transition_to(
        ...     MigrationPhase.BACKFILLING,
        ...     before_commit=arm_fence,
        ... )
    """

    def __init__(
        self,
        initial_phase: MigrationPhase = MigrationPhase.PREPARING,
        *,
        name: str = "reindex",
        metrics: ReindexMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the controller.

        Args:
            initial_phase: Phase to start in (default PREPARING)
            name: Migration name for logs and spans
            metrics: Optional metrics for phase durations
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._name = name
        self._metrics = metrics
        self._phase = initial_phase
        self._phase_started_at = datetime.now(UTC)
        self._phase_started_monotonic = time.monotonic()
        self._history: list[PhaseTransition] = []
        self._hooks: list[TransitionHook] = []

        self._condition = asyncio.Condition()
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @property
    def phase(self) -> MigrationPhase:
        """
        Current phase.

        A bare read is a point-in-time value; use observe() to hold the
        phase for the duration of an operation.
        """
        return self._phase

    @property
    def phase_started_at(self) -> datetime:
        return self._phase_started_at

    @property
    def history(self) -> list[PhaseTransition]:
        """Audit history of committed transitions, oldest first."""
        return list(self._history)

    @property
    def active_readers(self) -> int:
        return self._readers

    def add_hook(self, hook: TransitionHook) -> None:
        """
        Register a coroutine called after every committed transition.

        Hooks run inside the exclusive section. A failing hook is logged;
        the transition stays committed.
        """
        self._hooks.append(hook)

    @asynccontextmanager
    async def observe(self) -> AsyncIterator[MigrationPhase]:
        """
        Hold a shared lease on the current phase.

        The phase cannot change until the block exits.

        Yields:
            The phase in effect for the whole block
        """
        async with self._condition:
            await self._condition.wait_for(
                lambda: not self._writer_active and self._writers_waiting == 0
            )
            self._readers += 1
            phase = self._phase

        try:
            yield phase
        finally:
            async with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    async def transition_to(
        self,
        target: MigrationPhase,
        *,
        reason: str | None = None,
        before_commit: BeforeCommit | None = None,
    ) -> PhaseTransition:
        """
        Move to another phase.

        Waits for in-flight readers to drain, validates the transition, runs
        ``before_commit`` and then commits the new phase. If ``before_commit``
        raises, the phase is left unchanged and the error propagates.

        Args:
            target: Phase to move to
            reason: Optional reason recorded in the audit entry
            before_commit: Coroutine run inside the exclusive section, before
                the phase changes, with (current, target)

        Returns:
            The committed PhaseTransition

        Raises:
            InvalidPhaseTransitionError: If the transition is not allowed
        """
        return await self._transition(lambda current: target, reason, before_commit)

    async def _transition(
        self,
        resolve: Callable[[MigrationPhase], MigrationPhase],
        reason: str | None,
        before_commit: BeforeCommit | None,
    ) -> PhaseTransition:
        async with self._exclusive():
            current = self._phase
            # Resolved under the lease so concurrent callers see committed phases
            target = resolve(current)

            with self._tracer.span(
                "searchmigrate.phase_controller.transition",
                {
                    ATTR_MIGRATION_NAME: self._name,
                    ATTR_FROM_PHASE: current.value,
                    ATTR_TO_PHASE: target.value,
                },
            ):
                if not current.can_transition_to(target):
                    raise InvalidPhaseTransitionError(current, target, migration_name=self._name)

                if before_commit is not None:
                    await before_commit(current, target)

                transition = self._commit(current, target, reason)

                for hook in self._hooks:
                    try:
                        await hook(transition)
                    except Exception:
                        logger.exception(
                            "Phase transition hook failed for %s -> %s",
                            current.value,
                            target.value,
                        )

                return transition

    async def advance(
        self,
        *,
        reason: str | None = None,
        before_commit: BeforeCommit | None = None,
    ) -> PhaseTransition:
        """
        Move to the next forward phase.

        Raises:
            InvalidPhaseTransitionError: If the migration is already COMPLETE
        """
        return await self._transition(self._next_phase_of, reason, before_commit)

    async def rollback(
        self,
        *,
        reason: str | None = None,
        before_commit: BeforeCommit | None = None,
    ) -> PhaseTransition:
        """
        Roll back from CUTOVER_PENDING to DUAL_WRITE.

        Raises:
            MigrationStateError: If the current phase is not CUTOVER_PENDING
        """
        if self._phase != MigrationPhase.CUTOVER_PENDING:
            raise MigrationStateError(
                f"Rollback is only possible from {MigrationPhase.CUTOVER_PENDING.value}, "
                f"current phase is {self._phase.value}",
                current_phase=self._phase,
                expected_phases=[MigrationPhase.CUTOVER_PENDING],
                operation="rollback",
                migration_name=self._name,
            )
        return await self.transition_to(
            MigrationPhase.DUAL_WRITE,
            reason=reason or "rollback",
            before_commit=before_commit,
        )

    async def wait_for_phase(
        self,
        phase: MigrationPhase,
        timeout: float | None = None,
    ) -> None:
        """
        Wait until the controller reaches a phase.

        Args:
            phase: Phase to wait for
            timeout: Seconds to wait (None waits forever)

        Raises:
            TimeoutError: If the phase is not reached in time
        """

        async def _wait() -> None:
            async with self._condition:
                await self._condition.wait_for(lambda: self._phase == phase)

        await asyncio.wait_for(_wait(), timeout=timeout)

    def require(self, *phases: MigrationPhase, operation: str) -> MigrationPhase:
        """
        Check that the current phase is one of ``phases``.

        Returns:
            The current phase

        Raises:
            MigrationStateError: If it is not
        """
        current = self._phase
        if current not in phases:
            raise MigrationStateError(
                f"Operation '{operation}' requires phase "
                f"{' or '.join(p.value for p in phases)}, current phase is {current.value}",
                current_phase=current,
                expected_phases=list(phases),
                operation=operation,
                migration_name=self._name,
            )
        return current

    # =========================================================================
    # Internals
    # =========================================================================

    def _next_phase_of(self, current: MigrationPhase) -> MigrationPhase:
        next_phase = current.next_phase
        if next_phase is None:
            raise InvalidPhaseTransitionError(current, current, migration_name=self._name)
        return next_phase

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        async with self._condition:
            self._writers_waiting += 1
            try:
                await self._condition.wait_for(
                    lambda: not self._writer_active and self._readers == 0
                )
            finally:
                self._writers_waiting -= 1
                # Readers blocked behind this writer re-check their predicate
                self._condition.notify_all()
            self._writer_active = True

        try:
            yield
        finally:
            async with self._condition:
                self._writer_active = False
                self._condition.notify_all()

    def _commit(
        self,
        current: MigrationPhase,
        target: MigrationPhase,
        reason: str | None,
    ) -> PhaseTransition:
        now = datetime.now(UTC)
        duration = time.monotonic() - self._phase_started_monotonic

        transition = PhaseTransition(
            from_phase=current,
            to_phase=target,
            occurred_at=now,
            reason=reason,
        )
        self._phase = target
        self._phase_started_at = now
        self._phase_started_monotonic = time.monotonic()
        self._history.append(transition)

        if self._metrics is not None:
            self._metrics.record_phase_duration(current.value, duration)

        logger.info(
            "Migration %s phase %s -> %s after %.1fs%s",
            self._name,
            current.value,
            target.value,
            duration,
            f" ({reason})" if reason else "",
        )
        return transition


__all__ = [
    "PhaseController",
    "BeforeCommit",
    "TransitionHook",
]
