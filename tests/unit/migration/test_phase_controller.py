"""
Unit tests for PhaseController.

Tests cover:
- Validated forward transitions, no skips
- Rollback from CUTOVER_PENDING only
- before_commit atomicity
- Shared leases blocking transitions until readers drain
- Pending transitions blocking new readers
- Hooks, history, phase durations and wait_for_phase
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from searchmigrate.migration.exceptions import (
    InvalidPhaseTransitionError,
    MigrationStateError,
)
from searchmigrate.migration.metrics import ReindexMetrics
from searchmigrate.migration.models import MigrationPhase
from searchmigrate.migration.phase_controller import PhaseController
from searchmigrate.observability import ATTR_FROM_PHASE
from tests.fixtures import MockTracer

P = MigrationPhase


@pytest.fixture
def controller() -> PhaseController:
    return PhaseController(name="products", enable_tracing=False)


class TestTransitions:
    """Tests for transition validation."""

    @pytest.mark.asyncio
    async def test_advance_walks_every_phase(self, controller: PhaseController) -> None:
        """Test advancing from PREPARING to COMPLETE."""
        for expected in list(MigrationPhase)[1:]:
            transition = await controller.advance()
            assert transition.to_phase is expected

        assert controller.phase is P.COMPLETE
        assert len(controller.history) == 5

    @pytest.mark.asyncio
    async def test_advance_from_complete_raises(self) -> None:
        """Test that COMPLETE is terminal."""
        controller = PhaseController(P.COMPLETE, enable_tracing=False)

        with pytest.raises(InvalidPhaseTransitionError):
            await controller.advance()

    @pytest.mark.asyncio
    async def test_skip_rejected(self, controller: PhaseController) -> None:
        """Test that skipping a phase is rejected and leaves the phase unchanged."""
        with pytest.raises(InvalidPhaseTransitionError) as exc_info:
            await controller.transition_to(P.BACKFILLING)

        assert exc_info.value.target_phase is P.BACKFILLING
        assert controller.phase is P.PREPARING
        assert controller.history == []

    @pytest.mark.asyncio
    async def test_rollback_from_cutover_pending(self) -> None:
        """Test rollback to DUAL_WRITE."""
        controller = PhaseController(P.CUTOVER_PENDING, enable_tracing=False)

        transition = await controller.rollback(reason="relevance regression")

        assert controller.phase is P.DUAL_WRITE
        assert transition.is_rollback is True
        assert transition.reason == "relevance regression"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase", [P.DUAL_WRITE, P.BACKFILLING, P.CUTOVER, P.COMPLETE])
    async def test_rollback_elsewhere_rejected(self, phase: MigrationPhase) -> None:
        """Test that rollback requires CUTOVER_PENDING."""
        controller = PhaseController(phase, enable_tracing=False)

        with pytest.raises(MigrationStateError):
            await controller.rollback()

        assert controller.phase is phase

    def test_require(self, controller: PhaseController) -> None:
        """Test phase preconditions."""
        assert controller.require(P.PREPARING, P.DUAL_WRITE, operation="x") is P.PREPARING

        with pytest.raises(MigrationStateError) as exc_info:
            controller.require(P.BACKFILLING, operation="start_backfill")

        assert exc_info.value.operation == "start_backfill"
        assert exc_info.value.expected_phases == [P.BACKFILLING]


class TestBeforeCommit:
    """Tests for actions run atomically with a transition."""

    @pytest.mark.asyncio
    async def test_action_sees_old_phase(self, controller: PhaseController) -> None:
        """Test that the action runs before the phase changes."""
        seen = []

        async def action(current: MigrationPhase, target: MigrationPhase) -> None:
            seen.append((current, target, controller.phase))

        await controller.advance(before_commit=action)

        assert seen == [(P.PREPARING, P.DUAL_WRITE, P.PREPARING)]
        assert controller.phase is P.DUAL_WRITE

    @pytest.mark.asyncio
    async def test_failing_action_aborts_transition(self, controller: PhaseController) -> None:
        """Test that a failing action leaves the phase unchanged."""

        async def action(current: MigrationPhase, target: MigrationPhase) -> None:
            raise RuntimeError("fence release failed")

        with pytest.raises(RuntimeError):
            await controller.advance(before_commit=action)

        assert controller.phase is P.PREPARING
        assert controller.history == []

        await controller.advance()
        assert controller.phase is P.DUAL_WRITE

    @pytest.mark.asyncio
    async def test_invalid_transition_skips_action(self, controller: PhaseController) -> None:
        """Test that the action never runs for a rejected transition."""
        action = AsyncMock()

        with pytest.raises(InvalidPhaseTransitionError):
            await controller.transition_to(P.CUTOVER, before_commit=action)

        action.assert_not_awaited()


class TestLeases:
    """Tests for the shared/exclusive lease."""

    @pytest.mark.asyncio
    async def test_transition_waits_for_readers(self, controller: PhaseController) -> None:
        """Test that a transition cannot commit while a reader holds the phase."""
        release = asyncio.Event()
        observed = []

        async def reader() -> None:
            async with controller.observe() as phase:
                observed.append(phase)
                await release.wait()
                observed.append(controller.phase)

        reader_task = asyncio.create_task(reader())
        await asyncio.sleep(0)
        assert controller.active_readers == 1

        transition_task = asyncio.create_task(controller.advance())
        await asyncio.sleep(0.01)
        assert not transition_task.done()

        release.set()
        await asyncio.gather(reader_task, transition_task)

        assert observed == [P.PREPARING, P.PREPARING]
        assert controller.phase is P.DUAL_WRITE

    @pytest.mark.asyncio
    async def test_pending_transition_blocks_new_readers(
        self, controller: PhaseController
    ) -> None:
        """Test that readers arriving behind a transition see the new phase."""
        release = asyncio.Event()

        async def slow_reader() -> None:
            async with controller.observe():
                await release.wait()

        async def late_reader() -> MigrationPhase:
            async with controller.observe() as phase:
                return phase

        first = asyncio.create_task(slow_reader())
        await asyncio.sleep(0)
        transition = asyncio.create_task(controller.advance())
        await asyncio.sleep(0)
        late = asyncio.create_task(late_reader())
        await asyncio.sleep(0.01)

        assert not late.done()

        release.set()
        await asyncio.gather(first, transition)

        assert await late is P.DUAL_WRITE

    @pytest.mark.asyncio
    async def test_concurrent_readers_share(self, controller: PhaseController) -> None:
        """Test that readers do not block each other."""
        inside = 0
        peak = 0

        async def reader() -> None:
            nonlocal inside, peak
            async with controller.observe():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(reader() for _ in range(4)))

        assert peak == 4

    @pytest.mark.asyncio
    async def test_concurrent_transitions_serialize(self, controller: PhaseController) -> None:
        """Test that two advances move two phases, one at a time."""

        async def slow(current: MigrationPhase, target: MigrationPhase) -> None:
            await asyncio.sleep(0.01)

        await asyncio.gather(controller.advance(before_commit=slow), controller.advance())

        assert controller.phase is P.BACKFILLING
        assert [t.to_phase for t in controller.history] == [P.DUAL_WRITE, P.BACKFILLING]


class TestObservability:
    """Tests for hooks, history, metrics and waiting."""

    @pytest.mark.asyncio
    async def test_hooks_called_and_failures_tolerated(
        self, controller: PhaseController
    ) -> None:
        """Test that hooks see each transition and failures do not undo it."""
        seen = []

        async def good(transition) -> None:
            seen.append(transition.to_phase)

        async def bad(transition) -> None:
            raise RuntimeError("audit sink down")

        controller.add_hook(bad)
        controller.add_hook(good)

        await controller.advance()

        assert seen == [P.DUAL_WRITE]
        assert controller.phase is P.DUAL_WRITE

    @pytest.mark.asyncio
    async def test_phase_duration_recorded(self) -> None:
        """Test that leaving a phase records its duration."""
        metrics = ReindexMetrics("products", enable_metrics=False)
        controller = PhaseController(metrics=metrics, enable_tracing=False)

        await controller.advance()

        assert "preparing" in metrics.get_snapshot().phase_durations

    @pytest.mark.asyncio
    async def test_transition_span(self) -> None:
        """Test that transitions are traced."""
        tracer = MockTracer()
        controller = PhaseController(name="products", tracer=tracer)

        await controller.advance()

        name, attributes = tracer.spans[0]
        assert name == "searchmigrate.phase_controller.transition"
        assert attributes[ATTR_FROM_PHASE] == "preparing"

    @pytest.mark.asyncio
    async def test_wait_for_phase(self, controller: PhaseController) -> None:
        """Test waiting for a future phase."""
        waiter = asyncio.create_task(controller.wait_for_phase(P.DUAL_WRITE, timeout=1.0))
        await asyncio.sleep(0)

        await controller.advance()

        await waiter

    @pytest.mark.asyncio
    async def test_wait_for_phase_timeout(self, controller: PhaseController) -> None:
        """Test that waiting times out."""
        with pytest.raises(TimeoutError):
            await controller.wait_for_phase(P.COMPLETE, timeout=0.01)

    def test_phase_started_at(self, controller: PhaseController) -> None:
        """Test that the phase start time is tracked."""
        assert controller.phase_started_at.tzinfo is not None
