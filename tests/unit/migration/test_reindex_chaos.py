"""
Chaos tests for reindex migrations.

These tests verify that Target converges to the transformed Legacy index
under failure conditions:
- Intermittent Target errors during dual write and backfill
- A full Target outage during dual write, followed by replay
- Legacy errors causing change feed redelivery
- Store timeouts
- Live traffic consumed through lanes while the backfill runs

A seeded random generator drives the traffic so failures reproduce.
"""

from __future__ import annotations

import asyncio
import random

import pytest

from searchmigrate.feed import ChangeEvent, InMemoryChangeFeed
from searchmigrate.migration.coordinator import ReindexCoordinator
from searchmigrate.migration.dual_write import TargetOutcome
from searchmigrate.migration.exceptions import MigrationStateError
from searchmigrate.migration.models import MigrationPhase
from searchmigrate.migration.repositories.checkpoint import InMemoryBackfillCheckpointRepository
from searchmigrate.stores import IndexStore, InMemoryIndexStore
from tests.fixtures import (
    LEGACY_INDEX,
    TARGET_INDEX,
    FailureInjectingIndexStore,
    fast_config,
    seed,
    to_v2,
)

P = MigrationPhase

RECORDS = [f"rec-{i:03d}" for i in range(30)]


# =============================================================================
# Helpers
# =============================================================================


def make_coordinator(legacy: IndexStore, target: IndexStore, **overrides) -> ReindexCoordinator:
    config = fast_config(
        schema_version_field="_schema",
        max_concurrent_batches=3,
        lane_count=4,
        **overrides,
    )
    return ReindexCoordinator(
        legacy,
        target,
        transformer=to_v2,
        config=config,
        checkpoint_repo=InMemoryBackfillCheckpointRepository(enable_tracing=False),
        enable_metrics=False,
        enable_tracing=False,
        name="chaos",
    )


def traffic(rng: random.Random, count: int, start_token: int = 1) -> list[ChangeEvent]:
    """Random upserts and deletes with per-record increasing sequence tokens."""
    events = []
    for token in range(start_token, start_token + count):
        record_id = rng.choice(RECORDS)
        if rng.random() < 0.3:
            events.append(ChangeEvent.delete(record_id, token))
        else:
            events.append(ChangeEvent.upsert(record_id, {"rev": token}, token))
    return events


def every_nth_fails(store: FailureInjectingIndexStore, operation: str, n: int) -> None:
    """Fail every n-th call of an operation once (transient)."""
    seen = 0

    async def hook(record_id: str | None) -> None:
        nonlocal seen
        seen += 1
        if seen % n == 0:
            store.fail_next(operation, 1)

    store.before(operation, hook)


async def documents(store: InMemoryIndexStore) -> dict[str, dict]:
    return {record_id: await store.get(record_id) for record_id in await store.record_ids()}


async def assert_converged(legacy: InMemoryIndexStore, target: InMemoryIndexStore) -> None:
    expected = {k: to_v2(v) for k, v in (await documents(legacy)).items()}
    assert await documents(target) == expected


async def seeded_stores() -> tuple[FailureInjectingIndexStore, FailureInjectingIndexStore]:
    legacy = FailureInjectingIndexStore(LEGACY_INDEX)
    target = FailureInjectingIndexStore(TARGET_INDEX)
    await seed(legacy.inner, {record_id: {"rev": 0} for record_id in RECORDS[:20]})
    return legacy, target


async def run_migration_with_feed(
    coordinator: ReindexCoordinator,
    feed: InMemoryChangeFeed,
    before: list[ChangeEvent],
    during: list[ChangeEvent],
) -> None:
    """Dual write, backfill under live traffic, then advance to CUTOVER_PENDING."""
    await coordinator.begin_dual_write()
    await feed.publish_many(before)
    consumer = asyncio.create_task(coordinator.consume(feed))

    await coordinator.start_backfill()
    for event in during:
        await feed.publish(event)
        await asyncio.sleep(0)
    feed.close()

    await asyncio.wait_for(consumer, timeout=10.0)
    result = await coordinator.wait_for_backfill(timeout=10.0)
    assert result.success is True

    replay = await coordinator.retry_failed_target_writes()
    assert replay.remaining == 0
    await coordinator.advance()
    assert coordinator.phase is P.CUTOVER_PENDING


# =============================================================================
# Tests
# =============================================================================


class TestLiveTrafficDuringBackfill:
    """Random live traffic consumed while the backfill runs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed_value", [1, 7, 42])
    async def test_converges_without_faults(self, seed_value: int) -> None:
        """Test convergence with healthy stores."""
        rng = random.Random(seed_value)
        legacy, target = await seeded_stores()
        coordinator = make_coordinator(legacy, target)
        feed = InMemoryChangeFeed()

        await run_migration_with_feed(
            coordinator, feed, traffic(rng, 20), traffic(rng, 60, start_token=100)
        )

        assert coordinator.last_reconciliation.passed is True
        await assert_converged(legacy.inner, target.inner)

    @pytest.mark.asyncio
    async def test_converges_with_intermittent_target_errors(self) -> None:
        """Test that retried Target hiccups leave no trace in the result."""
        rng = random.Random(3)
        legacy, target = await seeded_stores()
        every_nth_fails(target, "index_or_replace", 5)
        every_nth_fails(target, "insert_if_absent", 4)
        every_nth_fails(target, "delete_if_exists", 3)
        coordinator = make_coordinator(legacy, target)
        feed = InMemoryChangeFeed()

        await run_migration_with_feed(
            coordinator, feed, traffic(rng, 20), traffic(rng, 60, start_token=100)
        )

        assert target.faults("insert_if_absent").failures > 0
        await assert_converged(legacy.inner, target.inner)

    @pytest.mark.asyncio
    async def test_converges_with_legacy_errors(self) -> None:
        """Test that Legacy failures are redelivered and applied once healthy."""
        rng = random.Random(11)
        legacy, target = await seeded_stores()
        every_nth_fails(legacy, "index_or_replace", 6)
        every_nth_fails(legacy, "delete_if_exists", 4)
        coordinator = make_coordinator(legacy, target)
        feed = InMemoryChangeFeed()

        await run_migration_with_feed(
            coordinator, feed, traffic(rng, 20), traffic(rng, 60, start_token=100)
        )

        assert feed.get_stats()["nacked"] > 0
        assert feed.dead_letters == []
        await assert_converged(legacy.inner, target.inner)


class TestTargetOutage:
    """Target unavailable for a stretch of live traffic."""

    @pytest.mark.asyncio
    async def test_outage_during_dual_write_then_replay(self) -> None:
        """Test that Legacy keeps accepting writes and Target catches up on replay."""
        rng = random.Random(5)
        legacy, target = await seeded_stores()
        coordinator = make_coordinator(legacy, target)
        await coordinator.begin_dual_write()

        target.fail_always("index_or_replace")
        target.fail_always("delete_if_exists")
        for event in traffic(rng, 40):
            result = await coordinator.apply(event)
            assert result.legacy_applied is True

        assert coordinator.dispatcher.parked_count > 0
        assert coordinator.dispatcher.get_failure_stats().total_failures > 0

        target.heal()
        # The breaker opened during the outage; let replay through
        coordinator.dispatcher.circuit_breaker.reset()
        replay = await coordinator.retry_failed_target_writes()

        assert replay.remaining == 0
        assert replay.failed_records == ()

        await coordinator.start_backfill()
        await coordinator.wait_for_backfill(timeout=10.0)
        await coordinator.advance()

        assert coordinator.phase is P.CUTOVER_PENDING
        await assert_converged(legacy.inner, target.inner)

    @pytest.mark.asyncio
    async def test_outage_before_cutover_blocks_until_replayed(self) -> None:
        """Test that writes parked in CUTOVER_PENDING block cutover until replayed."""
        legacy, target = await seeded_stores()
        coordinator = make_coordinator(legacy, target)
        await coordinator.begin_dual_write()
        await coordinator.start_backfill()
        await coordinator.wait_for_backfill(timeout=10.0)
        await coordinator.advance()

        target.fail_always("index_or_replace")
        first = await coordinator.apply(ChangeEvent.upsert("rec-001", {"rev": 1}, 1))
        second = await coordinator.apply(ChangeEvent.upsert("rec-001", {"rev": 2}, 2))
        await coordinator.apply(ChangeEvent.upsert("rec-025", {"rev": 1}, 1))
        target.heal()

        assert first.target_outcome is TargetOutcome.FAILED
        assert second.target_outcome is TargetOutcome.DEFERRED
        with pytest.raises(MigrationStateError):
            await coordinator.advance()
        assert coordinator.phase is P.CUTOVER_PENDING

        coordinator.dispatcher.circuit_breaker.reset()
        replay = await coordinator.retry_failed_target_writes()
        await coordinator.advance()

        assert replay.replayed == 3
        assert coordinator.phase is P.CUTOVER
        assert await target.inner.get("rec-001") == {"rev": 2, "_schema": "2"}
        await assert_converged(legacy.inner, target.inner)


class TestTimeouts:
    """Slow stores exceeding the configured timeout."""

    @pytest.mark.asyncio
    async def test_slow_target_insert_times_out_and_retries(self) -> None:
        """Test that hung backfill inserts are retried after the timeout."""
        legacy, target = await seeded_stores()
        hung = 0

        async def hang_twice(record_id: str | None) -> None:
            nonlocal hung
            if hung < 2:
                hung += 1
                await asyncio.sleep(1.0)

        target.before("insert_if_absent", hang_twice)
        coordinator = make_coordinator(legacy, target, store_timeout_seconds=0.05)

        await coordinator.begin_dual_write()
        await coordinator.start_backfill()
        result = await coordinator.wait_for_backfill(timeout=10.0)
        await coordinator.advance()

        assert result.success is True
        await assert_converged(legacy.inner, target.inner)
